from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest
from dateutil.relativedelta import relativedelta

from nicroma.billing.constants import SubscriptionStatus
from nicroma.billing.lifecycle import request_cancellation
from nicroma.billing.lifecycle import start_trial
from nicroma.billing.payments import on_charge_succeeded
from nicroma.billing.plan_changes import PlanChangeService
from nicroma.billing.plan_changes import apply_pending_change
from nicroma.billing.policy import BillingPolicy
from nicroma.billing.sweeps import due_subscription_ids
from nicroma.billing.sweeps import run_billing_sweep
from nicroma.billing.tests.factories import subscribe
from nicroma.tenants.tests.factories import TenantFactory


@pytest.mark.django_db
class TestBillingSweep:
    def test_nothing_due(self, plans, tenant, now):
        subscribe(tenant, "starter", now)

        report = run_billing_sweep(now=now + timedelta(days=1))

        assert report.examined == 0
        assert report.changed == 0

    def test_cancellation_at_period_end(self, plans, tenant, now):
        subscription = subscribe(tenant, "starter", now)
        request_cancellation(tenant, reason="Cierre", now=now)
        period_end = subscription.current_period_end

        run_billing_sweep(now=period_end - timedelta(minutes=1))
        subscription.refresh_from_db()
        assert subscription.status == SubscriptionStatus.ACTIVE

        report = run_billing_sweep(now=period_end)

        assert report.cancelled == 1
        subscription.refresh_from_db()
        assert subscription.status == SubscriptionStatus.CANCELLED
        assert subscription.cancelled_at == period_end
        assert subscription.cancel_reason == "Cierre"

    def test_renewal_charge_does_not_outlive_cancellation(self, plans, tenant, now):
        subscription = subscribe(tenant, "starter", now)
        request_cancellation(tenant, reason="Cierre", now=now)
        period_end = subscription.current_period_end

        outcome = on_charge_succeeded(
            tenant,
            period_start=period_end,
            period_end=period_end + relativedelta(months=1),
            amount=Decimal("45000"),
            correlation_id="in_after_cancel",
            now=period_end,
        )

        assert outcome.payment is not None
        subscription.refresh_from_db()
        assert subscription.current_period_end == period_end
        assert subscription.cancel_at_period_end

        report = run_billing_sweep(now=period_end + timedelta(minutes=15))

        assert report.cancelled == 1
        subscription.refresh_from_db()
        assert subscription.status == SubscriptionStatus.CANCELLED

    def test_cancellation_wins_over_pending_change(self, plans, tenant, now):
        subscription = subscribe(tenant, "profesional", now)
        PlanChangeService().change_plan(tenant, "starter", now=now)
        request_cancellation(tenant, now=now)

        report = run_billing_sweep(now=subscription.current_period_end)

        assert report.cancelled == 1
        assert report.pending_changes_applied == 0
        subscription.refresh_from_db()
        assert subscription.plan_id == "profesional"
        assert not subscription.has_pending_change

    def test_lapses_unconverted_trials(self, plans, tenant, now):
        start_trial(tenant, now=now)

        assert run_billing_sweep(now=now + timedelta(days=14)).examined == 0
        report = run_billing_sweep(now=now + timedelta(days=15))

        assert report.trials_lapsed == 1
        assert tenant.subscriptions.get().status == SubscriptionStatus.CANCELLED

    def test_one_failure_does_not_stop_the_sweep(self, plans, now):
        healthy, broken = TenantFactory(), TenantFactory()
        for tenant in (healthy, broken):
            subscribe(tenant, "profesional", now)
            PlanChangeService().change_plan(tenant, "starter", now=now)

        def flaky_apply(subscription, when):
            if subscription.tenant_id == broken.pk:
                raise RuntimeError("invoice collaborator down")
            return apply_pending_change(subscription, when)

        with patch("nicroma.billing.sweeps.apply_pending_change", side_effect=flaky_apply):
            report = run_billing_sweep(now=now + relativedelta(months=1))

        assert report.examined == 2
        assert report.pending_changes_applied == 1
        broken_subscription = broken.subscriptions.get()
        assert report.failures == [
            {"subscription": broken_subscription.pk, "error": "invoice collaborator down"},
        ]
        assert healthy.subscriptions.get().plan_id == "starter"
        assert broken_subscription.plan_id == "profesional"
        assert broken_subscription.has_pending_change

    def test_due_ids_skip_cancelled(self, plans, tenant, now):
        start_trial(tenant, now=now)
        run_billing_sweep(now=now + timedelta(days=15))

        ids = due_subscription_ids(now + timedelta(days=30), BillingPolicy.from_settings())

        assert ids == []
