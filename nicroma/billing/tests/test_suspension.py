from datetime import timedelta
from decimal import Decimal

import pytest
from dateutil.relativedelta import relativedelta

from nicroma.billing.constants import SubscriptionEventKind
from nicroma.billing.constants import SubscriptionStatus
from nicroma.billing.entitlements import check_access
from nicroma.billing.exceptions import InvalidTransition
from nicroma.billing.lifecycle import force_cancel
from nicroma.billing.lifecycle import start_trial
from nicroma.billing.models import Payment
from nicroma.billing.payments import on_charge_failed
from nicroma.billing.payments import on_charge_succeeded
from nicroma.billing.suspension import reactivate
from nicroma.billing.suspension import suspend
from nicroma.billing.tests.factories import subscribe


@pytest.mark.django_db
class TestSuspension:
    def test_suspend_blocks_access(self, plans, tenant, now):
        subscribe(tenant, "starter", now)

        subscription = suspend(tenant, "Uso indebido", now=now, actor="soporte")

        assert subscription.status == SubscriptionStatus.SUSPENDED
        assert subscription.suspended_at == now
        decision = check_access(subscription, now=now)
        assert not decision.allowed
        assert decision.code == "suspended"
        assert decision.warning == "Uso indebido"
        assert subscription.events.last().detail["actor"] == "soporte"

    def test_payment_signals_do_not_lift_suspension(self, plans, tenant, now):
        subscription = subscribe(tenant, "starter", now)
        period_end = subscription.current_period_end
        suspend(tenant, "Revisión", now=now)

        outcome = on_charge_succeeded(
            tenant,
            period_start=period_end,
            period_end=period_end + relativedelta(months=1),
            amount=Decimal("45000"),
            correlation_id="in_renewal",
            now=period_end,
        )
        assert not outcome.applied
        assert outcome.payment.subscription_id == subscription.pk

        on_charge_failed(tenant, reason="card_declined", correlation_id="in_fail:1")

        subscription.refresh_from_db()
        assert subscription.status == SubscriptionStatus.SUSPENDED
        assert subscription.current_period_end == period_end
        # Initial purchase, the ignored renewal and the failure are all recorded.
        assert Payment.objects.filter(tenant=tenant).count() == 3

    def test_reactivate_restores_active(self, plans, tenant, now):
        subscription = subscribe(tenant, "starter", now)
        period_end = subscription.current_period_end
        suspend(tenant, "Revisión", now=now)

        subscription = reactivate(tenant)

        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.suspension_reason == ""
        assert subscription.current_period_end == period_end
        assert subscription.amount == Decimal("45000.00")
        assert subscription.events.last().kind == SubscriptionEventKind.REACTIVATED

    def test_repeated_calls_are_rejected(self, plans, tenant, now):
        subscribe(tenant, "starter", now)

        with pytest.raises(InvalidTransition):
            reactivate(tenant)

        suspend(tenant, "Revisión", now=now)
        with pytest.raises(InvalidTransition):
            suspend(tenant, "Otra vez", now=now + timedelta(minutes=1))

    def test_trial_cannot_be_suspended(self, plans, tenant, now):
        start_trial(tenant, now=now)

        with pytest.raises(InvalidTransition):
            suspend(tenant, "Revisión", now=now)

    def test_suspended_can_be_force_cancelled(self, plans, tenant, now):
        subscribe(tenant, "starter", now)
        suspend(tenant, "Revisión", now=now)

        subscription = force_cancel(tenant, reason="Baja", now=now)

        assert subscription.status == SubscriptionStatus.CANCELLED
