"""
Tests for the plan change service.

These tests cover:
- Immediate upgrades, with any promotion snapshot re-applied
- Deferred downgrades and lateral moves, applied by the sweep
- Replacing and cancelling a pending change
- Changes that end an accompaniment price early
- Rejected changes
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from dateutil.relativedelta import relativedelta

from nicroma.billing.accompaniment import activate_accompaniment
from nicroma.billing.catalog import PlanChangeType
from nicroma.billing.constants import BillingCycle
from nicroma.billing.constants import PriceOverride
from nicroma.billing.constants import SubscriptionEventKind
from nicroma.billing.exceptions import BillingError
from nicroma.billing.exceptions import InvalidTransition
from nicroma.billing.exceptions import PlanNotPurchasable
from nicroma.billing.lifecycle import start_trial
from nicroma.billing.models import PlanChange
from nicroma.billing.payments import on_charge_succeeded
from nicroma.billing.plan_changes import PlanChangeService
from nicroma.billing.plan_changes import apply_pending_change
from nicroma.billing.plan_changes import cancel_pending_change
from nicroma.billing.sweeps import run_billing_sweep
from nicroma.billing.tests.factories import PromotionFactory
from nicroma.billing.tests.factories import subscribe


@pytest.fixture
def service():
    return PlanChangeService()


@pytest.mark.django_db
class TestUpgrade:
    def test_upgrade_applies_immediately(self, plans, tenant, now, service):
        subscription = subscribe(tenant, "starter", now)
        period_end = subscription.current_period_end

        result = service.change_plan(tenant, "profesional", now=now + timedelta(days=5))

        assert result.success
        assert result.change_type == PlanChangeType.UPGRADE
        assert result.effective_immediately
        assert result.new_amount == Decimal("89000.00")

        subscription.refresh_from_db()
        assert subscription.plan_id == "profesional"
        assert subscription.amount == Decimal("89000.00")
        assert subscription.current_period_end == period_end
        assert subscription.events.last().kind == SubscriptionEventKind.PLAN_CHANGED

        change = PlanChange.objects.get(subscription=subscription)
        assert change.old_plan_id == "starter"
        assert change.new_plan_id == "profesional"
        assert change.effective_immediately
        assert change.old_amount == Decimal("45000.00")

    def test_upgrade_keeps_promotion_snapshot(self, plans, tenant, now, service):
        PromotionFactory(code="BIENVENIDA", discount_value=Decimal("10"))
        subscribe(tenant, "starter", now, promotion_code="BIENVENIDA")

        result = service.change_plan(tenant, "profesional", now=now)

        assert result.new_amount == Decimal("80100.00")

    def test_yearly_cycle_on_higher_plan(self, plans, tenant, now, service):
        subscribe(tenant, "starter", now)

        result = service.change_plan(tenant, "business", BillingCycle.YEARLY, now=now)

        assert result.effective_immediately
        assert result.new_cycle == BillingCycle.YEARLY
        assert result.new_amount == Decimal("1790000.00")


@pytest.mark.django_db
class TestDowngrade:
    def test_downgrade_waits_for_period_end(self, plans, tenant, now, service):
        subscription = subscribe(tenant, "profesional", now)
        period_end = now + relativedelta(months=1)

        result = service.change_plan(tenant, "starter", now=now + timedelta(days=3))

        assert result.change_type == PlanChangeType.DOWNGRADE
        assert not result.effective_immediately
        assert result.scheduled_at == period_end
        assert result.new_amount == Decimal("45000.00")

        subscription.refresh_from_db()
        assert subscription.plan_id == "profesional"
        assert subscription.amount == Decimal("89000.00")
        assert subscription.pending_plan_id == "starter"
        assert subscription.pending_effective_at == period_end

        report = run_billing_sweep(now=period_end - timedelta(seconds=1))
        assert report.pending_changes_applied == 0
        subscription.refresh_from_db()
        assert subscription.plan_id == "profesional"

        report = run_billing_sweep(now=period_end)
        assert report.pending_changes_applied == 1
        subscription.refresh_from_db()
        assert subscription.plan_id == "starter"
        assert subscription.amount == Decimal("45000.00")
        assert not subscription.has_pending_change

    def test_last_request_wins(self, plans, tenant, now, service):
        subscription = subscribe(tenant, "business", now)

        service.change_plan(tenant, "profesional", now=now)
        result = service.change_plan(tenant, "starter", now=now)

        assert result.replaced_plan.slug == "profesional"
        subscription.refresh_from_db()
        assert subscription.pending_plan_id == "starter"
        latest = (
            PlanChange.objects.filter(subscription=subscription).order_by("-pk").first()
        )
        assert latest.notes == "Replaced pending change to profesional"

    def test_same_plan_other_cycle_is_lateral(self, plans, tenant, now, service):
        subscribe(tenant, "starter", now)

        result = service.change_plan(tenant, "starter", BillingCycle.YEARLY, now=now)

        assert result.change_type == PlanChangeType.LATERAL
        assert not result.effective_immediately
        assert result.new_amount == Decimal("450000.00")

    def test_cancel_pending_change(self, plans, tenant, now, service):
        subscription = subscribe(tenant, "profesional", now)
        service.change_plan(tenant, "starter", now=now)

        assert cancel_pending_change(tenant)
        assert not cancel_pending_change(tenant)

        subscription.refresh_from_db()
        assert not subscription.has_pending_change
        assert not apply_pending_change(subscription, now + relativedelta(months=2))
        assert subscription.events.last().kind == (
            SubscriptionEventKind.PLAN_CHANGE_CANCELLED
        )


def accompanied(tenant, plan_slug, now):
    """A tenant paying the accompaniment price after an expired trial."""
    start_trial(tenant, plan_slug=plan_slug, now=now)
    offered_at = now + timedelta(days=8)
    checkout = activate_accompaniment(tenant, now=offered_at)
    subscription = on_charge_succeeded(
        tenant,
        period_start=offered_at,
        period_end=offered_at + relativedelta(months=1),
        amount=checkout.amount,
        correlation_id=f"in_{checkout.gateway_reference}",
        checkout_reference=checkout.gateway_reference,
        now=offered_at,
    ).subscription
    assert subscription.amount == Decimal("10000.00")
    return subscription


@pytest.mark.django_db
class TestChangesDuringAccompaniment:
    def test_upgrade_ends_reduced_price(self, plans, tenant, now, service):
        subscription = accompanied(tenant, "starter", now)
        started = subscription.accompaniment_activated_at

        result = service.change_plan(tenant, "profesional", now=started + timedelta(days=5))

        assert result.effective_immediately
        assert result.new_amount == Decimal("89000.00")
        subscription.refresh_from_db()
        assert subscription.plan_id == "profesional"
        assert subscription.price_override == PriceOverride.STANDARD
        assert not subscription.accompaniment_active
        assert subscription.amount == Decimal("89000.00")

        report = run_billing_sweep(now=started + relativedelta(months=1))
        assert report.accompaniment_updates == 0
        subscription.refresh_from_db()
        assert subscription.accompaniment_months_used == 0
        assert subscription.amount == Decimal("89000.00")

    def test_pending_downgrade_ends_reduced_price(self, plans, tenant, now, service):
        subscription = accompanied(tenant, "profesional", now)
        period_end = subscription.current_period_end

        result = service.change_plan(tenant, "starter", now=period_end - timedelta(days=3))

        assert not result.effective_immediately
        assert result.scheduled_at == period_end
        subscription.refresh_from_db()
        assert subscription.accompaniment_active
        assert subscription.amount == Decimal("10000.00")

        report = run_billing_sweep(now=period_end)

        assert report.pending_changes_applied == 1
        assert report.accompaniment_updates == 0
        subscription.refresh_from_db()
        assert subscription.plan_id == "starter"
        assert subscription.price_override == PriceOverride.STANDARD
        assert subscription.amount == Decimal("45000.00")


@pytest.mark.django_db
class TestRejectedChanges:
    def test_same_plan_and_cycle(self, plans, tenant, now, service):
        subscribe(tenant, "starter", now)

        with pytest.raises(BillingError) as exc_info:
            service.change_plan(tenant, "starter", now=now)
        assert exc_info.value.code == "already_on_plan"

    def test_contact_sales_target(self, plans, tenant, now, service):
        subscribe(tenant, "starter", now)

        with pytest.raises(PlanNotPurchasable):
            service.change_plan(tenant, "enterprise", now=now)

    def test_trial_must_check_out_instead(self, plans, tenant, now, service):
        start_trial(tenant, now=now)

        with pytest.raises(InvalidTransition):
            service.change_plan(tenant, "starter", now=now)


@pytest.mark.django_db
class TestPreview:
    def test_preview_writes_nothing(self, plans, tenant, now, service):
        subscription = subscribe(tenant, "profesional", now)

        preview = service.preview_change(tenant, "starter")

        assert preview.success
        assert not preview.effective_immediately
        assert preview.scheduled_at == subscription.current_period_end
        assert "Profesional" in preview.message
        assert not PlanChange.objects.exists()
        subscription.refresh_from_db()
        assert not subscription.has_pending_change

    def test_preview_without_subscription(self, plans, tenant, service):
        preview = service.preview_change(tenant, "starter")

        assert not preview.success
        assert preview.message == "No subscription to change"
