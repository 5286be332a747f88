from datetime import timedelta
from decimal import Decimal

import pytest
import stripe
from dateutil.relativedelta import relativedelta

from nicroma.billing.constants import CheckoutStatus
from nicroma.billing.constants import PriceOverride
from nicroma.billing.constants import SubscriptionEventKind
from nicroma.billing.constants import SubscriptionStatus
from nicroma.billing.exceptions import ExternalCollaboratorUnavailable
from nicroma.billing.exceptions import InvalidTransition
from nicroma.billing.exceptions import PlanNotPurchasable
from nicroma.billing.exceptions import SubscriptionNotFound
from nicroma.billing.lifecycle import ALLOWED_TRANSITIONS
from nicroma.billing.lifecycle import begin_checkout
from nicroma.billing.lifecycle import current_subscription
from nicroma.billing.lifecycle import force_cancel
from nicroma.billing.lifecycle import latest_subscription
from nicroma.billing.lifecycle import request_cancellation
from nicroma.billing.lifecycle import start_trial
from nicroma.billing.lifecycle import subscription_summary
from nicroma.billing.lifecycle import undo_cancellation
from nicroma.billing.models import CheckoutSession
from nicroma.billing.models import SubscriptionEvent
from nicroma.billing.tests.factories import subscribe


def test_cancelled_is_terminal():
    for action, rule in ALLOWED_TRANSITIONS.items():
        assert SubscriptionStatus.CANCELLED not in rule.sources, action


@pytest.mark.django_db
class TestCheckout:
    def test_checkout_leaves_trial_untouched(self, plans, tenant, now, stripe_checkout):
        trial = start_trial(tenant, now=now)

        checkout = begin_checkout(tenant, "starter", now=now)

        assert checkout.status == CheckoutStatus.OPEN
        assert checkout.amount == Decimal("45000.00")
        assert checkout.checkout_url.startswith("https://checkout.stripe.com/")
        trial.refresh_from_db()
        assert trial.status == SubscriptionStatus.TRIALING
        assert trial.plan_id == "profesional"

        kwargs = stripe_checkout.call_args.kwargs
        assert kwargs["client_reference_id"] == str(tenant.pk)
        assert kwargs["metadata"]["plan_slug"] == "starter"
        assert kwargs["line_items"][0]["price_data"]["unit_amount"] == 4500000

    def test_gateway_failure_writes_nothing(self, plans, tenant, now, stripe_checkout):
        start_trial(tenant, now=now)
        stripe_checkout.side_effect = stripe.StripeError("connection reset")

        with pytest.raises(ExternalCollaboratorUnavailable) as exc_info:
            begin_checkout(tenant, "starter", now=now)

        assert exc_info.value.status_code == 503
        assert not CheckoutSession.objects.filter(tenant=tenant).exists()
        assert current_subscription(tenant).status == SubscriptionStatus.TRIALING

    def test_charge_converts_trial(self, plans, tenant, now):
        start_trial(tenant, now=now)
        later = now + timedelta(days=3)

        subscription = subscribe(tenant, "starter", later)

        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.plan_id == "starter"
        assert subscription.price_override == PriceOverride.STANDARD
        assert subscription.amount == Decimal("45000.00")
        assert subscription.current_period_start == later
        assert subscription.current_period_end == later + relativedelta(months=1)
        assert subscription.events.last().kind == SubscriptionEventKind.ACTIVATED
        assert CheckoutSession.objects.get(tenant=tenant).status == CheckoutStatus.COMPLETED

    def test_purchase_without_trial(self, plans, tenant, now):
        subscription = subscribe(tenant, "business", now)

        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.amount == Decimal("179000.00")
        event = subscription.events.get()
        assert event.from_status == ""
        assert event.to_status == SubscriptionStatus.ACTIVE

    def test_contact_sales_plan_rejected(self, plans, tenant, now):
        with pytest.raises(PlanNotPurchasable):
            begin_checkout(tenant, "enterprise", now=now)

    def test_paid_subscription_must_change_plan_instead(self, plans, tenant, now):
        subscribe(tenant, "starter", now)

        with pytest.raises(InvalidTransition):
            begin_checkout(tenant, "profesional", now=now)


@pytest.mark.django_db
class TestCancellation:
    def test_request_keeps_access_until_period_end(self, plans, tenant, now):
        subscribe(tenant, "starter", now)

        subscription = request_cancellation(tenant, reason="Cierre", now=now)

        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.cancel_at_period_end
        assert subscription.cancel_reason == "Cierre"

    def test_repeat_request_and_undo_are_rejected(self, plans, tenant, now):
        subscribe(tenant, "starter", now)

        with pytest.raises(InvalidTransition):
            undo_cancellation(tenant)

        request_cancellation(tenant, now=now)
        with pytest.raises(InvalidTransition):
            request_cancellation(tenant, now=now)

        subscription = undo_cancellation(tenant)
        assert not subscription.cancel_at_period_end
        assert subscription.cancel_reason == ""

    def test_trial_cannot_request_cancellation(self, plans, tenant, now):
        start_trial(tenant, now=now)

        with pytest.raises(InvalidTransition):
            request_cancellation(tenant, now=now)

    def test_rejected_transition_records_nothing(self, plans, tenant, now):
        start_trial(tenant, now=now)
        events = SubscriptionEvent.objects.count()

        with pytest.raises(InvalidTransition):
            undo_cancellation(tenant)

        assert SubscriptionEvent.objects.count() == events

    def test_force_cancel_is_immediate(self, plans, tenant, now):
        trial = start_trial(tenant, now=now)

        force_cancel(tenant, reason="Fraude", now=now)

        assert current_subscription(tenant) is None
        cancelled = latest_subscription(tenant)
        assert cancelled.pk == trial.pk
        assert cancelled.status == SubscriptionStatus.CANCELLED
        assert cancelled.cancelled_at == now
        assert cancelled.events.last().detail == {"reason": "Fraude", "forced": True}

    def test_no_subscription(self, plans, tenant, now):
        with pytest.raises(SubscriptionNotFound):
            force_cancel(tenant, now=now)


@pytest.mark.django_db
class TestSummary:
    def test_trial_summary(self, plans, tenant, now):
        summary = subscription_summary(start_trial(tenant, now=now), now=now)

        assert summary.status == SubscriptionStatus.TRIALING
        assert summary.amount == Decimal("0.00")
        assert summary.trial["days_remaining"] == 7
        assert summary.trial["can_extend"]
        assert not summary.trial["accompaniment_available"]
        assert summary.pending_change is None
        assert summary.discount is None
