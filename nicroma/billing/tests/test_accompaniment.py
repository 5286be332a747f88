from datetime import timedelta
from decimal import Decimal

import pytest
from dateutil.relativedelta import relativedelta

from nicroma.billing.accompaniment import activate_accompaniment
from nicroma.billing.accompaniment import advance_accompaniment
from nicroma.billing.accompaniment import is_eligible
from nicroma.billing.constants import CheckoutKind
from nicroma.billing.constants import CheckoutStatus
from nicroma.billing.constants import PriceOverride
from nicroma.billing.constants import SubscriptionEventKind
from nicroma.billing.constants import SubscriptionStatus
from nicroma.billing.entitlements import check_access
from nicroma.billing.exceptions import AccompanimentNotEligible
from nicroma.billing.exceptions import ExtensionLimitReached
from nicroma.billing.exceptions import InvalidTransition
from nicroma.billing.lifecycle import current_subscription
from nicroma.billing.lifecycle import start_trial
from nicroma.billing.payments import on_charge_succeeded
from nicroma.billing.sweeps import run_billing_sweep
from nicroma.billing.trials import extend_trial


def pay_checkout(tenant, checkout, start):
    return on_charge_succeeded(
        tenant,
        period_start=start,
        period_end=start + relativedelta(months=1),
        amount=checkout.amount,
        correlation_id=f"in_{checkout.gateway_reference}",
        checkout_reference=checkout.gateway_reference,
        now=start,
    ).subscription


@pytest.mark.django_db
class TestAccompaniment:
    def test_reduced_price_then_standard_price(self, plans, tenant, now):
        start_trial(tenant, plan_slug="starter", now=now)
        offered_at = now + timedelta(days=8)

        checkout = activate_accompaniment(tenant, now=offered_at)

        assert checkout.kind == CheckoutKind.ACCOMPANIMENT
        assert checkout.amount == Decimal("10000.00")
        trial = current_subscription(tenant)
        assert trial.status == SubscriptionStatus.TRIALING
        assert trial.price_override == PriceOverride.ACCOMPANIMENT

        subscription = pay_checkout(tenant, checkout, offered_at)
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.amount == Decimal("10000.00")
        assert subscription.accompaniment_activated_at == offered_at

        first_month = offered_at + relativedelta(months=1)
        report = run_billing_sweep(now=first_month)
        assert report.accompaniment_updates == 1
        subscription.refresh_from_db()
        assert subscription.accompaniment_months_used == 1
        assert subscription.amount == Decimal("10000.00")

        # Running again for the same month counts nothing.
        report = run_billing_sweep(now=first_month + timedelta(hours=1))
        assert report.accompaniment_updates == 0

        report = run_billing_sweep(now=offered_at + relativedelta(months=2))
        assert report.accompaniment_updates == 1
        subscription.refresh_from_db()
        assert subscription.accompaniment_months_used == 2
        assert subscription.price_override == PriceOverride.STANDARD
        assert subscription.amount == Decimal("45000.00")
        assert subscription.events.last().kind == (
            SubscriptionEventKind.ACCOMPANIMENT_LAPSED
        )

    def test_not_available_during_trial(self, plans, tenant, now):
        start_trial(tenant, now=now)

        with pytest.raises(AccompanimentNotEligible):
            activate_accompaniment(tenant, now=now + timedelta(days=3))

    def test_not_available_past_grace(self, plans, tenant, now):
        subscription = start_trial(tenant, now=now)

        assert is_eligible(subscription, now + timedelta(days=14))
        assert not is_eligible(subscription, now + timedelta(days=15))
        with pytest.raises(AccompanimentNotEligible):
            activate_accompaniment(tenant, now=now + timedelta(days=15))

    def test_offer_taken_only_once(self, plans, tenant, now):
        start_trial(tenant, plan_slug="starter", now=now)
        offered_at = now + timedelta(days=8)
        pay_checkout(tenant, activate_accompaniment(tenant, now=offered_at), offered_at)

        with pytest.raises(InvalidTransition):
            activate_accompaniment(tenant, now=offered_at + timedelta(days=1))

    def test_pending_offer_keeps_trial_from_lapsing(self, plans, tenant, now):
        start_trial(tenant, now=now)
        activate_accompaniment(tenant, now=now + timedelta(days=10))

        report = run_billing_sweep(now=now + timedelta(days=21))

        assert report.trials_lapsed == 0
        assert current_subscription(tenant).status == SubscriptionStatus.TRIALING

    def test_unpaid_offer_is_abandoned_and_trial_lapses(self, plans, tenant, now):
        subscription = start_trial(tenant, now=now)
        checkout = activate_accompaniment(tenant, now=now + timedelta(days=8))

        report = run_billing_sweep(now=now + timedelta(days=22))

        assert report.accompaniments_abandoned == 1
        assert report.trials_lapsed == 1
        checkout.refresh_from_db()
        assert checkout.status == CheckoutStatus.ABANDONED
        subscription.refresh_from_db()
        assert subscription.status == SubscriptionStatus.CANCELLED
        assert subscription.price_override == PriceOverride.TRIAL
        assert subscription.amount == Decimal("0.00")
        kinds = list(subscription.events.values_list("kind", flat=True))
        assert kinds[-2:] == [
            SubscriptionEventKind.ACCOMPANIMENT_ABANDONED,
            SubscriptionEventKind.TRIAL_LAPSED,
        ]

        assert run_billing_sweep(now=now + timedelta(days=60)).examined == 0

    def test_advance_ignores_unpaid_offer(self, plans, tenant, now):
        start_trial(tenant, now=now)
        activate_accompaniment(tenant, now=now + timedelta(days=8))

        subscription = current_subscription(tenant)
        assert not advance_accompaniment(subscription, now + relativedelta(months=3))

    def test_trial_extensions_then_accompaniment_back_to_standard(self, plans, tenant, now):
        start_trial(tenant, plan_slug="starter", now=now)
        extend_trial(tenant, now=now + timedelta(days=1))
        subscription = extend_trial(tenant, now=now + timedelta(days=2))
        assert subscription.trial_ends_at == now + timedelta(days=21)
        with pytest.raises(ExtensionLimitReached):
            extend_trial(tenant, now=now + timedelta(days=3))

        expired_at = now + timedelta(days=22)
        decision = check_access(current_subscription(tenant), now=expired_at)
        assert not decision.allowed
        assert decision.code == "trial_expired"

        checkout = activate_accompaniment(tenant, now=expired_at)
        assert checkout.amount == Decimal("10000.00")
        subscription = pay_checkout(tenant, checkout, expired_at)
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.amount == Decimal("10000.00")
        assert check_access(subscription, now=expired_at).allowed

        run_billing_sweep(now=expired_at + relativedelta(months=1))
        subscription.refresh_from_db()
        assert subscription.amount == Decimal("10000.00")

        run_billing_sweep(now=expired_at + relativedelta(months=2))
        subscription.refresh_from_db()
        assert subscription.accompaniment_months_used == 2
        assert subscription.price_override == PriceOverride.STANDARD
        assert subscription.amount == Decimal("45000.00")
