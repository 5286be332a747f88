"""
Accompaniment offer: a retention discount after an unconverted trial.

When a trial expires without a purchase the tenant may, once, take the
offer: the plan at a fixed reduced monthly price for a fixed number of
months (BILLING_ACCOMPANIMENT_PRICE / BILLING_ACCOMPANIMENT_MONTHS).

Flow:
1. activate_accompaniment() sets the accompaniment price override on the
   trial and opens a checkout for the reduced amount. Status stays trialing.
2. The first successful charge for that checkout activates the subscription
   (lifecycle.complete_checkout).
3. The sweep calls advance_accompaniment(); each elapsed month bumps
   ``accompaniment_months_used``. When it reaches the total the override
   lapses and the plan's standard price applies again.

Usage:
    checkout = activate_accompaniment(tenant)
    redirect(checkout.checkout_url)
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from dateutil.relativedelta import relativedelta
from django.db import transaction
from django.utils import timezone

from nicroma.billing.constants import BillingCycle
from nicroma.billing.constants import CheckoutKind
from nicroma.billing.constants import CheckoutStatus
from nicroma.billing.constants import PriceOverride
from nicroma.billing.constants import SubscriptionEventKind
from nicroma.billing.constants import SubscriptionStatus
from nicroma.billing.exceptions import AccompanimentNotEligible
from nicroma.billing.exceptions import SubscriptionNotFound
from nicroma.billing.gateways import get_gateway
from nicroma.billing.lifecycle import ALLOWED_TRANSITIONS
from nicroma.billing.lifecycle import Action
from nicroma.billing.lifecycle import current_subscription
from nicroma.billing.lifecycle import locked_subscription
from nicroma.billing.lifecycle import require
from nicroma.billing.lifecycle import transition
from nicroma.billing.models import CheckoutSession
from nicroma.billing.policy import BillingPolicy
from nicroma.billing.signals import announce_price
from nicroma.billing.trials import TrialWindow

if TYPE_CHECKING:
    from datetime import datetime

    from nicroma.billing.models import Subscription
    from nicroma.tenants.models import Tenant

logger = logging.getLogger(__name__)


def ineligibility_reason(subscription: Subscription, now: datetime) -> str:
    """Why the offer cannot be taken right now, or "" when it can."""
    if subscription.status != SubscriptionStatus.TRIALING:
        return "The accompaniment offer is only available for unconverted trials."
    if subscription.accompaniment_activated_at is not None:
        return "The accompaniment offer has already been used."
    window = TrialWindow.for_subscription(subscription)
    if not window.is_expired(now):
        return "The accompaniment offer is available once the trial has ended."
    if window.is_past_grace(now):
        return "The accompaniment offer is no longer available."
    return ""


def is_eligible(subscription: Subscription, now: datetime) -> bool:
    return not ineligibility_reason(subscription, now)


def activate_accompaniment(
    tenant: Tenant,
    now: datetime | None = None,
    *,
    success_url: str | None = None,
    cancel_url: str | None = None,
) -> CheckoutSession:
    """
    Put the reduced price on the expired trial and open its checkout.

    The gateway is called before anything is written; if it fails, the
    trial is left exactly as it was.

    Raises:
        InvalidTransition: the subscription is not trialing.
        AccompanimentNotEligible: trial not expired, past grace, or offer
            already used.
        ExternalCollaboratorUnavailable: the gateway could not open a
            checkout.
    """
    now = now or timezone.now()
    policy = BillingPolicy.from_settings()

    subscription = current_subscription(tenant)
    _check_eligible(subscription, now)

    handle = get_gateway().initiate_checkout(
        tenant=tenant,
        plan=subscription.plan,
        cycle=BillingCycle.MONTHLY,
        amount=policy.accompaniment_price,
        discount=None,
        kind=CheckoutKind.ACCOMPANIMENT,
        success_url=success_url,
        cancel_url=cancel_url,
    )

    with transaction.atomic():
        # Re-check under the row lock; another request may have won.
        subscription = locked_subscription(tenant)
        _check_eligible(subscription, now)

        subscription.price_override = PriceOverride.ACCOMPANIMENT
        subscription.billing_cycle = BillingCycle.MONTHLY
        subscription.accompaniment_price = policy.accompaniment_price
        subscription.accompaniment_total_months = policy.accompaniment_months
        subscription.accompaniment_months_used = 0
        subscription.amount = subscription.compute_amount()
        transition(
            subscription,
            Action.ACTIVATE_ACCOMPANIMENT,
            kind=SubscriptionEventKind.ACCOMPANIMENT_OFFERED,
            detail={
                "price": str(policy.accompaniment_price),
                "months": policy.accompaniment_months,
                "checkout_reference": handle.reference,
            },
        )

        checkout = CheckoutSession.objects.create(
            tenant=tenant,
            subscription=subscription,
            plan=subscription.plan,
            billing_cycle=BillingCycle.MONTHLY,
            kind=CheckoutKind.ACCOMPANIMENT,
            amount=subscription.amount,
            currency=subscription.currency,
            gateway_reference=handle.reference,
            checkout_url=handle.url,
        )
    return checkout


def _check_eligible(subscription: Subscription | None, now: datetime) -> None:
    if subscription is None:
        raise SubscriptionNotFound()
    require(subscription, Action.ACTIVATE_ACCOMPANIMENT)
    reason = ineligibility_reason(subscription, now)
    if reason:
        raise AccompanimentNotEligible(reason)


def advance_accompaniment(subscription: Subscription, now: datetime) -> bool:
    """
    Sweep step: count elapsed accompaniment months and lapse the offer.

    A month is counted once ``now`` passes one month after
    ``accompaniment_counted_through``, which then moves forward by a month.
    Running it again for the same month does nothing. Returns True when
    anything changed.
    """
    if not subscription.accompaniment_active:
        return False
    if subscription.accompaniment_activated_at is None:
        return False
    rule = ALLOWED_TRANSITIONS[Action.ADVANCE_ACCOMPANIMENT]
    if subscription.status not in rule.sources:
        return False

    counted = 0
    boundary = (
        subscription.accompaniment_counted_through
        or subscription.accompaniment_activated_at
    )
    while (
        subscription.accompaniment_months_used < subscription.accompaniment_total_months
        and now >= boundary + relativedelta(months=1)
    ):
        boundary += relativedelta(months=1)
        subscription.accompaniment_months_used += 1
        counted += 1

    lapsed = (
        subscription.accompaniment_months_used
        >= subscription.accompaniment_total_months
    )
    if not counted and not lapsed:
        return False

    subscription.accompaniment_counted_through = boundary
    if lapsed:
        subscription.price_override = PriceOverride.STANDARD
        subscription.amount = subscription.compute_amount()
        kind = SubscriptionEventKind.ACCOMPANIMENT_LAPSED
    else:
        kind = SubscriptionEventKind.ACCOMPANIMENT_MONTH_USED

    transition(
        subscription,
        Action.ADVANCE_ACCOMPANIMENT,
        kind=kind,
        detail={
            "months_used": subscription.accompaniment_months_used,
            "total_months": subscription.accompaniment_total_months,
            "amount": str(subscription.amount),
        },
    )
    if lapsed:
        logger.info(
            "Accompaniment lapsed for tenant %s; back to %s",
            subscription.tenant_id,
            subscription.amount,
        )
        announce_price(subscription, reason=kind)
    return True



def abandon_accompaniment(subscription: Subscription, now: datetime) -> bool:
    """
    Sweep step: drop an accompaniment offer whose checkout was never paid.

    The offer's checkout stays payable for BILLING_TRIAL_GRACE_DAYS past the
    trial's grace cutoff. After that the open checkouts are marked abandoned
    and the trial returns to its trial price, so lapse_trial can close it.
    Returns True when the offer was dropped.
    """
    if subscription.status != SubscriptionStatus.TRIALING:
        return False
    if not subscription.accompaniment_active:
        return False
    if subscription.accompaniment_activated_at is not None:
        return False
    window = TrialWindow.for_subscription(subscription)
    cutoff = window.grace_cutoff
    if cutoff is None or now <= cutoff + timedelta(days=window.grace_days):
        return False

    abandoned = CheckoutSession.objects.filter(
        subscription=subscription,
        kind=CheckoutKind.ACCOMPANIMENT,
        status=CheckoutStatus.OPEN,
    ).update(status=CheckoutStatus.ABANDONED, modified=now)

    subscription.price_override = PriceOverride.TRIAL
    subscription.accompaniment_price = None
    subscription.accompaniment_total_months = 0
    subscription.amount = subscription.compute_amount()
    transition(
        subscription,
        Action.ABANDON_ACCOMPANIMENT,
        kind=SubscriptionEventKind.ACCOMPANIMENT_ABANDONED,
        detail={"checkouts": abandoned},
    )
    logger.info(
        "Accompaniment checkout for tenant %s never paid; offer dropped",
        subscription.tenant_id,
    )
    return True
