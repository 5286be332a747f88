"""
Payment collaborator callbacks.

The payment processor reports definitive charge outcomes; these handlers
turn them into subscription transitions exactly once per event.

Deduplication: each event carries a correlation id. The Payment row is
inserted first, inside the same transaction as the transition, and
Payment.correlation_id is unique. A redelivered event hits the constraint
and is reported as a duplicate without touching the subscription. If the
transition fails, the Payment insert rolls back with it so the processor's
retry can be applied later.

Usage:
    on_charge_succeeded(
        tenant,
        period_start=invoice_start,
        period_end=invoice_end,
        amount=Decimal("45000"),
        correlation_id=event_id,
    )
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from django.db import IntegrityError
from django.db import transaction
from django.utils import timezone

from nicroma.billing.constants import CheckoutStatus
from nicroma.billing.constants import PaymentStatus
from nicroma.billing.constants import SubscriptionEventKind
from nicroma.billing.constants import SubscriptionStatus
from nicroma.billing.lifecycle import Action
from nicroma.billing.lifecycle import complete_checkout
from nicroma.billing.lifecycle import locked_subscription
from nicroma.billing.lifecycle import record_event
from nicroma.billing.lifecycle import transition
from nicroma.billing.models import CheckoutSession
from nicroma.billing.models import Payment
from nicroma.billing.signals import announce_price

if TYPE_CHECKING:
    from datetime import datetime
    from decimal import Decimal

    from nicroma.billing.models import Subscription
    from nicroma.tenants.models import Tenant

logger = logging.getLogger(__name__)

# Statuses through which a charge result is ignored; suspension is an
# administrative override and does not react to payment signals.
IGNORED_STATUSES = frozenset({SubscriptionStatus.SUSPENDED})


@dataclass
class ChargeOutcome:
    """What a charge event did."""

    payment: Payment | None
    subscription: Subscription | None
    duplicate: bool = False
    applied: bool = False
    message: str = ""


def on_charge_succeeded(
    tenant: Tenant,
    *,
    period_start: datetime,
    period_end: datetime,
    amount: Decimal,
    correlation_id: str,
    checkout_reference: str = "",
    currency: str = "ARS",
    now: datetime | None = None,
) -> ChargeOutcome:
    """
    Apply a successful charge.

    - An open checkout for the tenant is completed (trial -> active, or a
      new active subscription).
    - A past_due subscription returns to active.
    - An active subscription has its period renewed and promotion cycles
      counted down, unless cancellation at period end is scheduled: then
      the period is left alone so the sweep can end it.
    - A suspended subscription is left alone.
    """
    now = now or timezone.now()
    with transaction.atomic():
        payment = _record_payment(
            tenant,
            status=PaymentStatus.COMPLETED,
            amount=amount,
            currency=currency,
            correlation_id=correlation_id,
            period_start=period_start,
            period_end=period_end,
        )
        if payment is None:
            return _duplicate(correlation_id)

        subscription = locked_subscription(tenant, required=False)
        checkout = _open_checkout(tenant, checkout_reference)

        if subscription is not None and subscription.status in IGNORED_STATUSES:
            outcome = ChargeOutcome(
                payment=payment,
                subscription=subscription,
                message="Subscription is suspended; charge recorded only.",
            )
        elif checkout is not None and (
            subscription is None or subscription.status == SubscriptionStatus.TRIALING
        ):
            subscription = complete_checkout(
                checkout,
                period_start=period_start,
                period_end=period_end,
                now=now,
            )
            outcome = ChargeOutcome(
                payment=payment,
                subscription=subscription,
                applied=True,
                message="Checkout completed.",
            )
        elif subscription is not None and subscription.status in (
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.PAST_DUE,
        ):
            _renew(subscription, period_start, period_end)
            outcome = ChargeOutcome(
                payment=payment,
                subscription=subscription,
                applied=True,
                message="Subscription renewed.",
            )
        else:
            outcome = ChargeOutcome(
                payment=payment,
                subscription=subscription,
                message="No subscription or checkout to apply the charge to.",
            )

        if subscription is not None and subscription.pk:
            payment.subscription = subscription
            payment.save(update_fields=["subscription", "modified"])

    if not outcome.applied:
        logger.warning(
            "Charge %s for tenant %s not applied: %s",
            correlation_id,
            tenant.pk,
            outcome.message,
        )
    return outcome


def on_charge_failed(
    tenant: Tenant,
    *,
    reason: str,
    correlation_id: str,
    amount: Decimal | None = None,
    currency: str = "ARS",
) -> ChargeOutcome:
    """
    Apply a failed recurring charge: active (or past_due) -> past_due.

    Access is not revoked; the subscription shows up in billing alerts.
    Failures for a trial's initial checkout only get recorded.
    """
    with transaction.atomic():
        payment = _record_payment(
            tenant,
            status=PaymentStatus.FAILED,
            amount=amount,
            currency=currency,
            correlation_id=correlation_id,
            reason=reason,
        )
        if payment is None:
            return _duplicate(correlation_id)

        subscription = locked_subscription(tenant, required=False)
        applied = False
        if subscription is not None and subscription.status in (
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.PAST_DUE,
        ):
            transition(
                subscription,
                Action.MARK_PAST_DUE,
                kind=SubscriptionEventKind.PAYMENT_FAILED,
                detail={"reason": reason, "correlation_id": correlation_id},
            )
            applied = True

        if subscription is not None:
            payment.subscription = subscription
            payment.save(update_fields=["subscription", "modified"])

    if not applied:
        logger.warning(
            "Failed charge %s for tenant %s recorded without a transition (%s)",
            correlation_id,
            tenant.pk,
            subscription.status if subscription else "no subscription",
        )
    return ChargeOutcome(payment=payment, subscription=subscription, applied=applied)


def _renew(subscription: Subscription, period_start: datetime, period_end: datetime):
    from_status = subscription.status
    is_new_period = (
        subscription.current_period_end is None
        or period_end > subscription.current_period_end
    )
    if is_new_period and subscription.cancel_at_period_end:
        # Access ends with the paid period; the sweep cancels at its end.
        logger.warning(
            "Charge for tenant %s covers a period after its scheduled "
            "cancellation; period end kept at %s",
            subscription.tenant_id,
            subscription.current_period_end,
        )
        is_new_period = False
    detail = {
        "period_end": period_end.isoformat(),
        "new_period": is_new_period,
        "cancel_at_period_end": subscription.cancel_at_period_end,
    }
    expired_code = ""

    if is_new_period:
        subscription.current_period_start = period_start
        subscription.current_period_end = period_end
        snapshot = subscription.discount
        if snapshot is not None and snapshot.cycles_remaining is not None:
            snapshot = snapshot.consume_cycle()
            if snapshot.is_exhausted:
                logger.info(
                    "Promotion %s expired for tenant %s",
                    snapshot.code,
                    subscription.tenant_id,
                )
                expired_code = snapshot.code
                snapshot = None
            subscription.set_discount(snapshot)
        subscription.amount = subscription.compute_amount()

    kind = (
        SubscriptionEventKind.PAYMENT_RECOVERED
        if from_status == SubscriptionStatus.PAST_DUE
        else SubscriptionEventKind.RENEWED
    )
    transition(subscription, Action.RENEW, kind=kind, detail=detail)
    if expired_code:
        record_event(
            subscription,
            SubscriptionEventKind.DISCOUNT_EXPIRED,
            from_status=subscription.status,
            detail={"code": expired_code},
        )
    if is_new_period:
        announce_price(subscription, reason=kind)


def _open_checkout(tenant: Tenant, reference: str) -> CheckoutSession | None:
    checkouts = CheckoutSession.objects.select_for_update().filter(
        tenant=tenant,
        status=CheckoutStatus.OPEN,
    )
    if reference:
        return checkouts.filter(gateway_reference=reference).first()
    return checkouts.order_by("-created", "-pk").first()


def _record_payment(tenant: Tenant, *, correlation_id: str, **fields) -> Payment | None:
    """Insert the Payment row, or return None if this event was already seen."""
    if fields.get("amount") is None:
        fields.pop("amount", None)
    try:
        with transaction.atomic():
            return Payment.objects.create(
                tenant=tenant,
                correlation_id=correlation_id,
                **fields,
            )
    except IntegrityError:
        return None


def _duplicate(correlation_id: str) -> ChargeOutcome:
    logger.info("Ignoring duplicate payment event %s", correlation_id)
    return ChargeOutcome(
        payment=Payment.objects.filter(correlation_id=correlation_id).first(),
        subscription=None,
        duplicate=True,
        message="Duplicate event.",
    )
