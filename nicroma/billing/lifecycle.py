"""
Subscription state machine.

Every status change goes through transition(), which checks the
ALLOWED_TRANSITIONS table, saves the row and appends a SubscriptionEvent.
Anything not listed raises InvalidTransition before a single field is
written.

Per-tenant serialization: every mutating operation runs inside
transaction.atomic() and loads the tenant's open subscription with
locked_subscription(), i.e. SELECT ... FOR UPDATE. Two concurrent requests
against the same tenant are applied one after the other, and the second
one sees the state left by the first.

States:
    trialing, active, past_due, suspended, cancelled (terminal)

Usage:
    subscription = start_trial(tenant)
    checkout = begin_checkout(tenant, "starter", BillingCycle.MONTHLY)
    request_cancellation(tenant, reason="Closing the business")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import TYPE_CHECKING

from django.db import IntegrityError
from django.db import transaction
from django.utils import timezone

from nicroma.billing import promotions
from nicroma.billing.catalog import get_plan
from nicroma.billing.constants import BillingCycle
from nicroma.billing.constants import CheckoutKind
from nicroma.billing.constants import CheckoutStatus
from nicroma.billing.constants import PriceOverride
from nicroma.billing.constants import SubscriptionEventKind
from nicroma.billing.constants import SubscriptionStatus
from nicroma.billing.exceptions import BillingError
from nicroma.billing.exceptions import CapExceeded
from nicroma.billing.exceptions import InvalidTransition
from nicroma.billing.exceptions import PlanNotPurchasable
from nicroma.billing.exceptions import PromotionNotFound
from nicroma.billing.exceptions import PromotionRejected
from nicroma.billing.exceptions import SubscriptionNotFound
from nicroma.billing.gateways import get_gateway
from nicroma.billing.models import CheckoutSession
from nicroma.billing.models import Subscription
from nicroma.billing.models import SubscriptionEvent
from nicroma.billing.policy import BillingPolicy
from nicroma.billing.signals import announce_price

if TYPE_CHECKING:
    from datetime import datetime
    from decimal import Decimal

    from nicroma.billing.pricing import DiscountSnapshot
    from nicroma.tenants.models import Tenant

logger = logging.getLogger(__name__)

S = SubscriptionStatus


class Action(str, Enum):
    """Operations that may change a subscription's status."""

    START_TRIAL = "start_trial"
    EXTEND_TRIAL = "extend_trial"
    ACTIVATE = "activate"
    RENEW = "renew"
    MARK_PAST_DUE = "mark_past_due"
    REQUEST_CANCELLATION = "request_cancellation"
    UNDO_CANCELLATION = "undo_cancellation"
    CANCEL_AT_PERIOD_END = "cancel_at_period_end"
    FORCE_CANCEL = "force_cancel"
    LAPSE_TRIAL = "lapse_trial"
    SUSPEND = "suspend"
    REACTIVATE = "reactivate"
    CHANGE_PLAN = "change_plan"
    APPLY_PENDING_CHANGE = "apply_pending_change"
    ACTIVATE_ACCOMPANIMENT = "activate_accompaniment"
    ADVANCE_ACCOMPANIMENT = "advance_accompaniment"
    ABANDON_ACCOMPANIMENT = "abandon_accompaniment"


@dataclass(frozen=True)
class TransitionRule:
    sources: frozenset
    # None keeps the current status (bookkeeping-only transitions).
    target: str | None


def _rule(sources, target=None) -> TransitionRule:
    return TransitionRule(frozenset(sources), target)


ALLOWED_TRANSITIONS: dict[Action, TransitionRule] = {
    Action.START_TRIAL: _rule({None}, S.TRIALING),
    Action.EXTEND_TRIAL: _rule({S.TRIALING}, S.TRIALING),
    Action.ACTIVATE: _rule({None, S.TRIALING}, S.ACTIVE),
    Action.RENEW: _rule({S.ACTIVE, S.PAST_DUE}, S.ACTIVE),
    Action.MARK_PAST_DUE: _rule({S.ACTIVE, S.PAST_DUE}, S.PAST_DUE),
    Action.REQUEST_CANCELLATION: _rule({S.ACTIVE, S.PAST_DUE}),
    Action.UNDO_CANCELLATION: _rule({S.ACTIVE, S.PAST_DUE}),
    Action.CANCEL_AT_PERIOD_END: _rule({S.ACTIVE, S.PAST_DUE}, S.CANCELLED),
    Action.FORCE_CANCEL: _rule(
        {S.TRIALING, S.ACTIVE, S.PAST_DUE, S.SUSPENDED},
        S.CANCELLED,
    ),
    Action.LAPSE_TRIAL: _rule({S.TRIALING}, S.CANCELLED),
    Action.SUSPEND: _rule({S.ACTIVE, S.PAST_DUE}, S.SUSPENDED),
    Action.REACTIVATE: _rule({S.SUSPENDED}, S.ACTIVE),
    Action.CHANGE_PLAN: _rule({S.ACTIVE, S.PAST_DUE}),
    Action.APPLY_PENDING_CHANGE: _rule({S.ACTIVE, S.PAST_DUE, S.SUSPENDED}),
    Action.ACTIVATE_ACCOMPANIMENT: _rule({S.TRIALING}),
    Action.ADVANCE_ACCOMPANIMENT: _rule({S.ACTIVE, S.PAST_DUE, S.SUSPENDED}),
    Action.ABANDON_ACCOMPANIMENT: _rule({S.TRIALING}),
}


# =============================================================================
# Core machinery
# =============================================================================


def require(subscription: Subscription | None, action: Action) -> None:
    """Raise InvalidTransition unless ``action`` is allowed from the current status."""
    rule = ALLOWED_TRANSITIONS[action]
    status = subscription.status if subscription is not None else None
    if status not in rule.sources:
        label = status or "no subscription"
        raise InvalidTransition(
            f"Cannot {action.value.replace('_', ' ')} from {label}.",
            from_status=status,
            action=action.value,
        )


def transition(
    subscription: Subscription,
    action: Action,
    *,
    kind: str,
    from_status: str | None = None,
    detail: dict | None = None,
) -> Subscription:
    """
    Commit a transition: set the target status, save, and audit it.

    Callers mutate any other fields after calling require() and before
    calling this. ``from_status`` overrides the recorded source status for
    rows that were created in the same unit of work.
    """
    if from_status is None:
        require(subscription, action)
        from_status = subscription.status
    rule = ALLOWED_TRANSITIONS[action]
    if rule.target is not None:
        subscription.status = rule.target
    subscription.save()
    record_event(
        subscription,
        kind,
        from_status=from_status,
        detail=detail,
    )
    logger.info(
        "Subscription %s for tenant %s: %s (%s -> %s)",
        subscription.pk,
        subscription.tenant_id,
        kind,
        from_status or "-",
        subscription.status,
    )
    return subscription


def record_event(
    subscription: Subscription,
    kind: str,
    *,
    from_status: str | None = "",
    detail: dict | None = None,
) -> SubscriptionEvent:
    return SubscriptionEvent.objects.create(
        subscription=subscription,
        kind=kind,
        from_status=from_status or "",
        to_status=subscription.status,
        detail=detail or {},
    )


def current_subscription(tenant: Tenant) -> Subscription | None:
    """The tenant's non-cancelled subscription, if any."""
    return (
        Subscription.objects.select_related("plan", "pending_plan", "promotion")
        .filter(tenant=tenant)
        .exclude(status=S.CANCELLED)
        .first()
    )


def latest_subscription(tenant: Tenant) -> Subscription | None:
    """The open subscription, or the most recent cancelled one."""
    return current_subscription(tenant) or (
        Subscription.objects.select_related("plan")
        .filter(tenant=tenant)
        .order_by("-created", "-pk")
        .first()
    )


def locked_subscription(tenant: Tenant, *, required: bool = True) -> Subscription | None:
    """
    Load and row-lock the tenant's open subscription.

    Must be called inside transaction.atomic().
    """
    subscription = (
        Subscription.objects.select_for_update()
        .filter(tenant=tenant)
        .exclude(status=S.CANCELLED)
        .first()
    )
    if subscription is None and required:
        raise SubscriptionNotFound(tenant)
    return subscription


# =============================================================================
# Trial start and checkout
# =============================================================================


def start_trial(
    tenant: Tenant,
    plan_slug: str | None = None,
    now: datetime | None = None,
) -> Subscription:
    """
    Start a free trial. ``(none) -> trialing``.

    A tenant gets one trial ever; a second attempt after cancellation
    raises BillingError("trial_already_used").
    """
    now = now or timezone.now()
    policy = BillingPolicy.from_settings()
    plan = get_plan(plan_slug or policy.trial_plan_slug, active_only=True)

    with transaction.atomic():
        existing = locked_subscription(tenant, required=False)
        require(existing, Action.START_TRIAL)
        if Subscription.objects.filter(
            tenant=tenant,
            trial_started_at__isnull=False,
        ).exists():
            raise BillingError(
                "This tenant already used its free trial.",
                code="trial_already_used",
            )

        trial_ends_at = now + timedelta(days=policy.trial_days)
        subscription = Subscription(
            tenant=tenant,
            plan=plan,
            billing_cycle=BillingCycle.MONTHLY,
            price_override=PriceOverride.TRIAL,
            currency=plan.currency,
            trial_started_at=now,
            trial_ends_at=trial_ends_at,
            trial_extensions_used=0,
            trial_max_extensions=policy.max_trial_extensions,
            current_period_start=now,
            current_period_end=trial_ends_at,
        )
        subscription.amount = subscription.compute_amount()
        subscription.status = S.TRIALING
        try:
            with transaction.atomic():
                subscription.save()
        except IntegrityError:
            # Another request opened a subscription for this tenant first.
            raise InvalidTransition(
                "Tenant already has an open subscription.",
                from_status=None,
                action=Action.START_TRIAL.value,
            ) from None

        transition(
            subscription,
            Action.START_TRIAL,
            kind=SubscriptionEventKind.TRIAL_STARTED,
            from_status="",
            detail={"plan": plan.slug, "trial_ends_at": trial_ends_at.isoformat()},
        )
    return subscription


def begin_checkout(
    tenant: Tenant,
    plan_slug: str,
    cycle: str = BillingCycle.MONTHLY,
    promotion_code: str | None = None,
    *,
    success_url: str | None = None,
    cancel_url: str | None = None,
    now: datetime | None = None,
) -> CheckoutSession:
    """
    Open a checkout for a plan purchase.

    Only validates the promotion code; it is redeemed when the charge
    succeeds. Nothing is written if the gateway call fails.
    """
    now = now or timezone.now()
    plan = get_plan(plan_slug)
    if not plan.is_purchasable:
        raise PlanNotPurchasable(f"Plan '{plan.slug}' cannot be purchased online.")

    subscription = current_subscription(tenant)
    if subscription is not None and subscription.status != S.TRIALING:
        raise InvalidTransition(
            "Tenant already has a paid subscription; change plans instead.",
            from_status=subscription.status,
            action="checkout",
        )

    snapshot = None
    if promotion_code:
        validation = promotions.validate(promotion_code, plan.slug, tenant, now=now)
        if not validation.accepted:
            raise PromotionRejected(validation.reason, validation.message)
        snapshot = validation.promotion.snapshot()

    base = plan.price_for_cycle(cycle)
    amount = snapshot.apply(base) if snapshot else base

    handle = get_gateway().initiate_checkout(
        tenant=tenant,
        plan=plan,
        cycle=cycle,
        amount=amount,
        discount=snapshot,
        kind=CheckoutKind.STANDARD,
        success_url=success_url,
        cancel_url=cancel_url,
    )

    checkout = CheckoutSession.objects.create(
        tenant=tenant,
        subscription=subscription,
        plan=plan,
        billing_cycle=cycle,
        kind=CheckoutKind.STANDARD,
        amount=amount,
        currency=plan.currency,
        promotion_code=snapshot.code if snapshot else "",
        gateway_reference=handle.reference,
        checkout_url=handle.url,
    )
    logger.info(
        "Opened checkout %s for tenant %s: %s %s at %s",
        checkout.pk,
        tenant.pk,
        plan.slug,
        cycle,
        amount,
    )
    return checkout


def complete_checkout(
    checkout: CheckoutSession,
    *,
    period_start: datetime,
    period_end: datetime,
    now: datetime | None = None,
) -> Subscription:
    """
    Commit a checkout after the payment collaborator confirmed the charge.

    Standard checkouts move a trial (or no subscription at all) to active on
    the purchased plan and redeem the promotion code. Accompaniment
    checkouts activate the reduced-price offer prepared on the trial.

    Must be called inside transaction.atomic().
    """
    now = now or timezone.now()
    tenant = checkout.tenant
    subscription = locked_subscription(tenant, required=False)
    require(subscription, Action.ACTIVATE)

    if checkout.kind == CheckoutKind.ACCOMPANIMENT:
        if subscription is None or subscription.pk != checkout.subscription_id:
            raise InvalidTransition(
                "Accompaniment checkout does not match the open subscription.",
                from_status=subscription.status if subscription else None,
                action=Action.ACTIVATE.value,
            )
        from_status = subscription.status
        subscription.price_override = PriceOverride.ACCOMPANIMENT
        subscription.accompaniment_activated_at = now
        subscription.accompaniment_counted_through = period_start
        kind = SubscriptionEventKind.ACCOMPANIMENT_ACTIVATED
        snapshot = subscription.discount
    else:
        created = subscription is None
        if created:
            subscription = Subscription(tenant=tenant, currency=checkout.currency)
            from_status = ""
        else:
            from_status = subscription.status
        subscription.plan = checkout.plan
        subscription.billing_cycle = checkout.billing_cycle
        subscription.price_override = PriceOverride.STANDARD
        subscription.accompaniment_price = None
        subscription.accompaniment_total_months = 0
        kind = SubscriptionEventKind.ACTIVATED
        if created:
            subscription.status = S.ACTIVE
            subscription.save()
        snapshot = _redeem_for_checkout(checkout, subscription, now)
        subscription.set_discount(snapshot)

    subscription.current_period_start = period_start
    subscription.current_period_end = period_end
    subscription.amount = subscription.compute_amount()
    transition(
        subscription,
        Action.ACTIVATE,
        kind=kind,
        from_status=from_status,
        detail={
            "checkout": checkout.pk,
            "plan": subscription.plan_id,
            "amount": str(subscription.amount),
            "promotion": snapshot.code if snapshot else "",
        },
    )

    checkout.subscription = subscription
    checkout.status = CheckoutStatus.COMPLETED
    checkout.completed_at = now
    checkout.save(update_fields=["subscription", "status", "completed_at", "modified"])

    announce_price(subscription, reason=kind)
    return subscription


def _redeem_for_checkout(
    checkout: CheckoutSession,
    subscription: Subscription,
    now: datetime,
) -> DiscountSnapshot | None:
    if not checkout.promotion_code:
        return subscription.discount
    try:
        return promotions.redeem(
            checkout.promotion_code,
            checkout.tenant,
            subscription=subscription,
            now=now,
        )
    except (CapExceeded, PromotionNotFound, PromotionRejected) as exc:
        # The charge already happened; activate at the undiscounted price.
        logger.warning(
            "Promotion %s could not be redeemed at checkout %s: %s",
            checkout.promotion_code,
            checkout.pk,
            exc.detail,
        )
        return None


# =============================================================================
# Cancellation
# =============================================================================


def request_cancellation(
    tenant: Tenant,
    reason: str = "",
    now: datetime | None = None,
) -> Subscription:
    """
    Schedule cancellation at the end of the paid period.

    Status stays as it is; the sweep flips it to cancelled at period end.
    """
    now = now or timezone.now()
    with transaction.atomic():
        subscription = locked_subscription(tenant)
        require(subscription, Action.REQUEST_CANCELLATION)
        if subscription.cancel_at_period_end:
            raise InvalidTransition(
                "Cancellation is already scheduled.",
                from_status=subscription.status,
                action=Action.REQUEST_CANCELLATION.value,
            )
        subscription.cancel_at_period_end = True
        subscription.cancel_reason = reason
        subscription.cancel_requested_at = now
        transition(
            subscription,
            Action.REQUEST_CANCELLATION,
            kind=SubscriptionEventKind.CANCEL_REQUESTED,
            detail={"reason": reason, "effective_at": _iso(subscription.current_period_end)},
        )
    return subscription


def undo_cancellation(tenant: Tenant) -> Subscription:
    """Clear a scheduled cancellation while the subscription is still open."""
    with transaction.atomic():
        subscription = locked_subscription(tenant)
        require(subscription, Action.UNDO_CANCELLATION)
        if not subscription.cancel_at_period_end:
            raise InvalidTransition(
                "No cancellation is scheduled.",
                from_status=subscription.status,
                action=Action.UNDO_CANCELLATION.value,
            )
        subscription.cancel_at_period_end = False
        subscription.cancel_reason = ""
        subscription.cancel_requested_at = None
        transition(
            subscription,
            Action.UNDO_CANCELLATION,
            kind=SubscriptionEventKind.CANCEL_UNDONE,
        )
    return subscription


def force_cancel(
    tenant: Tenant,
    reason: str = "",
    now: datetime | None = None,
) -> Subscription:
    """Administrative immediate cancellation from any open status."""
    now = now or timezone.now()
    with transaction.atomic():
        subscription = locked_subscription(tenant)
        require(subscription, Action.FORCE_CANCEL)
        _mark_cancelled(subscription, reason, now)
        transition(
            subscription,
            Action.FORCE_CANCEL,
            kind=SubscriptionEventKind.CANCELLED,
            detail={"reason": reason, "forced": True},
        )
    return subscription


def cancel_at_period_end(subscription: Subscription, now: datetime) -> bool:
    """
    Sweep step: flip a scheduled cancellation once the period is over.

    Returns True when the subscription was cancelled.
    """
    if not subscription.cancel_at_period_end:
        return False
    if subscription.status not in ALLOWED_TRANSITIONS[Action.CANCEL_AT_PERIOD_END].sources:
        return False
    if subscription.current_period_end is None or now < subscription.current_period_end:
        return False
    _mark_cancelled(subscription, subscription.cancel_reason, now)
    transition(
        subscription,
        Action.CANCEL_AT_PERIOD_END,
        kind=SubscriptionEventKind.CANCELLED,
        detail={"reason": subscription.cancel_reason, "forced": False},
    )
    return True


def _mark_cancelled(subscription: Subscription, reason: str, now: datetime) -> None:
    subscription.cancelled_at = now
    subscription.cancel_reason = reason or subscription.cancel_reason
    subscription.pending_plan = None
    subscription.pending_cycle = ""
    subscription.pending_effective_at = None


# =============================================================================
# Tenant-facing summary
# =============================================================================


@dataclass
class SubscriptionSummary:
    """What a tenant sees about its own subscription."""

    subscription: Subscription
    status: str
    plan_slug: str
    plan_name: str
    billing_cycle: str
    amount: Decimal
    currency: str
    price_override: str
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    trial: dict | None
    accompaniment: dict | None
    pending_change: dict | None
    discount: dict | None


def subscription_summary(
    subscription: Subscription,
    now: datetime | None = None,
) -> SubscriptionSummary:
    from nicroma.billing.accompaniment import is_eligible
    from nicroma.billing.trials import TrialWindow

    now = now or timezone.now()

    trial = None
    if subscription.trial_started_at:
        window = TrialWindow.for_subscription(subscription)
        trial = {
            "started_at": subscription.trial_started_at,
            "ends_at": window.ends_at,
            "days_remaining": window.days_remaining(now),
            "is_expired": window.is_expired(now),
            "extensions_used": window.extensions_used,
            "max_extensions": window.max_extensions,
            "can_extend": (
                subscription.status == S.TRIALING and window.can_extend(now)
            ),
            "accompaniment_available": is_eligible(subscription, now),
        }

    accompaniment = None
    if subscription.accompaniment_active:
        accompaniment = {
            "price": subscription.accompaniment_price,
            "total_months": subscription.accompaniment_total_months,
            "months_used": subscription.accompaniment_months_used,
            "months_remaining": subscription.accompaniment_months_remaining,
            "activated_at": subscription.accompaniment_activated_at,
        }

    pending_change = None
    if subscription.has_pending_change:
        pending_change = {
            "plan": subscription.pending_plan_id,
            "plan_name": subscription.pending_plan.name,
            "billing_cycle": subscription.pending_cycle,
            "effective_at": subscription.pending_effective_at,
        }

    discount = None
    snapshot = subscription.discount
    if snapshot is not None:
        discount = {
            "code": snapshot.code,
            "kind": snapshot.kind,
            "value": snapshot.value,
            "cycles_remaining": snapshot.cycles_remaining,
        }

    return SubscriptionSummary(
        subscription=subscription,
        status=subscription.status,
        plan_slug=subscription.plan_id,
        plan_name=subscription.plan.name,
        billing_cycle=subscription.billing_cycle,
        amount=subscription.amount,
        currency=subscription.currency,
        price_override=subscription.price_override,
        current_period_start=subscription.current_period_start,
        current_period_end=subscription.current_period_end,
        cancel_at_period_end=subscription.cancel_at_period_end,
        trial=trial,
        accompaniment=accompaniment,
        pending_change=pending_change,
        discount=discount,
    )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
