"""
Plan change service for handling subscription upgrades and downgrades.

Key design decisions:
- Upgrades (target monthly price strictly higher) are applied immediately.
  The new amount is the target price for the billing cycle with the
  subscription's promotion snapshot re-applied. Any accompaniment override
  is dropped since that price belongs to the old plan. Period boundaries
  are untouched; proration is left to the payment provider's next invoice.
- Downgrades and lateral moves are scheduled for the end of the current
  period as a pending change. The tenant keeps what it paid for until then.
- There is at most one pending change. A new request replaces the previous
  one (last write wins); the replaced target is kept in the audit trail.
- Applying a pending change recomputes the price from the new plan without
  re-checking the promotion's plan allow-list. That check only happens
  when a code is first applied.
- All changes are audited via the PlanChange model.

Usage:
    service = PlanChangeService()

    # Preview what will happen
    preview = service.preview_change(tenant, "business")

    # Execute the change
    result = service.change_plan(tenant, "business")
    if not result.effective_immediately:
        notify(result.scheduled_at)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING

from django.db import transaction
from django.utils import timezone

from nicroma.billing.catalog import PlanChangeType
from nicroma.billing.catalog import get_change_type
from nicroma.billing.catalog import get_plan
from nicroma.billing.constants import PriceOverride
from nicroma.billing.constants import SubscriptionEventKind
from nicroma.billing.exceptions import BillingError
from nicroma.billing.exceptions import PlanNotPurchasable
from nicroma.billing.lifecycle import ALLOWED_TRANSITIONS
from nicroma.billing.lifecycle import Action
from nicroma.billing.lifecycle import current_subscription
from nicroma.billing.lifecycle import locked_subscription
from nicroma.billing.lifecycle import record_event
from nicroma.billing.lifecycle import require
from nicroma.billing.lifecycle import transition
from nicroma.billing.models import PlanChange
from nicroma.billing.signals import announce_price

if TYPE_CHECKING:
    from datetime import datetime

    from nicroma.billing.models import Plan
    from nicroma.billing.models import Subscription
    from nicroma.tenants.models import Tenant

logger = logging.getLogger(__name__)


@dataclass
class PlanChangeResult:
    """Result of a plan change operation."""

    success: bool
    change_type: PlanChangeType
    old_plan: Plan
    new_plan: Plan
    effective_immediately: bool
    old_cycle: str = ""
    new_cycle: str = ""
    scheduled_at: datetime | None = None
    new_amount: Decimal | None = None
    replaced_plan: Plan | None = None  # Pending change that was overwritten
    message: str = ""


class PlanChangeService:
    """
    Service for handling plan changes (upgrades and downgrades).

    All mutating methods lock the tenant's subscription row for the
    duration of the change.
    """

    def can_change_plan(
        self,
        subscription: Subscription | None,
        new_plan: Plan,
        cycle: str,
    ) -> tuple[bool, str]:
        """
        Check if a plan change is allowed.

        Returns (allowed, reason) tuple.
        """
        if subscription is None:
            return False, "No subscription to change"
        rule = ALLOWED_TRANSITIONS[Action.CHANGE_PLAN]
        if subscription.status not in rule.sources:
            return False, f"Cannot change plan while {subscription.status}"
        if not new_plan.is_purchasable:
            return False, "Plan not available for purchase"
        if (
            subscription.plan_id == new_plan.slug
            and subscription.billing_cycle == cycle
        ):
            return False, "Already on this plan"
        return True, ""

    def preview_change(
        self,
        tenant: Tenant,
        plan_slug: str,
        cycle: str | None = None,
    ) -> PlanChangeResult:
        """
        Preview what will happen if the plan is changed.

        Does not make any changes - just calculates what would happen.
        """
        new_plan = get_plan(plan_slug)
        subscription = current_subscription(tenant)
        if subscription is None:
            return PlanChangeResult(
                success=False,
                change_type=PlanChangeType.LATERAL,
                old_plan=new_plan,
                new_plan=new_plan,
                effective_immediately=False,
                message="No subscription to change",
            )

        old_plan = subscription.plan
        cycle = cycle or subscription.billing_cycle
        change_type = get_change_type(old_plan, new_plan)

        allowed, reason = self.can_change_plan(subscription, new_plan, cycle)
        if not allowed:
            return PlanChangeResult(
                success=False,
                change_type=change_type,
                old_plan=old_plan,
                new_plan=new_plan,
                effective_immediately=False,
                old_cycle=subscription.billing_cycle,
                new_cycle=cycle,
                message=reason,
            )

        new_amount = self._amount_for(subscription, new_plan, cycle)
        if change_type == PlanChangeType.UPGRADE:
            return PlanChangeResult(
                success=True,
                change_type=change_type,
                old_plan=old_plan,
                new_plan=new_plan,
                effective_immediately=True,
                old_cycle=subscription.billing_cycle,
                new_cycle=cycle,
                new_amount=new_amount,
                message="Upgrade takes effect immediately.",
            )

        return PlanChangeResult(
            success=True,
            change_type=change_type,
            old_plan=old_plan,
            new_plan=new_plan,
            effective_immediately=False,
            old_cycle=subscription.billing_cycle,
            new_cycle=cycle,
            scheduled_at=subscription.current_period_end,
            new_amount=new_amount,
            replaced_plan=subscription.pending_plan,
            message=self._scheduled_message(subscription, old_plan, new_plan),
        )

    def change_plan(
        self,
        tenant: Tenant,
        plan_slug: str,
        cycle: str | None = None,
        now: datetime | None = None,
    ) -> PlanChangeResult:
        """
        Execute a plan change.

        Raises:
            InvalidTransition: the subscription is not active or past_due.
            PlanNotPurchasable: target is inactive or contact-sales only.
            BillingError: already on the requested plan and cycle.
        """
        now = now or timezone.now()
        new_plan = get_plan(plan_slug)

        with transaction.atomic():
            subscription = locked_subscription(tenant)
            require(subscription, Action.CHANGE_PLAN)
            cycle = cycle or subscription.billing_cycle

            allowed, reason = self.can_change_plan(subscription, new_plan, cycle)
            if not allowed:
                if not new_plan.is_purchasable:
                    raise PlanNotPurchasable(reason)
                raise BillingError(reason, code="already_on_plan")

            old_plan = subscription.plan
            old_amount = subscription.amount
            change_type = get_change_type(old_plan, new_plan)
            if change_type == PlanChangeType.UPGRADE:
                result = self._upgrade(subscription, old_plan, new_plan, cycle)
            else:
                result = self._schedule(subscription, old_plan, new_plan, cycle, now)

            PlanChange.objects.create(
                subscription=subscription,
                old_plan=old_plan,
                new_plan=new_plan,
                old_cycle=result.old_cycle,
                new_cycle=cycle,
                change_type=change_type.value,
                effective_immediately=result.effective_immediately,
                scheduled_at=result.scheduled_at,
                old_amount=old_amount,
                new_amount=result.new_amount,
                notes=(
                    f"Replaced pending change to {result.replaced_plan.slug}"
                    if result.replaced_plan
                    else ""
                ),
            )

        return result

    def _upgrade(
        self,
        subscription: Subscription,
        old_plan: Plan,
        new_plan: Plan,
        cycle: str,
    ) -> PlanChangeResult:
        """Apply an upgrade in place; period boundaries stay as they are."""
        old_cycle = subscription.billing_cycle
        old_amount = subscription.amount

        subscription.plan = new_plan
        subscription.billing_cycle = cycle
        subscription.price_override = PriceOverride.STANDARD
        self._clear_pending(subscription)
        subscription.amount = subscription.compute_amount()
        transition(
            subscription,
            Action.CHANGE_PLAN,
            kind=SubscriptionEventKind.PLAN_CHANGED,
            detail={
                "from_plan": old_plan.slug,
                "to_plan": new_plan.slug,
                "from_cycle": old_cycle,
                "to_cycle": cycle,
                "old_amount": str(old_amount),
                "new_amount": str(subscription.amount),
            },
        )
        announce_price(subscription, reason=SubscriptionEventKind.PLAN_CHANGED)

        logger.info(
            "Upgraded tenant %s from %s to %s",
            subscription.tenant_id,
            old_plan.slug,
            new_plan.slug,
        )
        return PlanChangeResult(
            success=True,
            change_type=PlanChangeType.UPGRADE,
            old_plan=old_plan,
            new_plan=new_plan,
            effective_immediately=True,
            old_cycle=old_cycle,
            new_cycle=cycle,
            new_amount=subscription.amount,
            message=(
                f"Upgraded to {new_plan.name}! "
                f"Your new features are available now."
            ),
        )

    def _schedule(
        self,
        subscription: Subscription,
        old_plan: Plan,
        new_plan: Plan,
        cycle: str,
        now: datetime,
    ) -> PlanChangeResult:
        """Record a pending change effective at the end of the current period."""
        replaced = subscription.pending_plan
        if replaced is not None:
            logger.info(
                "Pending change for tenant %s to %s replaced by %s",
                subscription.tenant_id,
                replaced.slug,
                new_plan.slug,
            )

        scheduled_at = subscription.current_period_end or now
        subscription.pending_plan = new_plan
        subscription.pending_cycle = cycle
        subscription.pending_effective_at = scheduled_at
        transition(
            subscription,
            Action.CHANGE_PLAN,
            kind=SubscriptionEventKind.PLAN_CHANGE_SCHEDULED,
            detail={
                "from_plan": old_plan.slug,
                "to_plan": new_plan.slug,
                "to_cycle": cycle,
                "effective_at": scheduled_at.isoformat(),
                "replaced": replaced.slug if replaced else None,
            },
        )

        logger.info(
            "Scheduled change for tenant %s from %s to %s at %s",
            subscription.tenant_id,
            old_plan.slug,
            new_plan.slug,
            scheduled_at,
        )
        return PlanChangeResult(
            success=True,
            change_type=get_change_type(old_plan, new_plan),
            old_plan=old_plan,
            new_plan=new_plan,
            effective_immediately=False,
            old_cycle=subscription.billing_cycle,
            new_cycle=cycle,
            scheduled_at=scheduled_at,
            new_amount=self._amount_for(subscription, new_plan, cycle),
            replaced_plan=replaced,
            message=self._scheduled_message(subscription, old_plan, new_plan),
        )

    def cancel_pending_change(self, tenant: Tenant) -> bool:
        """
        Cancel a scheduled plan change.

        Returns True if a change was canceled, False if none pending.
        """
        with transaction.atomic():
            subscription = locked_subscription(tenant)
            if not subscription.has_pending_change:
                return False
            cancelled_plan = subscription.pending_plan_id
            self._clear_pending(subscription)
            subscription.save()
            record_event(
                subscription,
                SubscriptionEventKind.PLAN_CHANGE_CANCELLED,
                from_status=subscription.status,
                detail={"plan": cancelled_plan},
            )
        logger.info(
            "Cancelled pending change to %s for tenant %s",
            cancelled_plan,
            tenant.pk,
        )
        return True

    def apply_pending_change(self, subscription: Subscription, now: datetime) -> bool:
        """
        Sweep step: apply a due pending change.

        No-op when nothing is pending or the effective date is in the
        future. Returns True when the change was applied.
        """
        if not subscription.has_pending_change:
            return False
        if subscription.pending_effective_at and now < subscription.pending_effective_at:
            return False
        rule = ALLOWED_TRANSITIONS[Action.APPLY_PENDING_CHANGE]
        if subscription.status not in rule.sources:
            return False

        old_plan = subscription.plan
        old_cycle = subscription.billing_cycle
        new_plan = subscription.pending_plan
        subscription.plan = new_plan
        subscription.billing_cycle = subscription.pending_cycle or old_cycle
        subscription.price_override = PriceOverride.STANDARD
        self._clear_pending(subscription)
        subscription.amount = subscription.compute_amount()
        transition(
            subscription,
            Action.APPLY_PENDING_CHANGE,
            kind=SubscriptionEventKind.PLAN_CHANGED,
            detail={
                "from_plan": old_plan.slug,
                "to_plan": new_plan.slug,
                "from_cycle": old_cycle,
                "to_cycle": subscription.billing_cycle,
                "new_amount": str(subscription.amount),
                "scheduled": True,
            },
        )
        announce_price(subscription, reason=SubscriptionEventKind.PLAN_CHANGED)
        return True

    def _amount_for(self, subscription: Subscription, plan: Plan, cycle: str) -> Decimal:
        base = plan.price_for_cycle(cycle)
        snapshot = subscription.discount
        return snapshot.apply(base) if snapshot else base

    def _clear_pending(self, subscription: Subscription) -> None:
        subscription.pending_plan = None
        subscription.pending_cycle = ""
        subscription.pending_effective_at = None

    def _scheduled_message(
        self,
        subscription: Subscription,
        old_plan: Plan,
        new_plan: Plan,
    ) -> str:
        scheduled_at = subscription.current_period_end
        if scheduled_at:
            date_str = scheduled_at.strftime("%d/%m/%Y")
        else:
            date_str = "the end of the billing period"
        return (
            f"Your change to {new_plan.name} is scheduled for {date_str}. "
            f"You'll keep your {old_plan.name} features until then."
        )


def cancel_pending_change(tenant: Tenant) -> bool:
    return PlanChangeService().cancel_pending_change(tenant)


def apply_pending_change(subscription: Subscription, now: datetime) -> bool:
    return PlanChangeService().apply_pending_change(subscription, now)

