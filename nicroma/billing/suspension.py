"""
Administrative suspension and reactivation.

Suspension is an override that sits outside payment handling: a suspended
subscription ignores charge success and failure signals entirely, and only
reactivate() brings it back. Neither operation touches the billing period
or the amount.

Repeated calls are rejected with InvalidTransition and change nothing.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from django.db import transaction
from django.utils import timezone

from nicroma.billing.constants import SubscriptionEventKind
from nicroma.billing.lifecycle import Action
from nicroma.billing.lifecycle import locked_subscription
from nicroma.billing.lifecycle import require
from nicroma.billing.lifecycle import transition

if TYPE_CHECKING:
    from datetime import datetime

    from nicroma.billing.models import Subscription
    from nicroma.tenants.models import Tenant


def suspend(
    tenant: Tenant,
    reason: str,
    now: datetime | None = None,
    *,
    actor: str = "",
) -> Subscription:
    """Suspend an active or past-due subscription."""
    now = now or timezone.now()
    with transaction.atomic():
        subscription = locked_subscription(tenant)
        require(subscription, Action.SUSPEND)
        subscription.suspended_at = now
        subscription.suspension_reason = reason
        transition(
            subscription,
            Action.SUSPEND,
            kind=SubscriptionEventKind.SUSPENDED,
            detail={"reason": reason, "actor": actor},
        )
    return subscription


def reactivate(tenant: Tenant, *, actor: str = "") -> Subscription:
    """Lift a suspension. The period and amount are left as they were."""
    with transaction.atomic():
        subscription = locked_subscription(tenant)
        require(subscription, Action.REACTIVATE)
        suspended_for = subscription.suspension_reason
        subscription.suspended_at = None
        subscription.suspension_reason = ""
        transition(
            subscription,
            Action.REACTIVATE,
            kind=SubscriptionEventKind.REACTIVATED,
            detail={"previous_reason": suspended_for, "actor": actor},
        )
    return subscription
