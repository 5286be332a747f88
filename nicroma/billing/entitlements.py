"""
Entitlement checks derived from subscription state and plan limits.

These are called at enforcement points in the rest of the platform
(before creating an operation, adding a user, opening the client portal)
to decide whether the tenant may proceed. Usage counts belong to the
calling domain; this module only compares them against the plan.

Usage:
    decision = check_access(current_subscription(tenant))
    if not decision.allowed:
        return Response(decision.as_dict(), status=402)

    check = check_limit(tenant, LimitType.OPERATIONS, operations_this_month)
    if not check.allowed:
        ...
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from dataclasses import dataclass
from typing import TYPE_CHECKING

from django.utils import timezone
from rest_framework import permissions

from nicroma.billing.constants import LimitType
from nicroma.billing.constants import SubscriptionStatus
from nicroma.billing.lifecycle import current_subscription
from nicroma.billing.trials import TrialWindow

if TYPE_CHECKING:
    from datetime import datetime

    from rest_framework.request import Request
    from rest_framework.views import APIView

    from nicroma.billing.models import Plan
    from nicroma.billing.models import Subscription
    from nicroma.tenants.models import Tenant

logger = logging.getLogger(__name__)

# Usage at or above this share of a limit is reported as approaching it.
APPROACHING_RATIO = 0.8

NUMERIC_LIMITS = {
    LimitType.USERS: "max_users",
    LimitType.OPERATIONS: "max_operations_per_month",
    LimitType.CLIENTS: "max_clients",
    LimitType.CARRIERS: "carrier_tracking_limit",
}

FEATURE_FLAGS = {
    LimitType.CLIENT_PORTAL: "has_client_portal",
    LimitType.CARRIER_TRACKING: "has_carrier_tracking",
    LimitType.ELECTRONIC_INVOICING: "has_electronic_invoicing",
    LimitType.ADVANCED_REPORTS: "has_advanced_reports",
}


@dataclass
class AccessDecision:
    allowed: bool
    code: str
    warning: str = ""

    def as_dict(self) -> dict:
        return asdict(self)


def check_access(
    subscription: Subscription | None,
    now: datetime | None = None,
) -> AccessDecision:
    """
    Whether a tenant with this subscription may use the platform.

    - active: allowed (with a warning if cancellation is scheduled)
    - trialing: allowed until the trial ends
    - past_due: allowed with a warning
    - suspended, cancelled, or no subscription: blocked
    """
    now = now or timezone.now()
    if subscription is None:
        return AccessDecision(allowed=False, code="no_subscription")

    status = subscription.status
    if status == SubscriptionStatus.ACTIVE:
        warning = ""
        if subscription.cancel_at_period_end and subscription.current_period_end:
            warning = (
                "Your subscription is cancelled and ends on "
                f"{subscription.current_period_end:%d/%m/%Y}."
            )
        return AccessDecision(allowed=True, code="active", warning=warning)

    if status == SubscriptionStatus.TRIALING:
        if TrialWindow.for_subscription(subscription).is_expired(now):
            return AccessDecision(allowed=False, code="trial_expired")
        return AccessDecision(allowed=True, code="trialing")

    if status == SubscriptionStatus.PAST_DUE:
        return AccessDecision(
            allowed=True,
            code="past_due",
            warning="There is a problem with your payment. Please update your payment method.",
        )

    if status == SubscriptionStatus.SUSPENDED:
        return AccessDecision(
            allowed=False,
            code="suspended",
            warning=subscription.suspension_reason,
        )

    return AccessDecision(allowed=False, code="subscription_ended")


@dataclass
class LimitCheck:
    limit_type: str
    allowed: bool
    current: int | None = None
    limit: int | None = None  # None = unlimited
    reason: str = ""

    @property
    def remaining(self) -> int | None:
        if self.limit is None or self.current is None:
            return None
        return max(self.limit - self.current, 0)

    @property
    def approaching(self) -> bool:
        if not self.allowed or not self.limit or self.current is None:
            return False
        return self.current >= self.limit * APPROACHING_RATIO

    def as_dict(self) -> dict:
        data = asdict(self)
        data["remaining"] = self.remaining
        data["approaching"] = self.approaching
        return data


def check_limit(
    tenant: Tenant,
    limit_type: str,
    current_usage: int = 0,
) -> LimitCheck:
    """
    Compare ``current_usage`` against the tenant's plan.

    Numeric limits allow one more item while ``current_usage < limit``.
    Feature flags ignore ``current_usage``.
    """
    subscription = current_subscription(tenant)
    if subscription is None:
        return LimitCheck(
            limit_type=limit_type,
            allowed=False,
            reason="No active subscription.",
        )
    return limit_for_plan(subscription.plan, limit_type, current_usage)


def limit_for_plan(plan: Plan, limit_type: str, current_usage: int = 0) -> LimitCheck:
    if limit_type in FEATURE_FLAGS:
        enabled = getattr(plan, FEATURE_FLAGS[limit_type])
        return LimitCheck(
            limit_type=limit_type,
            allowed=enabled,
            reason="" if enabled else f"{plan.name} does not include this feature.",
        )

    if limit_type not in NUMERIC_LIMITS:
        raise ValueError(f"Unknown limit type: {limit_type}")

    if limit_type == LimitType.CARRIERS and not plan.has_carrier_tracking:
        return LimitCheck(
            limit_type=limit_type,
            allowed=False,
            current=current_usage,
            limit=0,
            reason=f"{plan.name} does not include carrier tracking.",
        )

    limit = getattr(plan, NUMERIC_LIMITS[limit_type])
    if limit is None or current_usage < limit:
        return LimitCheck(
            limit_type=limit_type,
            allowed=True,
            current=current_usage,
            limit=limit,
        )
    return LimitCheck(
        limit_type=limit_type,
        allowed=False,
        current=current_usage,
        limit=limit,
        reason=f"{plan.name} allows up to {limit}.",
    )


class HasActiveSubscription(permissions.BasePermission):
    """
    Allow requests only for tenants whose subscription grants access.

    Requires the view to provide get_tenant() (see TenantScopedMixin).
    Superusers always pass.
    """

    message = "An active subscription is required."

    def has_permission(self, request: Request, view: APIView) -> bool:
        if request.user.is_authenticated and request.user.is_superuser:
            return True
        if not hasattr(view, "get_tenant"):
            return True

        tenant = view.get_tenant()
        decision = check_access(current_subscription(tenant))
        if not decision.allowed:
            logger.info(
                "Access blocked for tenant %s: %s",
                tenant.pk,
                decision.code,
            )
            self.message = decision.as_dict()
        return decision.allowed
