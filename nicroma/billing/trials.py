"""
Trial window and bounded extension policy.

A trial lasts BILLING_TRIAL_DAYS. It may be extended at most
``trial_max_extensions`` times, each time by BILLING_TRIAL_EXTENSION_DAYS,
and only until the grace cutoff (trial end + BILLING_TRIAL_GRACE_DAYS).
Past the cutoff the sweep cancels the trial unless an accompaniment offer
was taken.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from django.db import transaction
from django.utils import timezone

from nicroma.billing.constants import PriceOverride
from nicroma.billing.constants import SubscriptionEventKind
from nicroma.billing.constants import SubscriptionStatus
from nicroma.billing.exceptions import ExtensionLimitReached
from nicroma.billing.exceptions import InvalidTransition
from nicroma.billing.lifecycle import Action
from nicroma.billing.lifecycle import locked_subscription
from nicroma.billing.lifecycle import require
from nicroma.billing.lifecycle import transition
from nicroma.billing.policy import BillingPolicy

if TYPE_CHECKING:
    from datetime import datetime

    from nicroma.billing.models import Subscription
    from nicroma.tenants.models import Tenant

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


@dataclass(frozen=True)
class TrialWindow:
    """Read-only view of a subscription's trial."""

    started_at: datetime | None
    ends_at: datetime | None
    extensions_used: int
    max_extensions: int
    grace_days: int

    @classmethod
    def for_subscription(
        cls,
        subscription: Subscription,
        policy: BillingPolicy | None = None,
    ) -> TrialWindow:
        policy = policy or BillingPolicy.from_settings()
        return cls(
            started_at=subscription.trial_started_at,
            ends_at=subscription.trial_ends_at,
            extensions_used=subscription.trial_extensions_used,
            max_extensions=subscription.trial_max_extensions,
            grace_days=policy.trial_grace_days,
        )

    @property
    def grace_cutoff(self) -> datetime | None:
        if self.ends_at is None:
            return None
        return self.ends_at + timedelta(days=self.grace_days)

    def is_expired(self, now: datetime) -> bool:
        return self.ends_at is not None and now >= self.ends_at

    def is_past_grace(self, now: datetime) -> bool:
        cutoff = self.grace_cutoff
        return cutoff is not None and now > cutoff

    def days_remaining(self, now: datetime) -> int:
        """Whole days left, rounded up. Zero once expired."""
        if self.ends_at is None or self.is_expired(now):
            return 0
        return math.ceil((self.ends_at - now).total_seconds() / SECONDS_PER_DAY)

    @property
    def extensions_remaining(self) -> int:
        return max(self.max_extensions - self.extensions_used, 0)

    def can_extend(self, now: datetime) -> bool:
        return self.extensions_remaining > 0 and not self.is_past_grace(now)


def extend_trial(tenant: Tenant, now: datetime | None = None) -> Subscription:
    """
    Push the trial end forward by one extension increment.

    Raises:
        InvalidTransition: not trialing, or the grace cutoff has passed.
        ExtensionLimitReached: the extension cap is used up. The counter is
            left unchanged.
    """
    now = now or timezone.now()
    policy = BillingPolicy.from_settings()

    with transaction.atomic():
        subscription = locked_subscription(tenant)
        require(subscription, Action.EXTEND_TRIAL)
        window = TrialWindow.for_subscription(subscription, policy)

        if window.extensions_used >= window.max_extensions:
            logger.info(
                "Trial extension refused for tenant %s: %s/%s used",
                tenant.pk,
                window.extensions_used,
                window.max_extensions,
            )
            raise ExtensionLimitReached(window.extensions_used, window.max_extensions)
        if window.is_past_grace(now):
            raise InvalidTransition(
                "The trial ended too long ago to be extended.",
                from_status=subscription.status,
                action=Action.EXTEND_TRIAL.value,
            )

        new_end = subscription.trial_ends_at + timedelta(
            days=policy.trial_extension_days,
        )
        subscription.trial_extensions_used += 1
        subscription.trial_ends_at = new_end
        subscription.current_period_end = new_end
        transition(
            subscription,
            Action.EXTEND_TRIAL,
            kind=SubscriptionEventKind.TRIAL_EXTENDED,
            detail={
                "extensions_used": subscription.trial_extensions_used,
                "trial_ends_at": new_end.isoformat(),
            },
        )
    return subscription


def lapse_trial(subscription: Subscription, now: datetime) -> bool:
    """
    Sweep step: cancel a trial that is past its grace cutoff.

    Trials carrying an accompaniment offer are left alone; the offer's
    checkout decides their fate. Returns True when the trial was cancelled.
    """
    if subscription.status != SubscriptionStatus.TRIALING:
        return False
    if subscription.price_override == PriceOverride.ACCOMPANIMENT:
        return False
    window = TrialWindow.for_subscription(subscription)
    if not window.is_past_grace(now):
        return False

    subscription.cancelled_at = now
    subscription.cancel_reason = "Trial ended without conversion."
    transition(
        subscription,
        Action.LAPSE_TRIAL,
        kind=SubscriptionEventKind.TRIAL_LAPSED,
        detail={"trial_ends_at": window.ends_at.isoformat()},
    )
    return True
