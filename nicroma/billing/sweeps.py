"""
Scheduled billing sweep.

Applies every time-based transition that is due:

1. Scheduled cancellations whose period has ended -> cancelled.
2. Accompaniment offers whose checkout was never paid are dropped.
3. Trials past their grace cutoff without an accompaniment offer -> cancelled.
4. Pending plan changes whose effective date has passed.
5. Accompaniment months elapsed, and the offer's lapse back to the
   standard price.

Each subscription is processed in its own transaction under a row lock, so
it serializes with tenant requests. A failure for one subscription is
logged and counted; the sweep carries on with the rest.

Every step compares stored timestamps and counters against ``now``, so
running the sweep twice for the same instant changes nothing the second
time.

Usage:
    report = run_billing_sweep()
    report.as_dict()
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from dataclasses import dataclass
from dataclasses import field
from datetime import timedelta
from typing import TYPE_CHECKING

from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from nicroma.billing.accompaniment import abandon_accompaniment
from nicroma.billing.accompaniment import advance_accompaniment
from nicroma.billing.constants import PriceOverride
from nicroma.billing.constants import SubscriptionStatus
from nicroma.billing.lifecycle import cancel_at_period_end
from nicroma.billing.models import Subscription
from nicroma.billing.plan_changes import apply_pending_change
from nicroma.billing.policy import BillingPolicy
from nicroma.billing.trials import lapse_trial

if TYPE_CHECKING:
    from datetime import datetime

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    examined: int = 0
    cancelled: int = 0
    accompaniments_abandoned: int = 0
    trials_lapsed: int = 0
    pending_changes_applied: int = 0
    accompaniment_updates: int = 0
    failures: list[dict] = field(default_factory=list)

    @property
    def changed(self) -> int:
        return (
            self.cancelled
            + self.accompaniments_abandoned
            + self.trials_lapsed
            + self.pending_changes_applied
            + self.accompaniment_updates
        )

    def as_dict(self) -> dict:
        data = asdict(self)
        data["changed"] = self.changed
        return data


def due_subscription_ids(now: datetime, policy: BillingPolicy) -> list[int]:
    """Open subscriptions with at least one step that may be due."""
    grace = timedelta(days=policy.trial_grace_days)
    return list(
        Subscription.objects.exclude(status=SubscriptionStatus.CANCELLED)
        .filter(
            Q(cancel_at_period_end=True, current_period_end__lte=now)
            | Q(status=SubscriptionStatus.TRIALING, trial_ends_at__lt=now - grace)
            | Q(pending_plan__isnull=False, pending_effective_at__lte=now)
            | Q(price_override=PriceOverride.ACCOMPANIMENT)
        )
        .order_by("pk")
        .values_list("pk", flat=True),
    )


def sweep_subscription(subscription: Subscription, now: datetime, report: SweepReport):
    if cancel_at_period_end(subscription, now):
        report.cancelled += 1
        return
    if abandon_accompaniment(subscription, now):
        report.accompaniments_abandoned += 1
    if lapse_trial(subscription, now):
        report.trials_lapsed += 1
        return
    if apply_pending_change(subscription, now):
        report.pending_changes_applied += 1
    if advance_accompaniment(subscription, now):
        report.accompaniment_updates += 1


def run_billing_sweep(now: datetime | None = None) -> SweepReport:
    now = now or timezone.now()
    policy = BillingPolicy.from_settings()
    report = SweepReport()

    for pk in due_subscription_ids(now, policy):
        report.examined += 1
        try:
            with transaction.atomic():
                subscription = (
                    Subscription.objects.select_for_update()
                    .filter(pk=pk)
                    .exclude(status=SubscriptionStatus.CANCELLED)
                    .first()
                )
                if subscription is None:
                    continue
                sweep_subscription(subscription, now, report)
        except Exception as exc:
            logger.exception("Billing sweep failed for subscription %s", pk)
            report.failures.append({"subscription": pk, "error": str(exc)})

    logger.info(
        "Billing sweep at %s: examined=%s changed=%s failures=%s",
        now.isoformat(),
        report.examined,
        report.changed,
        len(report.failures),
    )
    return report
