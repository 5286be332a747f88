"""
Billing metrics for operational dashboards.

A read-only projection over committed subscription state and the payment
records reported by the payment collaborator. Nothing here writes.

MRR is the sum of current amounts of active and past_due subscriptions,
with yearly amounts divided by twelve. ARR is MRR x 12.

Usage:
    metrics = BillingMetricsAggregator().collect()
    metrics.mrr, metrics.status_counts["past_due"]
"""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field
from datetime import timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from django.db.models import Count
from django.db.models import Q
from django.db.models import Sum
from django.utils import timezone

from nicroma.billing.constants import REVENUE_STATUSES
from nicroma.billing.constants import BillingCycle
from nicroma.billing.constants import PaymentStatus
from nicroma.billing.constants import SubscriptionStatus
from nicroma.billing.models import Payment
from nicroma.billing.models import Subscription
from nicroma.billing.policy import BillingPolicy
from nicroma.billing.pricing import MONTHS_PER_YEAR
from nicroma.billing.pricing import ZERO
from nicroma.billing.pricing import to_money

if TYPE_CHECKING:
    from datetime import datetime


@dataclass
class BillingMetrics:
    status_counts: dict[str, int]
    status_percentages: dict[str, float]
    total_subscriptions: int
    mrr: Decimal
    arr: Decimal
    active_trials: int
    revenue_this_month: Decimal
    trials_expiring_soon: list = field(default_factory=list)
    past_due: list = field(default_factory=list)
    failed_payments: list = field(default_factory=list)


class BillingMetricsAggregator:
    """Computes BillingMetrics from the database."""

    def __init__(self, policy: BillingPolicy | None = None):
        self.policy = policy or BillingPolicy.from_settings()

    def collect(self, now: datetime | None = None) -> BillingMetrics:
        now = now or timezone.now()
        status_counts = self.status_counts()
        total = sum(status_counts.values())
        mrr = self.mrr()

        return BillingMetrics(
            status_counts=status_counts,
            status_percentages={
                status: round(count * 100 / total, 2) if total else 0.0
                for status, count in status_counts.items()
            },
            total_subscriptions=total,
            mrr=mrr,
            arr=to_money(mrr * MONTHS_PER_YEAR),
            active_trials=status_counts[SubscriptionStatus.TRIALING],
            revenue_this_month=self.revenue_this_month(now),
            trials_expiring_soon=list(self.trials_expiring_soon(now)),
            past_due=list(self.past_due()),
            failed_payments=list(self.failed_payments(now)),
        )

    def status_counts(self) -> dict[str, int]:
        counts = dict.fromkeys(SubscriptionStatus.values, 0)
        rows = Subscription.objects.values("status").annotate(total=Count("pk"))
        for row in rows:
            counts[row["status"]] = row["total"]
        return counts

    def mrr(self) -> Decimal:
        totals = Subscription.objects.filter(status__in=REVENUE_STATUSES).aggregate(
            monthly=Sum("amount", filter=Q(billing_cycle=BillingCycle.MONTHLY)),
            yearly=Sum("amount", filter=Q(billing_cycle=BillingCycle.YEARLY)),
        )
        monthly = totals["monthly"] or ZERO
        yearly = totals["yearly"] or ZERO
        return to_money(Decimal(monthly) + Decimal(yearly) / MONTHS_PER_YEAR)

    def trials_expiring_soon(self, now: datetime):
        horizon = now + timedelta(days=self.policy.trial_expiring_lookahead_days)
        return (
            Subscription.objects.select_related("tenant", "plan")
            .filter(
                status=SubscriptionStatus.TRIALING,
                trial_ends_at__gte=now,
                trial_ends_at__lte=horizon,
            )
            .order_by("trial_ends_at")
        )

    def past_due(self):
        return (
            Subscription.objects.select_related("tenant", "plan")
            .filter(status=SubscriptionStatus.PAST_DUE)
            .order_by("current_period_end")
        )

    def failed_payments(self, now: datetime):
        since = now - timedelta(days=self.policy.failed_payment_lookback_days)
        return (
            Payment.objects.select_related("tenant")
            .filter(status=PaymentStatus.FAILED, created__gte=since)
            .order_by("-created")
        )

    def revenue_this_month(self, now: datetime) -> Decimal:
        local_now = timezone.localtime(now)
        month_start = local_now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        total = Payment.objects.filter(
            status=PaymentStatus.COMPLETED,
            created__gte=month_start,
        ).aggregate(total=Sum("amount"))["total"]
        return to_money(total or ZERO)
