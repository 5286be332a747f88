"""
Signals emitted by the billing engine.

``subscription_price_committed`` fires after the transaction that commits a
new recurring price (activation, renewal, plan change, accompaniment lapse)
has been committed. The invoicing collaborator listens to it to issue the
fiscal document for the period.

Usage:
    from nicroma.billing.signals import subscription_price_committed

    @receiver(subscription_price_committed)
    def issue_invoice(sender, subscription, amount, currency, **kwargs):
        ...
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from django.db import transaction
from django.dispatch import Signal

if TYPE_CHECKING:
    from nicroma.billing.models import Subscription

# Sent with: subscription, amount, currency, period_start, period_end, reason
subscription_price_committed = Signal()


def announce_price(subscription: Subscription, reason: str) -> None:
    """Queue a price notification for when the current transaction commits."""
    amount = subscription.amount
    currency = subscription.currency
    period_start = subscription.current_period_start
    period_end = subscription.current_period_end

    transaction.on_commit(
        lambda: subscription_price_committed.send(
            sender=subscription.__class__,
            subscription=subscription,
            amount=amount,
            currency=currency,
            period_start=period_start,
            period_end=period_end,
            reason=reason,
        ),
    )
