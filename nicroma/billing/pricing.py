"""
Price arithmetic for subscriptions.

A subscription's recurring amount is composed of two independent layers:

1. A base price chosen by the PriceOverride tag (standard plan price,
   trial, or accompaniment offer).
2. An optional promotion discount, frozen as a DiscountSnapshot at the
   moment the code was redeemed. Later edits to the Promotion row never
   reach an existing snapshot.

Usage:
    snapshot = DiscountSnapshot(kind=DiscountKind.PERCENTAGE, value=Decimal("20"))
    snapshot.apply(Decimal("89000"))  # Decimal("71200.00")
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP
from decimal import Decimal

from nicroma.billing.constants import BillingCycle
from nicroma.billing.constants import DiscountKind

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")
MONTHS_PER_YEAR = 12


def to_money(value) -> Decimal:
    """Quantize to two decimal places."""
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def monthly_equivalent(amount: Decimal, cycle: str) -> Decimal:
    """Normalize a recurring amount to a per-month figure."""
    if cycle == BillingCycle.YEARLY:
        return to_money(Decimal(amount) / MONTHS_PER_YEAR)
    return to_money(amount)


@dataclass(frozen=True)
class DiscountSnapshot:
    """Terms of a promotion copied onto a subscription at redemption time."""

    kind: str
    value: Decimal
    # None means the discount applies for the life of the subscription.
    cycles_remaining: int | None = None
    promotion_id: int | None = None
    code: str = ""

    @property
    def is_exhausted(self) -> bool:
        return self.cycles_remaining is not None and self.cycles_remaining <= 0

    def apply(self, base_price: Decimal) -> Decimal:
        """
        Apply the discount to a base price.

        Fixed discounts larger than the price clamp the result at zero; this is
        the only place a fixed discount is compared against a price.
        """
        base = to_money(base_price)
        if self.is_exhausted:
            return base
        if self.kind == DiscountKind.PERCENTAGE:
            discounted = base - (base * Decimal(self.value) / HUNDRED)
        else:
            discounted = base - Decimal(self.value)
        return max(to_money(discounted), ZERO)

    def consume_cycle(self) -> DiscountSnapshot:
        """Return the snapshot after one more billed cycle."""
        if self.cycles_remaining is None:
            return self
        return DiscountSnapshot(
            kind=self.kind,
            value=self.value,
            cycles_remaining=max(self.cycles_remaining - 1, 0),
            promotion_id=self.promotion_id,
            code=self.code,
        )
