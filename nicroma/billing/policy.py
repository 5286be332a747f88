"""
Billing policy constants, read from Django settings.

Usage:
    policy = BillingPolicy.from_settings()
    trial_end = now + timedelta(days=policy.trial_days)
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from django.conf import settings


@dataclass(frozen=True)
class BillingPolicy:
    currency: str = "ARS"
    trial_plan_slug: str = "profesional"
    trial_days: int = 7
    trial_extension_days: int = 7
    max_trial_extensions: int = 2
    trial_grace_days: int = 7
    accompaniment_price: Decimal = Decimal("10000")
    accompaniment_months: int = 2
    trial_expiring_lookahead_days: int = 3
    failed_payment_lookback_days: int = 30

    @classmethod
    def from_settings(cls) -> BillingPolicy:
        defaults = cls()
        return cls(
            currency=getattr(settings, "BILLING_CURRENCY", defaults.currency),
            trial_plan_slug=getattr(
                settings,
                "BILLING_TRIAL_PLAN_SLUG",
                defaults.trial_plan_slug,
            ),
            trial_days=int(
                getattr(settings, "BILLING_TRIAL_DAYS", defaults.trial_days),
            ),
            trial_extension_days=int(
                getattr(
                    settings,
                    "BILLING_TRIAL_EXTENSION_DAYS",
                    defaults.trial_extension_days,
                ),
            ),
            max_trial_extensions=int(
                getattr(
                    settings,
                    "BILLING_MAX_TRIAL_EXTENSIONS",
                    defaults.max_trial_extensions,
                ),
            ),
            trial_grace_days=int(
                getattr(settings, "BILLING_TRIAL_GRACE_DAYS", defaults.trial_grace_days),
            ),
            accompaniment_price=Decimal(
                str(
                    getattr(
                        settings,
                        "BILLING_ACCOMPANIMENT_PRICE",
                        defaults.accompaniment_price,
                    ),
                ),
            ),
            accompaniment_months=int(
                getattr(
                    settings,
                    "BILLING_ACCOMPANIMENT_MONTHS",
                    defaults.accompaniment_months,
                ),
            ),
            trial_expiring_lookahead_days=int(
                getattr(
                    settings,
                    "BILLING_TRIAL_EXPIRING_LOOKAHEAD_DAYS",
                    defaults.trial_expiring_lookahead_days,
                ),
            ),
            failed_payment_lookback_days=int(
                getattr(
                    settings,
                    "BILLING_FAILED_PAYMENT_LOOKBACK_DAYS",
                    defaults.failed_payment_lookback_days,
                ),
            ),
        )
