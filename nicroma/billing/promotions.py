"""
Promotion registry: validating and redeeming discount codes.

Validation and redemption are separate operations. A tenant may validate a
code any number of times while shopping; only redeem() consumes a use, and
it is called when a subscription actually commits to the discount (checkout
completion).

redeem() is one atomic unit:
1. Count the tenant's previous redemptions against max_uses_per_tenant.
2. Conditionally increment the global counter
   (UPDATE ... SET uses_count = uses_count + 1 WHERE uses_count < max_uses).
   Zero rows updated means the cap was reached by someone else first.
3. Insert a PromotionRedemption row. Its unique
   (promotion, tenant, use_number) constraint stops two concurrent
   redemptions by the same tenant from both claiming the same slot.

Any failure raises CapExceeded and the surrounding transaction rolls the
counter back.

Usage:
    result = validate("descuento20", plan_slug="profesional", tenant=tenant)
    if result.accepted:
        snapshot = redeem("DESCUENTO20", tenant=tenant)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING

from django.core.exceptions import ValidationError
from django.db import IntegrityError
from django.db import transaction
from django.db.models import F
from django.utils import timezone

from nicroma.billing.constants import PromotionRejection
from nicroma.billing.exceptions import BillingError
from nicroma.billing.exceptions import CapExceeded
from nicroma.billing.exceptions import PromotionNotFound
from nicroma.billing.exceptions import PromotionRejected
from nicroma.billing.models import Promotion
from nicroma.billing.models import PromotionRedemption
from nicroma.billing.models import normalize_code

if TYPE_CHECKING:
    from datetime import datetime

    from nicroma.billing.models import Subscription
    from nicroma.billing.pricing import DiscountSnapshot
    from nicroma.tenants.models import Tenant

logger = logging.getLogger(__name__)

# Fields that may not change once a promotion exists.
IMMUTABLE_FIELDS = frozenset({"code", "uses_count"})


@dataclass
class PromotionValidation:
    """Outcome of validating a promotion code for a plan and tenant."""

    accepted: bool
    code: str
    reason: str = ""
    discount_kind: str = ""
    discount_value: Decimal | None = None
    duration_cycles: int | None = None
    promotion: Promotion | None = None

    @property
    def message(self) -> str:
        if self.accepted:
            return ""
        return str(PromotionRejection(self.reason).label)


def tenant_use_count(promotion: Promotion, tenant: Tenant) -> int:
    return PromotionRedemption.objects.filter(
        promotion=promotion,
        tenant=tenant,
    ).count()


def validate(
    code: str,
    plan_slug: str,
    tenant: Tenant | None = None,
    now: datetime | None = None,
) -> PromotionValidation:
    """
    Check whether a code can be applied. Read-only.

    Rejection reasons are evaluated in a fixed order so that callers always
    see the most fundamental problem first.
    """
    now = now or timezone.now()
    normalized = normalize_code(code)

    def reject(reason: str) -> PromotionValidation:
        return PromotionValidation(accepted=False, code=normalized, reason=reason)

    promotion = Promotion.objects.filter(code=normalized).first()
    if promotion is None or not promotion.is_active:
        return reject(PromotionRejection.NOT_FOUND)
    if promotion.starts_at and now < promotion.starts_at:
        return reject(PromotionRejection.NOT_FOUND)
    if promotion.expires_at and now > promotion.expires_at:
        return reject(PromotionRejection.EXPIRED)
    if not promotion.applies_to(plan_slug):
        return reject(PromotionRejection.NOT_APPLICABLE)
    if promotion.max_uses is not None and promotion.uses_count >= promotion.max_uses:
        return reject(PromotionRejection.GLOBAL_CAP_REACHED)
    if (
        tenant is not None
        and tenant_use_count(promotion, tenant) >= promotion.max_uses_per_tenant
    ):
        return reject(PromotionRejection.TENANT_CAP_REACHED)

    return PromotionValidation(
        accepted=True,
        code=promotion.code,
        discount_kind=promotion.discount_kind,
        discount_value=promotion.discount_value,
        duration_cycles=promotion.duration_cycles,
        promotion=promotion,
    )


def redeem(
    code: str,
    tenant: Tenant,
    subscription: Subscription | None = None,
    now: datetime | None = None,
) -> DiscountSnapshot:
    """
    Consume one use of a promotion for a tenant.

    Returns the discount terms as a snapshot to be stored on the
    subscription. Raises CapExceeded when either cap is already reached;
    counters are unchanged in that case.
    Raises PromotionRejected when the promotion was deactivated, has not
    started or has expired since it was validated.
    """
    now = now or timezone.now()
    normalized = normalize_code(code)

    with transaction.atomic():
        promotion = Promotion.objects.filter(code=normalized).first()
        if promotion is None:
            raise PromotionNotFound(normalized)
        if not promotion.is_active or (promotion.starts_at and now < promotion.starts_at):
            raise PromotionRejected(
                PromotionRejection.NOT_FOUND,
                f"Promotion '{normalized}' is not available.",
            )
        if promotion.expires_at and now > promotion.expires_at:
            raise PromotionRejected(
                PromotionRejection.EXPIRED,
                f"Promotion '{normalized}' has expired.",
            )

        used = tenant_use_count(promotion, tenant)
        if used >= promotion.max_uses_per_tenant:
            raise CapExceeded(
                f"Promotion '{normalized}' already used by this tenant.",
                reason=PromotionRejection.TENANT_CAP_REACHED,
            )

        counter = Promotion.objects.filter(pk=promotion.pk)
        if promotion.max_uses is not None:
            counter = counter.filter(uses_count__lt=F("max_uses"))
        if not counter.update(uses_count=F("uses_count") + 1, modified=now):
            raise CapExceeded(
                f"Promotion '{normalized}' has reached its usage limit.",
                reason=PromotionRejection.GLOBAL_CAP_REACHED,
            )

        try:
            with transaction.atomic():
                PromotionRedemption.objects.create(
                    promotion=promotion,
                    tenant=tenant,
                    subscription=subscription,
                    use_number=used + 1,
                )
        except IntegrityError:
            # A concurrent redemption for this tenant claimed the same slot.
            raise CapExceeded(
                f"Promotion '{normalized}' already used by this tenant.",
                reason=PromotionRejection.TENANT_CAP_REACHED,
            ) from None

    logger.info(
        "Redeemed promotion %s for tenant %s (use %s)",
        normalized,
        tenant.pk,
        used + 1,
    )
    return promotion.snapshot()


# =============================================================================
# Administration
# =============================================================================


def create_promotion(**fields) -> Promotion:
    """
    Create a promotion after model validation.

    Raises BillingError with code "invalid_promotion" on bad input.
    """
    fields.pop("uses_count", None)
    promotion = Promotion(**fields)
    _full_clean(promotion)
    promotion.save()
    logger.info("Created promotion %s", promotion.code)
    return promotion


def update_promotion(promotion: Promotion, **changes) -> Promotion:
    """Edit a promotion. Existing subscription snapshots are unaffected."""
    forbidden = IMMUTABLE_FIELDS.intersection(changes)
    if forbidden:
        raise BillingError(
            f"Cannot change {', '.join(sorted(forbidden))} on an existing promotion.",
            code="promotion_immutable_field",
        )
    # The counter moves underneath us through redeem(); never write it back.
    promotion.refresh_from_db(fields=["uses_count"])
    for field, value in changes.items():
        setattr(promotion, field, value)
    _full_clean(promotion)
    promotion.save(update_fields=[*changes, "modified"])
    logger.info("Updated promotion %s: %s", promotion.code, sorted(changes))
    return promotion


def deactivate_promotion(promotion: Promotion) -> Promotion:
    """Soft delete. Subscriptions keep their reference and snapshot."""
    if promotion.is_active:
        promotion.is_active = False
        promotion.save(update_fields=["is_active", "modified"])
        logger.info("Deactivated promotion %s", promotion.code)
    return promotion


def _full_clean(promotion: Promotion) -> None:
    try:
        promotion.full_clean()
    except ValidationError as exc:
        raise BillingError(
            "; ".join(
                f"{field}: {' '.join(messages)}"
                for field, messages in exc.message_dict.items()
            ),
            code="invalid_promotion",
        ) from exc
