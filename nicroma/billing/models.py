"""
Billing models for the Nicroma subscription lifecycle engine.

Key design decisions:
- Plan is a catalog row keyed by slug. Plans referenced by subscriptions are
  protected from deletion; retiring a plan means deactivating it.
- Promotion holds the live terms of a discount code; Subscription keeps a
  snapshot of those terms so later edits never change an existing price.
- Subscription rows are never deleted. Cancelled subscriptions stay for
  history and metrics; a tenant has at most one non-cancelled subscription.
- Every committed status change appends a SubscriptionEvent row.

Relationship: Tenant ──1:N── Subscription ──N:1── Plan
                                   └──N:1── Promotion (snapshot source)
"""

from __future__ import annotations

from decimal import Decimal

from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models
from django.utils.translation import gettext_lazy as _
from model_utils.models import TimeStampedModel

from nicroma.billing.constants import BillingCycle
from nicroma.billing.constants import CheckoutKind
from nicroma.billing.constants import CheckoutStatus
from nicroma.billing.constants import DiscountKind
from nicroma.billing.constants import PaymentStatus
from nicroma.billing.constants import PriceOverride
from nicroma.billing.constants import SubscriptionEventKind
from nicroma.billing.constants import SubscriptionStatus
from nicroma.billing.constants import SupportTier
from nicroma.billing.pricing import ZERO
from nicroma.billing.pricing import DiscountSnapshot
from nicroma.billing.pricing import monthly_equivalent
from nicroma.billing.pricing import to_money

MONEY = {"max_digits": 12, "decimal_places": 2}


class Plan(models.Model):
    """
    Commercial plan with its limits and feature flags.

    Null limits mean "unbounded".

    Usage:
        plan = Plan.objects.get(slug="starter")
        plan.price_for_cycle(BillingCycle.YEARLY)
    """

    slug = models.SlugField(
        max_length=50,
        primary_key=True,
        help_text="Unique plan identifier, also used as PK.",
    )
    name = models.CharField(max_length=100)
    description = models.TextField(blank=True)

    price_monthly = models.DecimalField(default=ZERO, **MONEY)
    price_yearly = models.DecimalField(default=ZERO, **MONEY)
    currency = models.CharField(max_length=3, default="ARS")

    # Limits (null = unlimited)
    max_users = models.PositiveIntegerField(null=True, blank=True)
    max_operations_per_month = models.PositiveIntegerField(null=True, blank=True)
    max_clients = models.PositiveIntegerField(null=True, blank=True)

    # Feature flags
    has_client_portal = models.BooleanField(default=False)
    has_carrier_tracking = models.BooleanField(default=False)
    carrier_tracking_limit = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Number of carriers that can be tracked. Null = unlimited.",
    )
    has_electronic_invoicing = models.BooleanField(default=False)
    has_advanced_reports = models.BooleanField(default=False)
    support_tier = models.CharField(
        max_length=20,
        choices=SupportTier.choices,
        default=SupportTier.EMAIL,
    )

    is_contact_sales = models.BooleanField(
        default=False,
        help_text="No self-serve price; sold through the sales team.",
    )
    is_active = models.BooleanField(default=True)
    sort_rank = models.IntegerField(
        default=0,
        help_text="Order in which plans appear on the pricing page.",
    )
    features = models.JSONField(
        default=list,
        blank=True,
        help_text="Marketing bullet points shown on the pricing page.",
    )

    class Meta:
        ordering = ["sort_rank"]

    def __str__(self) -> str:
        return self.name

    @property
    def is_purchasable(self) -> bool:
        return self.is_active and not self.is_contact_sales

    def price_for_cycle(self, cycle: str) -> Decimal:
        if cycle == BillingCycle.YEARLY:
            return self.price_yearly
        return self.price_monthly


class Promotion(TimeStampedModel):
    """
    A discount code.

    ``uses_count`` is only ever changed through a conditional UPDATE in
    nicroma.billing.promotions.redeem; never assign it directly.
    """

    code = models.CharField(
        max_length=50,
        unique=True,
        help_text="Stored upper-case. Immutable once created.",
    )
    name = models.CharField(max_length=100)
    description = models.TextField(blank=True)

    discount_kind = models.CharField(
        max_length=20,
        choices=DiscountKind.choices,
    )
    discount_value = models.DecimalField(**MONEY)
    eligible_plans = models.JSONField(
        default=list,
        blank=True,
        help_text="Plan slugs this code applies to. Empty = all plans.",
    )

    max_uses = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Total redemptions across all tenants. Null = unlimited.",
    )
    max_uses_per_tenant = models.PositiveIntegerField(
        default=1,
        validators=[MinValueValidator(1)],
    )
    uses_count = models.PositiveIntegerField(default=0, editable=False)
    duration_cycles = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Billing cycles the discount lasts. Null = permanent.",
    )

    starts_at = models.DateTimeField(null=True, blank=True)
    expires_at = models.DateTimeField(null=True, blank=True)
    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ["-created"]
        constraints = [
            models.CheckConstraint(
                condition=(
                    models.Q(max_uses__isnull=True)
                    | models.Q(uses_count__lte=models.F("max_uses"))
                ),
                name="promotion_uses_within_cap",
            ),
        ]

    def __str__(self) -> str:
        return self.code

    def save(self, *args, **kwargs):
        self.code = normalize_code(self.code)
        super().save(*args, **kwargs)

    def clean(self):
        super().clean()
        self.code = normalize_code(self.code)
        if self.discount_value is None:
            return
        if self.discount_kind == DiscountKind.PERCENTAGE and not (
            Decimal(0) <= self.discount_value <= Decimal(100)
        ):
            raise ValidationError(
                {"discount_value": _("Percentage must be between 0 and 100.")},
            )
        if self.discount_kind == DiscountKind.FIXED and self.discount_value < 0:
            raise ValidationError(
                {"discount_value": _("Fixed discount cannot be negative.")},
            )

    def applies_to(self, plan_slug: str) -> bool:
        return not self.eligible_plans or plan_slug in self.eligible_plans

    def snapshot(self) -> DiscountSnapshot:
        return DiscountSnapshot(
            kind=self.discount_kind,
            value=self.discount_value,
            cycles_remaining=self.duration_cycles,
            promotion_id=self.pk,
            code=self.code,
        )


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


class PromotionRedemption(TimeStampedModel):
    """
    One consumed use of a promotion by a tenant.

    The unique (promotion, tenant, use_number) constraint is what makes two
    concurrent redemptions by the same tenant unable to both claim the same
    per-tenant slot.
    """

    promotion = models.ForeignKey(
        Promotion,
        on_delete=models.PROTECT,
        related_name="redemptions",
    )
    tenant = models.ForeignKey(
        "tenants.Tenant",
        on_delete=models.CASCADE,
        related_name="promotion_redemptions",
    )
    subscription = models.ForeignKey(
        "Subscription",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="promotion_redemptions",
    )
    use_number = models.PositiveIntegerField()

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["promotion", "tenant", "use_number"],
                name="uniq_promotion_tenant_use",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.promotion.code} #{self.use_number} ({self.tenant})"


class Subscription(TimeStampedModel):
    """
    The billing state of one tenant.

    Price composition:
        base = plan price | 0 (trial) | accompaniment_price
        amount = promotion snapshot applied to base (when present)

    Usage:
        subscription = current_subscription(tenant)
        subscription.compute_amount()
        subscription.monthly_amount
    """

    tenant = models.ForeignKey(
        "tenants.Tenant",
        on_delete=models.CASCADE,
        related_name="subscriptions",
    )
    plan = models.ForeignKey(
        Plan,
        on_delete=models.PROTECT,  # Never delete a plan with subscriptions
        related_name="subscriptions",
    )
    billing_cycle = models.CharField(
        max_length=10,
        choices=BillingCycle.choices,
        default=BillingCycle.MONTHLY,
    )
    status = models.CharField(
        max_length=20,
        choices=SubscriptionStatus.choices,
        default=SubscriptionStatus.TRIALING,
    )
    amount = models.DecimalField(
        default=ZERO,
        help_text="Recurring amount committed for the current period.",
        **MONEY,
    )
    currency = models.CharField(max_length=3, default="ARS")
    price_override = models.CharField(
        max_length=20,
        choices=PriceOverride.choices,
        default=PriceOverride.STANDARD,
    )

    # Trial tracking
    trial_started_at = models.DateTimeField(null=True, blank=True)
    trial_ends_at = models.DateTimeField(null=True, blank=True)
    trial_extensions_used = models.PositiveIntegerField(default=0)
    trial_max_extensions = models.PositiveIntegerField(default=2)

    # Promotion snapshot (copied at redemption time)
    promotion = models.ForeignKey(
        Promotion,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="subscriptions",
    )
    discount_kind = models.CharField(
        max_length=20,
        choices=DiscountKind.choices,
        blank=True,
    )
    discount_value = models.DecimalField(null=True, blank=True, **MONEY)
    discount_cycles_remaining = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Billing cycles left on the discount. Null = permanent.",
    )

    # Accompaniment offer
    accompaniment_price = models.DecimalField(null=True, blank=True, **MONEY)
    accompaniment_total_months = models.PositiveIntegerField(default=0)
    accompaniment_months_used = models.PositiveIntegerField(default=0)
    accompaniment_activated_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Set once; the offer can only ever be taken one time.",
    )
    accompaniment_counted_through = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Accompaniment months have been counted up to this instant.",
    )

    # Billing period tracking
    current_period_start = models.DateTimeField(null=True, blank=True)
    current_period_end = models.DateTimeField(null=True, blank=True)

    # Cancellation
    cancel_at_period_end = models.BooleanField(default=False)
    cancel_reason = models.TextField(blank=True)
    cancel_requested_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    # Pending plan change (at most one; last write wins)
    pending_plan = models.ForeignKey(
        Plan,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="pending_subscriptions",
    )
    pending_cycle = models.CharField(
        max_length=10,
        choices=BillingCycle.choices,
        blank=True,
    )
    pending_effective_at = models.DateTimeField(null=True, blank=True)

    # Administrative suspension
    suspended_at = models.DateTimeField(null=True, blank=True)
    suspension_reason = models.TextField(blank=True)

    internal_notes = models.TextField(blank=True)

    class Meta:
        ordering = ["-created"]
        indexes = [
            models.Index(fields=["status"], name="billing_sub_status_idx"),
            models.Index(fields=["trial_ends_at"], name="billing_sub_trial_end_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["tenant"],
                condition=~models.Q(status=SubscriptionStatus.CANCELLED),
                name="one_open_subscription_per_tenant",
            ),
            models.CheckConstraint(
                condition=models.Q(status__in=SubscriptionStatus.values),
                name="subscription_status_valid",
            ),
            models.CheckConstraint(
                condition=models.Q(
                    trial_extensions_used__lte=models.F("trial_max_extensions"),
                ),
                name="trial_extensions_within_cap",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.tenant} - {self.plan.name} ({self.status})"

    @property
    def is_cancelled(self) -> bool:
        return self.status == SubscriptionStatus.CANCELLED

    @property
    def has_pending_change(self) -> bool:
        return self.pending_plan_id is not None

    @property
    def accompaniment_active(self) -> bool:
        return self.price_override == PriceOverride.ACCOMPANIMENT

    @property
    def accompaniment_months_remaining(self) -> int:
        if not self.accompaniment_active:
            return 0
        return max(self.accompaniment_total_months - self.accompaniment_months_used, 0)

    @property
    def discount(self) -> DiscountSnapshot | None:
        """The frozen promotion terms, or None when no discount applies."""
        if not self.discount_kind or self.discount_value is None:
            return None
        return DiscountSnapshot(
            kind=self.discount_kind,
            value=self.discount_value,
            cycles_remaining=self.discount_cycles_remaining,
            promotion_id=self.promotion_id,
            code=self.promotion.code if self.promotion_id else "",
        )

    def set_discount(self, snapshot: DiscountSnapshot | None) -> None:
        if snapshot is None:
            self.promotion = None
            self.discount_kind = ""
            self.discount_value = None
            self.discount_cycles_remaining = None
            return
        self.promotion_id = snapshot.promotion_id
        self.discount_kind = snapshot.kind
        self.discount_value = snapshot.value
        self.discount_cycles_remaining = snapshot.cycles_remaining

    def base_price(self) -> Decimal:
        if self.price_override == PriceOverride.TRIAL:
            return ZERO
        if self.price_override == PriceOverride.ACCOMPANIMENT:
            return to_money(self.accompaniment_price or ZERO)
        return to_money(self.plan.price_for_cycle(self.billing_cycle))

    def compute_amount(self) -> Decimal:
        base = self.base_price()
        snapshot = self.discount
        if snapshot is None:
            return base
        return snapshot.apply(base)

    @property
    def monthly_amount(self) -> Decimal:
        return monthly_equivalent(self.amount, self.billing_cycle)


class SubscriptionEvent(TimeStampedModel):
    """Append-only audit log of committed subscription transitions."""

    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.CASCADE,
        related_name="events",
    )
    kind = models.CharField(max_length=40, choices=SubscriptionEventKind.choices)
    from_status = models.CharField(max_length=20, blank=True)
    to_status = models.CharField(max_length=20, blank=True)
    detail = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ["created", "id"]

    def __str__(self) -> str:
        return f"{self.subscription_id}: {self.kind}"


class PlanChange(TimeStampedModel):
    """
    Audit log for plan changes.

    Records all upgrades, downgrades, and plan transitions for:
    - Billing reconciliation
    - Customer support history
    - Analytics on plan movement
    """

    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.CASCADE,
        related_name="plan_changes",
    )
    old_plan = models.ForeignKey(
        Plan,
        on_delete=models.PROTECT,
        related_name="changes_from",
    )
    new_plan = models.ForeignKey(
        Plan,
        on_delete=models.PROTECT,
        related_name="changes_to",
    )
    old_cycle = models.CharField(max_length=10, choices=BillingCycle.choices)
    new_cycle = models.CharField(max_length=10, choices=BillingCycle.choices)
    change_type = models.CharField(
        max_length=20,
        help_text="Type of change: upgrade, downgrade, or lateral.",
    )
    effective_immediately = models.BooleanField(default=True)
    scheduled_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When scheduled change will take effect.",
    )
    old_amount = models.DecimalField(null=True, blank=True, **MONEY)
    new_amount = models.DecimalField(null=True, blank=True, **MONEY)
    notes = models.TextField(blank=True)

    class Meta:
        ordering = ["-created"]

    def __str__(self) -> str:
        return (
            f"{self.subscription.tenant}: "
            f"{self.old_plan.name} → {self.new_plan.name}"
        )


class CheckoutSession(TimeStampedModel):
    """
    Provisional purchase intent, opened before the first charge.

    Nothing on the Subscription changes until the payment collaborator
    reports a successful charge for this checkout.
    """

    tenant = models.ForeignKey(
        "tenants.Tenant",
        on_delete=models.CASCADE,
        related_name="checkout_sessions",
    )
    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="checkout_sessions",
    )
    plan = models.ForeignKey(
        Plan,
        on_delete=models.PROTECT,
        related_name="checkout_sessions",
    )
    billing_cycle = models.CharField(max_length=10, choices=BillingCycle.choices)
    kind = models.CharField(
        max_length=20,
        choices=CheckoutKind.choices,
        default=CheckoutKind.STANDARD,
    )
    status = models.CharField(
        max_length=20,
        choices=CheckoutStatus.choices,
        default=CheckoutStatus.OPEN,
    )
    amount = models.DecimalField(**MONEY)
    currency = models.CharField(max_length=3, default="ARS")
    promotion_code = models.CharField(max_length=50, blank=True)
    gateway_reference = models.CharField(
        max_length=255,
        blank=True,
        db_index=True,
        help_text="Identifier of the checkout at the payment provider.",
    )
    checkout_url = models.URLField(max_length=1000, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created"]

    def __str__(self) -> str:
        return f"{self.tenant}: {self.plan.name} ({self.status})"


class Payment(TimeStampedModel):
    """
    Charge outcome reported by the payment collaborator.

    ``correlation_id`` is unique: a second delivery of the same event hits
    the constraint and is ignored.
    """

    tenant = models.ForeignKey(
        "tenants.Tenant",
        on_delete=models.CASCADE,
        related_name="payments",
    )
    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="payments",
    )
    status = models.CharField(max_length=20, choices=PaymentStatus.choices)
    amount = models.DecimalField(default=ZERO, **MONEY)
    currency = models.CharField(max_length=3, default="ARS")
    reason = models.TextField(blank=True)
    period_start = models.DateTimeField(null=True, blank=True)
    period_end = models.DateTimeField(null=True, blank=True)
    correlation_id = models.CharField(max_length=255, unique=True)

    class Meta:
        ordering = ["-created"]
        indexes = [
            models.Index(
                fields=["status", "created"],
                name="billing_pay_status_created_idx",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.tenant}: {self.amount} {self.currency} ({self.status})"
