import decimal

import django.core.validators
import django.db.models.deletion
import django.utils.timezone
import model_utils.fields
from django.db import migrations
from django.db import models

BILLING_CYCLES = [("monthly", "Monthly"), ("yearly", "Yearly")]
DISCOUNT_KINDS = [("percentage", "Percentage"), ("fixed", "Fixed amount")]
SUBSCRIPTION_STATUSES = [
    ("trialing", "Trial"),
    ("active", "Active"),
    ("past_due", "Past Due"),
    ("suspended", "Suspended"),
    ("cancelled", "Cancelled"),
]
EVENT_KINDS = [
    ("trial_started", "Trial started"),
    ("trial_extended", "Trial extended"),
    ("trial_lapsed", "Trial lapsed"),
    ("activated", "Activated"),
    ("renewed", "Renewed"),
    ("payment_failed", "Payment failed"),
    ("payment_recovered", "Payment recovered"),
    ("cancel_requested", "Cancellation requested"),
    ("cancel_undone", "Cancellation undone"),
    ("cancelled", "Cancelled"),
    ("suspended", "Suspended"),
    ("reactivated", "Reactivated"),
    ("plan_changed", "Plan changed"),
    ("plan_change_scheduled", "Plan change scheduled"),
    ("plan_change_cancelled", "Scheduled change cancelled"),
    ("accompaniment_offered", "Accompaniment checkout opened"),
    ("accompaniment_activated", "Accompaniment activated"),
    ("accompaniment_month_used", "Accompaniment month used"),
    ("accompaniment_lapsed", "Accompaniment lapsed"),
    ("accompaniment_abandoned", "Accompaniment abandoned"),
    ("discount_expired", "Promotion discount expired"),
]


def id_field():
    return models.BigAutoField(
        auto_created=True,
        primary_key=True,
        serialize=False,
        verbose_name="ID",
    )


def timestamp_fields():
    return [
        (
            "created",
            model_utils.fields.AutoCreatedField(
                default=django.utils.timezone.now,
                editable=False,
                verbose_name="created",
            ),
        ),
        (
            "modified",
            model_utils.fields.AutoLastModifiedField(
                default=django.utils.timezone.now,
                editable=False,
                verbose_name="modified",
            ),
        ),
    ]


def money(**kwargs):
    return models.DecimalField(decimal_places=2, max_digits=12, **kwargs)


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("tenants", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="Plan",
            fields=[
                (
                    "slug",
                    models.SlugField(
                        help_text="Unique plan identifier, also used as PK.",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                ("name", models.CharField(max_length=100)),
                ("description", models.TextField(blank=True)),
                ("price_monthly", money(default=decimal.Decimal("0.00"))),
                ("price_yearly", money(default=decimal.Decimal("0.00"))),
                ("currency", models.CharField(default="ARS", max_length=3)),
                ("max_users", models.PositiveIntegerField(blank=True, null=True)),
                (
                    "max_operations_per_month",
                    models.PositiveIntegerField(blank=True, null=True),
                ),
                ("max_clients", models.PositiveIntegerField(blank=True, null=True)),
                ("has_client_portal", models.BooleanField(default=False)),
                ("has_carrier_tracking", models.BooleanField(default=False)),
                (
                    "carrier_tracking_limit",
                    models.PositiveIntegerField(
                        blank=True,
                        help_text="Number of carriers that can be tracked. Null = unlimited.",
                        null=True,
                    ),
                ),
                ("has_electronic_invoicing", models.BooleanField(default=False)),
                ("has_advanced_reports", models.BooleanField(default=False)),
                (
                    "support_tier",
                    models.CharField(
                        choices=[
                            ("email_low", "Email (low priority)"),
                            ("email", "Email"),
                            ("email_chat", "Email and chat"),
                            ("priority", "Priority"),
                            ("dedicated", "Dedicated"),
                        ],
                        default="email",
                        max_length=20,
                    ),
                ),
                (
                    "is_contact_sales",
                    models.BooleanField(
                        default=False,
                        help_text="No self-serve price; sold through the sales team.",
                    ),
                ),
                ("is_active", models.BooleanField(default=True)),
                (
                    "sort_rank",
                    models.IntegerField(
                        default=0,
                        help_text="Order in which plans appear on the pricing page.",
                    ),
                ),
                (
                    "features",
                    models.JSONField(
                        blank=True,
                        default=list,
                        help_text="Marketing bullet points shown on the pricing page.",
                    ),
                ),
            ],
            options={
                "ordering": ["sort_rank"],
            },
        ),
        migrations.CreateModel(
            name="Promotion",
            fields=[
                ("id", id_field()),
                *timestamp_fields(),
                (
                    "code",
                    models.CharField(
                        help_text="Stored upper-case. Immutable once created.",
                        max_length=50,
                        unique=True,
                    ),
                ),
                ("name", models.CharField(max_length=100)),
                ("description", models.TextField(blank=True)),
                (
                    "discount_kind",
                    models.CharField(choices=DISCOUNT_KINDS, max_length=20),
                ),
                ("discount_value", money()),
                (
                    "eligible_plans",
                    models.JSONField(
                        blank=True,
                        default=list,
                        help_text="Plan slugs this code applies to. Empty = all plans.",
                    ),
                ),
                (
                    "max_uses",
                    models.PositiveIntegerField(
                        blank=True,
                        help_text="Total redemptions across all tenants. Null = unlimited.",
                        null=True,
                    ),
                ),
                (
                    "max_uses_per_tenant",
                    models.PositiveIntegerField(
                        default=1,
                        validators=[django.core.validators.MinValueValidator(1)],
                    ),
                ),
                ("uses_count", models.PositiveIntegerField(default=0, editable=False)),
                (
                    "duration_cycles",
                    models.PositiveIntegerField(
                        blank=True,
                        help_text="Billing cycles the discount lasts. Null = permanent.",
                        null=True,
                    ),
                ),
                ("starts_at", models.DateTimeField(blank=True, null=True)),
                ("expires_at", models.DateTimeField(blank=True, null=True)),
                ("is_active", models.BooleanField(default=True)),
            ],
            options={
                "ordering": ["-created"],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(
                            ("max_uses__isnull", True),
                            ("uses_count__lte", models.F("max_uses")),
                            _connector="OR",
                        ),
                        name="promotion_uses_within_cap",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Subscription",
            fields=[
                ("id", id_field()),
                *timestamp_fields(),
                (
                    "billing_cycle",
                    models.CharField(
                        choices=BILLING_CYCLES,
                        default="monthly",
                        max_length=10,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=SUBSCRIPTION_STATUSES,
                        default="trialing",
                        max_length=20,
                    ),
                ),
                (
                    "amount",
                    money(
                        default=decimal.Decimal("0.00"),
                        help_text="Recurring amount committed for the current period.",
                    ),
                ),
                ("currency", models.CharField(default="ARS", max_length=3)),
                (
                    "price_override",
                    models.CharField(
                        choices=[
                            ("standard", "Standard plan price"),
                            ("trial", "Trial (no charge)"),
                            ("accompaniment", "Accompaniment offer"),
                        ],
                        default="standard",
                        max_length=20,
                    ),
                ),
                ("trial_started_at", models.DateTimeField(blank=True, null=True)),
                ("trial_ends_at", models.DateTimeField(blank=True, null=True)),
                ("trial_extensions_used", models.PositiveIntegerField(default=0)),
                ("trial_max_extensions", models.PositiveIntegerField(default=2)),
                (
                    "discount_kind",
                    models.CharField(blank=True, choices=DISCOUNT_KINDS, max_length=20),
                ),
                ("discount_value", money(blank=True, null=True)),
                (
                    "discount_cycles_remaining",
                    models.PositiveIntegerField(
                        blank=True,
                        help_text="Billing cycles left on the discount. Null = permanent.",
                        null=True,
                    ),
                ),
                ("accompaniment_price", money(blank=True, null=True)),
                ("accompaniment_total_months", models.PositiveIntegerField(default=0)),
                ("accompaniment_months_used", models.PositiveIntegerField(default=0)),
                (
                    "accompaniment_activated_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="Set once; the offer can only ever be taken one time.",
                        null=True,
                    ),
                ),
                (
                    "accompaniment_counted_through",
                    models.DateTimeField(
                        blank=True,
                        help_text="Accompaniment months have been counted up to this instant.",
                        null=True,
                    ),
                ),
                ("current_period_start", models.DateTimeField(blank=True, null=True)),
                ("current_period_end", models.DateTimeField(blank=True, null=True)),
                ("cancel_at_period_end", models.BooleanField(default=False)),
                ("cancel_reason", models.TextField(blank=True)),
                ("cancel_requested_at", models.DateTimeField(blank=True, null=True)),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                (
                    "pending_cycle",
                    models.CharField(blank=True, choices=BILLING_CYCLES, max_length=10),
                ),
                ("pending_effective_at", models.DateTimeField(blank=True, null=True)),
                ("suspended_at", models.DateTimeField(blank=True, null=True)),
                ("suspension_reason", models.TextField(blank=True)),
                ("internal_notes", models.TextField(blank=True)),
                (
                    "pending_plan",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="pending_subscriptions",
                        to="billing.plan",
                    ),
                ),
                (
                    "plan",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="subscriptions",
                        to="billing.plan",
                    ),
                ),
                (
                    "promotion",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="subscriptions",
                        to="billing.promotion",
                    ),
                ),
                (
                    "tenant",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="subscriptions",
                        to="tenants.tenant",
                    ),
                ),
            ],
            options={
                "ordering": ["-created"],
                "indexes": [
                    models.Index(fields=["status"], name="billing_sub_status_idx"),
                    models.Index(fields=["trial_ends_at"], name="billing_sub_trial_end_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("status", "cancelled"), _negated=True),
                        fields=("tenant",),
                        name="one_open_subscription_per_tenant",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            (
                                "status__in",
                                ["trialing", "active", "past_due", "suspended", "cancelled"],
                            ),
                        ),
                        name="subscription_status_valid",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            ("trial_extensions_used__lte", models.F("trial_max_extensions")),
                        ),
                        name="trial_extensions_within_cap",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PromotionRedemption",
            fields=[
                ("id", id_field()),
                *timestamp_fields(),
                ("use_number", models.PositiveIntegerField()),
                (
                    "promotion",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="redemptions",
                        to="billing.promotion",
                    ),
                ),
                (
                    "subscription",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="promotion_redemptions",
                        to="billing.subscription",
                    ),
                ),
                (
                    "tenant",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="promotion_redemptions",
                        to="tenants.tenant",
                    ),
                ),
            ],
            options={
                "constraints": [
                    models.UniqueConstraint(
                        fields=("promotion", "tenant", "use_number"),
                        name="uniq_promotion_tenant_use",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="SubscriptionEvent",
            fields=[
                ("id", id_field()),
                *timestamp_fields(),
                ("kind", models.CharField(choices=EVENT_KINDS, max_length=40)),
                ("from_status", models.CharField(blank=True, max_length=20)),
                ("to_status", models.CharField(blank=True, max_length=20)),
                ("detail", models.JSONField(blank=True, default=dict)),
                (
                    "subscription",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="events",
                        to="billing.subscription",
                    ),
                ),
            ],
            options={
                "ordering": ["created", "id"],
            },
        ),
        migrations.CreateModel(
            name="PlanChange",
            fields=[
                ("id", id_field()),
                *timestamp_fields(),
                ("old_cycle", models.CharField(choices=BILLING_CYCLES, max_length=10)),
                ("new_cycle", models.CharField(choices=BILLING_CYCLES, max_length=10)),
                (
                    "change_type",
                    models.CharField(
                        help_text="Type of change: upgrade, downgrade, or lateral.",
                        max_length=20,
                    ),
                ),
                ("effective_immediately", models.BooleanField(default=True)),
                (
                    "scheduled_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When scheduled change will take effect.",
                        null=True,
                    ),
                ),
                ("old_amount", money(blank=True, null=True)),
                ("new_amount", money(blank=True, null=True)),
                ("notes", models.TextField(blank=True)),
                (
                    "new_plan",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="changes_to",
                        to="billing.plan",
                    ),
                ),
                (
                    "old_plan",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="changes_from",
                        to="billing.plan",
                    ),
                ),
                (
                    "subscription",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="plan_changes",
                        to="billing.subscription",
                    ),
                ),
            ],
            options={
                "ordering": ["-created"],
            },
        ),
        migrations.CreateModel(
            name="CheckoutSession",
            fields=[
                ("id", id_field()),
                *timestamp_fields(),
                ("billing_cycle", models.CharField(choices=BILLING_CYCLES, max_length=10)),
                (
                    "kind",
                    models.CharField(
                        choices=[
                            ("standard", "Plan purchase"),
                            ("accompaniment", "Accompaniment offer"),
                        ],
                        default="standard",
                        max_length=20,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("open", "Open"),
                            ("completed", "Completed"),
                            ("abandoned", "Abandoned"),
                        ],
                        default="open",
                        max_length=20,
                    ),
                ),
                ("amount", money()),
                ("currency", models.CharField(default="ARS", max_length=3)),
                ("promotion_code", models.CharField(blank=True, max_length=50)),
                (
                    "gateway_reference",
                    models.CharField(
                        blank=True,
                        db_index=True,
                        help_text="Identifier of the checkout at the payment provider.",
                        max_length=255,
                    ),
                ),
                ("checkout_url", models.URLField(blank=True, max_length=1000)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "plan",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="checkout_sessions",
                        to="billing.plan",
                    ),
                ),
                (
                    "subscription",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="checkout_sessions",
                        to="billing.subscription",
                    ),
                ),
                (
                    "tenant",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="checkout_sessions",
                        to="tenants.tenant",
                    ),
                ),
            ],
            options={
                "ordering": ["-created"],
            },
        ),
        migrations.CreateModel(
            name="Payment",
            fields=[
                ("id", id_field()),
                *timestamp_fields(),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("completed", "Completed"),
                            ("failed", "Failed"),
                            ("pending", "Pending"),
                            ("refunded", "Refunded"),
                        ],
                        max_length=20,
                    ),
                ),
                ("amount", money(default=decimal.Decimal("0.00"))),
                ("currency", models.CharField(default="ARS", max_length=3)),
                ("reason", models.TextField(blank=True)),
                ("period_start", models.DateTimeField(blank=True, null=True)),
                ("period_end", models.DateTimeField(blank=True, null=True)),
                ("correlation_id", models.CharField(max_length=255, unique=True)),
                (
                    "subscription",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="payments",
                        to="billing.subscription",
                    ),
                ),
                (
                    "tenant",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="payments",
                        to="tenants.tenant",
                    ),
                ),
            ],
            options={
                "ordering": ["-created"],
                "indexes": [
                    models.Index(
                        fields=["status", "created"],
                        name="billing_pay_status_created_idx",
                    ),
                ],
            },
        ),
    ]
