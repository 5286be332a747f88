"""
Django admin configuration for billing models.

Subscription state is read-only here: status changes must go through the
engine so they are validated and audited. The admin actions on
SubscriptionAdmin call into nicroma.billing.suspension and
nicroma.billing.lifecycle for that reason.
"""

from django.contrib import admin
from django.contrib import messages

from nicroma.billing import lifecycle
from nicroma.billing import promotions
from nicroma.billing import suspension
from nicroma.billing.exceptions import BillingError
from nicroma.billing.models import CheckoutSession
from nicroma.billing.models import Payment
from nicroma.billing.models import Plan
from nicroma.billing.models import PlanChange
from nicroma.billing.models import Promotion
from nicroma.billing.models import PromotionRedemption
from nicroma.billing.models import Subscription
from nicroma.billing.models import SubscriptionEvent


@admin.register(Plan)
class PlanAdmin(admin.ModelAdmin):
    """Admin for the plan catalog."""

    list_display = [
        "slug",
        "name",
        "price_monthly",
        "price_yearly",
        "max_users",
        "max_operations_per_month",
        "is_contact_sales",
        "is_active",
        "sort_rank",
    ]
    list_editable = ["is_active", "sort_rank"]
    ordering = ["sort_rank"]
    search_fields = ["slug", "name"]

    fieldsets = [
        (None, {"fields": ["slug", "name", "description", "features"]}),
        (
            "Pricing",
            {
                "fields": ["price_monthly", "price_yearly", "currency"],
                "description": (
                    "Do not change the price of a plan that has subscribers; "
                    "publish a new plan instead."
                ),
            },
        ),
        ("Limits", {"fields": ["max_users", "max_operations_per_month", "max_clients"]}),
        (
            "Features",
            {
                "fields": [
                    "has_client_portal",
                    "has_carrier_tracking",
                    "carrier_tracking_limit",
                    "has_electronic_invoicing",
                    "has_advanced_reports",
                    "support_tier",
                ],
            },
        ),
        ("Availability", {"fields": ["is_contact_sales", "is_active", "sort_rank"]}),
    ]

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Promotion)
class PromotionAdmin(admin.ModelAdmin):
    list_display = [
        "code",
        "name",
        "discount_kind",
        "discount_value",
        "uses_count",
        "max_uses",
        "expires_at",
        "is_active",
    ]
    list_filter = ["is_active", "discount_kind"]
    search_fields = ["code", "name"]
    readonly_fields = ["uses_count", "created", "modified"]
    actions = ["deactivate"]

    def get_readonly_fields(self, request, obj=None):
        if obj is not None:
            return [*self.readonly_fields, "code"]
        return self.readonly_fields

    def has_delete_permission(self, request, obj=None):
        return False

    @admin.action(description="Deactivate selected promotions")
    def deactivate(self, request, queryset):
        for promotion in queryset:
            promotions.deactivate_promotion(promotion)
        self.message_user(request, f"Deactivated {queryset.count()} promotion(s).")


@admin.register(PromotionRedemption)
class PromotionRedemptionAdmin(admin.ModelAdmin):
    list_display = ["promotion", "tenant", "use_number", "subscription", "created"]
    search_fields = ["promotion__code", "tenant__name"]
    raw_id_fields = ["tenant", "subscription"]
    readonly_fields = ["created", "modified"]


class SubscriptionEventInline(admin.TabularInline):
    model = SubscriptionEvent
    extra = 0
    can_delete = False
    fields = ["created", "kind", "from_status", "to_status", "detail"]
    readonly_fields = fields

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Subscription)
class SubscriptionAdmin(admin.ModelAdmin):
    """Admin for tenant subscriptions."""

    list_display = [
        "tenant",
        "plan",
        "status",
        "billing_cycle",
        "amount",
        "price_override",
        "trial_ends_at",
        "current_period_end",
        "cancel_at_period_end",
    ]
    list_filter = ["status", "plan", "billing_cycle", "price_override"]
    search_fields = ["tenant__name", "tenant__slug"]
    raw_id_fields = ["tenant"]
    inlines = [SubscriptionEventInline]
    actions = ["suspend", "reactivate", "force_cancel"]

    fieldsets = [
        (None, {"fields": ["tenant", "plan", "billing_cycle", "status"]}),
        ("Price", {"fields": ["amount", "currency", "price_override"]}),
        (
            "Trial",
            {
                "fields": [
                    "trial_started_at",
                    "trial_ends_at",
                    "trial_extensions_used",
                    "trial_max_extensions",
                ],
            },
        ),
        (
            "Promotion",
            {
                "fields": [
                    "promotion",
                    "discount_kind",
                    "discount_value",
                    "discount_cycles_remaining",
                ],
            },
        ),
        (
            "Accompaniment",
            {
                "fields": [
                    "accompaniment_price",
                    "accompaniment_total_months",
                    "accompaniment_months_used",
                    "accompaniment_activated_at",
                    "accompaniment_counted_through",
                ],
                "classes": ["collapse"],
            },
        ),
        (
            "Billing Period",
            {"fields": ["current_period_start", "current_period_end"]},
        ),
        (
            "Cancellation",
            {
                "fields": [
                    "cancel_at_period_end",
                    "cancel_reason",
                    "cancel_requested_at",
                    "cancelled_at",
                ],
            },
        ),
        (
            "Pending change",
            {"fields": ["pending_plan", "pending_cycle", "pending_effective_at"]},
        ),
        ("Suspension", {"fields": ["suspended_at", "suspension_reason"]}),
        ("Notes", {"fields": ["internal_notes"]}),
        ("Timestamps", {"fields": ["created", "modified"]}),
    ]

    def get_readonly_fields(self, request, obj=None):
        editable = {"internal_notes"}
        return [
            field.name
            for field in self.model._meta.fields
            if field.name not in editable and field.name != "id"
        ]

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False

    def _apply(self, request, queryset, label, operation):
        done = 0
        for subscription in queryset.select_related("tenant"):
            try:
                operation(subscription)
            except BillingError as exc:
                self.message_user(
                    request,
                    f"{subscription.tenant}: {exc.detail}",
                    level=messages.WARNING,
                )
            else:
                done += 1
        if done:
            self.message_user(request, f"{label} {done} subscription(s).")

    @admin.action(description="Suspend selected subscriptions")
    def suspend(self, request, queryset):
        self._apply(
            request,
            queryset,
            "Suspended",
            lambda sub: suspension.suspend(
                sub.tenant,
                "Suspended from admin",
                actor=request.user.get_username(),
            ),
        )

    @admin.action(description="Reactivate selected subscriptions")
    def reactivate(self, request, queryset):
        self._apply(
            request,
            queryset,
            "Reactivated",
            lambda sub: suspension.reactivate(
                sub.tenant,
                actor=request.user.get_username(),
            ),
        )

    @admin.action(description="Cancel selected subscriptions now")
    def force_cancel(self, request, queryset):
        self._apply(
            request,
            queryset,
            "Cancelled",
            lambda sub: lifecycle.force_cancel(sub.tenant, reason="Cancelled from admin"),
        )


@admin.register(PlanChange)
class PlanChangeAdmin(admin.ModelAdmin):
    """Admin for plan change audit log."""

    list_display = [
        "subscription",
        "old_plan",
        "new_plan",
        "change_type",
        "effective_immediately",
        "scheduled_at",
        "created",
    ]
    list_filter = ["change_type", "effective_immediately"]
    search_fields = ["subscription__tenant__name"]
    readonly_fields = ["created", "modified"]


@admin.register(CheckoutSession)
class CheckoutSessionAdmin(admin.ModelAdmin):
    list_display = ["tenant", "plan", "billing_cycle", "kind", "status", "amount", "created"]
    list_filter = ["status", "kind"]
    search_fields = ["tenant__name", "gateway_reference"]
    raw_id_fields = ["tenant", "subscription"]
    readonly_fields = ["created", "modified"]


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ["tenant", "status", "amount", "currency", "correlation_id", "created"]
    list_filter = ["status"]
    search_fields = ["tenant__name", "correlation_id"]
    raw_id_fields = ["tenant", "subscription"]
    readonly_fields = ["created", "modified"]
