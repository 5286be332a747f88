from rest_framework import serializers

from nicroma.billing.constants import BillingCycle
from nicroma.billing.models import CheckoutSession
from nicroma.billing.models import Payment
from nicroma.billing.models import Plan
from nicroma.billing.models import Promotion
from nicroma.billing.models import Subscription
from nicroma.billing.models import SubscriptionEvent
from nicroma.billing.models import normalize_code


class PlanSerializer(serializers.ModelSerializer[Plan]):
    is_purchasable = serializers.BooleanField(read_only=True)

    class Meta:
        model = Plan
        fields = [
            "slug",
            "name",
            "description",
            "price_monthly",
            "price_yearly",
            "currency",
            "max_users",
            "max_operations_per_month",
            "max_clients",
            "has_client_portal",
            "has_carrier_tracking",
            "carrier_tracking_limit",
            "has_electronic_invoicing",
            "has_advanced_reports",
            "support_tier",
            "is_contact_sales",
            "is_purchasable",
            "sort_rank",
            "features",
        ]


class SubscriptionSummarySerializer(serializers.Serializer):
    """Renders lifecycle.SubscriptionSummary."""

    status = serializers.CharField()
    plan_slug = serializers.CharField()
    plan_name = serializers.CharField()
    billing_cycle = serializers.CharField()
    amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    currency = serializers.CharField()
    price_override = serializers.CharField()
    current_period_start = serializers.DateTimeField(allow_null=True)
    current_period_end = serializers.DateTimeField(allow_null=True)
    cancel_at_period_end = serializers.BooleanField()
    trial = serializers.DictField(allow_null=True)
    accompaniment = serializers.DictField(allow_null=True)
    pending_change = serializers.DictField(allow_null=True)
    discount = serializers.DictField(allow_null=True)


class SubscriptionEventSerializer(serializers.ModelSerializer[SubscriptionEvent]):
    class Meta:
        model = SubscriptionEvent
        fields = ["kind", "from_status", "to_status", "detail", "created"]


class AdminSubscriptionSerializer(serializers.ModelSerializer[Subscription]):
    tenant_slug = serializers.CharField(source="tenant.slug", read_only=True)
    tenant_name = serializers.CharField(source="tenant.name", read_only=True)
    promotion_code = serializers.CharField(
        source="promotion.code",
        read_only=True,
        default="",
    )

    class Meta:
        model = Subscription
        fields = [
            "id",
            "tenant_slug",
            "tenant_name",
            "plan",
            "billing_cycle",
            "status",
            "amount",
            "currency",
            "price_override",
            "trial_ends_at",
            "trial_extensions_used",
            "promotion_code",
            "discount_cycles_remaining",
            "accompaniment_months_used",
            "accompaniment_total_months",
            "current_period_start",
            "current_period_end",
            "cancel_at_period_end",
            "cancelled_at",
            "pending_plan",
            "pending_cycle",
            "pending_effective_at",
            "suspended_at",
            "suspension_reason",
            "created",
        ]


class AdminSubscriptionDetailSerializer(AdminSubscriptionSerializer):
    events = SubscriptionEventSerializer(many=True, read_only=True)

    class Meta(AdminSubscriptionSerializer.Meta):
        fields = [*AdminSubscriptionSerializer.Meta.fields, "internal_notes", "events"]


class CheckoutSessionSerializer(serializers.ModelSerializer[CheckoutSession]):
    class Meta:
        model = CheckoutSession
        fields = [
            "id",
            "plan",
            "billing_cycle",
            "kind",
            "status",
            "amount",
            "currency",
            "promotion_code",
            "checkout_url",
            "created",
        ]


class PaymentSerializer(serializers.ModelSerializer[Payment]):
    class Meta:
        model = Payment
        fields = [
            "id",
            "status",
            "amount",
            "currency",
            "reason",
            "period_start",
            "period_end",
            "created",
        ]


class PromotionSerializer(serializers.ModelSerializer[Promotion]):
    class Meta:
        model = Promotion
        fields = [
            "id",
            "code",
            "name",
            "description",
            "discount_kind",
            "discount_value",
            "eligible_plans",
            "max_uses",
            "max_uses_per_tenant",
            "uses_count",
            "duration_cycles",
            "starts_at",
            "expires_at",
            "is_active",
            "created",
        ]
        read_only_fields = ["uses_count", "created"]
        # Uniqueness is checked after normalization in validate_code().
        extra_kwargs = {"code": {"validators": []}}

    def validate_code(self, value):
        code = normalize_code(value)
        if self.instance is not None:
            if code != self.instance.code:
                raise serializers.ValidationError("Promotion codes cannot be changed.")
            return code
        if Promotion.objects.filter(code=code).exists():
            raise serializers.ValidationError("A promotion with this code already exists.")
        return code

    def validate_eligible_plans(self, value):
        if not isinstance(value, list):
            raise serializers.ValidationError("Expected a list of plan slugs.")
        unknown = set(value) - set(
            Plan.objects.filter(slug__in=value).values_list("slug", flat=True),
        )
        if unknown:
            raise serializers.ValidationError(
                f"Unknown plans: {', '.join(sorted(unknown))}",
            )
        return value


# =============================================================================
# Request bodies
# =============================================================================


class StartTrialSerializer(serializers.Serializer):
    plan = serializers.SlugField(required=False)


class CheckoutRequestSerializer(serializers.Serializer):
    plan = serializers.SlugField()
    billing_cycle = serializers.ChoiceField(
        choices=BillingCycle.choices,
        default=BillingCycle.MONTHLY,
    )
    promotion_code = serializers.CharField(required=False, allow_blank=True)
    success_url = serializers.URLField(required=False)
    cancel_url = serializers.URLField(required=False)


class RedirectUrlsSerializer(serializers.Serializer):
    success_url = serializers.URLField(required=False)
    cancel_url = serializers.URLField(required=False)


class PlanChangeRequestSerializer(serializers.Serializer):
    plan = serializers.SlugField()
    billing_cycle = serializers.ChoiceField(
        choices=BillingCycle.choices,
        required=False,
    )


class PlanChangeResultSerializer(serializers.Serializer):
    """Renders plan_changes.PlanChangeResult."""

    success = serializers.BooleanField()
    change_type = serializers.CharField(source="change_type.value")
    old_plan = serializers.CharField(source="old_plan.slug")
    new_plan = serializers.CharField(source="new_plan.slug")
    effective_immediately = serializers.BooleanField()
    old_cycle = serializers.CharField()
    new_cycle = serializers.CharField()
    scheduled_at = serializers.DateTimeField(allow_null=True)
    new_amount = serializers.DecimalField(
        max_digits=12,
        decimal_places=2,
        allow_null=True,
    )
    replaced_plan = serializers.CharField(
        source="replaced_plan.slug",
        allow_null=True,
        default=None,
    )
    message = serializers.CharField()


class ReasonSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, default="")


class RequiredReasonSerializer(serializers.Serializer):
    reason = serializers.CharField()


class PromotionValidateSerializer(serializers.Serializer):
    code = serializers.CharField()
    plan = serializers.SlugField()


class PromotionValidationSerializer(serializers.Serializer):
    """Renders promotions.PromotionValidation."""

    accepted = serializers.BooleanField()
    code = serializers.CharField()
    reason = serializers.CharField()
    message = serializers.CharField()
    discount_kind = serializers.CharField()
    discount_value = serializers.DecimalField(
        max_digits=12,
        decimal_places=2,
        allow_null=True,
    )
    duration_cycles = serializers.IntegerField(allow_null=True)
