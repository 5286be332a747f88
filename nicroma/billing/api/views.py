"""
REST endpoints for the billing engine.

Three audiences:

- Public: the plan catalog.
- Tenant members: their own subscription, under
  /tenants/<tenant_slug>/billing/. Members may read; tenant administrators
  may act.
- Staff: cross-tenant subscription management, alerts, stats and the
  promotion registry, under /billing/admin/.

Views are thin. All rules live in the engine modules, and rejections
surface as BillingError subclasses rendered by
nicroma.billing.api.exception_handler.
"""

from __future__ import annotations

import logging

import django_filters
import stripe
from django.conf import settings
from django.db import transaction
from django_filters.rest_framework import DjangoFilterBackend
from rest_framework import filters
from rest_framework import mixins
from rest_framework import status
from rest_framework import viewsets
from rest_framework.generics import ListAPIView
from rest_framework.generics import RetrieveAPIView
from rest_framework.permissions import AllowAny
from rest_framework.permissions import IsAdminUser
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from nicroma.billing import lifecycle
from nicroma.billing import promotions
from nicroma.billing import suspension
from nicroma.billing.accompaniment import activate_accompaniment
from nicroma.billing.api import serializers as s
from nicroma.billing.catalog import get_active_plans
from nicroma.billing.constants import SubscriptionStatus
from nicroma.billing.entitlements import check_access
from nicroma.billing.exceptions import BillingError
from nicroma.billing.exceptions import InvalidTransition
from nicroma.billing.exceptions import SubscriptionNotFound
from nicroma.billing.metrics import BillingMetricsAggregator
from nicroma.billing.models import Payment
from nicroma.billing.models import Promotion
from nicroma.billing.models import Subscription
from nicroma.billing.plan_changes import PlanChangeService
from nicroma.billing.trials import extend_trial
from nicroma.billing.webhooks import handle_event
from nicroma.tenants.api import TenantMembershipPermission
from nicroma.tenants.api import TenantScopedMixin

logger = logging.getLogger(__name__)


# =============================================================================
# Public catalog
# =============================================================================


class PlanListView(ListAPIView):
    permission_classes = [AllowAny]
    serializer_class = s.PlanSerializer
    pagination_class = None

    def get_queryset(self):
        return get_active_plans()


class PlanDetailView(RetrieveAPIView):
    permission_classes = [AllowAny]
    serializer_class = s.PlanSerializer
    lookup_field = "slug"

    def get_queryset(self):
        return get_active_plans()


# =============================================================================
# Tenant-facing
# =============================================================================


class TenantBillingView(TenantScopedMixin, APIView):
    """Base class for /tenants/<tenant_slug>/billing/ endpoints."""

    permission_classes = [IsAuthenticated, TenantMembershipPermission]

    def actor(self) -> str:
        return self.request.user.get_username()

    def summary_response(self, subscription, status_code=status.HTTP_200_OK):
        summary = lifecycle.subscription_summary(subscription)
        return Response(
            s.SubscriptionSummarySerializer(summary).data,
            status=status_code,
        )


class SubscriptionView(TenantBillingView):
    """The tenant's current (or most recent) subscription."""

    def get(self, request, tenant_slug):
        tenant = self.get_tenant()
        subscription = lifecycle.latest_subscription(tenant)
        if subscription is None:
            raise SubscriptionNotFound(tenant)
        return self.summary_response(subscription)


class AccessView(TenantBillingView):
    """Whether the tenant may use the platform right now."""

    def get(self, request, tenant_slug):
        subscription = lifecycle.current_subscription(self.get_tenant())
        return Response(check_access(subscription).as_dict())


class StartTrialView(TenantBillingView):
    def post(self, request, tenant_slug):
        serializer = s.StartTrialSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        subscription = lifecycle.start_trial(
            self.get_tenant(),
            plan_slug=serializer.validated_data.get("plan"),
        )
        return self.summary_response(subscription, status.HTTP_201_CREATED)


class ExtendTrialView(TenantBillingView):
    def post(self, request, tenant_slug):
        subscription = extend_trial(self.get_tenant())
        return self.summary_response(subscription)


class CheckoutView(TenantBillingView):
    """Open a checkout; the subscription changes only once the charge succeeds."""

    def post(self, request, tenant_slug):
        serializer = s.CheckoutRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        checkout = lifecycle.begin_checkout(
            self.get_tenant(),
            data["plan"],
            data["billing_cycle"],
            promotion_code=data.get("promotion_code") or None,
            success_url=data.get("success_url"),
            cancel_url=data.get("cancel_url"),
        )
        return Response(
            s.CheckoutSessionSerializer(checkout).data,
            status=status.HTTP_201_CREATED,
        )


class PlanChangePreviewView(TenantBillingView):
    def post(self, request, tenant_slug):
        serializer = s.PlanChangeRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = PlanChangeService().preview_change(
            self.get_tenant(),
            serializer.validated_data["plan"],
            serializer.validated_data.get("billing_cycle"),
        )
        return Response(s.PlanChangeResultSerializer(result).data)


class PlanChangeView(TenantBillingView):
    def post(self, request, tenant_slug):
        serializer = s.PlanChangeRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = PlanChangeService().change_plan(
            self.get_tenant(),
            serializer.validated_data["plan"],
            serializer.validated_data.get("billing_cycle"),
        )
        return Response(s.PlanChangeResultSerializer(result).data)


class PendingPlanChangeView(TenantBillingView):
    def delete(self, request, tenant_slug):
        tenant = self.get_tenant()
        if not PlanChangeService().cancel_pending_change(tenant):
            raise InvalidTransition(
                "No plan change is scheduled.",
                action="cancel_pending_change",
            )
        return self.summary_response(lifecycle.current_subscription(tenant))


class CancelView(TenantBillingView):
    def post(self, request, tenant_slug):
        serializer = s.ReasonSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        subscription = lifecycle.request_cancellation(
            self.get_tenant(),
            reason=serializer.validated_data["reason"],
        )
        return self.summary_response(subscription)


class UndoCancelView(TenantBillingView):
    def post(self, request, tenant_slug):
        subscription = lifecycle.undo_cancellation(self.get_tenant())
        return self.summary_response(subscription)


class AccompanimentView(TenantBillingView):
    def post(self, request, tenant_slug):
        serializer = s.RedirectUrlsSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        checkout = activate_accompaniment(
            self.get_tenant(),
            success_url=serializer.validated_data.get("success_url"),
            cancel_url=serializer.validated_data.get("cancel_url"),
        )
        return Response(
            s.CheckoutSessionSerializer(checkout).data,
            status=status.HTTP_201_CREATED,
        )


class PromotionValidateView(TenantBillingView):
    """Read-only check; using a code happens at checkout."""

    # POST for the body, but nothing is written.
    permission_classes = [IsAuthenticated]

    def post(self, request, tenant_slug):
        tenant = self.get_tenant()
        if self.get_membership() is None and not request.user.is_superuser:
            self.permission_denied(request)
        serializer = s.PromotionValidateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = promotions.validate(
            serializer.validated_data["code"],
            serializer.validated_data["plan"],
            tenant,
        )
        return Response(s.PromotionValidationSerializer(result).data)


class PaymentListView(TenantScopedMixin, ListAPIView):
    permission_classes = [IsAuthenticated, TenantMembershipPermission]
    serializer_class = s.PaymentSerializer

    def get_queryset(self):
        return Payment.objects.filter(tenant=self.get_tenant())


# =============================================================================
# Staff
# =============================================================================


class SubscriptionFilter(django_filters.FilterSet):
    status = django_filters.ChoiceFilter(choices=SubscriptionStatus.choices)
    plan = django_filters.CharFilter(field_name="plan_id")
    tenant = django_filters.CharFilter(field_name="tenant__slug")
    cancel_at_period_end = django_filters.BooleanFilter()
    period_ends_before = django_filters.DateTimeFilter(
        field_name="current_period_end",
        lookup_expr="lte",
    )

    class Meta:
        model = Subscription
        fields = []  # explicit filters above


class AdminSubscriptionViewSet(
    mixins.ListModelMixin,
    mixins.RetrieveModelMixin,
    viewsets.GenericViewSet,
):
    """
    All subscriptions across tenants.

    Filters: ?status=past_due, ?plan=starter, ?tenant=<slug>
    """

    permission_classes = [IsAdminUser]
    filter_backends = [DjangoFilterBackend, filters.OrderingFilter]
    filterset_class = SubscriptionFilter
    ordering_fields = ["created", "current_period_end", "amount", "status"]
    ordering = ["-created", "-id"]

    def get_queryset(self):
        queryset = Subscription.objects.select_related("tenant", "plan", "promotion")
        if self.action == "retrieve":
            queryset = queryset.prefetch_related("events")
        return queryset

    def get_serializer_class(self):
        if self.action == "retrieve":
            return s.AdminSubscriptionDetailSerializer
        return s.AdminSubscriptionSerializer


class AdminTenantActionView(TenantScopedMixin, APIView):
    permission_classes = [IsAdminUser]

    def respond(self, subscription):
        return Response(s.AdminSubscriptionSerializer(subscription).data)


class SuspendView(AdminTenantActionView):
    def post(self, request, tenant_slug):
        serializer = s.RequiredReasonSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        subscription = suspension.suspend(
            self.get_tenant(),
            serializer.validated_data["reason"],
            actor=request.user.get_username(),
        )
        return self.respond(subscription)


class ReactivateView(AdminTenantActionView):
    def post(self, request, tenant_slug):
        subscription = suspension.reactivate(
            self.get_tenant(),
            actor=request.user.get_username(),
        )
        return self.respond(subscription)


class ForceCancelView(AdminTenantActionView):
    def post(self, request, tenant_slug):
        serializer = s.ReasonSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        subscription = lifecycle.force_cancel(
            self.get_tenant(),
            reason=serializer.validated_data["reason"],
        )
        return self.respond(subscription)


class BillingStatsView(APIView):
    permission_classes = [IsAdminUser]

    def get(self, request):
        metrics = BillingMetricsAggregator().collect()
        return Response(
            {
                "total_subscriptions": metrics.total_subscriptions,
                "status_counts": metrics.status_counts,
                "status_percentages": metrics.status_percentages,
                "active_trials": metrics.active_trials,
                "mrr": str(metrics.mrr),
                "arr": str(metrics.arr),
                "revenue_this_month": str(metrics.revenue_this_month),
            },
        )


class BillingAlertsView(APIView):
    permission_classes = [IsAdminUser]

    def get(self, request):
        metrics = BillingMetricsAggregator().collect()
        return Response(
            {
                "trials_expiring_soon": s.AdminSubscriptionSerializer(
                    metrics.trials_expiring_soon,
                    many=True,
                ).data,
                "past_due": s.AdminSubscriptionSerializer(
                    metrics.past_due,
                    many=True,
                ).data,
                "failed_payments": [
                    {**s.PaymentSerializer(payment).data, "tenant": payment.tenant.slug}
                    for payment in metrics.failed_payments
                ],
            },
        )


class PromotionViewSet(viewsets.ModelViewSet):
    """
    Promotion registry. DELETE deactivates; promotions are never removed
    because subscriptions keep a reference to the code they used.
    """

    permission_classes = [IsAdminUser]
    serializer_class = s.PromotionSerializer
    queryset = Promotion.objects.all()

    def perform_create(self, serializer):
        serializer.instance = promotions.create_promotion(**serializer.validated_data)

    def perform_update(self, serializer):
        changes = dict(serializer.validated_data)
        changes.pop("code", None)
        serializer.instance = promotions.update_promotion(serializer.instance, **changes)

    def perform_destroy(self, instance):
        promotions.deactivate_promotion(instance)

    def destroy(self, request, *args, **kwargs):
        instance = self.get_object()
        self.perform_destroy(instance)
        return Response(self.get_serializer(instance).data)


# =============================================================================
# Payment provider webhook
# =============================================================================


class StripeWebhookView(APIView):
    """
    Receives Stripe events.

    The Stripe signature is the authentication; DRF auth is disabled here.
    Rejections from the engine are acknowledged with 200 so Stripe does not
    retry something that cannot succeed; database errors propagate as 500
    so Stripe redelivers.
    """

    authentication_classes = []
    permission_classes = []

    def post(self, request):
        payload = request.body
        signature = request.headers.get("Stripe-Signature", "")
        try:
            event = stripe.Webhook.construct_event(
                payload,
                signature,
                settings.STRIPE_WEBHOOK_SECRET,
            )
        except (ValueError, stripe.SignatureVerificationError) as exc:
            logger.warning("Rejected Stripe webhook: %s", exc)
            return Response(
                {"detail": "Invalid payload or signature."},
                status=status.HTTP_400_BAD_REQUEST,
            )

        try:
            with transaction.atomic():
                outcome = handle_event(event)
        except BillingError as exc:
            logger.warning(
                "Stripe event %s (%s) rejected: %s",
                event["id"],
                event["type"],
                exc.detail,
            )
            return Response({"received": True, "applied": False, "code": exc.code})

        return Response(
            {
                "received": True,
                "applied": bool(outcome and outcome.applied),
                "duplicate": bool(outcome and outcome.duplicate),
            },
        )
