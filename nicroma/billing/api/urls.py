from django.urls import path
from rest_framework.routers import SimpleRouter

from nicroma.billing.api import views

router = SimpleRouter()
router.register(
    "billing/admin/subscriptions",
    views.AdminSubscriptionViewSet,
    basename="admin-subscription",
)
router.register("billing/admin/promotions", views.PromotionViewSet, basename="promotion")

tenant_prefix = "tenants/<slug:tenant_slug>/billing"

urlpatterns = [
    # Public catalog
    path("billing/plans/", views.PlanListView.as_view(), name="plan-list"),
    path("billing/plans/<slug:slug>/", views.PlanDetailView.as_view(), name="plan-detail"),
    # Tenant-facing
    path(
        f"{tenant_prefix}/subscription/",
        views.SubscriptionView.as_view(),
        name="subscription",
    ),
    path(f"{tenant_prefix}/access/", views.AccessView.as_view(), name="access"),
    path(f"{tenant_prefix}/trial/", views.StartTrialView.as_view(), name="trial-start"),
    path(
        f"{tenant_prefix}/trial/extend/",
        views.ExtendTrialView.as_view(),
        name="trial-extend",
    ),
    path(f"{tenant_prefix}/checkout/", views.CheckoutView.as_view(), name="checkout"),
    path(
        f"{tenant_prefix}/change-plan/",
        views.PlanChangeView.as_view(),
        name="change-plan",
    ),
    path(
        f"{tenant_prefix}/change-plan/preview/",
        views.PlanChangePreviewView.as_view(),
        name="change-plan-preview",
    ),
    path(
        f"{tenant_prefix}/change-plan/pending/",
        views.PendingPlanChangeView.as_view(),
        name="change-plan-pending",
    ),
    path(f"{tenant_prefix}/cancel/", views.CancelView.as_view(), name="cancel"),
    path(
        f"{tenant_prefix}/cancel/undo/",
        views.UndoCancelView.as_view(),
        name="cancel-undo",
    ),
    path(
        f"{tenant_prefix}/accompaniment/",
        views.AccompanimentView.as_view(),
        name="accompaniment",
    ),
    path(
        f"{tenant_prefix}/promotions/validate/",
        views.PromotionValidateView.as_view(),
        name="promotion-validate",
    ),
    path(f"{tenant_prefix}/payments/", views.PaymentListView.as_view(), name="payments"),
    # Staff
    path(
        "billing/admin/tenants/<slug:tenant_slug>/suspend/",
        views.SuspendView.as_view(),
        name="admin-suspend",
    ),
    path(
        "billing/admin/tenants/<slug:tenant_slug>/reactivate/",
        views.ReactivateView.as_view(),
        name="admin-reactivate",
    ),
    path(
        "billing/admin/tenants/<slug:tenant_slug>/force-cancel/",
        views.ForceCancelView.as_view(),
        name="admin-force-cancel",
    ),
    path("billing/admin/stats/", views.BillingStatsView.as_view(), name="admin-stats"),
    path("billing/admin/alerts/", views.BillingAlertsView.as_view(), name="admin-alerts"),
    # Payment provider
    path(
        "billing/webhooks/stripe/",
        views.StripeWebhookView.as_view(),
        name="stripe-webhook",
    ),
    *router.urls,
]
