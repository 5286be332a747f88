"""
Tests for the billing REST API.

Covers the public catalog, tenant-scoped subscription endpoints and their
permissions, staff endpoints, the promotion registry, and the Stripe
webhook receiver.
"""

from decimal import Decimal
from unittest.mock import patch

import pytest
import stripe
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from nicroma.billing.constants import SubscriptionStatus
from nicroma.billing.lifecycle import current_subscription
from nicroma.billing.lifecycle import start_trial
from nicroma.billing.models import Promotion
from nicroma.billing.tests.factories import PromotionFactory
from nicroma.billing.tests.factories import subscribe
from nicroma.tenants.tests.factories import TenantMembershipFactory
from nicroma.tenants.tests.factories import UserFactory


@pytest.fixture
def api_client() -> APIClient:
    return APIClient()


@pytest.fixture
def admin_client(api_client, tenant_admin) -> APIClient:
    api_client.force_authenticate(tenant_admin)
    return api_client


@pytest.fixture
def staff_client(api_client, staff_user) -> APIClient:
    api_client.force_authenticate(staff_user)
    return api_client


def tenant_url(name, tenant):
    return reverse(f"api:{name}", kwargs={"tenant_slug": tenant.slug})


@pytest.mark.django_db
class TestPlanCatalog:
    def test_public_list(self, api_client, plans):
        response = api_client.get(reverse("api:plan-list"))

        assert response.status_code == status.HTTP_200_OK
        assert [plan["slug"] for plan in response.json()] == [
            "emprendedor",
            "starter",
            "profesional",
            "business",
            "enterprise",
        ]
        assert response.json()[-1]["is_purchasable"] is False

    def test_detail_unknown_plan(self, api_client, plans):
        response = api_client.get(reverse("api:plan-detail", kwargs={"slug": "nope"}))
        assert response.status_code == status.HTTP_404_NOT_FOUND


@pytest.mark.django_db
class TestTenantPermissions:
    def test_anonymous_rejected(self, api_client, plans, tenant):
        response = api_client.get(tenant_url("subscription", tenant))
        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_non_member_rejected(self, api_client, plans, tenant):
        api_client.force_authenticate(UserFactory())

        response = api_client.get(tenant_url("subscription", tenant))

        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_member_reads_but_cannot_act(self, api_client, plans, tenant):
        start_trial(tenant)
        member = TenantMembershipFactory(tenant=tenant, is_admin=False).user
        api_client.force_authenticate(member)

        assert api_client.get(tenant_url("subscription", tenant)).status_code == 200
        response = api_client.post(tenant_url("trial-extend", tenant))
        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_unknown_tenant(self, admin_client, plans):
        response = admin_client.get(
            reverse("api:subscription", kwargs={"tenant_slug": "no-such-tenant"}),
        )

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["code"] == "tenant_not_found"


@pytest.mark.django_db
class TestTenantSubscription:
    def test_start_trial(self, admin_client, plans, tenant):
        response = admin_client.post(tenant_url("trial-start", tenant), {}, format="json")

        assert response.status_code == status.HTTP_201_CREATED
        data = response.json()
        assert data["status"] == SubscriptionStatus.TRIALING
        assert data["plan_slug"] == "profesional"
        assert data["trial"]["days_remaining"] == 7

    def test_no_subscription_yet(self, admin_client, plans, tenant):
        response = admin_client.get(tenant_url("subscription", tenant))

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["code"] == "subscription_not_found"

    def test_extension_cap_is_422(self, admin_client, plans, tenant):
        start_trial(tenant)
        url = tenant_url("trial-extend", tenant)

        assert admin_client.post(url).status_code == status.HTTP_200_OK
        assert admin_client.post(url).status_code == status.HTTP_200_OK
        response = admin_client.post(url)

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        assert response.json()["code"] == "extension_limit_reached"
        assert current_subscription(tenant).trial_extensions_used == 2

    def test_invalid_transition_is_409(self, admin_client, plans, tenant):
        start_trial(tenant)

        response = admin_client.post(tenant_url("cancel", tenant), {}, format="json")

        assert response.status_code == status.HTTP_409_CONFLICT
        body = response.json()
        assert body["code"] == "invalid_transition"
        assert body["from_status"] == SubscriptionStatus.TRIALING

    def test_checkout(self, admin_client, plans, tenant):
        start_trial(tenant)

        response = admin_client.post(
            tenant_url("checkout", tenant),
            {"plan": "starter", "billing_cycle": "yearly"},
            format="json",
        )

        assert response.status_code == status.HTTP_201_CREATED
        assert response.json()["amount"] == "450000.00"
        assert response.json()["checkout_url"].startswith("https://checkout.stripe.com/")
        assert current_subscription(tenant).status == SubscriptionStatus.TRIALING

    def test_checkout_gateway_down_is_503(
        self,
        admin_client,
        plans,
        tenant,
        stripe_checkout,
    ):
        stripe_checkout.side_effect = stripe.APIConnectionError("timeout")

        response = admin_client.post(
            tenant_url("checkout", tenant),
            {"plan": "starter"},
            format="json",
        )

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        assert response.json()["code"] == "collaborator_unavailable"

    def test_validate_promotion(self, admin_client, plans, tenant):
        PromotionFactory(code="DESCUENTO20", eligible_plans=["profesional"])

        response = admin_client.post(
            tenant_url("promotion-validate", tenant),
            {"code": "descuento20", "plan": "starter"},
            format="json",
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["accepted"] is False
        assert response.json()["reason"] == "not_applicable"

    def test_change_plan_and_cancel_pending(self, admin_client, plans, tenant):
        subscribe(tenant, "business", timezone.now())

        response = admin_client.post(
            tenant_url("change-plan", tenant),
            {"plan": "starter"},
            format="json",
        )
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["change_type"] == "downgrade"
        assert response.json()["effective_immediately"] is False

        response = admin_client.delete(tenant_url("change-plan-pending", tenant))
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["pending_change"] is None

        response = admin_client.delete(tenant_url("change-plan-pending", tenant))
        assert response.status_code == status.HTTP_409_CONFLICT

    def test_cancel_and_undo(self, admin_client, plans, tenant):
        subscribe(tenant, "starter", timezone.now())

        response = admin_client.post(
            tenant_url("cancel", tenant),
            {"reason": "Cierre"},
            format="json",
        )
        assert response.json()["cancel_at_period_end"] is True

        response = admin_client.post(tenant_url("cancel-undo", tenant))
        assert response.json()["cancel_at_period_end"] is False

    def test_access(self, admin_client, plans, tenant):
        subscribe(tenant, "starter", timezone.now())

        response = admin_client.get(tenant_url("access", tenant))

        assert response.json() == {"allowed": True, "code": "active", "warning": ""}

    def test_payments(self, admin_client, plans, tenant):
        subscribe(tenant, "starter", timezone.now())

        response = admin_client.get(tenant_url("payments", tenant))

        assert response.status_code == status.HTTP_200_OK
        assert [p["amount"] for p in response.json()] == ["45000.00"]


@pytest.mark.django_db
class TestStaffEndpoints:
    def test_tenant_admin_is_not_staff(self, admin_client, plans):
        response = admin_client.get(reverse("api:admin-stats"))
        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_suspend_and_reactivate(self, staff_client, plans, tenant):
        subscribe(tenant, "starter", timezone.now())
        url_kwargs = {"tenant_slug": tenant.slug}

        response = staff_client.post(
            reverse("api:admin-suspend", kwargs=url_kwargs),
            {"reason": "Revisión"},
            format="json",
        )
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == SubscriptionStatus.SUSPENDED

        response = staff_client.post(reverse("api:admin-reactivate", kwargs=url_kwargs))
        assert response.json()["status"] == SubscriptionStatus.ACTIVE

    def test_suspend_requires_reason(self, staff_client, plans, tenant):
        subscribe(tenant, "starter", timezone.now())

        response = staff_client.post(
            reverse("api:admin-suspend", kwargs={"tenant_slug": tenant.slug}),
            {},
            format="json",
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_subscription_list_filters(self, staff_client, plans, tenant):
        subscribe(tenant, "starter", timezone.now())

        response = staff_client.get(
            reverse("api:admin-subscription-list"),
            {"status": "past_due"},
        )
        assert response.json() == []

        response = staff_client.get(
            reverse("api:admin-subscription-list"),
            {"plan": "starter"},
        )
        assert [row["tenant_slug"] for row in response.json()] == [tenant.slug]

    def test_stats(self, staff_client, plans, tenant):
        subscribe(tenant, "starter", timezone.now())

        response = staff_client.get(reverse("api:admin-stats"))

        assert response.json()["mrr"] == "45000.00"
        assert response.json()["arr"] == "540000.00"
        assert response.json()["status_counts"]["active"] == 1


@pytest.mark.django_db
class TestPromotionRegistry:
    def test_create_normalizes_code(self, staff_client, plans):
        response = staff_client.post(
            reverse("api:promotion-list"),
            {
                "code": "invierno25",
                "name": "Invierno",
                "discount_kind": "percentage",
                "discount_value": "15",
                "eligible_plans": ["starter"],
                "max_uses": 50,
            },
            format="json",
        )

        assert response.status_code == status.HTTP_201_CREATED
        assert response.json()["code"] == "INVIERNO25"
        assert response.json()["uses_count"] == 0

    def test_rejects_unknown_plan(self, staff_client, plans):
        response = staff_client.post(
            reverse("api:promotion-list"),
            {
                "code": "X",
                "name": "X",
                "discount_kind": "fixed",
                "discount_value": "100",
                "eligible_plans": ["platinum"],
            },
            format="json",
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert "eligible_plans" in response.json()

    def test_delete_deactivates(self, staff_client, plans):
        promotion = PromotionFactory(code="BYE")

        response = staff_client.delete(
            reverse("api:promotion-detail", kwargs={"pk": promotion.pk}),
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["is_active"] is False
        assert Promotion.objects.filter(pk=promotion.pk).exists()

    def test_code_cannot_change(self, staff_client, plans):
        promotion = PromotionFactory(code="FIJO")

        response = staff_client.patch(
            reverse("api:promotion-detail", kwargs={"pk": promotion.pk}),
            {"code": "OTRO"},
            format="json",
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST


@pytest.mark.django_db
class TestStripeWebhook:
    url = "/api/v1/billing/webhooks/stripe/"

    def test_bad_signature(self, api_client):
        with patch(
            "nicroma.billing.api.views.stripe.Webhook.construct_event",
            side_effect=stripe.SignatureVerificationError("bad", "t=1,v1=x"),
        ):
            response = api_client.post(self.url, data=b"{}", content_type="application/json")

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_invoice_paid(self, api_client, plans, tenant):
        subscription = subscribe(tenant, "starter", timezone.now())
        start = subscription.current_period_end
        event = {
            "id": "evt_1",
            "type": "invoice.paid",
            "data": {
                "object": {
                    "id": "in_0002",
                    "amount_paid": 4500000,
                    "currency": "ars",
                    "metadata": {"tenant_id": str(tenant.pk)},
                    "period_start": int(start.timestamp()),
                    "period_end": int(start.timestamp()) + 30 * 86400,
                },
            },
        }

        with patch(
            "nicroma.billing.api.views.stripe.Webhook.construct_event",
            return_value=event,
        ):
            first = api_client.post(self.url, data=b"{}", content_type="application/json")
            second = api_client.post(self.url, data=b"{}", content_type="application/json")

        assert first.json() == {"received": True, "applied": True, "duplicate": False}
        assert second.json() == {"received": True, "applied": False, "duplicate": True}

    def test_engine_rejection_acknowledged(self, api_client, plans, tenant):
        start_trial(tenant)
        event = {
            "id": "evt_3",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_unknown",
                    "payment_status": "paid",
                    "amount_total": 1000000,
                    "currency": "ars",
                    "client_reference_id": str(tenant.pk),
                    "metadata": {"checkout_kind": "accompaniment"},
                },
            },
        }

        with patch(
            "nicroma.billing.api.views.stripe.Webhook.construct_event",
            return_value=event,
        ):
            response = api_client.post(self.url, data=b"{}", content_type="application/json")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["received"] is True
        assert response.json()["applied"] is False
        assert current_subscription(tenant).status == SubscriptionStatus.TRIALING
        assert Decimal(current_subscription(tenant).amount) == Decimal("0.00")
