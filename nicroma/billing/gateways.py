"""
Payment gateway interface.

The engine never moves money. It asks a gateway to open a checkout and then
waits for the gateway's webhook to report a definitive success or failure
(see nicroma.billing.payments).

The gateway class is configurable through ``BILLING_PAYMENT_GATEWAY`` so a
different processor can be plugged in without touching the lifecycle code.

Usage:
    gateway = get_gateway()
    handle = gateway.initiate_checkout(
        tenant=tenant,
        plan=plan,
        cycle=BillingCycle.MONTHLY,
        amount=Decimal("45000"),
        discount=None,
    )
    redirect(handle.url)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING

import stripe
from django.conf import settings
from django.utils.module_loading import import_string

from nicroma.billing.constants import BillingCycle
from nicroma.billing.constants import CheckoutKind
from nicroma.billing.exceptions import ExternalCollaboratorUnavailable

if TYPE_CHECKING:
    from nicroma.billing.models import Plan
    from nicroma.billing.pricing import DiscountSnapshot
    from nicroma.tenants.models import Tenant

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutHandle:
    """What the gateway returns for an opened checkout."""

    reference: str
    url: str


class PaymentGateway:
    """Base class for payment processors."""

    def initiate_checkout(
        self,
        *,
        tenant: Tenant,
        plan: Plan,
        cycle: str,
        amount: Decimal,
        discount: DiscountSnapshot | None,
        kind: str = CheckoutKind.STANDARD,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> CheckoutHandle:
        raise NotImplementedError


class StripeGateway(PaymentGateway):
    """
    Opens Stripe Checkout sessions in subscription mode.

    Prices are sent inline (price_data) because the amount depends on the
    tenant's discount snapshot and accompaniment override, not only on the
    plan. The checkout id comes back on the webhook as the correlation
    handle for the CheckoutSession row.
    """

    def __init__(self):
        """Initialize with Stripe API key from settings."""
        stripe.api_key = settings.STRIPE_SECRET_KEY

    def initiate_checkout(
        self,
        *,
        tenant: Tenant,
        plan: Plan,
        cycle: str,
        amount: Decimal,
        discount: DiscountSnapshot | None,
        kind: str = CheckoutKind.STANDARD,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> CheckoutHandle:
        site_url = settings.SITE_URL.rstrip("/")
        interval = "year" if cycle == BillingCycle.YEARLY else "month"
        metadata = {
            "tenant_id": str(tenant.pk),
            "plan_slug": plan.slug,
            "billing_cycle": cycle,
            "checkout_kind": kind,
        }
        if discount is not None:
            metadata["promotion_code"] = discount.code

        try:
            session = stripe.checkout.Session.create(
                mode="subscription",
                customer_email=tenant.billing_email or None,
                line_items=[
                    {
                        "price_data": {
                            "currency": plan.currency.lower(),
                            "product_data": {"name": plan.name},
                            "unit_amount": int(Decimal(amount) * 100),
                            "recurring": {"interval": interval},
                        },
                        "quantity": 1,
                    },
                ],
                success_url=success_url or f"{site_url}/billing/success/",
                cancel_url=cancel_url or f"{site_url}/billing/",
                # client_reference_id is how the webhook finds the tenant
                client_reference_id=str(tenant.pk),
                metadata=metadata,
                subscription_data={"metadata": metadata},
            )
        except stripe.StripeError as exc:
            logger.warning(
                "Stripe checkout failed for tenant %s, plan %s: %s",
                tenant.pk,
                plan.slug,
                exc,
            )
            raise ExternalCollaboratorUnavailable(
                "Could not open a checkout with the payment provider.",
            ) from exc

        logger.info(
            "Created checkout session %s for tenant %s, plan %s (%s)",
            session.id,
            tenant.pk,
            plan.slug,
            kind,
        )
        return CheckoutHandle(reference=session.id, url=session.url)


def get_gateway() -> PaymentGateway:
    """Instantiate the gateway configured in BILLING_PAYMENT_GATEWAY."""
    path = getattr(
        settings,
        "BILLING_PAYMENT_GATEWAY",
        "nicroma.billing.gateways.StripeGateway",
    )
    return import_string(path)()
