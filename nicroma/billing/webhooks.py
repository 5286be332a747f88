"""
Stripe webhook event translation.

Stripe events are verified by the webhook view (nicroma.billing.api.views)
and then passed to handle_event(), which turns them into payment
collaborator callbacks:

- invoice.paid: on_charge_succeeded for the invoice period
- invoice.payment_failed: on_charge_failed
- checkout.session.completed: on_charge_succeeded for the first invoice,
  if the session is paid

The first charge of a subscription produces both checkout.session.completed
and invoice.paid. Both use the invoice id as correlation id, so whichever
arrives first is applied and the other is recorded as a duplicate.

Tenants are found through the ``tenant_id`` metadata set by StripeGateway.

To test locally:
    stripe listen --forward-to localhost:8000/api/v1/billing/webhooks/stripe/
"""

from __future__ import annotations

import logging
from datetime import UTC
from datetime import datetime
from decimal import Decimal

from dateutil.relativedelta import relativedelta
from django.utils import timezone

from nicroma.billing.constants import BillingCycle
from nicroma.billing.payments import ChargeOutcome
from nicroma.billing.payments import on_charge_failed
from nicroma.billing.payments import on_charge_succeeded
from nicroma.tenants.models import Tenant

logger = logging.getLogger(__name__)

CENTS_PER_UNIT = Decimal(100)


def handle_event(event) -> ChargeOutcome | None:
    """
    Apply a verified Stripe event. Returns None for ignored events.

    BillingError from the engine propagates to the caller.
    """
    handler = EVENT_HANDLERS.get(event["type"])
    if handler is None:
        logger.info("Ignoring Stripe event %s (%s)", event["id"], event["type"])
        return None
    return handler(event["data"]["object"], event)


def handle_invoice_paid(invoice, event) -> ChargeOutcome | None:
    tenant = _tenant_for(_invoice_metadata(invoice), event)
    if tenant is None:
        return None

    period_start, period_end = _invoice_period(invoice)
    return on_charge_succeeded(
        tenant,
        period_start=period_start,
        period_end=period_end,
        amount=_to_amount(invoice.get("amount_paid")),
        currency=(invoice.get("currency") or "ars").upper(),
        correlation_id=invoice["id"],
    )


def handle_invoice_payment_failed(invoice, event) -> ChargeOutcome | None:
    tenant = _tenant_for(_invoice_metadata(invoice), event)
    if tenant is None:
        return None

    attempts = invoice.get("attempt_count") or 1
    return on_charge_failed(
        tenant,
        reason=f"Payment failed (attempt {attempts}).",
        amount=_to_amount(invoice.get("amount_due")),
        currency=(invoice.get("currency") or "ars").upper(),
        # Each retry attempt is a distinct failure.
        correlation_id=f"{invoice['id']}:{attempts}",
    )


def handle_checkout_completed(session, event) -> ChargeOutcome | None:
    """
    Backup for invoice.paid on the first charge.

    Handles the case where the invoice event is delayed or lost. The period
    is one billing cycle from now; the real invoice boundaries arrive with
    the next renewal.
    """
    if session.get("payment_status") != "paid":
        logger.info(
            "checkout.session.completed %s not paid yet (%s)",
            session.get("id"),
            session.get("payment_status"),
        )
        return None

    metadata = session.get("metadata") or {}
    tenant = _tenant_for(metadata, event, fallback=session.get("client_reference_id"))
    if tenant is None:
        return None

    period_start = timezone.now()
    if metadata.get("billing_cycle") == BillingCycle.YEARLY:
        period_end = period_start + relativedelta(years=1)
    else:
        period_end = period_start + relativedelta(months=1)

    return on_charge_succeeded(
        tenant,
        period_start=period_start,
        period_end=period_end,
        amount=_to_amount(session.get("amount_total")),
        currency=(session.get("currency") or "ars").upper(),
        correlation_id=session.get("invoice") or session["id"],
        checkout_reference=session["id"],
    )


EVENT_HANDLERS = {
    "invoice.paid": handle_invoice_paid,
    "invoice.payment_failed": handle_invoice_payment_failed,
    "checkout.session.completed": handle_checkout_completed,
}


def _invoice_metadata(invoice) -> dict:
    """Subscription metadata, wherever this API version puts it."""
    details = invoice.get("subscription_details") or {}
    if not details:
        parent = invoice.get("parent") or {}
        details = parent.get("subscription_details") or {}
    return details.get("metadata") or invoice.get("metadata") or {}


def _invoice_period(invoice) -> tuple[datetime, datetime]:
    lines = (invoice.get("lines") or {}).get("data") or []
    if lines:
        period = lines[0]["period"]
        start, end = period["start"], period["end"]
    else:
        start, end = invoice["period_start"], invoice["period_end"]
    return (
        datetime.fromtimestamp(start, tz=UTC),
        datetime.fromtimestamp(end, tz=UTC),
    )


def _to_amount(cents) -> Decimal:
    return Decimal(cents or 0) / CENTS_PER_UNIT


def _tenant_for(metadata: dict, event, fallback=None) -> Tenant | None:
    tenant_id = metadata.get("tenant_id") or fallback
    tenant = None
    if tenant_id and str(tenant_id).isdigit():
        tenant = Tenant.objects.filter(pk=int(tenant_id)).first()
    if tenant is None:
        logger.warning(
            "Stripe event %s (%s) has no known tenant (tenant_id=%s)",
            event["id"],
            event["type"],
            tenant_id,
        )
    return tenant
