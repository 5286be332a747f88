from datetime import UTC
from datetime import datetime
from decimal import Decimal

import pytest

from nicroma.billing.constants import SubscriptionStatus
from nicroma.billing.lifecycle import begin_checkout
from nicroma.billing.lifecycle import current_subscription
from nicroma.billing.lifecycle import start_trial
from nicroma.billing.models import Payment
from nicroma.billing.tests.factories import subscribe
from nicroma.billing.webhooks import handle_event

PERIOD_START = datetime(2025, 4, 3, 12, 0, tzinfo=UTC)
PERIOD_END = datetime(2025, 5, 3, 12, 0, tzinfo=UTC)


def make_event(event_type, obj, event_id="evt_1"):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def invoice(tenant, invoice_id="in_0002", **fields):
    data = {
        "id": invoice_id,
        "amount_paid": 4500000,
        "amount_due": 4500000,
        "currency": "ars",
        "parent": {
            "subscription_details": {"metadata": {"tenant_id": str(tenant.pk)}},
        },
        "lines": {
            "data": [
                {
                    "period": {
                        "start": int(PERIOD_START.timestamp()),
                        "end": int(PERIOD_END.timestamp()),
                    },
                },
            ],
        },
    }
    data.update(fields)
    return data


@pytest.mark.django_db
class TestHandleEvent:
    def test_invoice_paid_renews(self, plans, tenant, now):
        subscribe(tenant, "starter", now)

        outcome = handle_event(make_event("invoice.paid", invoice(tenant)))

        assert outcome.applied
        subscription = current_subscription(tenant)
        assert subscription.current_period_start == PERIOD_START
        assert subscription.current_period_end == PERIOD_END
        payment = Payment.objects.get(correlation_id="in_0002")
        assert payment.amount == Decimal("45000.00")
        assert payment.currency == "ARS"

    def test_invoice_payment_failed(self, plans, tenant, now):
        subscribe(tenant, "starter", now)

        outcome = handle_event(
            make_event("invoice.payment_failed", invoice(tenant, attempt_count=2)),
        )

        assert outcome.applied
        assert outcome.payment.correlation_id == "in_0002:2"
        assert current_subscription(tenant).status == SubscriptionStatus.PAST_DUE

    def test_first_charge_reported_twice(self, plans, tenant, now):
        start_trial(tenant, now=now)
        checkout = begin_checkout(tenant, "starter", now=now)
        session = {
            "id": checkout.gateway_reference,
            "payment_status": "paid",
            "invoice": "in_0001",
            "amount_total": 4500000,
            "currency": "ars",
            "client_reference_id": str(tenant.pk),
            "metadata": {"tenant_id": str(tenant.pk), "billing_cycle": "monthly"},
        }

        first = handle_event(make_event("checkout.session.completed", session))
        second = handle_event(
            make_event("invoice.paid", invoice(tenant, invoice_id="in_0001"), "evt_2"),
        )

        assert first.applied
        assert second.duplicate
        subscription = current_subscription(tenant)
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.plan_id == "starter"

    def test_unpaid_checkout_ignored(self, plans, tenant, now):
        start_trial(tenant, now=now)
        session = {
            "id": "cs_test_x",
            "payment_status": "unpaid",
            "metadata": {"tenant_id": str(tenant.pk)},
        }

        assert handle_event(make_event("checkout.session.completed", session)) is None
        assert current_subscription(tenant).status == SubscriptionStatus.TRIALING

    def test_unknown_tenant_ignored(self, plans, tenant):
        data = invoice(tenant, parent={}, metadata={"tenant_id": "999999"})

        assert handle_event(make_event("invoice.paid", data)) is None
        assert not Payment.objects.exists()

    def test_unhandled_event_type(self, db):
        assert handle_event(make_event("customer.created", {"id": "cus_1"})) is None
