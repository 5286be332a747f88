from decimal import Decimal

import pytest
from dateutil.relativedelta import relativedelta

from nicroma.billing.constants import SubscriptionEventKind
from nicroma.billing.lifecycle import start_trial
from nicroma.billing.payments import on_charge_succeeded
from nicroma.billing.signals import subscription_price_committed
from nicroma.billing.tests.factories import subscribe


@pytest.fixture
def price_announcements():
    received = []

    def receiver(sender, **kwargs):
        received.append(kwargs)

    subscription_price_committed.connect(receiver)
    yield received
    subscription_price_committed.disconnect(receiver)


@pytest.mark.django_db
class TestPriceCommitted:
    def test_sent_after_activation_commits(
        self,
        plans,
        tenant,
        now,
        price_announcements,
        django_capture_on_commit_callbacks,
    ):
        with django_capture_on_commit_callbacks(execute=True):
            subscription = subscribe(tenant, "starter", now)

        assert len(price_announcements) == 1
        announcement = price_announcements[0]
        assert announcement["subscription"] == subscription
        assert announcement["amount"] == Decimal("45000.00")
        assert announcement["currency"] == "ARS"
        assert announcement["period_end"] == now + relativedelta(months=1)
        assert announcement["reason"] == SubscriptionEventKind.ACTIVATED

    def test_not_sent_for_trial_or_duplicate(
        self,
        plans,
        tenant,
        now,
        price_announcements,
        django_capture_on_commit_callbacks,
    ):
        with django_capture_on_commit_callbacks(execute=True):
            start_trial(tenant, now=now)
        assert price_announcements == []

        subscribe(tenant, "starter", now, correlation_id="in_1")
        with django_capture_on_commit_callbacks(execute=True) as callbacks:
            on_charge_succeeded(
                tenant,
                period_start=now,
                period_end=now + relativedelta(months=1),
                amount=Decimal("45000"),
                correlation_id="in_1",
            )
        assert callbacks == []
