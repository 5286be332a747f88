import itertools
from datetime import UTC
from datetime import datetime
from unittest.mock import MagicMock
from unittest.mock import patch

import pytest

from nicroma.billing.management.commands.seed_plans import PLAN_CONFIG
from nicroma.billing.models import Plan
from nicroma.tenants.tests.factories import TenantFactory
from nicroma.tenants.tests.factories import TenantMembershipFactory
from nicroma.tenants.tests.factories import UserFactory


@pytest.fixture
def now() -> datetime:
    return datetime(2025, 3, 3, 12, 0, tzinfo=UTC)


@pytest.fixture
def plans(db) -> dict[str, Plan]:
    """The seeded plan catalog, keyed by slug."""
    return {
        slug: Plan.objects.create(slug=slug, **config)
        for slug, config in PLAN_CONFIG.items()
    }


@pytest.fixture
def tenant(db):
    return TenantFactory()


@pytest.fixture
def tenant_admin(tenant):
    return TenantMembershipFactory(tenant=tenant, is_admin=True).user


@pytest.fixture
def staff_user(db):
    return UserFactory(is_staff=True)


@pytest.fixture(autouse=True)
def stripe_checkout():
    """
    Replace Stripe Checkout session creation.

    Each call returns a new session id and URL, like the real API.
    """
    counter = itertools.count(1)

    def create_session(**kwargs):
        number = next(counter)
        return MagicMock(
            id=f"cs_test_{number}",
            url=f"https://checkout.stripe.com/c/pay/cs_test_{number}",
        )

    with patch(
        "nicroma.billing.gateways.stripe.checkout.Session.create",
        side_effect=create_session,
    ) as mock_create:
        yield mock_create
