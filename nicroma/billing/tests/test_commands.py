from datetime import timedelta
from decimal import Decimal
from io import StringIO

import pytest
from django.core.management import call_command
from django.utils import timezone

from nicroma.billing.constants import SubscriptionStatus
from nicroma.billing.models import Plan
from nicroma.billing.tasks import run_billing_sweep
from nicroma.billing.tests.factories import SubscriptionFactory


def run(*args) -> str:
    out = StringIO()
    call_command(*args, stdout=out)
    return out.getvalue()


@pytest.mark.django_db
class TestSeedPlans:
    def test_creates_catalog(self):
        output = run("seed_plans")

        assert Plan.objects.count() == 5
        assert "Created: Starter" in output
        assert Plan.objects.get(slug="enterprise").is_purchasable is False

    def test_rerun_without_force_leaves_plans(self):
        run("seed_plans")
        Plan.objects.filter(slug="starter").update(name="Viejo")

        output = run("seed_plans")

        assert "Exists: Viejo (use --force to update)" in output
        assert Plan.objects.get(slug="starter").name == "Viejo"

    def test_force_keeps_price_of_referenced_plan(self):
        run("seed_plans")
        starter = Plan.objects.get(slug="starter")
        SubscriptionFactory(plan=starter)
        Plan.objects.filter(slug="starter").update(
            name="Viejo",
            price_monthly=Decimal("40000.00"),
        )

        output = run("seed_plans", "--force")

        starter.refresh_from_db()
        assert starter.name == "Starter"
        assert starter.price_monthly == Decimal("40000.00")
        assert "Kept price_monthly" in output

    def test_force_updates_unreferenced_price(self):
        run("seed_plans")
        Plan.objects.filter(slug="business").update(price_monthly=Decimal("1.00"))

        run("seed_plans", "--force")

        assert Plan.objects.get(slug="business").price_monthly != Decimal("1.00")


@pytest.mark.django_db
class TestRunBillingSweep:
    def test_nothing_due(self, plans):
        SubscriptionFactory(plan=plans["starter"])

        assert "No subscriptions due." in run("run_billing_sweep", "--dry-run")

    def test_dry_run_does_not_change_anything(self, plans):
        stale = SubscriptionFactory(
            plan=plans["profesional"],
            trialing=True,
            current_period_start=timezone.now() - timedelta(days=30),
        )

        output = run("run_billing_sweep", "--dry-run")

        assert "[DRY RUN] Would examine 1 subscription(s):" in output
        stale.refresh_from_db()
        assert stale.status == SubscriptionStatus.TRIALING

    def test_lapses_stale_trial(self, plans):
        stale = SubscriptionFactory(
            plan=plans["profesional"],
            trialing=True,
            current_period_start=timezone.now() - timedelta(days=30),
        )

        output = run("run_billing_sweep")

        assert "1 trial(s) lapsed" in output
        assert "Billing sweep completed." in output
        stale.refresh_from_db()
        assert stale.status == SubscriptionStatus.CANCELLED


@pytest.mark.django_db
class TestBillingSweepTask:
    def test_wraps_management_command(self, plans):
        result = run_billing_sweep.apply().get()

        assert result["status"] == "completed"
        assert result["command"] == "run_billing_sweep"
        assert "Examined 0 subscription(s)" in result["output"]
