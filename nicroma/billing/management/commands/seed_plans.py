"""
Management command to seed the plan catalog.

Creates or updates the five commercial plans (Emprendedor, Starter,
Profesional, Business, Enterprise) with their limits and feature flags.

Prices of a plan that is already referenced by a subscription are never
rewritten in place; publish a new plan slug instead. ``--force`` still
updates descriptions, limits and flags of such plans.

Usage:
    python manage.py seed_plans           # Create missing plans
    python manage.py seed_plans --force   # Also update existing plans
"""

from decimal import Decimal

from django.core.management.base import BaseCommand

from nicroma.billing.constants import SupportTier
from nicroma.billing.models import Plan
from nicroma.billing.models import Subscription

PRICE_FIELDS = ("price_monthly", "price_yearly", "currency")

PLAN_CONFIG = {
    "emprendedor": {
        "name": "Emprendedor",
        "description": "Ideal para despachantes que están comenzando",
        "price_monthly": Decimal("25000.00"),
        "price_yearly": Decimal("250000.00"),
        "currency": "ARS",
        "max_users": 2,
        "max_operations_per_month": 5,
        "max_clients": 10,
        "has_client_portal": True,
        "has_carrier_tracking": False,
        "carrier_tracking_limit": 0,
        "has_electronic_invoicing": False,
        "has_advanced_reports": False,
        "support_tier": SupportTier.EMAIL_LOW,
        "is_contact_sales": False,
        "sort_rank": 1,
        "features": [
            "Gestión de carpetas básica",
            "Portal de clientes",
            "Hasta 2 usuarios",
            "Hasta 5 carpetas/mes",
            "Hasta 10 clientes",
            "Soporte por email",
        ],
    },
    "starter": {
        "name": "Starter",
        "description": "Para operaciones chicas y estables",
        "price_monthly": Decimal("45000.00"),
        "price_yearly": Decimal("450000.00"),
        "currency": "ARS",
        "max_users": 2,
        "max_operations_per_month": 30,
        "max_clients": 20,
        "has_client_portal": True,
        "has_carrier_tracking": False,
        "carrier_tracking_limit": 0,
        "has_electronic_invoicing": True,
        "has_advanced_reports": False,
        "support_tier": SupportTier.EMAIL,
        "is_contact_sales": False,
        "sort_rank": 2,
        "features": [
            "Todo lo del plan Emprendedor",
            "Facturación electrónica",
            "Hasta 30 carpetas/mes",
            "Hasta 20 clientes",
            "Soporte por email",
        ],
    },
    "profesional": {
        "name": "Profesional",
        "description": "Para freight forwarders en crecimiento",
        "price_monthly": Decimal("89000.00"),
        "price_yearly": Decimal("890000.00"),
        "currency": "ARS",
        "max_users": 5,
        "max_operations_per_month": 150,
        "max_clients": 100,
        "has_client_portal": True,
        "has_carrier_tracking": True,
        "carrier_tracking_limit": 5,
        "has_electronic_invoicing": True,
        "has_advanced_reports": True,
        "support_tier": SupportTier.EMAIL_CHAT,
        "is_contact_sales": False,
        "sort_rank": 3,
        "features": [
            "Todo lo del plan Starter",
            "Tracking de 5 navieras",
            "Reportes avanzados",
            "Hasta 5 usuarios",
            "Hasta 150 carpetas/mes",
            "Hasta 100 clientes",
            "Soporte por email y chat",
        ],
    },
    "business": {
        "name": "Business",
        "description": "Para operaciones de gran volumen",
        "price_monthly": Decimal("179000.00"),
        "price_yearly": Decimal("1790000.00"),
        "currency": "ARS",
        "max_users": 15,
        "max_operations_per_month": None,
        "max_clients": None,
        "has_client_portal": True,
        "has_carrier_tracking": True,
        "carrier_tracking_limit": 5,
        "has_electronic_invoicing": True,
        "has_advanced_reports": True,
        "support_tier": SupportTier.PRIORITY,
        "is_contact_sales": False,
        "sort_rank": 4,
        "features": [
            "Todo lo del plan Profesional",
            "Hasta 15 usuarios",
            "Carpetas ilimitadas",
            "Clientes ilimitados",
            "Soporte prioritario",
        ],
    },
    "enterprise": {
        "name": "Enterprise",
        "description": "Solución personalizada para grandes empresas",
        "price_monthly": Decimal("0.00"),  # Contact sales
        "price_yearly": Decimal("0.00"),
        "currency": "ARS",
        "max_users": None,
        "max_operations_per_month": None,
        "max_clients": None,
        "has_client_portal": True,
        "has_carrier_tracking": True,
        "carrier_tracking_limit": None,
        "has_electronic_invoicing": True,
        "has_advanced_reports": True,
        "support_tier": SupportTier.DEDICATED,
        "is_contact_sales": True,
        "sort_rank": 5,
        "features": [
            "Todo lo del plan Business",
            "Usuarios ilimitados",
            "Integraciones personalizadas",
            "Reportes a medida",
            "Onboarding VIP",
            "Capacitación incluida",
            "SLA garantizado",
            "Soporte dedicado",
        ],
    },
}


class Command(BaseCommand):
    help = "Seed the billing plan catalog"

    def add_arguments(self, parser):
        parser.add_argument(
            "--force",
            action="store_true",
            help="Update existing plans with the latest configuration",
        )

    def handle(self, *args, **options):
        force_update = options["force"]

        self.stdout.write("=" * 60)
        self.stdout.write("Seeding plans")
        self.stdout.write("=" * 60)

        for slug, config in PLAN_CONFIG.items():
            plan, created = Plan.objects.get_or_create(slug=slug, defaults=config)
            if created:
                self.stdout.write(self.style.SUCCESS(f"  Created: {plan.name}"))
            elif force_update:
                self._update(plan, config)
            else:
                self.stdout.write(
                    f"  Exists: {plan.name} (use --force to update)",
                )

        self._show_summary()

    def _update(self, plan: Plan, config: dict):
        referenced = Subscription.objects.filter(plan=plan).exists()
        skipped = []
        for field, value in config.items():
            if referenced and field in PRICE_FIELDS:
                if getattr(plan, field) != value:
                    skipped.append(field)
                continue
            setattr(plan, field, value)
        plan.save()

        self.stdout.write(self.style.SUCCESS(f"  Updated: {plan.name}"))
        if skipped:
            self.stdout.write(
                self.style.WARNING(
                    f"    Kept {', '.join(skipped)}: plan is referenced by "
                    "subscriptions. Publish a new plan to change its price.",
                ),
            )

    def _show_summary(self):
        self.stdout.write("\n" + "=" * 60)
        self.stdout.write("Summary")
        self.stdout.write("=" * 60)

        for plan in Plan.objects.all():
            price = (
                "Contact sales"
                if plan.is_contact_sales
                else f"${plan.price_monthly:,.0f}/mo"
            )
            users = plan.max_users if plan.max_users is not None else "unlimited"
            state = "active" if plan.is_active else "inactive"
            self.stdout.write(
                f"  {plan.name}: {price}, {users} users, {state}",
            )

        self.stdout.write(self.style.SUCCESS("\nDone!"))
