"""
Plan catalog lookups.

Pure reads over the Plan table plus the ordering rule that decides whether
moving between two plans is an upgrade. Plans are never hard-deleted; use
deactivate_plan() to retire one.

Usage:
    plans = get_active_plans()
    starter = get_plan("starter")
    if is_upgrade(starter, get_plan("profesional")):
        ...
"""

from __future__ import annotations

import logging
from enum import Enum

from nicroma.billing.exceptions import PlanNotFound
from nicroma.billing.models import Plan

logger = logging.getLogger(__name__)


class PlanChangeType(str, Enum):
    """Types of plan changes."""

    UPGRADE = "upgrade"  # Moving to a higher-priced plan
    DOWNGRADE = "downgrade"  # Moving to a lower-priced plan
    LATERAL = "lateral"  # Same monthly price


def get_active_plans():
    """Active plans ordered by display rank."""
    return Plan.objects.filter(is_active=True).order_by("sort_rank", "slug")


def get_plan(slug: str, *, active_only: bool = False) -> Plan:
    queryset = Plan.objects.all()
    if active_only:
        queryset = queryset.filter(is_active=True)
    try:
        return queryset.get(slug=slug)
    except Plan.DoesNotExist:
        raise PlanNotFound(slug) from None


def is_upgrade(from_plan: Plan, to_plan: Plan) -> bool:
    """
    True iff the target's monthly price is strictly higher.

    Equal prices are not upgrades, so lateral moves take the deferred
    downgrade path.
    """
    return to_plan.price_monthly > from_plan.price_monthly


def get_change_type(from_plan: Plan, to_plan: Plan) -> PlanChangeType:
    if is_upgrade(from_plan, to_plan):
        return PlanChangeType.UPGRADE
    if to_plan.price_monthly < from_plan.price_monthly:
        return PlanChangeType.DOWNGRADE
    return PlanChangeType.LATERAL


def deactivate_plan(plan: Plan) -> Plan:
    """Hide a plan from the catalog. Existing subscriptions keep it."""
    if plan.is_active:
        plan.is_active = False
        plan.save(update_fields=["is_active"])
        logger.info("Deactivated plan %s", plan.slug)
    return plan
