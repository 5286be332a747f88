"""
Billing constants for the subscription lifecycle engine.

These enums define the lifecycle states, billing cycles and the tagged
variants used to describe where a subscription's price comes from.

Subscription flow:
    (none) → TRIALING (trial start)
    TRIALING → ACTIVE (first successful charge, before or after trial end)
    ACTIVE → PAST_DUE (recurring charge failed) → ACTIVE (next success)
    ACTIVE | PAST_DUE → SUSPENDED (admin only) → ACTIVE (admin only)
    any non-terminal → CANCELLED (period-end sweep, admin force, trial lapse)

CANCELLED is terminal. A tenant that wants service again starts a new
Subscription row; the old one stays for history and metrics.
"""

from django.db import models
from django.utils.translation import gettext_lazy as _


class SubscriptionStatus(models.TextChoices):
    TRIALING = "trialing", _("Trial")
    ACTIVE = "active", _("Active")
    PAST_DUE = "past_due", _("Past Due")
    SUSPENDED = "suspended", _("Suspended")
    CANCELLED = "cancelled", _("Cancelled")


# Statuses that count towards recurring revenue.
REVENUE_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE)


class BillingCycle(models.TextChoices):
    MONTHLY = "monthly", _("Monthly")
    YEARLY = "yearly", _("Yearly")


class PriceOverride(models.TextChoices):
    """
    Tagged variant for the base price currently in effect.

    Exactly one applies at a time. A promotion discount, when present,
    layers on top of whichever base price the override selects.
    """

    STANDARD = "standard", _("Standard plan price")
    TRIAL = "trial", _("Trial (no charge)")
    ACCOMPANIMENT = "accompaniment", _("Accompaniment offer")


class DiscountKind(models.TextChoices):
    PERCENTAGE = "percentage", _("Percentage")
    FIXED = "fixed", _("Fixed amount")


class SupportTier(models.TextChoices):
    EMAIL_LOW = "email_low", _("Email (low priority)")
    EMAIL = "email", _("Email")
    EMAIL_CHAT = "email_chat", _("Email and chat")
    PRIORITY = "priority", _("Priority")
    DEDICATED = "dedicated", _("Dedicated")


class PaymentStatus(models.TextChoices):
    COMPLETED = "completed", _("Completed")
    FAILED = "failed", _("Failed")
    PENDING = "pending", _("Pending")
    REFUNDED = "refunded", _("Refunded")


class CheckoutStatus(models.TextChoices):
    OPEN = "open", _("Open")
    COMPLETED = "completed", _("Completed")
    ABANDONED = "abandoned", _("Abandoned")


class CheckoutKind(models.TextChoices):
    STANDARD = "standard", _("Plan purchase")
    ACCOMPANIMENT = "accompaniment", _("Accompaniment offer")


class SubscriptionEventKind(models.TextChoices):
    TRIAL_STARTED = "trial_started", _("Trial started")
    TRIAL_EXTENDED = "trial_extended", _("Trial extended")
    TRIAL_LAPSED = "trial_lapsed", _("Trial lapsed")
    ACTIVATED = "activated", _("Activated")
    RENEWED = "renewed", _("Renewed")
    PAYMENT_FAILED = "payment_failed", _("Payment failed")
    PAYMENT_RECOVERED = "payment_recovered", _("Payment recovered")
    CANCEL_REQUESTED = "cancel_requested", _("Cancellation requested")
    CANCEL_UNDONE = "cancel_undone", _("Cancellation undone")
    CANCELLED = "cancelled", _("Cancelled")
    SUSPENDED = "suspended", _("Suspended")
    REACTIVATED = "reactivated", _("Reactivated")
    PLAN_CHANGED = "plan_changed", _("Plan changed")
    PLAN_CHANGE_SCHEDULED = "plan_change_scheduled", _("Plan change scheduled")
    PLAN_CHANGE_CANCELLED = "plan_change_cancelled", _("Scheduled change cancelled")
    ACCOMPANIMENT_OFFERED = "accompaniment_offered", _("Accompaniment checkout opened")
    ACCOMPANIMENT_ACTIVATED = "accompaniment_activated", _("Accompaniment activated")
    ACCOMPANIMENT_MONTH_USED = "accompaniment_month_used", _("Accompaniment month used")
    ACCOMPANIMENT_LAPSED = "accompaniment_lapsed", _("Accompaniment lapsed")
    ACCOMPANIMENT_ABANDONED = "accompaniment_abandoned", _("Accompaniment abandoned")
    DISCOUNT_EXPIRED = "discount_expired", _("Promotion discount expired")


class PromotionRejection(models.TextChoices):
    """Reasons a promotion code is rejected, in evaluation order."""

    NOT_FOUND = "not_found", _("Code not found or inactive")
    EXPIRED = "expired", _("Code expired")
    NOT_APPLICABLE = "not_applicable", _("Code not applicable to this plan")
    GLOBAL_CAP_REACHED = "global_cap_reached", _("Code usage limit reached")
    TENANT_CAP_REACHED = "tenant_cap_reached", _("Code already used by this tenant")


class LimitType(models.TextChoices):
    USERS = "users", _("Users")
    OPERATIONS = "operations", _("Operations per month")
    CLIENTS = "clients", _("Clients")
    CARRIERS = "carriers", _("Tracked carriers")
    CLIENT_PORTAL = "client_portal", _("Client portal")
    CARRIER_TRACKING = "carrier_tracking", _("Carrier tracking")
    ELECTRONIC_INVOICING = "electronic_invoicing", _("Electronic invoicing")
    ADVANCED_REPORTS = "advanced_reports", _("Advanced reports")
