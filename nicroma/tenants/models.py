"""
Tenant models.

A tenant is a customer organization (a freight-forwarding business) and is
the billing unit: subscriptions, promotion redemptions and payments all hang
off a Tenant. Users reach a tenant through TenantMembership.
"""

from django.conf import settings
from django.db import models
from django.utils.text import slugify
from django.utils.translation import gettext_lazy as _
from model_utils.models import TimeStampedModel


class Tenant(TimeStampedModel):
    """
    A customer organization that can have multiple users.
    """

    name = models.CharField(
        max_length=255,
        help_text=_("Name of the organization, e.g. 'Despachos del Sur SRL'"),
    )
    slug = models.SlugField(unique=True, blank=True)
    company_email = models.EmailField(
        blank=True,
        help_text=_("Billing contact. Falls back to an admin member's email."),
    )
    members = models.ManyToManyField(
        settings.AUTH_USER_MODEL,
        through="TenantMembership",
        related_name="tenants",
        blank=True,
    )

    def __str__(self):
        return self.name

    def save(self, *args, **kwargs):
        if not self.slug:
            self.slug = slugify(self.name)
        super().save(*args, **kwargs)

    @property
    def billing_email(self) -> str:
        """
        Email used as the payer for checkouts.

        Prefers the company email, then an admin member, then any member.
        """
        if self.company_email:
            return self.company_email

        membership = (
            self.memberships.filter(is_active=True)
            .select_related("user")
            .order_by("-is_admin", "created")
            .first()
        )
        return membership.user.email if membership else ""

    def has_member(self, user) -> bool:
        if not user or not user.is_authenticated:
            return False
        return self.memberships.filter(user=user, is_active=True).exists()


class TenantMembership(TimeStampedModel):
    """Link between a user and a tenant."""

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="tenant_memberships",
    )
    tenant = models.ForeignKey(
        Tenant,
        on_delete=models.CASCADE,
        related_name="memberships",
    )
    is_admin = models.BooleanField(
        default=False,
        help_text=_("Tenant administrators manage the subscription."),
    )
    is_active = models.BooleanField(default=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["user", "tenant"],
                name="uniq_tenant_membership",
            ),
        ]

    def __str__(self):
        return f"{self.user} @ {self.tenant}"
