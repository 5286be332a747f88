"""
Mixin and permission classes for tenant-scoped API views.

Tenant-facing endpoints carry the tenant in the URL:
    path("tenants/<slug:tenant_slug>/billing/subscription/", ...)

Any active member may read; changing the subscription requires a tenant
administrator.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rest_framework import permissions

from nicroma.tenants.models import Tenant
from nicroma.tenants.models import TenantMembership

if TYPE_CHECKING:
    from rest_framework.request import Request
    from rest_framework.views import APIView


class TenantScopedMixin:
    """
    Resolves the tenant from the ``tenant_slug`` URL kwarg.

    Usage:
        class SubscriptionView(TenantScopedMixin, APIView):
            def get(self, request, tenant_slug):
                tenant = self.get_tenant()
    """

    _tenant: Tenant | None = None
    _membership: TenantMembership | None = None

    def get_tenant(self) -> Tenant:
        """
        Return the tenant from the URL path.

        Raises TenantNotFound if the slug is unknown.
        """
        if self._tenant is None:
            from nicroma.billing.exceptions import TenantNotFound

            slug = self.kwargs.get("tenant_slug")
            tenant = Tenant.objects.filter(slug=slug).first()
            if tenant is None:
                raise TenantNotFound(f"Tenant '{slug}' not found.")
            self._tenant = tenant
        return self._tenant

    def get_membership(self) -> TenantMembership | None:
        """The user's active membership in the tenant, or None."""
        if self._membership is None:
            user = self.request.user
            if user.is_authenticated:
                self._membership = TenantMembership.objects.filter(
                    user=user,
                    tenant=self.get_tenant(),
                    is_active=True,
                ).first()
        return self._membership


class TenantMembershipPermission(permissions.BasePermission):
    """
    Members may read; tenant administrators may also write.

    Superusers always have access.
    """

    message = "You must be an administrator of this tenant."

    def has_permission(self, request: Request, view: APIView) -> bool:
        if request.user.is_authenticated and request.user.is_superuser:
            return True
        if not hasattr(view, "get_membership"):
            return True

        membership = view.get_membership()
        if membership is None:
            return False
        if request.method in permissions.SAFE_METHODS:
            return True
        return membership.is_admin
