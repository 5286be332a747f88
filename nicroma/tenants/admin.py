from django.contrib import admin

from nicroma.tenants.models import Tenant
from nicroma.tenants.models import TenantMembership


class TenantMembershipInline(admin.TabularInline):
    model = TenantMembership
    extra = 0
    raw_id_fields = ["user"]


@admin.register(Tenant)
class TenantAdmin(admin.ModelAdmin):
    """Admin for tenant organizations."""

    list_display = ["name", "slug", "company_email", "created"]
    search_fields = ["name", "slug", "company_email"]
    prepopulated_fields = {"slug": ("name",)}
    readonly_fields = ["created", "modified"]
    inlines = [TenantMembershipInline]
