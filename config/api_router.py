"""
API router mounted at /api/v1/.

Billing endpoints (catalog, tenant subscription actions, staff tools and
the payment webhook) are defined in nicroma.billing.api.urls.
"""

from django.urls import include
from django.urls import path

app_name = "api"
urlpatterns = [
    path("", include("nicroma.billing.api.urls")),
]
