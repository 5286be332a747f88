from django.apps import AppConfig
from django.utils.translation import gettext_lazy as _


class BillingConfig(AppConfig):
    """
    Django app configuration for the billing app.

    Owns the subscription lifecycle: plan catalog, promotions, trials,
    plan changes, suspension, payment event handling and metrics.
    """

    default_auto_field = "django.db.models.BigAutoField"
    name = "nicroma.billing"
    verbose_name = _("Billing")

    def ready(self):
        """Import signal definitions so receivers can connect at startup."""
        from nicroma.billing import signals  # noqa: F401
