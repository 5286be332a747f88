"""
Management command to run the billing sweep once.

Applies due cancellations, unpaid accompaniment offers, trial lapses,
pending plan changes and accompaniment month counting. Normally triggered
by the ``nicroma.billing.run_billing_sweep`` Celery beat task.

Usage:
    python manage.py run_billing_sweep
    python manage.py run_billing_sweep --dry-run
"""

from django.core.management.base import BaseCommand
from django.utils import timezone

from nicroma.billing.models import Subscription
from nicroma.billing.policy import BillingPolicy
from nicroma.billing.sweeps import due_subscription_ids
from nicroma.billing.sweeps import run_billing_sweep

# Max IDs to display in output before truncating
MAX_DISPLAY_IDS = 10


class Command(BaseCommand):
    help = "Apply scheduled subscription transitions that are due."

    def add_arguments(self, parser):
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="List subscriptions that would be examined without changing them",
        )

    def handle(self, *args, **options):
        if options["dry_run"]:
            self._dry_run()
            return

        report = run_billing_sweep()
        self.stdout.write(
            f"Examined {report.examined} subscription(s): "
            f"{report.cancelled} cancelled, "
            f"{report.trials_lapsed} trial(s) lapsed, "
            f"{report.accompaniments_abandoned} unpaid accompaniment(s) dropped, "
            f"{report.pending_changes_applied} pending change(s) applied, "
            f"{report.accompaniment_updates} accompaniment update(s).",
        )

        if report.failures:
            self.stdout.write(
                self.style.WARNING(
                    f"{len(report.failures)} subscription(s) failed; see logs.",
                ),
            )
            for failure in report.failures[:MAX_DISPLAY_IDS]:
                self.stdout.write(
                    f"  - {failure['subscription']}: {failure['error']}",
                )
            return

        self.stdout.write(self.style.SUCCESS("Billing sweep completed."))

    def _dry_run(self):
        ids = due_subscription_ids(timezone.now(), BillingPolicy.from_settings())
        if not ids:
            self.stdout.write(self.style.SUCCESS("No subscriptions due."))
            return

        self.stdout.write(
            self.style.WARNING(
                f"[DRY RUN] Would examine {len(ids)} subscription(s):",
            ),
        )
        subscriptions = Subscription.objects.select_related("tenant").filter(
            pk__in=ids[:MAX_DISPLAY_IDS],
        )
        for subscription in subscriptions:
            self.stdout.write(
                f"  - {subscription.pk}: {subscription.tenant} "
                f"({subscription.status}, plan={subscription.plan_id})",
            )
        if len(ids) > MAX_DISPLAY_IDS:
            self.stdout.write(f"  ... and {len(ids) - MAX_DISPLAY_IDS} more")
