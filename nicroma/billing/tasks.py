"""
Celery tasks for scheduled billing work.

The beat schedule (CELERY_BEAT_SCHEDULE in config/settings/base.py) triggers
run_billing_sweep every BILLING_SWEEP_INTERVAL_SECONDS. The task wraps the
``run_billing_sweep`` management command so the same code path can be run
by hand or from cron:

    python manage.py run_billing_sweep

To run the worker and scheduler:
    celery -A config worker --loglevel=info
    celery -A config beat --loglevel=info
"""

import logging
from datetime import UTC
from datetime import datetime
from io import StringIO

from celery import shared_task
from django.core.management import call_command
from django.db import OperationalError

logger = logging.getLogger(__name__)

# Exceptions that indicate transient failures worth retrying.
RETRYABLE_EXCEPTIONS = (
    OperationalError,  # Database connection issues
    ConnectionError,
    TimeoutError,
)


def _run_management_command(command_name: str, *args: str) -> dict:
    """
    Run a management command and return its output.

    Exceptions propagate so Celery's autoretry_for can handle them.
    """
    out = StringIO()
    err = StringIO()
    call_command(command_name, *args, stdout=out, stderr=err)

    result = {
        "status": "completed",
        "command": command_name,
        "output": out.getvalue().strip(),
        "timestamp": datetime.now(tz=UTC).isoformat(),
    }
    errors = err.getvalue().strip()
    if errors:
        result["errors"] = errors
    return result


@shared_task(
    bind=True,
    name="nicroma.billing.run_billing_sweep",
    autoretry_for=RETRYABLE_EXCEPTIONS,
    max_retries=3,
    retry_backoff=60,  # Exponential backoff starting at 60s
    retry_backoff_max=600,  # Max 10 minutes between retries
    acks_late=True,
)
def run_billing_sweep(self) -> dict:
    """
    Apply due cancellations, trial lapses, pending plan changes and
    accompaniment month counting.

    Safe to run concurrently with itself and with tenant requests: every
    subscription is handled under its own row lock.
    """
    logger.info("Starting scheduled billing sweep (task_id=%s)", self.request.id)
    result = _run_management_command("run_billing_sweep")
    logger.info("Billing sweep completed: %s", result.get("output", ""))
    return result
