"""
Celery application configuration for Nicroma.

The only periodic work today is the billing sweep (pending plan changes,
accompaniment lapses, cancellations at period end, expired trials). It is
defined as a @shared_task in nicroma.billing.tasks so CELERY_TASK_ALWAYS_EAGER
works in tests.

Components:
  - Worker: Processes background tasks (`celery -A config worker`)
  - Beat: Triggers periodic tasks (`celery -A config beat`)

Configuration:
  - Broker: Redis (CELERY_BROKER_URL)
  - Result backend: None (fire-and-forget, all state in Django models)
  - Task serialization: JSON
  - Periodic tasks: CELERY_BEAT_SCHEDULE in config/settings/base.py
"""

import logging
import os

from celery import Celery

logger = logging.getLogger(__name__)

# Set the default Django settings module for the 'celery' program.
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings.local")

app = Celery("nicroma")

# Using a string here means the worker doesn't have to serialize
# the configuration object to child processes.
# - namespace='CELERY' means all celery-related configuration keys
#   should have a `CELERY_` prefix.
app.config_from_object("django.conf:settings", namespace="CELERY")

# Load task modules from all registered Django apps.
app.autodiscover_tasks()


@app.task(bind=True, ignore_result=True)
def debug_task(self):
    """Debug task for testing Celery connectivity."""
    logger.info("Debug task received: %r", self.request)
