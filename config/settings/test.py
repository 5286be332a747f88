"""
With these settings, tests run faster.
"""

from .base import *  # noqa: F403
from .base import DATABASES
from .base import REST_FRAMEWORK
from .base import env

# GENERAL
# ------------------------------------------------------------------------------
# https://docs.djangoproject.com/en/dev/ref/settings/#secret-key
SECRET_KEY = env(
    "DJANGO_SECRET_KEY",
    default="y0XOdE3mW7kQk1cJ4dGmCq0Fq7Jv9y2tAqo8Lr6Cz4bXn1HhUs5Ew3Tg2Pj7Kd9V",
)
# https://docs.djangoproject.com/en/dev/ref/settings/#test-runner
TEST_RUNNER = "django.test.runner.DiscoverRunner"
# The row-locking tests need threads with their own connections.
DATABASES["default"]["CONN_MAX_AGE"] = 0  # type: ignore[name-defined]
# https://docs.djangoproject.com/en/dev/ref/settings/#allowed-hosts
ALLOWED_HOSTS = ["localhost", "127.0.0.1", "testserver"]

# PASSWORDS
# ------------------------------------------------------------------------------
# https://docs.djangoproject.com/en/dev/ref/settings/#password-hashers
PASSWORD_HASHERS = ["django.contrib.auth.hashers.MD5PasswordHasher"]

# EMAIL
# ------------------------------------------------------------------------------
# https://docs.djangoproject.com/en/dev/ref/settings/#email-backend
EMAIL_BACKEND = "django.core.mail.backends.locmem.EmailBackend"

# Celery
# ------------------------------------------------------------------------------
# Run tasks inline so sweep tasks can be asserted on directly.
CELERY_TASK_ALWAYS_EAGER = True
CELERY_TASK_EAGER_PROPAGATES = True

# Stripe
# ------------------------------------------------------------------------------
STRIPE_SECRET_KEY = "sk_test_dummy_test_key_for_testing"  # noqa: S105
STRIPE_WEBHOOK_SECRET = "whsec_dummy_test_secret"  # noqa: S105

# Disable DRF throttling in tests to prevent rate limit failures during test runs
REST_FRAMEWORK["DEFAULT_THROTTLE_CLASSES"] = []  # type: ignore[index]
REST_FRAMEWORK["DEFAULT_THROTTLE_RATES"] = {}  # type: ignore[index]
