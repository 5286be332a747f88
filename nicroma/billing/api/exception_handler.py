"""
DRF exception handler that renders BillingError subclasses.

Business-rule rejections come back as ``{"detail", "code", ...}`` with the
status carried by the exception class (409 transitions, 422 rules, 404
unknown objects, 503 payment provider). Everything else goes through DRF's
default handler.
"""

import logging

from rest_framework.response import Response
from rest_framework.views import exception_handler
from rest_framework.views import set_rollback

from nicroma.billing.exceptions import BillingError

logger = logging.getLogger(__name__)


def billing_exception_handler(exc, context):
    if isinstance(exc, BillingError):
        view = context.get("view")
        logger.info(
            "%s rejected with %s: %s",
            view.__class__.__name__ if view else "request",
            exc.code,
            exc.detail,
        )
        set_rollback()
        return Response(exc.as_dict(), status=exc.status_code)
    return exception_handler(exc, context)
