"""
Typed billing errors.

Every business-rule rejection raised by the engine is a BillingError
subclass carrying a stable machine ``code``, so callers (the REST layer,
admin actions, automation) can branch on the reason instead of parsing
messages. The API exception handler maps ``status_code`` onto the HTTP
response.
"""

from __future__ import annotations


class BillingError(Exception):
    """Base exception for billing-related errors."""

    status_code = 422

    def __init__(self, detail: str, code: str = "billing_error"):
        self.detail = detail
        self.code = code
        super().__init__(detail)

    def as_dict(self) -> dict:
        return {"detail": self.detail, "code": self.code}


class InvalidTransition(BillingError):
    """Raised when a status change is not allowed from the current status."""

    status_code = 409

    def __init__(
        self,
        detail: str,
        *,
        from_status: str | None = None,
        action: str = "",
    ):
        self.from_status = from_status
        self.action = action
        super().__init__(detail, code="invalid_transition")

    def as_dict(self) -> dict:
        data = super().as_dict()
        data["from_status"] = self.from_status
        data["action"] = self.action
        return data


class ExtensionLimitReached(BillingError):
    """Raised when a trial has already been extended the maximum number of times."""

    def __init__(self, used: int, maximum: int):
        self.used = used
        self.maximum = maximum
        super().__init__(
            f"Trial already extended {used} of {maximum} times.",
            code="extension_limit_reached",
        )


class PromotionRejected(BillingError):
    """Raised when a promotion code cannot be applied."""

    def __init__(self, reason: str, detail: str = ""):
        self.reason = reason
        super().__init__(
            detail or f"Promotion code rejected: {reason}.",
            code="promotion_rejected",
        )

    def as_dict(self) -> dict:
        data = super().as_dict()
        data["reason"] = self.reason
        return data


class CapExceeded(BillingError):
    """Raised when redeeming a promotion would exceed a usage cap."""

    def __init__(self, detail: str, reason: str):
        self.reason = reason
        super().__init__(detail, code="cap_exceeded")

    def as_dict(self) -> dict:
        data = super().as_dict()
        data["reason"] = self.reason
        return data


class AccompanimentNotEligible(BillingError):
    def __init__(self, detail: str):
        super().__init__(detail, code="accompaniment_not_eligible")


class PlanNotPurchasable(BillingError):
    """Raised for inactive or contact-sales-only plans."""

    def __init__(self, detail: str):
        super().__init__(detail, code="plan_not_purchasable")


class NotFound(BillingError):
    status_code = 404

    def __init__(self, detail: str, code: str = "not_found"):
        super().__init__(detail, code=code)


class PlanNotFound(NotFound):
    def __init__(self, slug: str):
        self.slug = slug
        super().__init__(f"Plan '{slug}' does not exist.", code="plan_not_found")


class PromotionNotFound(NotFound):
    def __init__(self, code_value: str):
        super().__init__(
            f"Promotion '{code_value}' does not exist.",
            code="promotion_not_found",
        )


class SubscriptionNotFound(NotFound):
    def __init__(self, tenant=None):
        detail = "No subscription found."
        if tenant is not None:
            detail = f"No subscription found for tenant '{tenant}'."
        super().__init__(detail, code="subscription_not_found")


class TenantNotFound(NotFound):
    def __init__(self, detail: str = "Tenant not found."):
        super().__init__(detail, code="tenant_not_found")


class ExternalCollaboratorUnavailable(BillingError):
    """
    Raised when the payment (or invoicing) collaborator fails or times out.

    Nothing is committed when this is raised; the engine only transitions
    on a definitive external signal.
    """

    status_code = 503

    def __init__(self, detail: str = "Payment provider unavailable."):
        super().__init__(detail, code="collaborator_unavailable")
