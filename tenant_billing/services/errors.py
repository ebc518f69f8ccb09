"""Typed, recoverable outcomes surfaced by the billing core."""
from __future__ import annotations


class BillingError(Exception):
    """Base for caller-recoverable failures with a stable code."""

    code = "BILLING_ERROR"
    http_status = 400

    def __init__(self, message: str | None = None, *, code: str | None = None):
        super().__init__(message or self.__class__.__name__)
        if code:
            self.code = code

    @property
    def message(self) -> str:
        return str(self.args[0]) if self.args else self.code

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class NotFoundError(BillingError):
    http_status = 404


class PlanNotFoundError(NotFoundError):
    code = "PLAN_NOT_FOUND"


class SubscriptionNotFoundError(NotFoundError):
    """Raised for out-of-order updates; the caller retries later."""

    code = "SUBSCRIPTION_NOT_FOUND"


class PaymentNotFoundError(NotFoundError):
    code = "PAYMENT_NOT_FOUND"


class TenantNotFoundError(NotFoundError):
    code = "TENANT_NOT_FOUND"


class ConflictError(BillingError):
    http_status = 409


class AlreadyReviewedError(ConflictError):
    code = "ALREADY_REVIEWED"


class SubmissionConflictError(ConflictError):
    code = "SUBMISSION_CONFLICT"


class InvalidSubmissionError(BillingError):
    """Precondition failure; nothing was written."""

    code = "INVALID_SUBMISSION"
    http_status = 400


class EntitlementInvariantError(RuntimeError):
    """Programming-error class fault: the tenant anchoring a transaction vanished."""
