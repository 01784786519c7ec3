from __future__ import annotations


class UnionNotifyError(Exception):
    """Base error for unionnotify."""

    code = "INTERNAL_ERROR"
    status_code = 500


class ProviderConfigError(UnionNotifyError):
    """Missing or invalid transport configuration."""

    code = "PROVIDER_CONFIG_ERROR"


class IntegrationUnavailableError(UnionNotifyError):
    """External integration short-circuited by its breaker."""

    code = "SERVICE_UNAVAILABLE"
    status_code = 503


class TransportError(UnionNotifyError):
    """Push or SMS transport request failure."""

    code = "TRANSPORT_ERROR"


class DatabaseError(UnionNotifyError):
    """Database layer failure."""


class NotFoundError(UnionNotifyError):
    """Requested record does not exist."""

    code = "NOT_FOUND"
    status_code = 404


class VerificationError(UnionNotifyError):
    """Client-correctable OTP or phone validation failure."""

    code = "VERIFICATION_FAILED"
    status_code = 400


class InvalidPhoneError(VerificationError):
    """Phone number cannot be normalized to E.164."""

    code = "INVALID_PHONE"


class LockoutError(VerificationError):
    """User is inside an active SMS lockout window."""

    code = "SMS_LOCKED_OUT"


class RateLimitedError(VerificationError):
    """Too many OTP requests for one phone number."""

    code = "RATE_LIMITED"


class IneligibleRecipientError(UnionNotifyError):
    """Recipient cannot receive SMS right now."""

    code = "RECIPIENT_INELIGIBLE"
    status_code = 400


class BudgetExceededError(UnionNotifyError):
    """Organization SMS budget is exhausted for the period."""

    code = "SMS_BUDGET_EXCEEDED"
    status_code = 400


class ForbiddenError(UnionNotifyError):
    """Caller is not allowed to act on the requested scope."""

    code = "FORBIDDEN"
    status_code = 403


class DeliveryConflictError(UnionNotifyError):
    """Delivery is not in a state that allows the requested change."""

    code = "DELIVERY_CONFLICT"
    status_code = 409


class InvalidReceiptError(UnionNotifyError):
    """Delivery receipt is missing its message or recipient identity."""

    code = "INVALID_RECEIPT"
    status_code = 400
