"""Machine-readable error codes raised by the provisioning workflows."""

from __future__ import annotations


class ProvisioningError(Exception):
    """Base error carrying a caller-visible code and the HTTP status it maps to."""

    status_code = 500

    def __init__(self, code: str, status_code: int | None = None) -> None:
        super().__init__(code)
        self.code = code
        if status_code is not None:
            self.status_code = status_code


class ValidationFailed(ProvisioningError):
    status_code = 400


class AuthorizationFailed(ProvisioningError):
    status_code = 401


class ForbiddenError(ProvisioningError):
    status_code = 403


class ConflictError(ProvisioningError):
    status_code = 409


class RateLimited(ProvisioningError):
    status_code = 429

    def __init__(self, retry_after: int) -> None:
        super().__init__("RATE_LIMITED")
        self.retry_after = retry_after


class DependencyFailed(ProvisioningError):
    status_code = 500


class DuplicateAccountError(Exception):
    """Raised by a store when an account with the same email already exists."""


MISSING_FIELDS = "MISSING_FIELDS"
INVALID_EMAIL = "INVALID_EMAIL"
INVALID_VENUE = "INVALID_VENUE"
WEAK_CREDENTIAL = "WEAK_CREDENTIAL"
INVALID_TOKEN = "INVALID_TOKEN"
INCORRECT_CODE = "INCORRECT_CODE"
EMAIL_EXISTS = "EMAIL_EXISTS"
INVALID_PLAN = "INVALID_PLAN"
CHECKOUT_SESSION_CREATE_FAILED = "CHECKOUT_SESSION_CREATE_FAILED"
EMAIL_SEND_FAILED = "EMAIL_SEND_FAILED"
INVALID_SIGNATURE = "INVALID_SIGNATURE"
MISSING_SIGNATURE = "MISSING_SIGNATURE"
MISSING_WEBHOOK_SECRET = "MISSING_WEBHOOK_SECRET"
INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
UNAUTHORIZED = "UNAUTHORIZED"
FORBIDDEN = "FORBIDDEN"
