"""Domain-level request contracts and collaborator ports shared by multiple layers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Collection, Protocol

from . import errors
from .account import Account, AccountStatus, PublicToken, SignupRequest, Tenant
from ..security.credentials import is_strong_password, is_valid_email, normalize_email


def _clean(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


@dataclass(slots=True)
class SignupDetails:
    """Validated inputs required to open a signup request."""

    email: str
    password: str
    venue_name: str
    plan: str | None = None

    @classmethod
    def parse(
        cls,
        *,
        email: Any,
        password: Any,
        venue: Any,
        plan: Any = None,
        plans: Collection[str] = (),
    ) -> "SignupDetails":
        """Return validated details or raise ``ValidationFailed`` with a specific code."""
        if not email or not password or not venue:
            raise errors.ValidationFailed(errors.MISSING_FIELDS)
        normalized_email = normalize_email(email) if isinstance(email, str) else ""
        if not is_valid_email(normalized_email):
            raise errors.ValidationFailed(errors.INVALID_EMAIL)
        venue_name = _clean(venue)
        if not venue_name:
            raise errors.ValidationFailed(errors.INVALID_VENUE)
        selected_plan = _clean(plan) or None
        if selected_plan is not None and selected_plan not in plans:
            raise errors.ValidationFailed(errors.INVALID_PLAN)
        if not isinstance(password, str) or not is_strong_password(password):
            raise errors.ValidationFailed(errors.WEAK_CREDENTIAL)
        return cls(
            email=normalized_email,
            password=password,
            venue_name=venue_name,
            plan=selected_plan,
        )


@dataclass(slots=True)
class CodeVerification:
    token: str
    code: str

    @classmethod
    def parse(cls, *, token: Any, code: Any) -> "CodeVerification":
        token_value = _clean(token)
        code_value = _clean(code)
        if not token_value or not code_value:
            raise errors.ValidationFailed(errors.MISSING_FIELDS)
        return cls(token=token_value, code=code_value)


@dataclass(slots=True)
class CheckoutInput:
    email: str
    plan: str

    @classmethod
    def parse(cls, *, email: Any, plan: Any, plans: Collection[str]) -> "CheckoutInput":
        """Validate a checkout request; plan problems are reported before anything else runs."""
        plan_value = _clean(plan)
        if not plan_value or not email:
            raise errors.ValidationFailed(errors.MISSING_FIELDS)
        if plan_value not in plans:
            raise errors.ValidationFailed(errors.INVALID_PLAN)
        normalized_email = normalize_email(email) if isinstance(email, str) else ""
        if not is_valid_email(normalized_email):
            raise errors.ValidationFailed(errors.INVALID_EMAIL)
        return cls(email=normalized_email, plan=plan_value)


@dataclass(slots=True)
class LoginInput:
    email: str
    password: str

    @classmethod
    def parse(cls, *, email: Any, password: Any) -> "LoginInput":
        """Presence check only; every login failure reports ``INVALID_CREDENTIALS``."""
        if not isinstance(email, str) or not isinstance(password, str) or not email or not password:
            raise errors.AuthorizationFailed(errors.INVALID_CREDENTIALS)
        return cls(email=normalize_email(email), password=password)

    def is_well_formed(self) -> bool:
        return is_valid_email(self.email) and is_strong_password(self.password)


@dataclass(slots=True)
class CheckoutSession:
    url: str | None
    session_id: str | None = None


class CheckoutProviderError(Exception):
    """Raised by a checkout provider when a session cannot be created."""


class WebhookSignatureError(Exception):
    """Raised when a webhook payload fails signature verification."""


class CredentialStore(Protocol):
    """Persistent account, signup request, tenant and public token storage."""

    def find_account_by_email(self, email: str) -> Account | None: ...

    def find_account_by_id(self, account_id: str) -> Account | None: ...

    def upsert_signup_request(self, request: SignupRequest) -> SignupRequest: ...

    def find_signup_request_by_id(self, request_id: str) -> SignupRequest | None: ...

    def delete_signup_request(self, request_id: str) -> None: ...

    def insert_account(self, account: Account) -> Account: ...

    def update_account_status(
        self,
        account_id: str,
        status: AccountStatus,
        *,
        tenant_id: str | None = None,
        billing_customer_id: str | None = None,
        billing_subscription_id: str | None = None,
    ) -> Account | None:
        """Transition only when the stored status differs from ``status``.

        Returns the updated account, or ``None`` when no row changed.
        """
        ...

    def update_pending_account(
        self,
        account_id: str,
        *,
        password_hash: str,
        venue_name: str,
        plan: str | None,
    ) -> Account | None:
        """Apply resubmitted signup details; ``None`` once the account is no longer pending."""
        ...

    def provision_tenant(self, tenant: Tenant, token: PublicToken) -> bool:
        """Create the tenant and its public token together.

        Returns ``False`` without writing when the tenant already exists.
        """
        ...

    def write_audit_event(
        self,
        *,
        account_id: str | None,
        tenant_id: str | None,
        event_type: str,
        actor: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> None: ...


class EmailSender(Protocol):
    def send(self, to: str, subject: str, body_text: str, body_html: str) -> bool: ...


class CheckoutProvider(Protocol):
    def create_checkout_session(
        self, *, price_id: str, plan: str, email: str, reference_id: str | None
    ) -> CheckoutSession: ...

    def verify_and_parse_webhook(
        self, raw_body: bytes, signature_header: str, secret: str
    ) -> dict[str, Any]: ...
