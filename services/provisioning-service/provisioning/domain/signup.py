"""Signup orchestration from email claim through payment-driven activation."""

from __future__ import annotations

import hmac
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Mapping
from urllib.parse import quote

from . import errors
from .account import Account, AccountRole, AccountStatus, PublicToken, SignupRequest, Tenant
from .contracts import (
    CheckoutInput,
    CheckoutProvider,
    CheckoutProviderError,
    CodeVerification,
    CredentialStore,
    EmailSender,
    SignupDetails,
    WebhookSignatureError,
)
from ..integrations.email import render_login_notice, render_verification_email
from ..security.credentials import hash_password, normalize_email
from ..security.tokens import (
    TokenCodec,
    generate_public_token,
    generate_request_id,
    generate_verification_code,
)

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED_EVENT = "checkout.session.completed"
TENANT_NAMESPACE = uuid.UUID("6f3b2c1e-8d4a-5b7f-9e21-4c0a7d9e5b13")


def tenant_id_for(account_id: str) -> str:
    """Derive the tenant id of an account so every activation attempt agrees on it."""
    return str(uuid.uuid5(TENANT_NAMESPACE, account_id))


class SignupState(str, Enum):
    DETAILS_SUBMITTED = "DETAILS_SUBMITTED"
    CODE_SENT = "CODE_SENT"
    CODE_VERIFIED = "CODE_VERIFIED"
    CHECKOUT_PENDING = "CHECKOUT_PENDING"
    ACTIVE = "ACTIVE"
    ALREADY_ACTIVE = "ALREADY_ACTIVE"
    EXISTING_ACCOUNT_NOTICE = "EXISTING_ACCOUNT_NOTICE"


@dataclass(slots=True)
class SignupResult:
    """Outcome of a details submission.

    ``state`` is internal; callers only expose ``token`` and ``expires_in`` so
    that a notice sent to an existing owner is indistinguishable from a fresh
    request.
    """

    state: SignupState
    token: str
    expires_in: int


@dataclass(slots=True)
class VerificationResult:
    state: SignupState
    account_id: str
    email: str
    plan: str | None


@dataclass(slots=True)
class CheckoutResult:
    state: SignupState
    url: str


@dataclass(slots=True)
class ActivationResult:
    state: SignupState | None
    account_id: str | None = None
    tenant_id: str | None = None
    changed: bool = False


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SignupOrchestrator:
    """Carry a prospective owner from details submission to an active account.

    Accounts are materialised as ``pending`` when the emailed code is
    verified; the tenant and its public token are provisioned only when the
    payment provider confirms checkout.
    """

    def __init__(
        self,
        store: CredentialStore,
        codec: TokenCodec,
        email_sender: EmailSender,
        checkout_provider: CheckoutProvider,
        *,
        plan_prices: Mapping[str, str],
        base_url: str,
        token_ttl_seconds: int = 15 * 60,
        bcrypt_rounds: int = 10,
        webhook_secret: str = "",
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._codec = codec
        self._email_sender = email_sender
        self._checkout_provider = checkout_provider
        self._plan_prices = dict(plan_prices)
        self._base_url = base_url.rstrip("/")
        self._token_ttl_seconds = token_ttl_seconds
        self._bcrypt_rounds = bcrypt_rounds
        self._webhook_secret = webhook_secret
        self._clock = clock

    @property
    def plans(self) -> frozenset[str]:
        return frozenset(self._plan_prices)

    def submit_details(self, details: SignupDetails) -> SignupResult:
        """Open (or replace) the signup request for ``details.email`` and email a code."""
        # hash in both branches so response time does not reveal existing accounts
        password_hash = hash_password(details.password, rounds=self._bcrypt_rounds)
        existing = self._store.find_account_by_email(details.email)
        if existing is not None and existing.is_active:
            subject, text, html = render_login_notice(f"{self._base_url}/login")
            self._send(details.email, subject, text, html)
            logger.info("signup submitted for active account %s; login notice sent", details.email)
            decoy = self._issue_code_token(
                generate_request_id(), details.email, generate_verification_code()
            )
            return SignupResult(SignupState.EXISTING_ACCOUNT_NOTICE, decoy, self._token_ttl_seconds)

        now = self._clock()
        request = self._store.upsert_signup_request(
            SignupRequest(
                request_id=generate_request_id(),
                email=details.email,
                venue_name=details.venue_name,
                password_hash=password_hash,
                created_at=now,
                expires_at=now + timedelta(seconds=self._token_ttl_seconds),
                plan=details.plan,
            )
        )

        code = generate_verification_code()
        token = self._issue_code_token(request.request_id, request.email, code)
        link_token = self._codec.issue(
            {"kind": "link", "rid": request.request_id, "email": request.email},
            self._token_ttl_seconds,
        )
        verify_url = f"{self._base_url}/signup/verify?token={quote(link_token, safe='')}"
        subject, text, html = render_verification_email(
            code, verify_url, ttl_minutes=max(1, self._token_ttl_seconds // 60)
        )
        self._send(request.email, subject, text, html)
        logger.info("signup request %s opened for %s", request.request_id, request.email)
        return SignupResult(SignupState.CODE_SENT, token, self._token_ttl_seconds)

    def verify_code(self, verification: CodeVerification) -> VerificationResult:
        """Confirm the emailed code against the token handed out at submission."""
        payload = self._verified_payload(verification.token, kind="code")
        request_id, email = payload["rid"], payload["email"]
        code_digest = payload.get("cd")
        if not isinstance(code_digest, str):
            raise errors.AuthorizationFailed(errors.INVALID_TOKEN, status_code=400)
        expected = self._codec.digest(request_id, verification.code)
        if not hmac.compare_digest(expected.encode("utf-8"), code_digest.encode("utf-8")):
            raise errors.ValidationFailed(errors.INCORRECT_CODE)
        return self._promote(request_id, email)

    def verify_link(self, token: str) -> VerificationResult:
        """Confirm possession of the mailbox through the emailed link token."""
        payload = self._verified_payload(token, kind="link")
        return self._promote(payload["rid"], payload["email"])

    def create_checkout(self, checkout: CheckoutInput) -> CheckoutResult:
        """Request a hosted checkout page for ``checkout.plan``."""
        price_id = self._plan_prices.get(checkout.plan)
        if not price_id:
            raise errors.ValidationFailed(errors.INVALID_PLAN)

        account = self._store.find_account_by_email(checkout.email)
        if account is not None and account.is_active:
            raise errors.ConflictError(errors.EMAIL_EXISTS)

        try:
            session = self._checkout_provider.create_checkout_session(
                price_id=price_id,
                plan=checkout.plan,
                email=checkout.email,
                reference_id=account.account_id if account is not None else None,
            )
        except CheckoutProviderError as exc:
            logger.error("checkout session creation failed for %s: %s", checkout.email, exc)
            raise errors.DependencyFailed(errors.CHECKOUT_SESSION_CREATE_FAILED) from exc
        if not session.url:
            logger.error("checkout session for %s returned no url", checkout.email)
            raise errors.DependencyFailed(errors.CHECKOUT_SESSION_CREATE_FAILED)

        logger.info("checkout session %s created for %s", session.session_id, checkout.email)
        return CheckoutResult(SignupState.CHECKOUT_PENDING, session.url)

    def handle_webhook(self, raw_body: bytes, signature: str | None) -> ActivationResult | None:
        """Verify a payment provider callback and activate the paying account."""
        if not self._webhook_secret:
            logger.error("payment webhook received but no webhook secret is configured")
            raise errors.DependencyFailed(errors.MISSING_WEBHOOK_SECRET)
        if not signature:
            raise errors.ValidationFailed(errors.MISSING_SIGNATURE)
        try:
            event = self._checkout_provider.verify_and_parse_webhook(
                raw_body, signature, self._webhook_secret
            )
        except WebhookSignatureError as exc:
            logger.warning("payment webhook signature verification failed: %s", exc)
            raise errors.ValidationFailed(errors.INVALID_SIGNATURE) from exc

        event_type = event.get("type", "")
        if event_type != CHECKOUT_COMPLETED_EVENT:
            logger.debug("ignoring payment event type %s", event_type)
            return None

        session: dict[str, Any] = (event.get("data") or {}).get("object") or {}
        metadata = session.get("metadata") or {}
        customer_details = session.get("customer_details") or {}
        return self.activate(
            reference_id=session.get("client_reference_id") or metadata.get("account_id"),
            email=session.get("customer_email") or customer_details.get("email"),
            customer_id=session.get("customer"),
            subscription_id=session.get("subscription"),
        )

    def activate(
        self,
        *,
        reference_id: str | None,
        email: str | None,
        customer_id: str | None = None,
        subscription_id: str | None = None,
    ) -> ActivationResult:
        """Flip a pending account to active and provision its tenant exactly once.

        Unknown accounts and already active accounts are no-ops because payment
        providers redeliver and reorder events. A delivery that fails part way
        leaves the account pending, and the next one finishes the job.
        """
        account = self._store.find_account_by_id(reference_id) if reference_id else None
        if account is None and email:
            account = self._store.find_account_by_email(normalize_email(email))
        if account is None:
            logger.info("activation for unknown account (reference=%s, email=%s) ignored", reference_id, email)
            return ActivationResult(state=None)
        if account.is_active:
            return ActivationResult(SignupState.ALREADY_ACTIVE, account.account_id, account.tenant_id)

        # the tenant exists before the account reads active
        tenant_id = account.tenant_id or tenant_id_for(account.account_id)
        venue_name = account.venue_name or account.email
        now = self._clock()
        provisioned = self._store.provision_tenant(
            Tenant(tenant_id=tenant_id, name=venue_name, created_at=now),
            PublicToken(
                token=generate_public_token(),
                tenant_id=tenant_id,
                venue_name=venue_name,
                created_at=now,
            ),
        )
        if not provisioned:
            logger.info("tenant %s already provisioned for account %s", tenant_id, account.account_id)

        updated = self._store.update_account_status(
            account.account_id,
            AccountStatus.ACTIVE,
            tenant_id=tenant_id,
            billing_customer_id=customer_id,
            billing_subscription_id=subscription_id,
        )
        if updated is None:
            # a concurrent delivery won the conditional update
            return ActivationResult(SignupState.ALREADY_ACTIVE, account.account_id, tenant_id)

        self._store.write_audit_event(
            account_id=account.account_id,
            tenant_id=tenant_id,
            event_type="account.activated",
            actor="payment-provider",
            metadata={"plan": account.plan, "customer_id": customer_id},
        )
        logger.info("account %s activated with tenant %s", account.account_id, tenant_id)
        return ActivationResult(SignupState.ACTIVE, account.account_id, tenant_id, changed=True)

    def _promote(self, request_id: str, email: str) -> VerificationResult:
        now = self._clock()
        request = self._store.find_signup_request_by_id(request_id)
        if request is not None and (request.email != email or request.is_expired(now)):
            request = None

        account = self._store.find_account_by_email(email)
        if account is None:
            if request is None:
                raise errors.AuthorizationFailed(errors.INVALID_TOKEN, status_code=400)
            account = self._insert_pending_account(request, now)
        elif account.is_active:
            raise errors.ConflictError(errors.EMAIL_EXISTS)
        elif request is not None:
            account = self._apply_resubmission(account, request)

        if request is not None:
            self._store.delete_signup_request(request.request_id)
        return VerificationResult(
            state=SignupState.CODE_VERIFIED,
            account_id=account.account_id,
            email=account.email,
            plan=account.plan,
        )

    def _insert_pending_account(self, request: SignupRequest, now: datetime) -> Account:
        account = Account(
            account_id=str(uuid.uuid4()),
            email=request.email,
            password_hash=request.password_hash,
            role=AccountRole.OWNER,
            status=AccountStatus.PENDING,
            created_at=now,
            plan=request.plan,
            venue_name=request.venue_name,
        )
        try:
            account = self._store.insert_account(account)
        except errors.DuplicateAccountError:
            existing = self._store.find_account_by_email(request.email)
            if existing is None or existing.is_active:
                raise errors.ConflictError(errors.EMAIL_EXISTS)
            return existing
        self._store.write_audit_event(
            account_id=account.account_id,
            tenant_id=None,
            event_type="account.created",
            actor=account.account_id,
            metadata={"email": account.email, "plan": account.plan},
        )
        logger.info("pending account %s created for %s", account.account_id, account.email)
        return account

    def _apply_resubmission(self, account: Account, request: SignupRequest) -> Account:
        """Replace a pending account's details with the ones just verified."""
        updated = self._store.update_pending_account(
            account.account_id,
            password_hash=request.password_hash,
            venue_name=request.venue_name,
            plan=request.plan,
        )
        if updated is None:
            # activated between the lookup and the update
            raise errors.ConflictError(errors.EMAIL_EXISTS)
        self._store.write_audit_event(
            account_id=updated.account_id,
            tenant_id=None,
            event_type="account.details_updated",
            actor=updated.account_id,
            metadata={"plan": updated.plan},
        )
        logger.info("pending account %s updated from a new signup request", updated.account_id)
        return updated

    def _issue_code_token(self, request_id: str, email: str, code: str) -> str:
        return self._codec.issue(
            {
                "kind": "code",
                "rid": request_id,
                "email": email,
                "cd": self._codec.digest(request_id, code),
            },
            self._token_ttl_seconds,
        )

    def _verified_payload(self, token: str, *, kind: str) -> dict[str, Any]:
        payload = self._codec.verify(token)
        if (
            payload is None
            or payload.get("kind") != kind
            or not isinstance(payload.get("rid"), str)
            or not isinstance(payload.get("email"), str)
        ):
            raise errors.AuthorizationFailed(errors.INVALID_TOKEN, status_code=400)
        return payload

    def _send(self, to: str, subject: str, text: str, html: str) -> None:
        if not self._email_sender.send(to, subject, text, html):
            logger.error("signup email to %s could not be delivered", to)
            raise errors.DependencyFailed(errors.EMAIL_SEND_FAILED)
