from __future__ import annotations

import json
import re
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from provisioning.api import routes
from provisioning.domain.account import (
    Account,
    AccountStatus,
    PublicToken,
    SignupRequest,
    Tenant,
)
from provisioning.domain.contracts import CheckoutSession, WebhookSignatureError
from provisioning.domain.errors import DuplicateAccountError
from provisioning.domain.service import AccountService
from provisioning.domain.signup import SignupOrchestrator
from provisioning.security.rate_limiter import SlidingWindowRateLimiter
from provisioning.security.session import SessionManager
from provisioning.security.tokens import TokenCodec

PLAN_PRICES = {"silver": "price_silver", "gold": "price_gold"}
WEBHOOK_SECRET = "whsec_test"
VALID_SIGNATURE = "t=1,v1=valid"


class FakeStore:
    """In-memory credential store mimicking the Postgres repository."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.accounts: dict[str, Account] = {}
        self.signup_requests: dict[str, SignupRequest] = {}
        self.tenants: dict[str, Tenant] = {}
        self.public_tokens: dict[str, PublicToken] = {}
        self.audit_log: list[dict[str, Any]] = []
        self.writes = 0

    def find_account_by_email(self, email: str):
        return next((a for a in self.accounts.values() if a.email == email), None)

    def find_account_by_id(self, account_id: str):
        return self.accounts.get(account_id)

    def upsert_signup_request(self, request: SignupRequest):
        with self._lock:
            self.writes += 1
            self.signup_requests[request.email] = request
        return request

    def find_signup_request_by_id(self, request_id: str):
        return next(
            (r for r in self.signup_requests.values() if r.request_id == request_id), None
        )

    def delete_signup_request(self, request_id: str) -> None:
        with self._lock:
            self.writes += 1
            for email, request in list(self.signup_requests.items()):
                if request.request_id == request_id:
                    del self.signup_requests[email]

    def insert_account(self, account: Account):
        with self._lock:
            if any(a.email == account.email for a in self.accounts.values()):
                raise DuplicateAccountError(account.email)
            self.writes += 1
            self.accounts[account.account_id] = account
        return account

    def update_account_status(
        self,
        account_id: str,
        status: AccountStatus,
        *,
        tenant_id: str | None = None,
        billing_customer_id: str | None = None,
        billing_subscription_id: str | None = None,
    ):
        with self._lock:
            account = self.accounts.get(account_id)
            if account is None or account.status is status:
                return None
            self.writes += 1
            updated = replace(
                account,
                status=status,
                tenant_id=tenant_id or account.tenant_id,
                billing_customer_id=billing_customer_id or account.billing_customer_id,
                billing_subscription_id=billing_subscription_id or account.billing_subscription_id,
            )
            self.accounts[account_id] = updated
            return updated

    def update_pending_account(self, account_id: str, *, password_hash, venue_name, plan):
        with self._lock:
            account = self.accounts.get(account_id)
            if account is None or account.status is not AccountStatus.PENDING:
                return None
            self.writes += 1
            updated = replace(account, password_hash=password_hash, venue_name=venue_name, plan=plan)
            self.accounts[account_id] = updated
            return updated

    def provision_tenant(self, tenant: Tenant, token: PublicToken) -> bool:
        with self._lock:
            if tenant.tenant_id in self.tenants:
                return False
            self.writes += 1
            self.tenants[tenant.tenant_id] = tenant
            self.public_tokens[token.token] = token
            return True

    def write_audit_event(self, *, account_id, tenant_id, event_type, actor, metadata=None) -> None:
        self.audit_log.append(
            {
                "account_id": account_id,
                "tenant_id": tenant_id,
                "event_type": event_type,
                "actor": actor,
                "metadata": metadata or {},
            }
        )


@dataclass
class SentEmail:
    to: str
    subject: str
    body_text: str
    body_html: str


class RecordingEmailSender:
    def __init__(self) -> None:
        self.sent: list[SentEmail] = []
        self.fail = False

    def send(self, to: str, subject: str, body_text: str, body_html: str) -> bool:
        if self.fail:
            return False
        self.sent.append(SentEmail(to, subject, body_text, body_html))
        return True

    def last_code(self) -> str:
        match = re.search(r"code is (\d{6})", self.sent[-1].body_text)
        assert match, self.sent[-1].body_text
        return match.group(1)

    def last_link_token(self) -> str:
        match = re.search(r"token=(\S+)", self.sent[-1].body_text)
        assert match, self.sent[-1].body_text
        return match.group(1)


class FakeCheckoutProvider:
    def __init__(self) -> None:
        self.sessions: list[dict[str, Any]] = []
        self.error: Exception | None = None
        self.url: str | None = "https://checkout.example.com/c/session_1"

    def create_checkout_session(self, *, price_id, plan, email, reference_id):
        if self.error is not None:
            raise self.error
        self.sessions.append(
            {"price_id": price_id, "plan": plan, "email": email, "reference_id": reference_id}
        )
        return CheckoutSession(url=self.url, session_id=f"cs_{len(self.sessions)}")

    def verify_and_parse_webhook(self, raw_body: bytes, signature_header: str, secret: str):
        if signature_header != VALID_SIGNATURE or secret != WEBHOOK_SECRET:
            raise WebhookSignatureError("signature mismatch")
        return json.loads(raw_body)


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float | None = None) -> None:
        self.now = time.time() if start is None else start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def utcnow(self) -> datetime:
        return datetime.fromtimestamp(self.now, tz=timezone.utc)


def checkout_completed_event(
    *, reference_id: str | None = None, email: str | None = None, event_id: str = "evt_1"
) -> dict[str, Any]:
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": "cs_1",
                "client_reference_id": reference_id,
                "customer_email": email,
                "customer": "cus_123",
                "subscription": "sub_123",
            }
        },
    }


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def email_sender() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
def checkout_provider() -> FakeCheckoutProvider:
    return FakeCheckoutProvider()


@pytest.fixture
def codec(clock: FakeClock) -> TokenCodec:
    return TokenCodec("test-signup-secret", clock=clock)


@pytest.fixture
def orchestrator(store, codec, email_sender, checkout_provider, clock) -> SignupOrchestrator:
    return SignupOrchestrator(
        store,
        codec,
        email_sender,
        checkout_provider,
        plan_prices=PLAN_PRICES,
        base_url="https://menus.example.com",
        token_ttl_seconds=15 * 60,
        bcrypt_rounds=4,
        webhook_secret=WEBHOOK_SECRET,
        clock=clock.utcnow,
    )


@pytest.fixture
def sessions(clock: FakeClock) -> SessionManager:
    return SessionManager("test-session-secret", issuer="menus.test", clock=clock)


@pytest.fixture
def rate_limiter(clock: FakeClock) -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter(clock=clock)


@pytest.fixture
def api_client(store, orchestrator, sessions, rate_limiter):
    """Provide a FastAPI test client with isolated state."""
    app = FastAPI()
    app.include_router(routes.router)
    app.state.session_manager = sessions
    app.state.rate_limiter = rate_limiter
    app.state.account_service = AccountService(store, sessions, rate_limiter)
    app.state.signup_orchestrator = orchestrator

    with TestClient(app) as client:
        yield client
