"""Account service handling login, session refresh and tenant authorization."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from . import errors
from .account import Account, AccountRole
from .contracts import CredentialStore, LoginInput
from ..security.credentials import verify_password
from ..security.rate_limiter import (
    LOGIN_EMAIL_POLICY,
    LOGIN_IP_POLICY,
    RateLimiter,
    RateLimitPolicy,
)
from ..security.session import SessionDescriptor, SessionManager

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SessionGrant:
    """A freshly issued session cookie value and the account it describes."""

    account: Account
    cookie_value: str


class AccountService:
    """Credential checks and session issuance backed by the credential store."""

    def __init__(
        self,
        store: CredentialStore,
        sessions: SessionManager,
        rate_limiter: RateLimiter,
        *,
        ip_policy: RateLimitPolicy = LOGIN_IP_POLICY,
        email_policy: RateLimitPolicy = LOGIN_EMAIL_POLICY,
    ) -> None:
        """Store dependencies used to check credentials and issue sessions."""
        self._store = store
        self._sessions = sessions
        self._rate_limiter = rate_limiter
        self._ip_policy = ip_policy
        self._email_policy = email_policy

    def login(self, *, email: object, password: object, client_ip: str) -> SessionGrant:
        """Authenticate an owner and issue a session.

        Checks run cheapest first: presence, the per-IP window, input shape,
        the per-email window, then the stored hash. Every failure other than
        throttling surfaces as ``INVALID_CREDENTIALS``.
        """
        credentials = LoginInput.parse(email=email, password=password)
        self._enforce(client_ip, self._ip_policy)
        if not credentials.is_well_formed():
            raise errors.AuthorizationFailed(errors.INVALID_CREDENTIALS)
        self._enforce(credentials.email, self._email_policy)

        account = self._store.find_account_by_email(credentials.email)
        password_hash = account.password_hash if account is not None else None
        if not verify_password(credentials.password, password_hash) or account is None:
            logger.info("login rejected for %s from %s", credentials.email, client_ip)
            raise errors.AuthorizationFailed(errors.INVALID_CREDENTIALS)

        grant = SessionGrant(account=account, cookie_value=self._sessions.issue(account))
        self._store.write_audit_event(
            account_id=account.account_id,
            tenant_id=account.tenant_id,
            event_type="session.issued",
            actor=account.account_id,
            metadata={"ip": client_ip},
        )
        return grant

    def refresh(self, cookie_value: str | None) -> SessionGrant:
        """Reissue a session from the account's current role, tenant and status."""
        session = self._sessions.parse(cookie_value)
        if session is None:
            raise errors.AuthorizationFailed(errors.UNAUTHORIZED)
        account = self._store.find_account_by_id(session.account_id)
        if account is None:
            raise errors.AuthorizationFailed(errors.UNAUTHORIZED)

        grant = SessionGrant(account=account, cookie_value=self._sessions.issue(account))
        if account.status.value != session.status:
            logger.info(
                "session for %s refreshed from %s to %s", account.account_id, session.status, account.status.value
            )
        self._store.write_audit_event(
            account_id=account.account_id,
            tenant_id=account.tenant_id,
            event_type="session.refreshed",
            actor=account.account_id,
            metadata={"previous_status": session.status},
        )
        return grant

    def _enforce(self, key: str, policy: RateLimitPolicy) -> None:
        decision = self._rate_limiter.check(key, policy)
        if not decision.allowed:
            logger.warning("rate limit %s exceeded for %s", policy.name, key)
            raise errors.RateLimited(decision.retry_after())


def ensure_tenant_access(session: SessionDescriptor, tenant_id: str) -> None:
    """Raise ``ForbiddenError`` unless ``session`` may act on ``tenant_id``.

    Platform admins reach every tenant. Everyone else needs an active account
    bound to that tenant.
    """
    if session.role == AccountRole.ADMIN.value:
        return
    if not session.is_active or session.tenant_id != tenant_id:
        raise errors.ForbiddenError(errors.FORBIDDEN)
