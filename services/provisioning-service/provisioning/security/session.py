"""Session cookie issuance and parsing backed by signed JWT claims."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

import jwt
from fastapi import Response

from ..domain.account import Account, AccountStatus

logger = logging.getLogger(__name__)

_ALGORITHM = "HS256"


@dataclass(frozen=True, slots=True)
class SessionDescriptor:
    """Authenticated request context carried in the session cookie."""

    account_id: str
    role: str
    tenant_id: str | None
    status: str
    issued_at: int
    expires_at: int

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE.value


class SessionManager:
    """Issue and parse the signed, http-only session cookie.

    The cookie value is an HS256 JWT whose claims snapshot the account's role,
    tenant and status at issuance time. Tampering fails the signature check
    and ``exp`` bounds the session to ``ttl_seconds``.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        ttl_seconds: int = 60 * 60 * 24,
        cookie_name: str = "session",
        secure: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret = secret
        self._issuer = issuer
        self._ttl_seconds = ttl_seconds
        self._cookie_name = cookie_name
        self._secure = secure
        self._clock = clock

    @property
    def cookie_name(self) -> str:
        return self._cookie_name

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def issue(self, account: Account) -> str:
        """Return a signed cookie value describing ``account``."""
        now = int(self._clock())
        claims: dict[str, Any] = {
            "iss": self._issuer,
            "sub": account.account_id,
            "role": account.role.value,
            "tenant_id": account.tenant_id,
            "status": account.status.value,
            "iat": now,
            "exp": now + self._ttl_seconds,
        }
        return jwt.encode(claims, self._secret, algorithm=_ALGORITHM)

    def parse(self, value: str | None) -> SessionDescriptor | None:
        """Return the descriptor for a valid cookie value, otherwise ``None``."""
        if not value:
            return None
        try:
            claims = jwt.decode(
                value,
                self._secret,
                algorithms=[_ALGORITHM],
                issuer=self._issuer,
                options={
                    "require": ["exp", "iat", "sub"],
                    "verify_exp": False,
                    "verify_iat": False,
                },
            )
        except jwt.PyJWTError as exc:
            logger.debug("rejected session cookie: %s", exc)
            return None
        # exp is checked against the injected clock rather than wall time
        expires_at = claims.get("exp")
        if not isinstance(expires_at, int) or expires_at <= int(self._clock()):
            return None
        role = claims.get("role")
        status = claims.get("status")
        if not isinstance(role, str) or not isinstance(status, str):
            return None
        tenant_id = claims.get("tenant_id")
        return SessionDescriptor(
            account_id=str(claims["sub"]),
            role=role,
            tenant_id=str(tenant_id) if tenant_id is not None else None,
            status=status,
            issued_at=int(claims["iat"]),
            expires_at=expires_at,
        )

    def set_cookie(self, response: Response, value: str) -> None:
        response.set_cookie(
            key=self._cookie_name,
            value=value,
            max_age=self._ttl_seconds,
            path="/",
            httponly=True,
            secure=self._secure,
            samesite="lax",
        )

    def clear_cookie(self, response: Response) -> None:
        response.delete_cookie(
            key=self._cookie_name,
            path="/",
            httponly=True,
            secure=self._secure,
            samesite="lax",
        )
