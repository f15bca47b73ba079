"""Signed, expiring bearer tokens used by the signup flow."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import time
from typing import Any, Callable

_DELIMITER = "."
_RESERVED_CLAIMS = frozenset({"iat", "exp"})


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode((value + padding).encode("ascii"))


class TokenCodec:
    """Issue and verify compact HMAC-SHA256 tokens carrying a JSON payload.

    A token is ``<base64url(payload)>.<base64url(mac)>`` where the payload
    embeds ``iat`` and ``exp`` as integer milliseconds since the epoch.
    Tokens cannot be revoked; keep the TTL short.
    """

    def __init__(self, secret: str | bytes, clock: Callable[[], float] = time.time) -> None:
        if isinstance(secret, str):
            secret = secret.encode("utf-8")
        if not secret:
            raise ValueError("token secret must not be empty")
        self._secret = secret
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _sign(self, encoded_payload: str) -> str:
        mac = hmac.new(self._secret, encoded_payload.encode("ascii"), hashlib.sha256)
        return _b64encode(mac.digest())

    def issue(self, payload: dict[str, Any], ttl_seconds: float) -> str:
        """Return a signed token for ``payload`` valid for ``ttl_seconds``."""
        reserved = _RESERVED_CLAIMS.intersection(payload)
        if reserved:
            raise ValueError(f"payload uses reserved claims: {sorted(reserved)}")
        issued_at = self._now_ms()
        claims = {
            **payload,
            "iat": issued_at,
            "exp": issued_at + int(ttl_seconds * 1000),
        }
        body = json.dumps(claims, separators=(",", ":"), sort_keys=True)
        encoded = _b64encode(body.encode("utf-8"))
        return f"{encoded}{_DELIMITER}{self._sign(encoded)}"

    def verify(self, token: str | None) -> dict[str, Any] | None:
        """Return the payload of a valid, unexpired token or ``None``."""
        if not isinstance(token, str) or _DELIMITER not in token:
            return None
        encoded, _, signature = token.partition(_DELIMITER)
        if not encoded or not signature:
            return None
        try:
            expected = self._sign(encoded)
        except UnicodeEncodeError:
            return None
        if not hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8")):
            return None
        try:
            claims = json.loads(_b64decode(encoded).decode("utf-8"))
        except (binascii.Error, UnicodeError, ValueError):
            return None
        if not isinstance(claims, dict):
            return None
        expires_at = claims.get("exp")
        if not isinstance(expires_at, int) or isinstance(expires_at, bool):
            return None
        if expires_at <= self._now_ms():
            return None
        return {key: value for key, value in claims.items() if key not in _RESERVED_CLAIMS}

    def digest(self, *parts: str) -> str:
        """Keyed digest binding ``parts`` to this codec's secret."""
        message = ":".join(parts).encode("utf-8")
        return _b64encode(hmac.new(self._secret, message, hashlib.sha256).digest())


def generate_verification_code(digits: int = 6) -> str:
    """Return a uniformly random zero-padded numeric code."""
    return f"{secrets.randbelow(10 ** digits):0{digits}d}"


def generate_request_id() -> str:
    return secrets.token_hex(16)


def generate_public_token() -> str:
    """Return the public sharing handle for a tenant's menu page."""
    return secrets.token_hex(8)
