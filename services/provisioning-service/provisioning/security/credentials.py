"""Password hashing and strength policy."""

from __future__ import annotations

import re
from functools import lru_cache

import bcrypt

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 8


def normalize_email(email: str) -> str:
    return email.strip().lower()


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_PATTERN.match(email))


def is_strong_password(password: str) -> bool:
    """Return ``True`` when the password meets the minimum strength policy.

    At least eight characters with one lowercase letter, one uppercase letter
    and one digit.
    """
    return (
        len(password) >= MIN_PASSWORD_LENGTH
        and re.search(r"[a-z]", password) is not None
        and re.search(r"[A-Z]", password) is not None
        and re.search(r"[0-9]", password) is not None
    )


def hash_password(password: str, rounds: int = 10) -> str:
    """Return a salted bcrypt hash for the password."""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, password_hash: str | None) -> bool:
    """Compare a password against a stored bcrypt hash.

    When no hash is available a dummy hash is still checked so that unknown
    accounts cost the same time as known ones.
    """
    candidate = password.encode("utf-8")
    if not password_hash:
        bcrypt.checkpw(candidate, _dummy_hash())
        return False
    try:
        return bcrypt.checkpw(candidate, password_hash.encode("utf-8"))
    except ValueError:
        return False


@lru_cache(maxsize=1)
def _dummy_hash() -> bytes:
    return bcrypt.hashpw(b"not-a-real-password", bcrypt.gensalt(rounds=10))
