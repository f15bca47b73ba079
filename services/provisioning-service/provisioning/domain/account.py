from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class AccountStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"


class AccountRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    VENUE_ADMIN = "venue_admin"


@dataclass(slots=True)
class Account:
    """Aggregate root for a menu owner's identity and billing state."""

    account_id: str
    email: str
    password_hash: str
    role: AccountRole
    status: AccountStatus
    created_at: datetime
    tenant_id: str | None = None
    plan: str | None = None
    venue_name: str | None = None
    billing_customer_id: str | None = None
    billing_subscription_id: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status is AccountStatus.ACTIVE


@dataclass(slots=True)
class SignupRequest:
    """Unconfirmed signup attempt, one live record per normalised email."""

    request_id: str
    email: str
    venue_name: str
    password_hash: str
    created_at: datetime
    expires_at: datetime
    plan: str | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


def default_menu_config() -> dict[str, Any]:
    return {
        "withImages": False,
        "menuBackgroundColor": "#0f172a",
        "currency": "€",
        "menuImage": "fastFood",
    }


@dataclass(slots=True)
class Tenant:
    """A venue with its own menu and configuration."""

    tenant_id: str
    name: str
    created_at: datetime
    langs: list[str] = field(default_factory=lambda: ["en", "de"])
    default_lang: str = "en"
    menu: dict[str, Any] = field(default_factory=lambda: {"categories": []})
    menu_config: dict[str, Any] = field(default_factory=default_menu_config)


@dataclass(slots=True)
class PublicToken:
    token: str
    tenant_id: str
    venue_name: str
    created_at: datetime
    active: bool = True
