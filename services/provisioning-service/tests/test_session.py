from __future__ import annotations

import uuid
from datetime import datetime, timezone

import jwt
import pytest
from fastapi import Depends, FastAPI, Response
from fastapi.testclient import TestClient

from provisioning.api import routes
from provisioning.domain import errors
from provisioning.domain.account import Account, AccountRole, AccountStatus
from provisioning.domain.service import ensure_tenant_access
from provisioning.security.session import SessionDescriptor, SessionManager


def _account(**overrides) -> Account:
    values = dict(
        account_id=str(uuid.uuid4()),
        email="owner@example.com",
        password_hash="x",
        role=AccountRole.OWNER,
        status=AccountStatus.ACTIVE,
        created_at=datetime.now(timezone.utc),
        tenant_id="tenant-1",
    )
    values.update(overrides)
    return Account(**values)


def _descriptor(**overrides) -> SessionDescriptor:
    values = dict(
        account_id="acc-1",
        role="owner",
        tenant_id="tenant-1",
        status="active",
        issued_at=0,
        expires_at=1,
    )
    values.update(overrides)
    return SessionDescriptor(**values)


def test_issue_then_parse_round_trips_descriptor(sessions, clock):
    account = _account()
    session = sessions.parse(sessions.issue(account))
    assert session is not None
    assert session.account_id == account.account_id
    assert session.role == "owner"
    assert session.tenant_id == "tenant-1"
    assert session.status == "active"
    assert session.expires_at - session.issued_at == 60 * 60 * 24


def test_pending_account_without_tenant(sessions):
    session = sessions.parse(sessions.issue(_account(status=AccountStatus.PENDING, tenant_id=None)))
    assert session is not None
    assert session.tenant_id is None
    assert not session.is_active


def test_expired_session_is_rejected(sessions, clock):
    value = sessions.issue(_account())
    clock.advance(60 * 60 * 24 - 1)
    assert sessions.parse(value) is not None
    clock.advance(1)
    assert sessions.parse(value) is None


@pytest.mark.parametrize("value", [None, "", "garbage", "a.b.c", '{"userId": "1", "role": "admin"}'])
def test_malformed_cookie_values_parse_to_none(sessions, value):
    assert sessions.parse(value) is None


def test_tampered_claims_are_rejected(sessions, clock):
    forged = jwt.encode(
        {"iss": "menus.test", "sub": "acc", "role": "admin", "status": "active", "iat": int(clock.now), "exp": int(clock.now) + 60},
        "wrong-secret",
        algorithm="HS256",
    )
    assert sessions.parse(forged) is None


def test_other_issuer_is_rejected(clock):
    account = _account()
    other = SessionManager("test-session-secret", issuer="someone.else", clock=clock)
    ours = SessionManager("test-session-secret", issuer="menus.test", clock=clock)
    assert ours.parse(other.issue(account)) is None


def test_cookie_is_http_only_and_same_site(sessions):
    app = FastAPI()

    @app.get("/set")
    def set_cookie(response: Response):
        sessions.set_cookie(response, sessions.issue(_account()))
        return {}

    with TestClient(app) as client:
        header = client.get("/set").headers["set-cookie"].lower()
    assert "httponly" in header
    assert "samesite=lax" in header
    assert "max-age=86400" in header
    assert "secure" not in header


def test_secure_flag_in_production(clock):
    manager = SessionManager("s", issuer="i", secure=True, clock=clock)
    app = FastAPI()

    @app.get("/set")
    def set_cookie(response: Response):
        manager.set_cookie(response, "value")
        return {}

    with TestClient(app) as client:
        assert "secure" in client.get("/set").headers["set-cookie"].lower()


def test_ensure_tenant_access_rules():
    ensure_tenant_access(_descriptor(), "tenant-1")
    ensure_tenant_access(_descriptor(role="admin", tenant_id=None), "tenant-9")

    with pytest.raises(errors.ForbiddenError):
        ensure_tenant_access(_descriptor(), "tenant-2")
    with pytest.raises(errors.ForbiddenError):
        ensure_tenant_access(_descriptor(status="pending"), "tenant-1")


def test_require_tenant_session_dependency(sessions):
    app = FastAPI()
    app.state.session_manager = sessions

    @app.get("/tenants/{tenant_id}/menu")
    def tenant_menu(tenant_id: str, session: SessionDescriptor = Depends(routes.require_tenant_session)):
        return {"tenant_id": tenant_id, "account_id": session.account_id}

    with TestClient(app) as client:
        assert client.get("/tenants/tenant-1/menu").status_code == 401

        client.cookies.set("session", sessions.issue(_account()))
        assert client.get("/tenants/tenant-1/menu").status_code == 200

        forbidden = client.get("/tenants/tenant-2/menu")
        assert forbidden.status_code == 403
        assert forbidden.json()["detail"] == "FORBIDDEN"
