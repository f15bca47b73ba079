"""Database repository for accounts, signup requests and tenants."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from psycopg import errors as pg_errors
from psycopg.rows import tuple_row
from psycopg.types.json import Json
from psycopg_pool import ConnectionPool

from .domain.account import (
    Account,
    AccountRole,
    AccountStatus,
    PublicToken,
    SignupRequest,
    Tenant,
)
from .domain.errors import DuplicateAccountError

_ACCOUNT_COLUMNS = """
    account_id, email, password_hash, role, status, created_at, tenant_id,
    plan, venue_name, billing_customer_id, billing_subscription_id
"""


class AccountRepository:
    """Postgres-backed credential store.

    Every call borrows a pooled connection with a bounded wait so a saturated
    database surfaces as an error instead of blocking the request.
    """

    def __init__(self, pool: ConnectionPool, *, timeout: float = 5.0) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool
        self._timeout = timeout

    def find_account_by_email(self, email: str) -> Account | None:
        return self._fetch_account("email = %s", (email,))

    def find_account_by_id(self, account_id: str) -> Account | None:
        return self._fetch_account("account_id = %s", (account_id,))

    def _fetch_account(self, where_sql: str, params: tuple[Any, ...]) -> Account | None:
        with self._pool.connection(timeout=self._timeout) as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE {where_sql}", params)
                row = cur.fetchone()
        return self._map_account(row) if row else None

    def insert_account(self, account: Account) -> Account:
        """Persist a new account; raises ``DuplicateAccountError`` on an email clash."""
        try:
            with self._pool.connection(timeout=self._timeout) as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute(
                        f"""
                        INSERT INTO accounts (
                            account_id, email, password_hash, role, status, created_at,
                            tenant_id, plan, venue_name, billing_customer_id, billing_subscription_id
                        )
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                        RETURNING {_ACCOUNT_COLUMNS}
                        """,
                        (
                            account.account_id,
                            account.email,
                            account.password_hash,
                            account.role.value,
                            account.status.value,
                            account.created_at,
                            account.tenant_id,
                            account.plan,
                            account.venue_name,
                            account.billing_customer_id,
                            account.billing_subscription_id,
                        ),
                    )
                    row = cur.fetchone()
                conn.commit()
        except pg_errors.UniqueViolation as exc:
            raise DuplicateAccountError(account.email) from exc
        return self._map_account(row)

    def update_account_status(
        self,
        account_id: str,
        status: AccountStatus,
        *,
        tenant_id: str | None = None,
        billing_customer_id: str | None = None,
        billing_subscription_id: str | None = None,
    ) -> Account | None:
        """Compare-and-set the status; ``None`` when the account already had it."""
        with self._pool.connection(timeout=self._timeout) as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    UPDATE accounts
                    SET status = %s,
                        tenant_id = COALESCE(%s, tenant_id),
                        billing_customer_id = COALESCE(%s, billing_customer_id),
                        billing_subscription_id = COALESCE(%s, billing_subscription_id),
                        updated_at = NOW()
                    WHERE account_id = %s AND status <> %s
                    RETURNING {_ACCOUNT_COLUMNS}
                    """,
                    (
                        status.value,
                        tenant_id,
                        billing_customer_id,
                        billing_subscription_id,
                        account_id,
                        status.value,
                    ),
                )
                row = cur.fetchone()
            conn.commit()
        return self._map_account(row) if row else None

    def update_pending_account(
        self,
        account_id: str,
        *,
        password_hash: str,
        venue_name: str,
        plan: str | None,
    ) -> Account | None:
        """Overwrite signup details while the account is still pending."""
        with self._pool.connection(timeout=self._timeout) as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    UPDATE accounts
                    SET password_hash = %s, venue_name = %s, plan = %s, updated_at = NOW()
                    WHERE account_id = %s AND status = %s
                    RETURNING {_ACCOUNT_COLUMNS}
                    """,
                    (password_hash, venue_name, plan, account_id, AccountStatus.PENDING.value),
                )
                row = cur.fetchone()
            conn.commit()
        return self._map_account(row) if row else None

    def upsert_signup_request(self, request: SignupRequest) -> SignupRequest:
        """Insert or replace the single live signup request for the email."""
        with self._pool.connection(timeout=self._timeout) as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    INSERT INTO signup_requests (
                        email, request_id, plan, venue_name, password_hash, created_at, expires_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (email) DO UPDATE
                    SET request_id = EXCLUDED.request_id,
                        plan = EXCLUDED.plan,
                        venue_name = EXCLUDED.venue_name,
                        password_hash = EXCLUDED.password_hash,
                        created_at = EXCLUDED.created_at,
                        expires_at = EXCLUDED.expires_at
                    RETURNING request_id, email, venue_name, password_hash, created_at, expires_at, plan
                    """,
                    (
                        request.email,
                        request.request_id,
                        request.plan,
                        request.venue_name,
                        request.password_hash,
                        request.created_at,
                        request.expires_at,
                    ),
                )
                row = cur.fetchone()
            conn.commit()
        return SignupRequest(*row)

    def find_signup_request_by_id(self, request_id: str) -> SignupRequest | None:
        with self._pool.connection(timeout=self._timeout) as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    SELECT request_id, email, venue_name, password_hash, created_at, expires_at, plan
                    FROM signup_requests
                    WHERE request_id = %s
                    """,
                    (request_id,),
                )
                row = cur.fetchone()
        return SignupRequest(*row) if row else None

    def delete_signup_request(self, request_id: str) -> None:
        with self._pool.connection(timeout=self._timeout) as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM signup_requests WHERE request_id = %s", (request_id,))
            conn.commit()

    def provision_tenant(self, tenant: Tenant, token: PublicToken) -> bool:
        """Insert the tenant and its first public token in one transaction.

        A tenant that already exists is left untouched and no token is added,
        so replays of the same activation converge on a single tenant.
        """
        with self._pool.connection(timeout=self._timeout) as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    INSERT INTO tenants (tenant_id, name, langs, default_lang, menu, menu_config, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (tenant_id) DO NOTHING
                    RETURNING tenant_id
                    """,
                    (
                        tenant.tenant_id,
                        tenant.name,
                        Json(tenant.langs),
                        tenant.default_lang,
                        Json(tenant.menu),
                        Json(tenant.menu_config),
                        tenant.created_at,
                    ),
                )
                created = cur.fetchone() is not None
                if created:
                    cur.execute(
                        """
                        INSERT INTO public_tokens (token, tenant_id, venue_name, active, created_at)
                        VALUES (%s, %s, %s, %s, %s)
                        """,
                        (token.token, token.tenant_id, token.venue_name, token.active, token.created_at),
                    )
            conn.commit()
        return created

    def write_audit_event(
        self,
        *,
        account_id: str | None,
        tenant_id: str | None,
        event_type: str,
        actor: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record an audit trail entry capturing provisioning activity."""
        with self._pool.connection(timeout=self._timeout) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO provisioning_audit_log (account_id, tenant_id, event_type, actor, metadata, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account_id,
                        tenant_id,
                        event_type,
                        actor,
                        Json(metadata or {}),
                        datetime.now(timezone.utc),
                    ),
                )
            conn.commit()

    def _map_account(self, row: tuple) -> Account:
        """Convert a raw database tuple into the domain ``Account`` dataclass."""
        return Account(
            account_id=row[0],
            email=row[1],
            password_hash=row[2],
            role=AccountRole(row[3]),
            status=AccountStatus(row[4]),
            created_at=row[5],
            tenant_id=row[6],
            plan=row[7],
            venue_name=row[8],
            billing_customer_id=row[9],
            billing_subscription_id=row[10],
        )
