"""Database repositories for accounts, webhook configuration and trace tables."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Optional, Tuple

from psycopg.rows import tuple_row
from psycopg.types.json import Json
from psycopg_pool import ConnectionPool

from schemas import DispatchState

from .domain.account import Account, DeletionSchedule, schedule_from_columns, schedule_to_columns
from .domain.contracts import (
    AccountUpdate,
    CreateAccountInput,
    Goal,
    WebhookConfig,
    WebhookConfigUpdate,
    WebhookFields,
    WeightEntry,
)

_ACCOUNT_COLUMNS = """
    account_id, email, created_at, display_name, preferred_unit, is_admin,
    webhook_url, webhook_days, webhook_fields, quota_limit, quota_used,
    quota_reset_at, suspended, deletion_scheduled, deletion_at
"""

# Owned rows removed before the account itself; audit entries are retained.
_CASCADE_TABLES = ("weight_entries", "goals", "dispatch_records", "account_idempotency")


@dataclass(slots=True)
class DispatchRecord:
    """Row projection for items in dispatch_records."""

    dispatch_id: str
    account_id: str
    request_payload: dict[str, Any]
    response_payload: str | None
    status: DispatchState
    target_url: str
    created_at: datetime
    completed_at: datetime | None


@dataclass(slots=True)
class AuditEntry:
    """Row projection for items in admin_audit_log."""

    audit_id: int
    actor_id: str
    action: str
    target_account_id: str | None
    details: dict[str, Any]
    ip_address: str | None
    created_at: datetime


def _map_account(row: tuple) -> Account:
    """Convert a raw database tuple into the domain ``Account`` dataclass."""
    return Account(
        account_id=row[0],
        email=row[1],
        created_at=row[2],
        display_name=row[3],
        preferred_unit=row[4] or "kg",
        is_admin=row[5],
        webhook_url=row[6],
        webhook_days=row[7],
        webhook_fields=row[8],
        quota_limit=row[9],
        quota_used=row[10],
        quota_reset_at=row[11],
        suspended=row[12],
        deletion=schedule_from_columns(row[13], row[14]),
    )


def _page_bounds(limit: int) -> int:
    return max(1, min(limit, 100))


class AccountRepository:
    """Postgres-backed account persistence for quota, overrides and lifecycle."""

    def __init__(self, pool: ConnectionPool) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool

    def create_account(
        self,
        payload: CreateAccountInput,
        quota_limit: int,
        idempotency_key: str | None,
    ) -> Tuple[Account, bool]:
        """Persist an account record and return a tuple of (account, replay flag)."""
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                if idempotency_key:
                    cur.execute(
                        """
                        SELECT account_id
                        FROM account_idempotency
                        WHERE idempotency_key = %s
                        """,
                        (idempotency_key,),
                    )
                    row = cur.fetchone()
                    if row:
                        cur.execute(
                            f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE account_id = %s",
                            (row[0],),
                        )
                        account_row = cur.fetchone()
                        if account_row:
                            return _map_account(account_row), True

                now = datetime.now(timezone.utc)
                cur.execute(
                    f"""
                    INSERT INTO accounts (
                        account_id, email, display_name, preferred_unit, quota_limit,
                        quota_used, suspended, deletion_scheduled, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, 0, FALSE, FALSE, %s, %s)
                    RETURNING {_ACCOUNT_COLUMNS}
                    """,
                    (
                        payload.account_id,
                        payload.email,
                        payload.display_name,
                        payload.preferred_unit,
                        quota_limit,
                        now,
                        now,
                    ),
                )
                record = cur.fetchone()

                if idempotency_key:
                    cur.execute(
                        """
                        INSERT INTO account_idempotency (idempotency_key, account_id, created_at)
                        VALUES (%s, %s, %s)
                        ON CONFLICT (idempotency_key) DO NOTHING
                        """,
                        (idempotency_key, payload.account_id, now),
                    )

                conn.commit()

        return _map_account(record), False

    def get_account(self, account_id: str) -> Account | None:
        """Fetch an account by identifier or return ``None``."""
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE account_id = %s",
                    (account_id,),
                )
                row = cur.fetchone()
                if not row:
                    return None
        return _map_account(row)

    def update_quota_usage(
        self, account_id: str, *, quota_used: int, quota_reset_at: datetime
    ) -> None:
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE accounts
                    SET quota_used = %s, quota_reset_at = %s, updated_at = NOW()
                    WHERE account_id = %s
                    """,
                    (quota_used, quota_reset_at, account_id),
                )
                conn.commit()

    def apply_account_update(self, account_id: str, update: AccountUpdate) -> Account | None:
        """Apply administrative field changes and return the refreshed account."""
        assignments: list[str] = []
        params: list[Any] = []
        if update.quota_limit is not None:
            assignments.append("quota_limit = %s")
            params.append(update.quota_limit)
        if update.suspended is not None:
            assignments.append("suspended = %s")
            params.append(update.suspended)
        if update.reset_quota:
            assignments.extend(["quota_used = 0", "quota_reset_at = NULL"])
        if update.clear_webhook_override:
            assignments.extend(["webhook_url = NULL", "webhook_days = NULL", "webhook_fields = NULL"])
        else:
            if update.webhook_url is not None:
                assignments.append("webhook_url = %s")
                params.append(update.webhook_url)
            if update.webhook_days is not None:
                assignments.append("webhook_days = %s")
                params.append(update.webhook_days)
            if update.webhook_fields is not None:
                assignments.append("webhook_fields = %s")
                params.append(Json(update.webhook_fields.to_mapping()))
        if not assignments:
            return self.get_account(account_id)

        assignments.append("updated_at = NOW()")
        params.append(account_id)
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    UPDATE accounts
                    SET {", ".join(assignments)}
                    WHERE account_id = %s
                    RETURNING {_ACCOUNT_COLUMNS}
                    """,
                    params,
                )
                row = cur.fetchone()
                conn.commit()
        return _map_account(row) if row else None

    def set_deletion_schedule(self, account_id: str, schedule: DeletionSchedule) -> Account | None:
        """Write both deletion columns from the variant in a single statement."""
        scheduled, deletion_at = schedule_to_columns(schedule)
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    UPDATE accounts
                    SET deletion_scheduled = %s, deletion_at = %s, updated_at = NOW()
                    WHERE account_id = %s
                    RETURNING {_ACCOUNT_COLUMNS}
                    """,
                    (scheduled, deletion_at, account_id),
                )
                row = cur.fetchone()
                conn.commit()
        return _map_account(row) if row else None

    def list_accounts_due_for_deletion(self, now: datetime, limit: int = 500) -> list[Account]:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    SELECT {_ACCOUNT_COLUMNS}
                    FROM accounts
                    WHERE deletion_scheduled AND deletion_at < %s
                    ORDER BY deletion_at ASC
                    LIMIT %s
                    """,
                    (now, limit),
                )
                rows = cur.fetchall()
        return [_map_account(row) for row in rows]

    def delete_account(
        self,
        account_id: str,
        *,
        due_before: datetime | None = None,
        timeout_seconds: int | None = None,
    ) -> bool:
        """Remove an account and its owned rows in one transaction.

        With ``due_before`` the row is only removed while it is still scheduled
        and past due, so a cancellation committed in between keeps the account.
        Returns ``False`` when nothing matched.
        """
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                if timeout_seconds:
                    cur.execute(
                        "SELECT set_config('statement_timeout', %s, true)",
                        (str(int(timeout_seconds * 1000)),),
                    )
                if due_before is not None:
                    cur.execute(
                        """
                        SELECT account_id FROM accounts
                        WHERE account_id = %s AND deletion_scheduled AND deletion_at < %s
                        FOR UPDATE
                        """,
                        (account_id, due_before),
                    )
                else:
                    cur.execute(
                        "SELECT account_id FROM accounts WHERE account_id = %s FOR UPDATE",
                        (account_id,),
                    )
                if cur.fetchone() is None:
                    conn.rollback()
                    return False
                for table in _CASCADE_TABLES:
                    cur.execute(f"DELETE FROM {table} WHERE account_id = %s", (account_id,))
                cur.execute("DELETE FROM accounts WHERE account_id = %s", (account_id,))
                conn.commit()
        return True

    def list_weight_entries(
        self, account_id: str, *, since: date, until: date, limit: int
    ) -> list[WeightEntry]:
        """Return the most recent ``limit`` entries in ``[since, until]``, oldest first."""
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    SELECT entry_date, weight, note
                    FROM weight_entries
                    WHERE account_id = %s AND entry_date >= %s AND entry_date <= %s
                    ORDER BY entry_date DESC, created_at DESC
                    LIMIT %s
                    """,
                    (account_id, since, until, limit),
                )
                rows = cur.fetchall()
        return [WeightEntry(entry_date=row[0], weight=float(row[1]), note=row[2]) for row in reversed(rows)]

    def get_latest_goal(self, account_id: str) -> Goal | None:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    SELECT target_weight, target_date, created_at
                    FROM goals
                    WHERE account_id = %s
                    ORDER BY created_at DESC
                    LIMIT 1
                    """,
                    (account_id,),
                )
                row = cur.fetchone()
        if not row:
            return None
        return Goal(target_weight=float(row[0]), target_date=row[1], created_at=row[2])


class WebhookConfigRepository:
    """Single-row storage for the global webhook configuration."""

    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool

    def get_config(self) -> WebhookConfig | None:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    SELECT url, lookback_days, fields, default_quota_limit, updated_at, updated_by
                    FROM webhook_config
                    WHERE id = 1
                    """
                )
                row = cur.fetchone()
        return self._map_config(row) if row else None

    def save_config(self, update: WebhookConfigUpdate, actor_id: str, default_quota_limit: int) -> WebhookConfig:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    INSERT INTO webhook_config (id, url, lookback_days, fields, default_quota_limit, updated_at, updated_by)
                    VALUES (1, %s, %s, %s, %s, NOW(), %s)
                    ON CONFLICT (id) DO UPDATE
                    SET url = EXCLUDED.url,
                        lookback_days = EXCLUDED.lookback_days,
                        fields = EXCLUDED.fields,
                        default_quota_limit = EXCLUDED.default_quota_limit,
                        updated_at = EXCLUDED.updated_at,
                        updated_by = EXCLUDED.updated_by
                    RETURNING url, lookback_days, fields, default_quota_limit, updated_at, updated_by
                    """,
                    (
                        update.url,
                        update.lookback_days,
                        Json(update.fields.to_mapping()),
                        default_quota_limit,
                        actor_id,
                    ),
                )
                row = cur.fetchone()
                conn.commit()
        return self._map_config(row)

    @staticmethod
    def _map_config(row: tuple) -> WebhookConfig:
        return WebhookConfig(
            url=row[0],
            lookback_days=row[1],
            fields=WebhookFields.from_mapping(row[2]),
            default_quota_limit=row[3],
            updated_at=row[4],
            updated_by=row[5],
        )


class DispatchRepository:
    """Insert-then-finalize storage for dispatch traces."""

    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool

    def create_pending(self, account_id: str, payload: dict[str, Any], target_url: str) -> str:
        dispatch_id = str(uuid.uuid4())
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO dispatch_records (dispatch_id, account_id, request_payload, status, target_url, created_at)
                    VALUES (%s, %s, %s, %s, %s, NOW())
                    """,
                    (dispatch_id, account_id, Json(payload), DispatchState.pending.value, target_url),
                )
                conn.commit()
        return dispatch_id

    def finalize(self, dispatch_id: str, status: DispatchState, response_payload: str) -> bool:
        """Move a pending record to a terminal state; ``False`` if it was already terminal."""
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE dispatch_records
                    SET status = %s, response_payload = %s, completed_at = NOW()
                    WHERE dispatch_id = %s AND status = %s
                    """,
                    (status.value, response_payload, dispatch_id, DispatchState.pending.value),
                )
                updated = cur.rowcount == 1
                conn.commit()
        return updated

    def list_dispatch_records(
        self,
        *,
        account_id: str | None = None,
        status: DispatchState | None = None,
        limit: int = 50,
        cursor: Tuple[datetime, str] | None = None,
    ) -> tuple[list[DispatchRecord], Optional[Tuple[datetime, str]]]:
        limit = _page_bounds(limit)
        clauses = ["TRUE"]
        params: list[Any] = []
        if account_id:
            clauses.append("account_id = %s")
            params.append(account_id)
        if status:
            clauses.append("status = %s")
            params.append(status.value)
        if cursor:
            clauses.append("(created_at, dispatch_id) < (%s, %s)")
            params.extend(cursor)

        query = f"""
            SELECT dispatch_id, account_id, request_payload, response_payload, status,
                   target_url, created_at, completed_at
            FROM dispatch_records
            WHERE {" AND ".join(clauses)}
            ORDER BY created_at DESC, dispatch_id DESC
            LIMIT %s
        """
        params.append(limit)

        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, params)
                records = [
                    DispatchRecord(
                        dispatch_id=str(row[0]),
                        account_id=row[1],
                        request_payload=row[2] or {},
                        response_payload=row[3],
                        status=DispatchState(row[4]),
                        target_url=row[5],
                        created_at=row[6],
                        completed_at=row[7],
                    )
                    for row in cur.fetchall()
                ]

        next_cursor: Tuple[datetime, str] | None = None
        if len(records) == limit:
            last = records[-1]
            next_cursor = (last.created_at, last.dispatch_id)
        return records, next_cursor


class AuditRepository:
    """Append-only admin audit trail."""

    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool

    def write_audit_event(
        self,
        *,
        actor_id: str,
        action: str,
        target_account_id: str | None,
        details: dict[str, Any] | None = None,
        ip_address: str | None = None,
    ) -> AuditEntry:
        """Record an audit trail entry and return the stored row."""
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    INSERT INTO admin_audit_log (actor_id, action, target_account_id, details, ip_address)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING audit_id, actor_id, action, target_account_id, details, ip_address, created_at
                    """,
                    (actor_id, action, target_account_id, Json(details or {}), ip_address),
                )
                row = cur.fetchone()
                conn.commit()
        return self._map_entry(row)

    def list_audit_events(
        self,
        *,
        actor_id: str | None = None,
        target_account_id: str | None = None,
        action: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: Tuple[datetime, int] | None = None,
    ) -> tuple[list[AuditEntry], Optional[Tuple[datetime, int]]]:
        """Return audit entries with optional filters and cursor pagination."""
        limit = _page_bounds(limit)
        clauses = ["TRUE"]
        params: list[Any] = []

        if actor_id:
            clauses.append("actor_id = %s")
            params.append(actor_id)
        if target_account_id:
            clauses.append("target_account_id = %s")
            params.append(target_account_id)
        if action:
            clauses.append("action = %s")
            params.append(action)
        if created_after:
            clauses.append("created_at >= %s")
            params.append(created_after)
        if created_before:
            clauses.append("created_at <= %s")
            params.append(created_before)
        if cursor:
            clauses.append("(created_at, audit_id) < (%s, %s)")
            params.extend(cursor)

        where_sql = " AND ".join(clauses)
        query = f"""
            SELECT audit_id, actor_id, action, target_account_id, details, ip_address, created_at
            FROM admin_audit_log
            WHERE {where_sql}
            ORDER BY created_at DESC, audit_id DESC
            LIMIT %s
        """
        params.append(limit)

        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, params)
                records = [self._map_entry(row) for row in cur.fetchall()]

        next_cursor: Tuple[datetime, int] | None = None
        if len(records) == limit:
            last = records[-1]
            next_cursor = (last.created_at, last.audit_id)
        return records, next_cursor

    @staticmethod
    def _map_entry(row: tuple) -> AuditEntry:
        return AuditEntry(
            audit_id=row[0],
            actor_id=row[1],
            action=row[2],
            target_account_id=row[3],
            details=row[4] or {},
            ip_address=row[5],
            created_at=row[6],
        )
