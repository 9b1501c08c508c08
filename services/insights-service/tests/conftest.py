from __future__ import annotations

import asyncio
import socket
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.api import admin_routes, routes
from app.domain.account import Account, DeletionSchedule, ScheduledFor, schedule_to_columns
from app.domain.admin import AccountAdminService
from app.domain.audit import AuditLogger
from app.domain.config_store import WebhookConfigStore
from app.domain.contracts import (
    AccountUpdate,
    CreateAccountInput,
    DispatchOutcome,
    Goal,
    WebhookConfig,
    WebhookConfigUpdate,
    WebhookFields,
    WeightEntry,
)
from app.domain.lifecycle import AccountLifecycleService, DeletionSweeper
from app.domain.payload import PayloadBuilder
from app.domain.quota import QuotaTracker
from app.domain.service import InsightsService
from app.repository import AuditEntry, DispatchRecord
from app.security.account_locks import InMemoryAccountLocks
from app.security.rate_limiter import SlidingWindowRateLimiter
from app.security.tokens import issue_access_token
from schemas import DispatchState

UTC = ZoneInfo("UTC")
HOOK_URL = "https://hooks.example.com/insights"
PUBLIC_ADDRESS = "93.184.216.34"


def public_resolver(host, port, **kwargs):
    """Resolve every name to a public address without touching DNS."""
    return [(socket.AF_INET, socket.SOCK_STREAM, socket.IPPROTO_TCP, "", (PUBLIC_ADDRESS, port))]


class FrozenClock:
    """Mutable clock shared by the services under test."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeAccountStore:
    """In-memory account store mimicking the Postgres repository."""

    def __init__(self) -> None:
        self._accounts: dict[str, Account] = {}
        self._idempotency: dict[str, str] = {}
        self._lock = threading.Lock()
        self.entries: dict[str, list[WeightEntry]] = {}
        self.goals: dict[str, list[Goal]] = {}
        self.failing_deletes: set[str] = set()
        self.quota_writes: list[tuple[str, int]] = []

    def add(self, account: Account) -> Account:
        self._accounts[account.account_id] = account
        return account

    def stored(self, account_id: str) -> Account | None:
        return self._accounts.get(account_id)

    def create_account(self, payload: CreateAccountInput, quota_limit: int, idempotency_key: str | None):
        if idempotency_key and idempotency_key in self._idempotency:
            return replace(self._accounts[self._idempotency[idempotency_key]]), True
        account = Account(
            account_id=payload.account_id,
            email=payload.email,
            created_at=datetime.now(timezone.utc),
            display_name=payload.display_name,
            preferred_unit=payload.preferred_unit,
            quota_limit=quota_limit,
        )
        self._accounts[account.account_id] = account
        if idempotency_key:
            self._idempotency[idempotency_key] = account.account_id
        return replace(account), False

    def get_account(self, account_id: str) -> Account | None:
        with self._lock:
            account = self._accounts.get(account_id)
            return replace(account) if account else None

    def update_quota_usage(self, account_id: str, *, quota_used: int, quota_reset_at: datetime) -> None:
        with self._lock:
            account = self._accounts[account_id]
            account.quota_used = quota_used
            account.quota_reset_at = quota_reset_at
            self.quota_writes.append((account_id, quota_used))

    def apply_account_update(self, account_id: str, update: AccountUpdate) -> Account | None:
        account = self._accounts.get(account_id)
        if account is None:
            return None
        if update.quota_limit is not None:
            account.quota_limit = update.quota_limit
        if update.suspended is not None:
            account.suspended = update.suspended
        if update.reset_quota:
            account.quota_used = 0
            account.quota_reset_at = None
        if update.clear_webhook_override:
            account.webhook_url = account.webhook_days = account.webhook_fields = None
        else:
            if update.webhook_url is not None:
                account.webhook_url = update.webhook_url
            if update.webhook_days is not None:
                account.webhook_days = update.webhook_days
            if update.webhook_fields is not None:
                account.webhook_fields = update.webhook_fields.to_mapping()
        return replace(account)

    def set_deletion_schedule(self, account_id: str, schedule: DeletionSchedule) -> Account | None:
        account = self._accounts.get(account_id)
        if account is None:
            return None
        account.deletion = schedule
        return replace(account)

    def list_accounts_due_for_deletion(self, now: datetime, limit: int = 500) -> list[Account]:
        due = [
            replace(account)
            for account in self._accounts.values()
            if isinstance(account.deletion, ScheduledFor) and account.deletion.at < now
        ]
        return sorted(due, key=lambda account: account.deletion.at)[:limit]

    def delete_account(self, account_id: str, *, due_before=None, timeout_seconds=None) -> bool:
        if account_id in self.failing_deletes:
            raise RuntimeError("statement timeout")
        account = self._accounts.get(account_id)
        if account is None:
            return False
        if due_before is not None:
            scheduled, deletion_at = schedule_to_columns(account.deletion)
            if not (scheduled and deletion_at < due_before):
                return False
        del self._accounts[account_id]
        self.entries.pop(account_id, None)
        self.goals.pop(account_id, None)
        return True

    def list_weight_entries(self, account_id: str, *, since: date, until: date, limit: int) -> list[WeightEntry]:
        rows = [e for e in self.entries.get(account_id, []) if since <= e.entry_date <= until]
        rows.sort(key=lambda e: e.entry_date)
        return rows[-limit:]

    def get_latest_goal(self, account_id: str) -> Goal | None:
        goals = sorted(self.goals.get(account_id, []), key=lambda g: g.created_at)
        return goals[-1] if goals else None


class FakeAuditRepository:
    def __init__(self) -> None:
        self.entries: list[AuditEntry] = []
        self._seq = 0
        self.fail = False

    def write_audit_event(self, *, actor_id, action, target_account_id, details=None, ip_address=None) -> AuditEntry:
        if self.fail:
            raise RuntimeError("audit table unavailable")
        self._seq += 1
        entry = AuditEntry(
            audit_id=self._seq,
            actor_id=actor_id,
            action=action,
            target_account_id=target_account_id,
            details=details or {},
            ip_address=ip_address,
            created_at=datetime.now(timezone.utc) + timedelta(microseconds=self._seq),
        )
        self.entries.append(entry)
        return entry

    def list_audit_events(
        self,
        *,
        actor_id=None,
        target_account_id=None,
        action=None,
        created_after=None,
        created_before=None,
        limit=50,
        cursor=None,
    ):
        results = list(self.entries)
        if actor_id:
            results = [r for r in results if r.actor_id == actor_id]
        if target_account_id:
            results = [r for r in results if r.target_account_id == target_account_id]
        if action:
            results = [r for r in results if r.action == action]
        results.sort(key=lambda r: (r.created_at, r.audit_id), reverse=True)
        if cursor:
            results = [r for r in results if (r.created_at, r.audit_id) < cursor]
        page = results[:limit]
        next_cursor = None
        if len(results) > limit:
            next_cursor = (page[-1].created_at, page[-1].audit_id)
        return page, next_cursor


class FakeDispatchRepository:
    def __init__(self) -> None:
        self.records: dict[str, DispatchRecord] = {}
        self.finalize_calls = 0

    def create_pending(self, account_id: str, payload: dict[str, Any], target_url: str) -> str:
        dispatch_id = str(uuid.uuid4())
        self.records[dispatch_id] = DispatchRecord(
            dispatch_id=dispatch_id,
            account_id=account_id,
            request_payload=payload,
            response_payload=None,
            status=DispatchState.pending,
            target_url=target_url,
            created_at=datetime.now(timezone.utc),
            completed_at=None,
        )
        return dispatch_id

    def finalize(self, dispatch_id: str, status: DispatchState, response_payload: str) -> bool:
        self.finalize_calls += 1
        record = self.records[dispatch_id]
        if record.status is not DispatchState.pending:
            return False
        record.status = status
        record.response_payload = response_payload
        record.completed_at = datetime.now(timezone.utc)
        return True

    def list_dispatch_records(self, *, account_id=None, status=None, limit=50, cursor=None):
        results = sorted(self.records.values(), key=lambda r: (r.created_at, r.dispatch_id), reverse=True)
        if account_id:
            results = [r for r in results if r.account_id == account_id]
        if status:
            results = [r for r in results if r.status is status]
        if cursor:
            results = [r for r in results if (r.created_at, r.dispatch_id) < cursor]
        page = results[:limit]
        next_cursor = (page[-1].created_at, page[-1].dispatch_id) if len(results) > limit else None
        return page, next_cursor


class FakeConfigRepository:
    def __init__(self, config: WebhookConfig | None = None) -> None:
        self.config = config
        self.reads = 0

    def get_config(self) -> WebhookConfig | None:
        self.reads += 1
        return self.config

    def save_config(self, update: WebhookConfigUpdate, actor_id: str, default_quota_limit: int) -> WebhookConfig:
        self.config = WebhookConfig(
            url=update.url,
            lookback_days=update.lookback_days,
            fields=update.fields,
            default_quota_limit=default_quota_limit,
            updated_at=datetime.now(timezone.utc),
            updated_by=actor_id,
        )
        return self.config


class FakeDispatcher:
    """Returns a canned outcome and records every call."""

    def __init__(self, outcome: DispatchOutcome | None = None, delay: float = 0.0) -> None:
        self.outcome = outcome or DispatchOutcome(DispatchState.success, '{"insight": "steady progress"}', 200)
        self.delay = delay
        self.calls: list[tuple[str, dict[str, Any], float]] = []
        self.raise_on_send: BaseException | None = None
        self.started: asyncio.Event | None = None
        self.hang = False

    async def send(self, url: str, payload: dict[str, Any], timeout: float) -> DispatchOutcome:
        self.calls.append((url, payload, timeout))
        if self.started is not None:
            self.started.set()
        if self.hang:
            await asyncio.Event().wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.raise_on_send is not None:
            raise self.raise_on_send
        return self.outcome


@dataclass
class Harness:
    clock: FrozenClock
    accounts: FakeAccountStore
    audit_repo: FakeAuditRepository
    dispatch_repo: FakeDispatchRepository
    config_repo: FakeConfigRepository
    dispatcher: FakeDispatcher
    audit: AuditLogger
    config_store: WebhookConfigStore
    insights: InsightsService
    lifecycle: AccountLifecycleService
    sweeper: DeletionSweeper
    admin: AccountAdminService

    def account(self, account_id: str = "user-1", **overrides: Any) -> Account:
        values: dict[str, Any] = {
            "account_id": account_id,
            "email": f"{account_id}@example.com",
            "created_at": self.clock.now - timedelta(days=100),
            "display_name": account_id.title(),
            "quota_limit": 5,
        }
        values.update(overrides)
        return self.accounts.add(Account(**values))


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def harness(clock: FrozenClock) -> Harness:
    accounts = FakeAccountStore()
    audit_repo = FakeAuditRepository()
    dispatch_repo = FakeDispatchRepository()
    config_repo = FakeConfigRepository(
        WebhookConfig(url=HOOK_URL, lookback_days=30, fields=WebhookFields(), default_quota_limit=5)
    )
    dispatcher = FakeDispatcher()
    audit = AuditLogger(
        audit_repo, dispatch_repo, SlidingWindowRateLimiter(max_requests=10, window_seconds=60)
    )
    config_store = WebhookConfigStore(config_repo, audit, fallback=WebhookConfig(url=None))
    insights = InsightsService(
        accounts,
        InMemoryAccountLocks(wait_seconds=5),
        QuotaTracker(accounts, UTC, clock=clock),
        PayloadBuilder(accounts, UTC, clock=clock),
        config_store,
        dispatcher,
        audit,
        dispatch_timeout=5,
        resolver=public_resolver,
    )
    return Harness(
        clock=clock,
        accounts=accounts,
        audit_repo=audit_repo,
        dispatch_repo=dispatch_repo,
        config_repo=config_repo,
        dispatcher=dispatcher,
        audit=audit,
        config_store=config_store,
        insights=insights,
        lifecycle=AccountLifecycleService(accounts, audit, clock=clock),
        sweeper=DeletionSweeper(accounts, audit, clock=clock),
        admin=AccountAdminService(accounts, config_store, audit),
    )


def auth_headers(account_id: str) -> dict[str, str]:
    token, _ = issue_access_token(subject=account_id)
    return {"Authorization": f"Bearer {token}"}


def build_app(harness: Harness) -> FastAPI:
    app = FastAPI()
    app.include_router(routes.router)
    app.include_router(routes.internal_router)
    app.include_router(admin_routes.router)
    app.state.accounts = harness.accounts
    app.state.audit_logger = harness.audit
    app.state.config_store = harness.config_store
    app.state.insights_service = harness.insights
    app.state.lifecycle_service = harness.lifecycle
    app.state.sweeper = harness.sweeper
    app.state.admin_service = harness.admin
    return app


@pytest.fixture
def insights_app(harness: Harness) -> FastAPI:
    return build_app(harness)


@pytest.fixture
def api_client(harness: Harness):
    """Provide a FastAPI test client wired to the in-memory harness."""
    with TestClient(build_app(harness)) as client:
        yield client, harness
