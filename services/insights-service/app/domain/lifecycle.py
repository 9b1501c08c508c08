"""Account deletion lifecycle: scheduling, cancellation and the deferred sweep."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol

from schemas import AccountDeleted, AccountDeletionScheduled, DeletionReason

from .account import Account, DeletionSchedule, NotScheduled, ScheduledFor
from .audit import AuditLogger
from .errors import AccountNotFound, DeletionProcessingError, ValidationError
from ..metrics import SWEEP_RESULTS

logger = logging.getLogger(__name__)

SWEEPER_ACTOR = "system:deletion-sweeper"


class LifecycleStore(Protocol):
    def get_account(self, account_id: str) -> Account | None:
        ...

    def set_deletion_schedule(self, account_id: str, schedule: DeletionSchedule) -> Account | None:
        ...

    def list_accounts_due_for_deletion(self, now: datetime, limit: int = 500) -> list[Account]:
        ...

    def delete_account(
        self,
        account_id: str,
        *,
        due_before: datetime | None = None,
        timeout_seconds: int | None = None,
    ) -> bool:
        ...


@dataclass(frozen=True, slots=True)
class SweepItem:
    account_id: str
    outcome: str
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.outcome == "deleted"


@dataclass(slots=True)
class SweepSummary:
    started_at: datetime
    results: list[SweepItem] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.results)

    @property
    def deleted(self) -> int:
        return sum(1 for item in self.results if item.outcome == "deleted")

    @property
    def skipped(self) -> int:
        return sum(1 for item in self.results if item.outcome == "skipped")

    @property
    def failed(self) -> int:
        return sum(1 for item in self.results if item.outcome == "failed")

    @property
    def message(self) -> str:
        if not self.results:
            return "No accounts to delete at this time"
        return (
            f"Processed {self.processed} accounts. {self.deleted} deleted successfully, "
            f"{self.failed} failed, {self.skipped} skipped."
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountLifecycleService:
    """Schedule, cancel and execute account deletion for owners and admins alike."""

    def __init__(
        self,
        store: LifecycleStore,
        audit: AuditLogger,
        *,
        grace_days: int = 30,
        delete_timeout_seconds: int = 30,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._audit = audit
        self._grace_days = grace_days
        self._delete_timeout = delete_timeout_seconds
        self._clock = clock

    def schedule_deletion(
        self, account_id: str, actor_id: str, grace_days: int | None = None
    ) -> Account:
        """Mark the account for removal after the grace period.

        Scheduling an already scheduled account keeps the original date.
        """
        days = self._grace_days if grace_days is None else grace_days
        if days < 0:
            raise ValidationError("grace period must not be negative")
        account = self._require(account_id)
        if isinstance(account.deletion, ScheduledFor):
            return account

        deletion_at = self._clock() + timedelta(days=days)
        updated = self._store.set_deletion_schedule(account_id, ScheduledFor(deletion_at))
        if updated is None:
            raise AccountNotFound(account_id)
        event = AccountDeletionScheduled(account_id=account_id, deletion_at=deletion_at, actor_id=actor_id)
        self._audit.log_system_action(
            actor_id,
            "account.deletion_scheduled",
            target_account_id=account_id,
            details=event.model_dump(mode="json"),
        )
        return updated

    def cancel_deletion(self, account_id: str, actor_id: str) -> Account:
        account = self._require(account_id)
        if isinstance(account.deletion, NotScheduled):
            return account
        updated = self._store.set_deletion_schedule(account_id, NotScheduled())
        if updated is None:
            raise AccountNotFound(account_id)
        self._audit.log_system_action(
            actor_id,
            "account.deletion_cancelled",
            target_account_id=account_id,
            details={"previous_deletion_at": account.deletion.at.isoformat()},
        )
        return updated

    def delete_now(self, account_id: str, actor_id: str) -> AccountDeleted:
        """Irreversibly remove the account and its owned data without a grace period."""
        account = self._require(account_id)
        if not self._store.delete_account(account_id, timeout_seconds=self._delete_timeout):
            raise AccountNotFound(account_id)
        event = AccountDeleted(
            account_id=account_id,
            deleted_at=self._clock(),
            reason=DeletionReason.immediate,
            scheduled_for=account.deletion.at if isinstance(account.deletion, ScheduledFor) else None,
            actor_id=actor_id,
        )
        self._audit.log_system_action(
            actor_id,
            "account.deleted",
            target_account_id=account_id,
            details=event.model_dump(mode="json"),
        )
        return event

    def _require(self, account_id: str) -> Account:
        account = self._store.get_account(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account


class DeletionSweeper:
    """Batch job removing accounts whose scheduled deletion time has passed.

    Each account is handled on its own: a failure is recorded in the summary
    and the audit trail, and the sweep moves on. Rerunning is harmless since
    deleted accounts no longer match the selection.
    """

    def __init__(
        self,
        store: LifecycleStore,
        audit: AuditLogger,
        *,
        account_timeout_seconds: int = 30,
        batch_size: int = 500,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._audit = audit
        self._timeout = account_timeout_seconds
        self._batch_size = batch_size
        self._clock = clock

    def run(self, now: datetime | None = None) -> SweepSummary:
        now = now or self._clock()
        summary = SweepSummary(started_at=now)
        due = self._store.list_accounts_due_for_deletion(now, self._batch_size)
        if due:
            logger.info("found %d accounts due for deletion", len(due))
        for account in due:
            item = self._process(account, now)
            summary.results.append(item)
            SWEEP_RESULTS.labels(outcome=item.outcome).inc()
        return summary

    def _process(self, account: Account, now: datetime) -> SweepItem:
        scheduled_for = account.deletion.at if isinstance(account.deletion, ScheduledFor) else None
        try:
            deleted = self._store.delete_account(
                account.account_id, due_before=now, timeout_seconds=self._timeout
            )
        except Exception as exc:
            failure = DeletionProcessingError(account.account_id, str(exc) or exc.__class__.__name__)
            logger.exception("error processing deletion for %s", account.account_id)
            self._audit.log_system_action(
                SWEEPER_ACTOR,
                "account.deletion_failed",
                target_account_id=account.account_id,
                details={"error": failure.reason},
            )
            return SweepItem(account.account_id, "failed", failure.reason)

        if not deleted:
            logger.info("account %s no longer due for deletion, skipped", account.account_id)
            self._audit.log_system_action(
                SWEEPER_ACTOR,
                "account.deletion_skipped",
                target_account_id=account.account_id,
                details={"reason": "no longer scheduled"},
            )
            return SweepItem(account.account_id, "skipped")

        event = AccountDeleted(
            account_id=account.account_id,
            deleted_at=now,
            reason=DeletionReason.scheduled,
            scheduled_for=scheduled_for,
            actor_id=SWEEPER_ACTOR,
        )
        self._audit.log_system_action(
            SWEEPER_ACTOR,
            "account.deleted",
            target_account_id=account.account_id,
            details=event.model_dump(mode="json"),
        )
        logger.info("deleted account %s", account.account_id)
        return SweepItem(account.account_id, "deleted")
