from __future__ import annotations

from datetime import timedelta

import pytest

from app.domain.account import NotScheduled, ScheduledFor
from app.domain.errors import AccountNotFound, ValidationError
from app.domain.lifecycle import SWEEPER_ACTOR
from schemas import DeletionReason


def _actions(harness) -> list[tuple[str, str | None]]:
    return [(entry.action, entry.target_account_id) for entry in harness.audit_repo.entries]


def test_schedule_sets_grace_period_and_audits(harness):
    harness.account()
    account = harness.lifecycle.schedule_deletion("user-1", actor_id="user-1")

    assert account.deletion == ScheduledFor(harness.clock.now + timedelta(days=30))
    assert _actions(harness) == [("account.deletion_scheduled", "user-1")]


def test_rescheduling_keeps_original_date(harness):
    harness.account()
    first = harness.lifecycle.schedule_deletion("user-1", actor_id="user-1")
    harness.clock.advance(days=3)
    second = harness.lifecycle.schedule_deletion("user-1", actor_id="user-1")

    assert second.deletion == first.deletion
    assert len(harness.audit_repo.entries) == 1


def test_negative_grace_period_is_rejected(harness):
    harness.account()
    with pytest.raises(ValidationError):
        harness.lifecycle.schedule_deletion("user-1", actor_id="admin", grace_days=-1)


def test_cancel_clears_both_halves(harness):
    harness.account(deletion=ScheduledFor(harness.clock.now + timedelta(days=10)))
    account = harness.lifecycle.cancel_deletion("user-1", actor_id="user-1")

    assert isinstance(account.deletion, NotScheduled)
    assert _actions(harness) == [("account.deletion_cancelled", "user-1")]
    assert harness.lifecycle.cancel_deletion("user-1", actor_id="user-1").deletion == NotScheduled()


def test_delete_now_removes_account(harness):
    harness.account()
    event = harness.lifecycle.delete_now("user-1", actor_id="admin-1")

    assert event.reason is DeletionReason.immediate
    assert harness.accounts.stored("user-1") is None
    assert _actions(harness) == [("account.deleted", "user-1")]
    with pytest.raises(AccountNotFound):
        harness.lifecycle.delete_now("user-1", actor_id="admin-1")


def test_sweep_deletes_only_past_due_accounts(harness):
    now = harness.clock.now
    harness.account("due", deletion=ScheduledFor(now - timedelta(days=1)))
    harness.account("future", deletion=ScheduledFor(now + timedelta(days=1)))
    harness.account("active")
    harness.accounts.entries["due"] = []

    summary = harness.sweeper.run()

    assert [(item.account_id, item.outcome) for item in summary.results] == [("due", "deleted")]
    assert harness.accounts.stored("due") is None
    assert harness.accounts.stored("future") is not None
    assert harness.accounts.stored("active") is not None
    assert "due" not in harness.accounts.entries
    assert ("account.deleted", "due") in _actions(harness)
    assert harness.audit_repo.entries[-1].actor_id == SWEEPER_ACTOR

    second = harness.sweeper.run()
    assert second.processed == 0
    assert second.message == "No accounts to delete at this time"


def test_sweep_continues_past_a_failing_account(harness):
    now = harness.clock.now
    harness.account("broken", deletion=ScheduledFor(now - timedelta(days=2)))
    harness.account("fine", deletion=ScheduledFor(now - timedelta(days=1)))
    harness.accounts.failing_deletes.add("broken")

    summary = harness.sweeper.run()

    assert {item.account_id: item.outcome for item in summary.results} == {
        "broken": "failed",
        "fine": "deleted",
    }
    assert summary.failed == 1
    assert summary.deleted == 1
    assert summary.message == "Processed 2 accounts. 1 deleted successfully, 1 failed, 0 skipped."
    failure = next(entry for entry in harness.audit_repo.entries if entry.action == "account.deletion_failed")
    assert failure.details == {"error": "statement timeout"}
    assert harness.accounts.stored("broken") is not None


def test_sweep_skips_account_cancelled_mid_run(harness, monkeypatch):
    now = harness.clock.now
    harness.account("user-1", deletion=ScheduledFor(now - timedelta(hours=1)))
    due = harness.accounts.list_accounts_due_for_deletion(now)
    harness.accounts.set_deletion_schedule("user-1", NotScheduled())
    monkeypatch.setattr(harness.accounts, "list_accounts_due_for_deletion", lambda now, limit=500: due)

    summary = harness.sweeper.run()

    assert summary.skipped == 1
    assert harness.accounts.stored("user-1") is not None
    assert ("account.deletion_skipped", "user-1") in _actions(harness)


def test_sweep_survives_audit_outage(harness):
    harness.account(deletion=ScheduledFor(harness.clock.now - timedelta(days=1)))
    harness.audit_repo.fail = True

    summary = harness.sweeper.run()
    assert summary.deleted == 1
