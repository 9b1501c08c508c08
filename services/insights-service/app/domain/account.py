from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Union


@dataclass(frozen=True, slots=True)
class NotScheduled:
    """The account is active; no deletion is pending."""

    scheduled: bool = field(default=False, init=False)


@dataclass(frozen=True, slots=True)
class ScheduledFor:
    """The account will be removed once ``at`` has passed."""

    at: datetime
    scheduled: bool = field(default=True, init=False)


DeletionSchedule = Union[NotScheduled, ScheduledFor]


def schedule_from_columns(scheduled: bool, deletion_at: datetime | None) -> DeletionSchedule:
    """Map the persisted column pair onto the variant.

    A row carrying only one half of the pair is treated as not scheduled.
    """
    if scheduled and deletion_at is not None:
        return ScheduledFor(deletion_at)
    return NotScheduled()


def schedule_to_columns(schedule: DeletionSchedule) -> tuple[bool, datetime | None]:
    if isinstance(schedule, ScheduledFor):
        return True, schedule.at
    return False, None


@dataclass(slots=True)
class Account:
    """Aggregate root for a dashboard user's dispatch and lifecycle state."""

    account_id: str
    email: str
    created_at: datetime
    display_name: str | None = None
    preferred_unit: str = "kg"
    is_admin: bool = False
    webhook_url: str | None = None
    webhook_days: int | None = None
    webhook_fields: dict[str, Any] | None = None
    quota_limit: int = 5
    quota_used: int = 0
    quota_reset_at: datetime | None = None
    suspended: bool = False
    deletion: DeletionSchedule = field(default_factory=NotScheduled)
