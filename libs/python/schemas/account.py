"""Account lifecycle events shared across services."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from pydantic import BaseModel


class DeletionReason(str, Enum):
    scheduled = "scheduled"
    immediate = "immediate"


class AccountDeleted(BaseModel):
    account_id: str
    deleted_at: datetime
    reason: DeletionReason
    scheduled_for: datetime | None = None
    actor_id: str | None = None


class AccountDeletionScheduled(BaseModel):
    account_id: str
    deletion_at: datetime
    actor_id: str | None = None
