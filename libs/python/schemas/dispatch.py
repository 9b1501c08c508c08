"""Dispatch trace contracts."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from pydantic import BaseModel


class DispatchState(str, Enum):
    pending = "pending"
    success = "success"
    error = "error"

    @property
    def terminal(self) -> bool:
        return self is not DispatchState.pending


class DispatchCompleted(BaseModel):
    dispatch_id: str
    account_id: str
    state: DispatchState
    target_url: str
    occurred_at: datetime
    status_code: int | None = None
    elapsed_ms: int | None = None

    class Config:
        populate_by_name = True
        use_enum_values = True
