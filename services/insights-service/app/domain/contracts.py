"""Domain-level request contracts shared by multiple layers."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any

from schemas import DispatchState


@dataclass(slots=True)
class CreateAccountInput:
    """Validated inputs required to provision an account for a platform user."""

    account_id: str
    email: str
    display_name: str | None = None
    preferred_unit: str = "kg"


@dataclass(frozen=True, slots=True)
class WebhookFields:
    """Categories of account data attached to an outbound payload."""

    user_data: bool = True
    weight_data: bool = True
    goal_data: bool = True
    activity_data: bool = False
    detailed_analysis: bool = False

    @classmethod
    def from_mapping(cls, data: dict[str, Any] | None) -> "WebhookFields":
        if not data:
            return cls()
        known = {name: bool(data[name]) for name in cls.__dataclass_fields__ if name in data}
        return cls(**known)

    def to_mapping(self) -> dict[str, bool]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class WebhookConfig:
    """Process-wide dispatch defaults, editable by administrators."""

    url: str | None
    lookback_days: int = 30
    fields: WebhookFields = field(default_factory=WebhookFields)
    default_quota_limit: int = 5
    updated_at: datetime | None = None
    updated_by: str | None = None


@dataclass(frozen=True, slots=True)
class WebhookConfigUpdate:
    url: str
    lookback_days: int
    fields: WebhookFields
    default_quota_limit: int | None = None


@dataclass(frozen=True, slots=True)
class EffectiveWebhookSettings:
    """Per-account resolution of the global config and the account's overrides."""

    url: str | None
    lookback_days: int
    fields: WebhookFields


@dataclass(frozen=True, slots=True)
class WeightEntry:
    entry_date: date
    weight: float
    note: str | None = None


@dataclass(frozen=True, slots=True)
class Goal:
    target_weight: float
    target_date: date | None
    created_at: datetime


@dataclass(frozen=True, slots=True)
class DispatchOutcome:
    """Classified result of one outbound call."""

    status: DispatchState
    body: str
    status_code: int | None = None
    elapsed_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.status is DispatchState.success

    @classmethod
    def failed(cls, message: str, *, status_code: int | None = None, elapsed_ms: int = 0) -> "DispatchOutcome":
        return cls(DispatchState.error, message, status_code=status_code, elapsed_ms=elapsed_ms)


@dataclass(frozen=True, slots=True)
class AnalysisResult:
    dispatch_id: str
    status: DispatchState
    message: str
    quota_used: int
    quota_limit: int


@dataclass(frozen=True, slots=True)
class UsageSnapshot:
    used: int
    limit: int
    remaining: int
    window_resets_at: datetime


@dataclass(frozen=True, slots=True)
class AccountUpdate:
    """Administrative changes to an account; ``None`` leaves a field untouched."""

    quota_limit: int | None = None
    suspended: bool | None = None
    webhook_url: str | None = None
    webhook_days: int | None = None
    webhook_fields: WebhookFields | None = None
    clear_webhook_override: bool = False
    reset_quota: bool = False
