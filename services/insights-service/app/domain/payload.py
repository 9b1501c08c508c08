"""Assembly of the outbound insights payload from account time-series data."""

from __future__ import annotations

import math
import re
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Callable, Protocol

from schemas import InsightsPayload, WeightSeries

from .account import Account
from .contracts import EffectiveWebhookSettings, Goal, WebhookConfig, WebhookFields, WeightEntry
from .errors import ValidationError

MIN_LOOKBACK_DAYS = 1
MAX_LOOKBACK_DAYS = 365
MAX_NOTE_LENGTH = 1000

_SCRIPT_RE = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]*>")


class EntrySource(Protocol):
    def list_weight_entries(
        self, account_id: str, *, since: date, until: date, limit: int
    ) -> list[WeightEntry]:
        ...

    def get_latest_goal(self, account_id: str) -> Goal | None:
        ...


def sanitize_note(text: str | None) -> str:
    if not text:
        return ""
    cleaned = _TAG_RE.sub("", _SCRIPT_RE.sub("", text)).strip()
    return cleaned[:MAX_NOTE_LENGTH]


def check_lookback_days(days: int) -> int:
    if isinstance(days, bool) or not isinstance(days, int):
        raise ValidationError("lookback days must be an integer")
    if not MIN_LOOKBACK_DAYS <= days <= MAX_LOOKBACK_DAYS:
        raise ValidationError(
            f"lookback days must be between {MIN_LOOKBACK_DAYS} and {MAX_LOOKBACK_DAYS}"
        )
    return days


def resolve_effective_settings(account: Account, config: WebhookConfig) -> EffectiveWebhookSettings:
    """Per-account overrides win over the global configuration, field by field."""
    return EffectiveWebhookSettings(
        url=account.webhook_url or config.url,
        lookback_days=account.webhook_days or config.lookback_days,
        fields=(
            WebhookFields.from_mapping(account.webhook_fields)
            if account.webhook_fields
            else config.fields
        ),
    )


def days_until(target: date, now: datetime, tz: tzinfo) -> int:
    """Whole days remaining until midnight of ``target``, rounded up, never negative."""
    deadline = datetime.combine(target, time.min, tzinfo=tz)
    remaining = (deadline - now.astimezone(tz)).total_seconds() / 86400
    return max(0, math.ceil(remaining))


class PayloadBuilder:
    """Builds bounded, schema-stable payloads for the analytics endpoint."""

    def __init__(
        self,
        source: EntrySource,
        tz: tzinfo,
        *,
        max_entries: int = 1000,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._source = source
        self._tz = tz
        self._max_entries = max_entries
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def build(self, account: Account, lookback_days: int, fields: WebhookFields) -> InsightsPayload:
        lookback_days = check_lookback_days(lookback_days)
        now = self._clock()
        today = now.astimezone(self._tz).date()

        series = WeightSeries()
        if fields.weight_data:
            entries = self._source.list_weight_entries(
                account.account_id,
                since=today - timedelta(days=lookback_days),
                until=today,
                limit=self._max_entries,
            )
            series = self._series(entries)

        payload = InsightsPayload(unit=account.preferred_unit or "kg", entries=series)
        if fields.user_data:
            payload.user_id = account.account_id
            payload.display_name = account.display_name or ""
            payload.email = account.email or ""
        if fields.goal_data:
            goal = self._source.get_latest_goal(account.account_id)
            if goal is not None:
                payload.goal_weight = goal.target_weight
                if goal.target_date is not None:
                    payload.goal_days = days_until(goal.target_date, now, self._tz)
        if fields.detailed_analysis:
            payload.detailed_analysis = True
        return payload

    def _series(self, entries: list[WeightEntry]) -> WeightSeries:
        ordered = sorted(entries, key=lambda entry: entry.entry_date)[-self._max_entries :]
        return WeightSeries(
            weight=[float(entry.weight) for entry in ordered],
            notes=[sanitize_note(entry.note) for entry in ordered],
            dates=[entry.entry_date.isoformat() for entry in ordered],
        )
