"""Calendar-day dispatch quota accounting."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone, tzinfo
from typing import Callable, Protocol

from .account import Account
from .contracts import UsageSnapshot
from .errors import AccountSuspended, QuotaExceeded
from ..metrics import QUOTA_REJECTIONS

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class QuotaDecision:
    allowed: bool
    is_new_window: bool
    used: int
    limit: int


class QuotaStore(Protocol):
    def update_quota_usage(self, account_id: str, *, quota_used: int, quota_reset_at: datetime) -> None:
        ...


def _window_day(moment: datetime, tz: tzinfo):
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(tz).date()


def check_quota(account: Account, now: datetime, tz: tzinfo) -> QuotaDecision:
    """Decide whether ``account`` may dispatch at ``now``.

    The window is the calendar day in ``tz``. When the last recorded use falls
    on another day the stored counter is ignored for the decision; the reset
    itself is only written by :func:`next_usage` on commit.
    """
    last = account.quota_reset_at
    if last is None or _window_day(last, tz) != _window_day(now, tz):
        return QuotaDecision(True, True, 0, account.quota_limit)
    return QuotaDecision(
        account.quota_used < account.quota_limit,
        False,
        account.quota_used,
        account.quota_limit,
    )


def next_usage(account: Account, decision: QuotaDecision) -> int:
    return 1 if decision.is_new_window else account.quota_used + 1


def window_end(now: datetime, tz: tzinfo) -> datetime:
    """Return the instant the current quota window rolls over."""
    tomorrow = _window_day(now, tz) + timedelta(days=1)
    return datetime.combine(tomorrow, time.min, tzinfo=tz)


class QuotaTracker:
    """Gatekeeper for dispatches; persists the counter after each attempt."""

    def __init__(
        self,
        store: QuotaStore,
        tz: tzinfo,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._tz = tz
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._clock()

    def check_and_reserve(self, account: Account) -> QuotaDecision:
        """Raise for suspended or exhausted accounts, otherwise return the decision."""
        if account.suspended:
            QUOTA_REJECTIONS.labels(reason="suspended").inc()
            raise AccountSuspended(account.account_id)
        decision = check_quota(account, self.now(), self._tz)
        if not decision.allowed:
            QUOTA_REJECTIONS.labels(reason="exhausted").inc()
            logger.info(
                "quota exhausted for account %s (%s/%s)",
                account.account_id,
                decision.used,
                decision.limit,
            )
            raise QuotaExceeded(limit=decision.limit, used=decision.used)
        return decision

    def commit(self, account: Account, decision: QuotaDecision) -> int:
        """Charge one unit for a finished attempt and return the new counter."""
        used = next_usage(account, decision)
        now = self.now()
        self._store.update_quota_usage(account.account_id, quota_used=used, quota_reset_at=now)
        account.quota_used = used
        account.quota_reset_at = now
        return used

    def usage(self, account: Account) -> UsageSnapshot:
        now = self.now()
        decision = check_quota(account, now, self._tz)
        return UsageSnapshot(
            used=decision.used,
            limit=decision.limit,
            remaining=max(0, decision.limit - decision.used),
            window_resets_at=window_end(now, self._tz),
        )
