"""Admin audit trail and dispatch trace logging."""

from __future__ import annotations

import logging
from base64 import urlsafe_b64decode, urlsafe_b64encode
from datetime import datetime, timezone
import json
from typing import Any, Optional, Protocol, Tuple

from schemas import DispatchCompleted, DispatchState

from .contracts import DispatchOutcome
from .errors import AuditRateLimited, ValidationError
from ..metrics import AUDIT_RATE_LIMITED, DISPATCH_OUTCOMES
from ..repository import AuditEntry, AuditRepository, DispatchRecord, DispatchRepository

logger = logging.getLogger(__name__)

MAX_ACTION_LENGTH = 100
MAX_IP_LENGTH = 45
MAX_RESPONSE_LENGTH = 65536


class ActorRateLimiter(Protocol):
    def allow(self, key: str) -> bool:
        ...

    def retry_after(self, key: str) -> int:
        ...


def encode_cursor(cursor: Tuple[datetime, Any] | None) -> str | None:
    if cursor is None:
        return None
    created_at, row_id = cursor
    payload = json.dumps({"created_at": created_at.isoformat(), "id": row_id})
    return urlsafe_b64encode(payload.encode("utf-8")).decode("utf-8")


def decode_cursor(cursor: str) -> Tuple[datetime, Any]:
    try:
        data = json.loads(urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8"))
        return datetime.fromisoformat(data["created_at"]), data["id"]
    except Exception as exc:
        raise ValidationError("invalid cursor") from exc


class AuditLogger:
    """Writes admin actions and dispatch traces.

    Trace and system writes are best effort: a storage failure is reported to
    the operational log and never undoes the business operation being logged.
    """

    def __init__(
        self,
        audit_repository: AuditRepository,
        dispatch_repository: DispatchRepository,
        rate_limiter: ActorRateLimiter,
    ) -> None:
        self._audit = audit_repository
        self._dispatches = dispatch_repository
        self._rate_limiter = rate_limiter

    def log_admin_action(
        self,
        actor_id: str,
        action: str,
        target_account_id: str | None = None,
        details: dict[str, Any] | None = None,
        ip_address: str | None = None,
    ) -> AuditEntry:
        """Record an admin action, at most N per actor per rolling window."""
        action = (action or "").strip()
        if not action:
            raise ValidationError("action is required")
        if not self._rate_limiter.allow(actor_id):
            AUDIT_RATE_LIMITED.inc()
            raise AuditRateLimited(actor_id, self._rate_limiter.retry_after(actor_id))
        return self._write(actor_id, action, target_account_id, details, ip_address)

    def log_system_action(
        self,
        actor_id: str,
        action: str,
        target_account_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditEntry | None:
        try:
            return self._write(actor_id, action, target_account_id, details, None)
        except Exception:
            logger.exception(
                "failed to write audit entry %s for target %s", action, target_account_id
            )
            return None

    def _write(
        self,
        actor_id: str,
        action: str,
        target_account_id: str | None,
        details: dict[str, Any] | None,
        ip_address: str | None,
    ) -> AuditEntry:
        return self._audit.write_audit_event(
            actor_id=actor_id,
            action=action[:MAX_ACTION_LENGTH],
            target_account_id=target_account_id,
            details=details,
            ip_address=ip_address[:MAX_IP_LENGTH] if ip_address else None,
        )

    def begin_dispatch(self, account_id: str, payload: dict[str, Any], target_url: str) -> str:
        """Create the pending trace row; raised errors abort before any network call."""
        return self._dispatches.create_pending(account_id, payload, target_url)

    def complete_dispatch(
        self, dispatch_id: str, account_id: str, target_url: str, outcome: DispatchOutcome
    ) -> DispatchCompleted:
        DISPATCH_OUTCOMES.labels(status=outcome.status.value).inc()
        try:
            finalized = self._dispatches.finalize(
                dispatch_id, outcome.status, outcome.body[:MAX_RESPONSE_LENGTH]
            )
            if not finalized:
                logger.warning("dispatch %s was already finalized; outcome not recorded", dispatch_id)
        except Exception:
            logger.exception("failed to finalize dispatch %s as %s", dispatch_id, outcome.status.value)
        return DispatchCompleted(
            dispatch_id=dispatch_id,
            account_id=account_id,
            state=outcome.status,
            target_url=target_url,
            occurred_at=datetime.now(timezone.utc),
            status_code=outcome.status_code,
            elapsed_ms=outcome.elapsed_ms,
        )

    def list_audit_events(
        self,
        *,
        actor_id: str | None = None,
        target_account_id: str | None = None,
        action: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: str | None = None,
    ) -> tuple[list[AuditEntry], str | None]:
        decoded: Optional[Tuple[datetime, int]] = None
        if cursor:
            created_at, audit_id = decode_cursor(cursor)
            if not isinstance(audit_id, int):
                raise ValidationError("invalid cursor")
            decoded = (created_at, audit_id)
        records, next_cursor = self._audit.list_audit_events(
            actor_id=actor_id,
            target_account_id=target_account_id,
            action=action,
            created_after=created_after,
            created_before=created_before,
            limit=limit,
            cursor=decoded,
        )
        return records, encode_cursor(next_cursor)

    def list_dispatches(
        self,
        *,
        account_id: str | None = None,
        status: DispatchState | None = None,
        limit: int = 50,
        cursor: str | None = None,
    ) -> tuple[list[DispatchRecord], str | None]:
        decoded: Optional[Tuple[datetime, str]] = None
        if cursor:
            created_at, dispatch_id = decode_cursor(cursor)
            decoded = (created_at, str(dispatch_id))
        records, next_cursor = self._dispatches.list_dispatch_records(
            account_id=account_id, status=status, limit=limit, cursor=decoded
        )
        return records, encode_cursor(next_cursor)
