"""Domain failure taxonomy for the dispatch and lifecycle workflows."""

from __future__ import annotations


class InsightsError(Exception):
    """Base class for failures surfaced to API callers."""

    code = "insights_error"

    def to_detail(self) -> dict:
        return {"error": self.code, "message": str(self)}


class Unauthorized(InsightsError):
    code = "unauthorized"


class Forbidden(InsightsError):
    code = "forbidden"


class ValidationError(InsightsError):
    code = "invalid_request"


class AccountNotFound(InsightsError):
    code = "account_not_found"

    def __init__(self, account_id: str) -> None:
        super().__init__(f"account {account_id} not found")
        self.account_id = account_id


class AccountSuspended(InsightsError):
    code = "account_suspended"

    def __init__(self, account_id: str) -> None:
        super().__init__("account is suspended")
        self.account_id = account_id


class QuotaExceeded(InsightsError):
    code = "quota_exceeded"

    def __init__(self, limit: int, used: int) -> None:
        super().__init__(f"daily analysis limit reached ({used}/{limit})")
        self.limit = limit
        self.used = used

    def to_detail(self) -> dict:
        detail = super().to_detail()
        detail.update({"limit": self.limit, "used": self.used})
        return detail


class DispatchInProgress(InsightsError):
    """Another dispatch for the same account held the quota lock too long."""

    code = "dispatch_in_progress"


class RequestAborted(InsightsError):
    """The caller went away before the analysis finished."""

    code = "client_closed_request"


class InvalidTargetURL(InsightsError):
    code = "invalid_target_url"

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class DispatchFailure(InsightsError):
    code = "dispatch_failed"

    def __init__(self, dispatch_id: str, detail: str, *, status_code: int | None = None) -> None:
        super().__init__(detail)
        self.dispatch_id = dispatch_id
        self.status_code = status_code
        self.retryable = True

    def to_detail(self) -> dict:
        detail = super().to_detail()
        detail.update({"dispatch_id": self.dispatch_id, "retryable": self.retryable})
        if self.status_code is not None:
            detail["status_code"] = self.status_code
        return detail


class AuditRateLimited(InsightsError):
    code = "audit_rate_limited"

    def __init__(self, actor_id: str, retry_after: int) -> None:
        super().__init__("too many audit entries, retry later")
        self.actor_id = actor_id
        self.retry_after = retry_after

    def to_detail(self) -> dict:
        detail = super().to_detail()
        detail["retry_after"] = self.retry_after
        return detail


class DeletionProcessingError(InsightsError):
    code = "deletion_failed"

    def __init__(self, account_id: str, reason: str) -> None:
        super().__init__(f"deletion of {account_id} failed: {reason}")
        self.account_id = account_id
        self.reason = reason
