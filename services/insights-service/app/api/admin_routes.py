"""HTTP route definitions for the admin console."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field

from schemas import DispatchState

from ..domain.account import Account, ScheduledFor
from ..domain.admin import AccountAdminService
from ..domain.audit import AuditLogger
from ..domain.config_store import WebhookConfigStore
from ..domain.contracts import AccountUpdate, WebhookConfig, WebhookConfigUpdate, WebhookFields
from ..domain.errors import InsightsError
from ..domain.lifecycle import AccountLifecycleService
from .dependencies import (
    Principal,
    client_ip,
    get_admin_service,
    get_audit_logger,
    get_config_store,
    get_lifecycle_service,
    http_error_from_domain,
    require_admin,
)
from .routes import DeletionStatusResponse

router = APIRouter(prefix="/v1/admin")


class WebhookFieldsModel(BaseModel):
    user_data: bool = True
    weight_data: bool = True
    goal_data: bool = True
    activity_data: bool = False
    detailed_analysis: bool = False

    def to_domain(self) -> WebhookFields:
        return WebhookFields(**self.model_dump())


class WebhookConfigRequest(BaseModel):
    """Payload accepted when updating the global webhook configuration."""

    url: str = Field(..., min_length=1)
    lookback_days: int = Field(..., alias="days", ge=1, le=365)
    fields: WebhookFieldsModel
    default_quota_limit: int | None = Field(default=None, alias="default_webhook_limit", ge=0)

    model_config = {"populate_by_name": True}


class WebhookConfigResponse(BaseModel):
    url: str | None
    days: int
    fields: dict[str, bool]
    default_webhook_limit: int
    updated_at: datetime | None = None
    updated_by: str | None = None

    @classmethod
    def from_domain(cls, config: WebhookConfig) -> "WebhookConfigResponse":
        return cls(
            url=config.url,
            days=config.lookback_days,
            fields=config.fields.to_mapping(),
            default_webhook_limit=config.default_quota_limit,
            updated_at=config.updated_at,
            updated_by=config.updated_by,
        )


class AdminLogRequest(BaseModel):
    action: str = Field(..., min_length=1)
    target_account_id: str | None = Field(default=None, alias="target_user_id")
    details: Any = None

    model_config = {"populate_by_name": True}


class AuditEntryResponse(BaseModel):
    audit_id: int
    actor_id: str
    action: str
    target_account_id: str | None
    details: dict[str, Any]
    ip_address: str | None
    created_at: datetime


class AuditLogResponse(BaseModel):
    """Envelope for paginated audit log data."""

    items: list[AuditEntryResponse]
    next_cursor: str | None = None


class DispatchRecordResponse(BaseModel):
    dispatch_id: str
    account_id: str
    request_payload: dict[str, Any]
    response_payload: str | None
    status: DispatchState
    target_url: str
    created_at: datetime
    completed_at: datetime | None


class DispatchLogResponse(BaseModel):
    items: list[DispatchRecordResponse]
    next_cursor: str | None = None


class AccountUpdateRequest(BaseModel):
    quota_limit: int | None = Field(default=None, alias="webhook_limit", ge=0)
    suspended: bool | None = None
    webhook_url: str | None = None
    webhook_days: int | None = Field(default=None, ge=1, le=365)
    webhook_fields: WebhookFieldsModel | None = None
    clear_webhook_override: bool = False
    reset_quota: bool = False

    model_config = {"populate_by_name": True}


class AccountResponse(BaseModel):
    """Serialised representation of an `Account` aggregate for admins."""

    account_id: str
    email: str
    display_name: str | None
    is_admin: bool
    webhook_url: str | None
    webhook_limit: int
    webhook_count: int
    last_webhook_date: datetime | None
    is_suspended: bool
    scheduled_for_deletion: bool
    deletion_date: datetime | None

    @classmethod
    def from_domain(cls, account: Account) -> "AccountResponse":
        deletion_at = account.deletion.at if isinstance(account.deletion, ScheduledFor) else None
        return cls(
            account_id=account.account_id,
            email=account.email,
            display_name=account.display_name,
            is_admin=account.is_admin,
            webhook_url=account.webhook_url,
            webhook_limit=account.quota_limit,
            webhook_count=account.quota_used,
            last_webhook_date=account.quota_reset_at,
            is_suspended=account.suspended,
            scheduled_for_deletion=deletion_at is not None,
            deletion_date=deletion_at,
        )


@router.get("/webhook-config", response_model=WebhookConfigResponse)
def get_webhook_config(
    _: Principal = Depends(require_admin),
    store: WebhookConfigStore = Depends(get_config_store),
) -> WebhookConfigResponse:
    return WebhookConfigResponse.from_domain(store.current())


@router.put("/webhook-config", response_model=WebhookConfigResponse)
def update_webhook_config(
    payload: WebhookConfigRequest,
    principal: Principal = Depends(require_admin),
    store: WebhookConfigStore = Depends(get_config_store),
) -> WebhookConfigResponse:
    """Replace the global webhook URL, lookback window, field flags and default quota."""
    try:
        config = store.update(
            WebhookConfigUpdate(
                url=payload.url,
                lookback_days=payload.lookback_days,
                fields=payload.fields.to_domain(),
                default_quota_limit=payload.default_quota_limit,
            ),
            actor_id=principal.account_id,
        )
    except InsightsError as exc:
        raise http_error_from_domain(exc) from exc
    return WebhookConfigResponse.from_domain(config)


@router.post("/audit-log", response_model=AuditEntryResponse, status_code=status.HTTP_201_CREATED)
def log_admin_action(
    payload: AdminLogRequest,
    request: Request,
    principal: Principal = Depends(require_admin),
    audit: AuditLogger = Depends(get_audit_logger),
) -> AuditEntryResponse:
    """Record an action taken in the admin console."""
    details = payload.details
    if details is not None and not isinstance(details, dict):
        details = {"message": details}
    try:
        entry = audit.log_admin_action(
            principal.account_id,
            payload.action,
            target_account_id=payload.target_account_id,
            details=details,
            ip_address=client_ip(request),
        )
    except InsightsError as exc:
        raise http_error_from_domain(exc) from exc
    return AuditEntryResponse(
        audit_id=entry.audit_id,
        actor_id=entry.actor_id,
        action=entry.action,
        target_account_id=entry.target_account_id,
        details=entry.details,
        ip_address=entry.ip_address,
        created_at=entry.created_at,
    )


@router.get("/audit-log", response_model=AuditLogResponse)
def list_audit_log(
    actor_id: str | None = Query(default=None),
    target_account_id: str | None = Query(default=None),
    action: str | None = Query(default=None),
    created_after: datetime | None = Query(default=None),
    created_before: datetime | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    cursor: str | None = Query(default=None),
    _: Principal = Depends(require_admin),
    audit: AuditLogger = Depends(get_audit_logger),
) -> AuditLogResponse:
    """Return paginated audit entries with optional filtering."""
    try:
        records, next_cursor = audit.list_audit_events(
            actor_id=actor_id,
            target_account_id=target_account_id,
            action=action,
            created_after=created_after,
            created_before=created_before,
            limit=limit,
            cursor=cursor,
        )
    except InsightsError as exc:
        raise http_error_from_domain(exc) from exc
    items = [
        AuditEntryResponse(
            audit_id=record.audit_id,
            actor_id=record.actor_id,
            action=record.action,
            target_account_id=record.target_account_id,
            details=record.details,
            ip_address=record.ip_address,
            created_at=record.created_at,
        )
        for record in records
    ]
    return AuditLogResponse(items=items, next_cursor=next_cursor)


@router.get("/dispatches", response_model=DispatchLogResponse)
def list_dispatches(
    account_id: str | None = Query(default=None),
    dispatch_status: DispatchState | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=100),
    cursor: str | None = Query(default=None),
    _: Principal = Depends(require_admin),
    audit: AuditLogger = Depends(get_audit_logger),
) -> DispatchLogResponse:
    try:
        records, next_cursor = audit.list_dispatches(
            account_id=account_id, status=dispatch_status, limit=limit, cursor=cursor
        )
    except InsightsError as exc:
        raise http_error_from_domain(exc) from exc
    items = [
        DispatchRecordResponse(
            dispatch_id=record.dispatch_id,
            account_id=record.account_id,
            request_payload=record.request_payload,
            response_payload=record.response_payload,
            status=record.status,
            target_url=record.target_url,
            created_at=record.created_at,
            completed_at=record.completed_at,
        )
        for record in records
    ]
    return DispatchLogResponse(items=items, next_cursor=next_cursor)


@router.patch("/accounts/{account_id}", response_model=AccountResponse)
def update_account(
    account_id: str,
    payload: AccountUpdateRequest,
    principal: Principal = Depends(require_admin),
    service: AccountAdminService = Depends(get_admin_service),
) -> AccountResponse:
    """Change an account's quota limit, suspension flag or webhook override, or reset its usage."""
    try:
        account = service.update_account(
            account_id,
            AccountUpdate(
                quota_limit=payload.quota_limit,
                suspended=payload.suspended,
                webhook_url=payload.webhook_url,
                webhook_days=payload.webhook_days,
                webhook_fields=payload.webhook_fields.to_domain() if payload.webhook_fields else None,
                clear_webhook_override=payload.clear_webhook_override,
                reset_quota=payload.reset_quota,
            ),
            actor_id=principal.account_id,
        )
    except InsightsError as exc:
        raise http_error_from_domain(exc) from exc
    return AccountResponse.from_domain(account)


@router.post("/accounts/{account_id}/deletion", response_model=DeletionStatusResponse)
def schedule_account_deletion(
    account_id: str,
    principal: Principal = Depends(require_admin),
    lifecycle: AccountLifecycleService = Depends(get_lifecycle_service),
) -> DeletionStatusResponse:
    try:
        account = lifecycle.schedule_deletion(account_id, actor_id=principal.account_id)
    except InsightsError as exc:
        raise http_error_from_domain(exc) from exc
    return DeletionStatusResponse.from_domain(account)


@router.delete("/accounts/{account_id}/deletion", response_model=DeletionStatusResponse)
def cancel_account_deletion(
    account_id: str,
    principal: Principal = Depends(require_admin),
    lifecycle: AccountLifecycleService = Depends(get_lifecycle_service),
) -> DeletionStatusResponse:
    try:
        account = lifecycle.cancel_deletion(account_id, actor_id=principal.account_id)
    except InsightsError as exc:
        raise http_error_from_domain(exc) from exc
    return DeletionStatusResponse.from_domain(account)


@router.delete("/accounts/{account_id}")
def delete_account(
    account_id: str,
    principal: Principal = Depends(require_admin),
    lifecycle: AccountLifecycleService = Depends(get_lifecycle_service),
) -> dict[str, Any]:
    """Delete an account and its data immediately."""
    try:
        event = lifecycle.delete_now(account_id, actor_id=principal.account_id)
    except InsightsError as exc:
        raise http_error_from_domain(exc) from exc
    return {
        "success": True,
        "message": "User successfully deleted",
        "deletedUserId": event.account_id,
    }
