"""HTTP route definitions for account-scoped and internal endpoints."""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Header, Request, Response, status
from pydantic import BaseModel, EmailStr, Field

from ..domain.account import Account, ScheduledFor
from ..domain.admin import AccountAdminService
from ..domain.contracts import CreateAccountInput
from ..domain.errors import InsightsError
from ..domain.lifecycle import AccountLifecycleService, DeletionSweeper
from ..domain.service import InsightsService
from .dependencies import (
    Principal,
    get_admin_service,
    get_insights_service,
    get_lifecycle_service,
    get_principal,
    get_sweeper,
    http_error_from_domain,
    require_internal_token,
    run_until_disconnected,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1")
internal_router = APIRouter(prefix="/internal", dependencies=[Depends(require_internal_token)])


class AnalysisResponse(BaseModel):
    """Result of a successful insights dispatch."""

    success: bool = True
    dispatch_id: str
    message: str
    quota_used: int
    quota_limit: int


class UsageResponse(BaseModel):
    used: int
    limit: int
    remaining: int
    window_resets_at: datetime


class DeletionStatusResponse(BaseModel):
    """Serialised deletion schedule of an account."""

    account_id: str
    scheduled_for_deletion: bool
    deletion_date: datetime | None = None

    @classmethod
    def from_domain(cls, account: Account) -> "DeletionStatusResponse":
        deletion_at = account.deletion.at if isinstance(account.deletion, ScheduledFor) else None
        return cls(
            account_id=account.account_id,
            scheduled_for_deletion=deletion_at is not None,
            deletion_date=deletion_at,
        )


class ProvisionAccountRequest(BaseModel):
    account_id: str = Field(..., min_length=1, max_length=128)
    email: EmailStr
    display_name: str | None = Field(default=None, max_length=200)
    preferred_unit: str = Field(default="kg", pattern="^(kg|lb|st)$")


class ProvisionAccountResponse(BaseModel):
    account_id: str
    quota_limit: int
    idempotent_replay: bool


class SweepItemResponse(BaseModel):
    user_id: str
    success: bool
    outcome: str
    error: str | None = None


class SweepResponse(BaseModel):
    success: bool = True
    message: str
    processed: int
    deleted: int
    failed: int
    results: list[SweepItemResponse]


@router.post("/insights", response_model=AnalysisResponse)
async def request_insights(
    request: Request,
    principal: Principal = Depends(get_principal),
    service: InsightsService = Depends(get_insights_service),
) -> AnalysisResponse:
    """Send the caller's recent data to the analytics webhook.

    The dispatch is cancelled if the caller disconnects before it completes.
    """
    try:
        result = await run_until_disconnected(request, service.request_analysis(principal.account_id))
    except InsightsError as exc:
        raise http_error_from_domain(exc) from exc
    return AnalysisResponse(
        dispatch_id=result.dispatch_id,
        message=result.message,
        quota_used=result.quota_used,
        quota_limit=result.quota_limit,
    )


@router.get("/me/usage", response_model=UsageResponse)
def get_usage(
    principal: Principal = Depends(get_principal),
    service: InsightsService = Depends(get_insights_service),
) -> UsageResponse:
    try:
        snapshot = service.usage(principal.account_id)
    except InsightsError as exc:
        raise http_error_from_domain(exc) from exc
    return UsageResponse(
        used=snapshot.used,
        limit=snapshot.limit,
        remaining=snapshot.remaining,
        window_resets_at=snapshot.window_resets_at,
    )


@router.post("/me/deletion", response_model=DeletionStatusResponse)
def schedule_own_deletion(
    principal: Principal = Depends(get_principal),
    lifecycle: AccountLifecycleService = Depends(get_lifecycle_service),
) -> DeletionStatusResponse:
    try:
        account = lifecycle.schedule_deletion(principal.account_id, actor_id=principal.account_id)
    except InsightsError as exc:
        raise http_error_from_domain(exc) from exc
    return DeletionStatusResponse.from_domain(account)


@router.delete("/me/deletion", response_model=DeletionStatusResponse)
def cancel_own_deletion(
    principal: Principal = Depends(get_principal),
    lifecycle: AccountLifecycleService = Depends(get_lifecycle_service),
) -> DeletionStatusResponse:
    try:
        account = lifecycle.cancel_deletion(principal.account_id, actor_id=principal.account_id)
    except InsightsError as exc:
        raise http_error_from_domain(exc) from exc
    return DeletionStatusResponse.from_domain(account)


@internal_router.post(
    "/accounts", response_model=ProvisionAccountResponse, status_code=status.HTTP_201_CREATED
)
def provision_account(
    response: Response,
    payload: ProvisionAccountRequest,
    service: AccountAdminService = Depends(get_admin_service),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> ProvisionAccountResponse:
    """Create the dispatch-side account for a newly registered user."""
    try:
        account, replay = service.provision_account(
            CreateAccountInput(
                account_id=payload.account_id,
                email=payload.email,
                display_name=payload.display_name,
                preferred_unit=payload.preferred_unit,
            ),
            idempotency_key,
        )
    except InsightsError as exc:
        raise http_error_from_domain(exc) from exc
    response.status_code = status.HTTP_200_OK if replay else status.HTTP_201_CREATED
    return ProvisionAccountResponse(
        account_id=account.account_id,
        quota_limit=account.quota_limit,
        idempotent_replay=replay,
    )


@internal_router.post("/deletions/process", response_model=SweepResponse)
def process_deletions(sweeper: DeletionSweeper = Depends(get_sweeper)) -> SweepResponse:
    """Handler invoked by the external scheduler to run one deletion sweep."""
    summary = sweeper.run()
    logger.info("deletion sweep finished: %s", summary.message)
    return SweepResponse(
        message=summary.message,
        processed=summary.processed,
        deleted=summary.deleted,
        failed=summary.failed,
        results=[
            SweepItemResponse(
                user_id=item.account_id,
                success=item.success,
                outcome=item.outcome,
                error=item.error,
            )
            for item in summary.results
        ],
    )
