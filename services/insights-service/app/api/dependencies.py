"""Request-scoped dependencies: service lookup, caller identity, error mapping."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
from dataclasses import dataclass
from typing import Awaitable, TypeVar

from fastapi import Depends, Header, HTTPException, Request, status

from ..config import get_settings
from ..domain.account import Account
from ..domain.admin import AccountAdminService
from ..domain.audit import AuditLogger
from ..domain.config_store import WebhookConfigStore
from ..domain.errors import (
    AccountNotFound,
    AccountSuspended,
    AuditRateLimited,
    DispatchFailure,
    DispatchInProgress,
    Forbidden,
    InsightsError,
    InvalidTargetURL,
    QuotaExceeded,
    RequestAborted,
    Unauthorized,
    ValidationError,
)
from ..domain.lifecycle import AccountLifecycleService, DeletionSweeper
from ..domain.service import InsightsService
from ..security.tokens import internal_token_matches, subject_from_authorization

logger = logging.getLogger(__name__)

T = TypeVar("T")

HTTP_499_CLIENT_CLOSED_REQUEST = 499

_STATUS_BY_ERROR: dict[type[InsightsError], int] = {
    Unauthorized: status.HTTP_401_UNAUTHORIZED,
    Forbidden: status.HTTP_403_FORBIDDEN,
    AccountSuspended: status.HTTP_403_FORBIDDEN,
    AccountNotFound: status.HTTP_404_NOT_FOUND,
    DispatchInProgress: status.HTTP_409_CONFLICT,
    ValidationError: status.HTTP_400_BAD_REQUEST,
    InvalidTargetURL: status.HTTP_422_UNPROCESSABLE_ENTITY,
    QuotaExceeded: status.HTTP_429_TOO_MANY_REQUESTS,
    AuditRateLimited: status.HTTP_429_TOO_MANY_REQUESTS,
    DispatchFailure: status.HTTP_502_BAD_GATEWAY,
    RequestAborted: HTTP_499_CLIENT_CLOSED_REQUEST,
}


def http_error_from_domain(exc: InsightsError) -> HTTPException:
    status_code = status.HTTP_400_BAD_REQUEST
    for error_type in type(exc).__mro__:
        if error_type in _STATUS_BY_ERROR:
            status_code = _STATUS_BY_ERROR[error_type]
            break
    headers = None
    if isinstance(exc, Unauthorized):
        headers = {"WWW-Authenticate": "Bearer"}
    elif isinstance(exc, AuditRateLimited):
        headers = {"Retry-After": str(exc.retry_after)}
    return HTTPException(status_code=status_code, detail=exc.to_detail(), headers=headers)


@dataclass(frozen=True, slots=True)
class Principal:
    account_id: str
    is_admin: bool


def get_insights_service(request: Request) -> InsightsService:
    """Resolve the `InsightsService` stored on the FastAPI application state."""
    return request.app.state.insights_service


def get_lifecycle_service(request: Request) -> AccountLifecycleService:
    return request.app.state.lifecycle_service


def get_admin_service(request: Request) -> AccountAdminService:
    return request.app.state.admin_service


def get_audit_logger(request: Request) -> AuditLogger:
    return request.app.state.audit_logger


def get_config_store(request: Request) -> WebhookConfigStore:
    return request.app.state.config_store


def get_sweeper(request: Request) -> DeletionSweeper:
    return request.app.state.sweeper


def get_principal(
    request: Request,
    authorization: str | None = Header(default=None),
) -> Principal:
    """Authenticate the bearer token and load the caller's account."""
    try:
        account_id = subject_from_authorization(authorization)
    except Unauthorized as exc:
        raise http_error_from_domain(exc) from exc
    account: Account | None = request.app.state.accounts.get_account(account_id)
    if account is None:
        raise http_error_from_domain(Unauthorized("unknown account"))
    return Principal(account_id=account.account_id, is_admin=account.is_admin)


def require_admin(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.is_admin:
        raise http_error_from_domain(Forbidden("admin privileges required"))
    return principal


def require_internal_token(
    token: str | None = Header(default=None, alias="X-Internal-Token"),
) -> None:
    if not internal_token_matches(token):
        raise http_error_from_domain(Unauthorized("invalid internal token"))


async def _wait_for_disconnect(request: Request) -> None:
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            return


async def run_until_disconnected(request: Request, work: Awaitable[T]) -> T:
    """Await ``work`` unless the client disconnects first, in which case it is cancelled."""
    task = asyncio.ensure_future(work)
    watcher = asyncio.ensure_future(_wait_for_disconnect(request))
    try:
        await asyncio.wait({task, watcher}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        watcher.cancel()
        if not task.done():
            task.cancel()
    if not task.done():
        logger.info("client disconnected from %s, cancelling work", request.url.path)
        try:
            await task
        except asyncio.CancelledError:
            pass
        raise RequestAborted("client closed the request")
    return task.result()


def _is_trusted_proxy(host: str | None, trusted: tuple[str, ...]) -> bool:
    if not host:
        return False
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return host in trusted
    for entry in trusted:
        try:
            if address in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            continue
    return False


def client_ip(request: Request) -> str | None:
    """Return the caller's address, honouring X-Forwarded-For only from trusted proxies.

    The forwarded chain is walked from the right and the first hop that is not
    itself a trusted proxy is reported.
    """
    peer = request.client.host if request.client else None
    trusted = get_settings().trusted_proxy_list
    forwarded = request.headers.get("x-forwarded-for")
    if not forwarded or not _is_trusted_proxy(peer, trusted):
        return peer
    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    for hop in reversed(hops):
        if not _is_trusted_proxy(hop, trusted):
            return hop
    return hops[0] if hops else peer
