"""Insights service orchestrating quota, payload, URL guard, dispatch and trace."""

from __future__ import annotations

import asyncio
import logging
import socket
from typing import Any, AsyncContextManager, Protocol

from .account import Account
from .audit import AuditLogger
from .config_store import WebhookConfigStore
from .contracts import AnalysisResult, DispatchOutcome, UsageSnapshot
from .errors import AccountNotFound, DispatchFailure, InvalidTargetURL
from .payload import PayloadBuilder, resolve_effective_settings
from .quota import QuotaDecision, QuotaTracker
from ..security.url_guard import Resolver, verify_dispatch_target

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 1000


class AccountReader(Protocol):
    def get_account(self, account_id: str) -> Account | None:
        ...


class AccountLocks(Protocol):
    def hold(self, account_id: str) -> AsyncContextManager[None]:
        ...


class Dispatcher(Protocol):
    async def send(self, url: str, payload: dict[str, Any], timeout: float) -> DispatchOutcome:
        ...


class InsightsService:
    """Runs one analysis request end to end for a single account.

    Everything from the quota check to the counter commit happens while the
    account's lock is held, so duplicate requests observe each other's usage.
    Storage calls are blocking and run in worker threads; the outbound call
    runs on the event loop so the caller can cancel it.
    """

    def __init__(
        self,
        accounts: AccountReader,
        locks: AccountLocks,
        quota: QuotaTracker,
        payloads: PayloadBuilder,
        config_store: WebhookConfigStore,
        dispatcher: Dispatcher,
        audit: AuditLogger,
        *,
        dispatch_timeout: float = 30.0,
        resolver: Resolver = socket.getaddrinfo,
    ) -> None:
        self._accounts = accounts
        self._locks = locks
        self._quota = quota
        self._payloads = payloads
        self._config_store = config_store
        self._dispatcher = dispatcher
        self._audit = audit
        self._dispatch_timeout = dispatch_timeout
        self._resolver = resolver

    def _load(self, account_id: str) -> Account:
        account = self._accounts.get_account(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    def _prepare(self, account_id: str) -> tuple[Account, QuotaDecision, str, dict[str, Any], str]:
        account = self._load(account_id)
        decision = self._quota.check_and_reserve(account)

        settings = resolve_effective_settings(account, self._config_store.current())
        payload = self._payloads.build(account, settings.lookback_days, settings.fields).to_wire()

        verdict = verify_dispatch_target(settings.url, self._resolver)
        if not verdict.ok:
            logger.warning("refusing dispatch for account %s: %s", account_id, verdict.reason)
            raise InvalidTargetURL(verdict.reason or "invalid URL")
        url: str = settings.url  # type: ignore[assignment]

        dispatch_id = self._audit.begin_dispatch(account_id, payload, url)
        return account, decision, url, payload, dispatch_id

    def _finish(
        self,
        account: Account,
        decision: QuotaDecision,
        dispatch_id: str,
        url: str,
        outcome: DispatchOutcome,
    ) -> int:
        event = self._audit.complete_dispatch(dispatch_id, account.account_id, url, outcome)
        used = self._quota.commit(account, decision)
        logger.info(
            "dispatch %s for account %s finished as %s (%s ms)",
            event.dispatch_id,
            account.account_id,
            event.state,
            event.elapsed_ms,
        )
        return used

    def _abandon(self, prepared: "asyncio.Future[Any]") -> None:
        """Close the trace of a request cancelled before its dispatch started."""
        if prepared.cancelled() or prepared.exception() is not None:
            return
        account, _, url, _, dispatch_id = prepared.result()
        logger.warning("dispatch %s cancelled before sending", dispatch_id)
        asyncio.ensure_future(
            asyncio.to_thread(
                self._audit.complete_dispatch,
                dispatch_id,
                account.account_id,
                url,
                DispatchOutcome.failed("dispatch cancelled"),
            )
        )

    async def request_analysis(self, account_id: str) -> AnalysisResult:
        """Dispatch the caller's data to the analytics endpoint.

        Suspension, quota and URL problems fail before any side effect. Once
        the network call has been attempted the quota unit is always charged
        and the trace always finalized, including when the call is cancelled.
        """
        async with self._locks.hold(account_id):
            prepared = asyncio.ensure_future(asyncio.to_thread(self._prepare, account_id))
            try:
                account, decision, url, payload, dispatch_id = await asyncio.shield(prepared)
            except asyncio.CancelledError:
                prepared.add_done_callback(self._abandon)
                raise
            outcome: DispatchOutcome | None = None
            try:
                outcome = await self._dispatcher.send(url, payload, self._dispatch_timeout)
            finally:
                if outcome is None:
                    logger.warning("dispatch %s interrupted before completion", dispatch_id)
                    outcome = DispatchOutcome.failed("dispatch cancelled")
                used = await asyncio.shield(
                    asyncio.to_thread(self._finish, account, decision, dispatch_id, url, outcome)
                )

        if not outcome.ok:
            raise DispatchFailure(dispatch_id, outcome.body[:MAX_MESSAGE_LENGTH], status_code=outcome.status_code)
        return AnalysisResult(
            dispatch_id=dispatch_id,
            status=outcome.status,
            message=outcome.body[:MAX_MESSAGE_LENGTH],
            quota_used=used,
            quota_limit=account.quota_limit,
        )

    def usage(self, account_id: str) -> UsageSnapshot:
        return self._quota.usage(self._load(account_id))
