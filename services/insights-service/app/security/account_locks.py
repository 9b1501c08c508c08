"""Per-account mutual exclusion around quota check, dispatch and commit."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from redis.asyncio import Redis
from redis.exceptions import LockError

from ..domain.errors import DispatchInProgress

logger = logging.getLogger(__name__)

IN_PROGRESS_MESSAGE = "another analysis for this account is still running"


class InMemoryAccountLocks:
    """Locks keyed by account id for a single event loop; idle entries are dropped."""

    def __init__(self, wait_seconds: float) -> None:
        self._wait = wait_seconds
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, account_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(account_id, asyncio.Lock())
        self._holders[account_id] = self._holders.get(account_id, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), self._wait)
            except asyncio.TimeoutError:
                raise DispatchInProgress(IN_PROGRESS_MESSAGE) from None
            try:
                yield
            finally:
                lock.release()
        finally:
            self._holders[account_id] -= 1
            if self._holders[account_id] == 0:
                del self._holders[account_id]
                del self._locks[account_id]


class RedisAccountLocks:
    """Cluster-wide locks for deployments running several service replicas.

    ``lease_seconds`` must exceed the longest time a holder can keep the lock,
    otherwise another replica may acquire it while a dispatch is in flight.
    """

    def __init__(
        self,
        client: Redis,
        *,
        wait_seconds: float,
        lease_seconds: float,
        key_prefix: str = "quota-lock",
    ) -> None:
        self._client = client
        self._wait = wait_seconds
        self._lease = lease_seconds
        self._key_prefix = key_prefix

    @asynccontextmanager
    async def hold(self, account_id: str) -> AsyncIterator[None]:
        lock = self._client.lock(
            f"{self._key_prefix}:{account_id}",
            timeout=self._lease,
            blocking_timeout=self._wait,
        )
        if not await lock.acquire():
            raise DispatchInProgress(IN_PROGRESS_MESSAGE)
        try:
            yield
        finally:
            try:
                await asyncio.shield(lock.release())
            except LockError:
                logger.warning("quota lock for account %s expired before release", account_id)
