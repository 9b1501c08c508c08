"""Outbound webhook client for insight dispatches."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import httpx

from schemas import DispatchState

from ..domain.contracts import DispatchOutcome

logger = logging.getLogger(__name__)


class ResponseBudgetExceeded(Exception):
    pass


class WebhookDispatcher:
    """Single-shot JSON POST with a hard time and size budget.

    ``timeout`` bounds the whole exchange (connect, upload, headers and body)
    as one wall-clock deadline. Failures are classified, never retried: every
    call maps to exactly one :class:`DispatchOutcome`. Cancelling the calling
    task aborts the request and propagates the cancellation.
    """

    def __init__(
        self,
        *,
        max_response_bytes: int = 262144,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._max_response_bytes = max_response_bytes
        self._transport = transport

    async def send(self, url: str, payload: dict[str, Any], timeout: float) -> DispatchOutcome:
        started = time.monotonic()
        try:
            response, body = await asyncio.wait_for(self._post(url, payload, timeout), timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            logger.warning("webhook %s timed out after %.1fs", url, timeout)
            detail = str(exc) if isinstance(exc, httpx.TimeoutException) else ""
            return DispatchOutcome.failed(
                f"timeout after {timeout:g}s: {detail}" if detail else f"timeout after {timeout:g}s",
                elapsed_ms=self._elapsed(started),
            )
        except ResponseBudgetExceeded as exc:
            return DispatchOutcome.failed(str(exc), elapsed_ms=self._elapsed(started))
        except httpx.HTTPError as exc:
            logger.warning("webhook %s failed: %s", url, exc)
            return DispatchOutcome.failed(
                str(exc) or exc.__class__.__name__, elapsed_ms=self._elapsed(started)
            )

        elapsed_ms = self._elapsed(started)
        if response.is_success:
            return DispatchOutcome(
                DispatchState.success, body, status_code=response.status_code, elapsed_ms=elapsed_ms
            )
        logger.info("webhook %s answered %s", url, response.status_code)
        return DispatchOutcome.failed(
            body or f"HTTP {response.status_code} {response.reason_phrase}".rstrip(),
            status_code=response.status_code,
            elapsed_ms=elapsed_ms,
        )

    async def _post(self, url: str, payload: dict[str, Any], timeout: float) -> tuple[httpx.Response, str]:
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            follow_redirects=False,
            transport=self._transport,
        ) as client:
            async with client.stream(
                "POST",
                url,
                json=payload,
                headers={"Content-Type": "application/json"},
            ) as response:
                return response, await self._read_body(response)

    async def _read_body(self, response: httpx.Response) -> str:
        chunks: list[bytes] = []
        received = 0
        async for chunk in response.aiter_bytes():
            received += len(chunk)
            if received > self._max_response_bytes:
                raise ResponseBudgetExceeded(
                    f"response body exceeded {self._max_response_bytes} bytes"
                )
            chunks.append(chunk)
        encoding = response.encoding or "utf-8"
        return b"".join(chunks).decode(encoding, errors="replace")

    @staticmethod
    def _elapsed(started: float) -> int:
        return int((time.monotonic() - started) * 1000)
