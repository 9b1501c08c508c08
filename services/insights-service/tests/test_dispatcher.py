from __future__ import annotations

import asyncio
import json
import time

import httpx
import pytest

from app.clients.webhook import WebhookDispatcher
from schemas import DispatchState

URL = "https://hooks.example.com/insights"


def _dispatcher(handler, **kwargs) -> WebhookDispatcher:
    return WebhookDispatcher(transport=httpx.MockTransport(handler), **kwargs)


@pytest.mark.asyncio
async def test_success_returns_body_and_posts_json():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["content_type"] = request.headers["content-type"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, text="You are trending down nicely.")

    outcome = await _dispatcher(handler).send(URL, {"unit": "kg"}, timeout=5)

    assert outcome.status is DispatchState.success
    assert outcome.ok
    assert outcome.body == "You are trending down nicely."
    assert outcome.status_code == 200
    assert seen == {"method": "POST", "content_type": "application/json", "body": {"unit": "kg"}}


@pytest.mark.asyncio
async def test_non_2xx_is_error_with_body():
    outcome = await _dispatcher(lambda request: httpx.Response(500, text="boom")).send(URL, {}, timeout=5)
    assert outcome.status is DispatchState.error
    assert outcome.body == "boom"
    assert outcome.status_code == 500


@pytest.mark.asyncio
async def test_non_2xx_without_body_uses_status_line():
    outcome = await _dispatcher(lambda request: httpx.Response(503)).send(URL, {}, timeout=5)
    assert outcome.body == "HTTP 503 Service Unavailable"


@pytest.mark.asyncio
async def test_redirects_are_not_followed():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(302, headers={"Location": "http://127.0.0.1/admin"})

    outcome = await _dispatcher(handler).send(URL, {}, timeout=5)
    assert outcome.status is DispatchState.error
    assert outcome.status_code == 302


@pytest.mark.asyncio
async def test_timeout_is_classified_as_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("read timed out", request=request)

    outcome = await _dispatcher(handler).send(URL, {}, timeout=2.5)
    assert outcome.status is DispatchState.error
    assert outcome.body.startswith("timeout after 2.5s")


@pytest.mark.asyncio
async def test_slow_headers_hit_the_overall_deadline():
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(2)
        return httpx.Response(200, text="too late")

    started = time.monotonic()
    outcome = await _dispatcher(handler).send(URL, {}, timeout=0.2)

    assert time.monotonic() - started < 1
    assert outcome.status is DispatchState.error
    assert outcome.body == "timeout after 0.2s"


@pytest.mark.asyncio
async def test_trickling_body_cannot_extend_the_deadline():
    async def trickle():
        for _ in range(10):
            yield b"."
            await asyncio.sleep(0.1)

    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(0.15)
        return httpx.Response(200, content=trickle())

    started = time.monotonic()
    outcome = await _dispatcher(handler).send(URL, {}, timeout=0.3)

    assert time.monotonic() - started < 0.8
    assert outcome.status is DispatchState.error
    assert outcome.body.startswith("timeout after 0.3s")


@pytest.mark.asyncio
async def test_cancellation_propagates_to_the_caller():
    entered = asyncio.Event()

    async def handler(request: httpx.Request) -> httpx.Response:
        entered.set()
        await asyncio.sleep(5)
        return httpx.Response(200)

    task = asyncio.ensure_future(_dispatcher(handler).send(URL, {}, timeout=10))
    await asyncio.wait_for(entered.wait(), 1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.asyncio
async def test_connection_failure_is_classified_as_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    outcome = await _dispatcher(handler).send(URL, {}, timeout=5)
    assert outcome.status is DispatchState.error
    assert "connection refused" in outcome.body


@pytest.mark.asyncio
async def test_oversized_response_is_rejected():
    outcome = await _dispatcher(
        lambda request: httpx.Response(200, content=b"x" * 2048), max_response_bytes=1024
    ).send(URL, {}, timeout=5)
    assert outcome.status is DispatchState.error
    assert outcome.body == "response body exceeded 1024 bytes"
