"""FastAPI application wiring for the insights service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from zoneinfo import ZoneInfo

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from psycopg_pool import ConnectionPool
from redis.asyncio import Redis as AsyncRedis

from .api.admin_routes import router as admin_router
from .api.routes import internal_router, router as v1_router
from .clients.webhook import WebhookDispatcher
from .config import Settings, get_settings
from .domain.admin import AccountAdminService
from .domain.audit import AuditLogger
from .domain.config_store import WebhookConfigStore
from .domain.contracts import WebhookConfig
from .domain.lifecycle import AccountLifecycleService, DeletionSweeper
from .domain.payload import PayloadBuilder
from .domain.quota import QuotaTracker
from .domain.service import InsightsService
from .repository import AccountRepository, AuditRepository, DispatchRepository, WebhookConfigRepository
from .security.account_locks import InMemoryAccountLocks, RedisAccountLocks
from .security.rate_limiter import SlidingWindowRateLimiter
from .security.redis_rate_limiter import RedisSlidingWindowRateLimiter

logger = logging.getLogger(__name__)

settings = get_settings()


def _redis_client(settings: Settings):
    """Return a connected Redis client or ``None`` when Redis is not usable."""
    if not settings.redis_url:
        return None
    try:
        import redis

        client = redis.from_url(settings.redis_url)
        # ensure connectivity early to fail fast and fall back
        client.ping()
        return client
    except Exception as exc:  # pragma: no cover
        logger.warning("redis unavailable at %s, falling back to in-memory: %s", settings.redis_url, exc)
        return None


def build_audit_rate_limiter(
    settings: Settings, client=None
) -> SlidingWindowRateLimiter | RedisSlidingWindowRateLimiter:
    """Instantiate the configured rate limiter backend, preferring Redis when available."""
    if settings.rate_limit_backend == "redis" and client is not None:
        logger.info("audit rate limiter configured for redis backend")
        return RedisSlidingWindowRateLimiter(
            client,
            max_requests=settings.audit_rate_limit_requests,
            window_seconds=settings.audit_rate_limit_window_seconds,
        )
    logger.info("audit rate limiter using in-memory backend")
    return SlidingWindowRateLimiter(
        max_requests=settings.audit_rate_limit_requests,
        window_seconds=settings.audit_rate_limit_window_seconds,
    )


def build_account_locks(
    settings: Settings, client: AsyncRedis | None = None
) -> InMemoryAccountLocks | RedisAccountLocks:
    if settings.lock_backend == "redis" and client is not None:
        logger.info("quota locks configured for redis backend")
        return RedisAccountLocks(
            client,
            wait_seconds=settings.lock_wait_seconds,
            lease_seconds=settings.lock_lease_seconds,
        )
    logger.info("quota locks using in-memory backend")
    return InMemoryAccountLocks(wait_seconds=settings.lock_wait_seconds)


def wire_services(app: FastAPI, pool: ConnectionPool, settings: Settings) -> None:
    """Construct repositories and services and attach them to ``app.state``."""
    tz = ZoneInfo(settings.quota_timezone)
    redis_client = None
    lock_client: AsyncRedis | None = None
    if "redis" in (settings.rate_limit_backend, settings.lock_backend):
        redis_client = _redis_client(settings)
    if settings.lock_backend == "redis" and redis_client is not None:
        lock_client = AsyncRedis.from_url(settings.redis_url)
    app.state.lock_redis = lock_client

    accounts = AccountRepository(pool)
    audit = AuditLogger(
        AuditRepository(pool),
        DispatchRepository(pool),
        build_audit_rate_limiter(settings, redis_client),
    )
    config_store = WebhookConfigStore(
        WebhookConfigRepository(pool),
        audit,
        fallback=WebhookConfig(url=None, default_quota_limit=settings.default_quota_limit),
        ttl_seconds=settings.webhook_config_ttl_seconds,
    )

    app.state.accounts = accounts
    app.state.audit_logger = audit
    app.state.config_store = config_store
    app.state.insights_service = InsightsService(
        accounts,
        build_account_locks(settings, lock_client),
        QuotaTracker(accounts, tz),
        PayloadBuilder(accounts, tz, max_entries=settings.max_payload_entries),
        config_store,
        WebhookDispatcher(max_response_bytes=settings.dispatch_max_response_bytes),
        audit,
        dispatch_timeout=settings.dispatch_timeout_seconds,
    )
    app.state.lifecycle_service = AccountLifecycleService(
        accounts,
        audit,
        grace_days=settings.deletion_grace_days,
        delete_timeout_seconds=settings.sweep_account_timeout_seconds,
    )
    app.state.sweeper = DeletionSweeper(
        accounts, audit, account_timeout_seconds=settings.sweep_account_timeout_seconds
    )
    app.state.admin_service = AccountAdminService(accounts, config_store, audit)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise shared resources (Postgres pool, services) for the app lifecycle."""
    pool = ConnectionPool(settings.database_url, open=False)
    pool.open()
    app.state.pool = pool
    wire_services(app, pool, settings)
    try:
        yield
    finally:
        if app.state.lock_redis is not None:
            await app.state.lock_redis.aclose()
        pool.close()


app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)


@app.get("/healthz", tags=["health"])
def healthz() -> dict[str, str]:
    """Return a minimal readiness indicator used by orchestration systems."""
    return {"status": "ok"}


@app.get("/metrics", include_in_schema=False)
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(v1_router)
app.include_router(admin_router)
app.include_router(internal_router)
