"""Process-wide webhook configuration, loaded once and refreshed on a TTL."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Protocol

from .audit import AuditLogger
from .contracts import WebhookConfig, WebhookConfigUpdate
from .errors import ValidationError
from .payload import check_lookback_days
from ..security.url_guard import ensure_webhook_url

logger = logging.getLogger(__name__)


class WebhookConfigStorage(Protocol):
    def get_config(self) -> WebhookConfig | None:
        ...

    def save_config(self, update: WebhookConfigUpdate, actor_id: str, default_quota_limit: int) -> WebhookConfig:
        ...


class WebhookConfigStore:
    """Holds the current global WebhookConfig for every component that reads it."""

    def __init__(
        self,
        storage: WebhookConfigStorage,
        audit: AuditLogger,
        *,
        fallback: WebhookConfig,
        ttl_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._storage = storage
        self._audit = audit
        self._fallback = fallback
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._current: WebhookConfig | None = None
        self._loaded_at = 0.0

    def current(self) -> WebhookConfig:
        with self._lock:
            if self._current is None or self._clock() - self._loaded_at >= self._ttl:
                stored = self._storage.get_config()
                if stored is None:
                    logger.info("no stored webhook config, using defaults")
                self._current = stored or self._fallback
                self._loaded_at = self._clock()
            return self._current

    def update(self, update: WebhookConfigUpdate, actor_id: str) -> WebhookConfig:
        """Validate and persist a new global config, then record who changed it."""
        ensure_webhook_url(update.url)
        check_lookback_days(update.lookback_days)
        if update.default_quota_limit is not None and update.default_quota_limit < 0:
            raise ValidationError("default quota limit must not be negative")

        previous = self.current()
        default_limit = (
            update.default_quota_limit
            if update.default_quota_limit is not None
            else previous.default_quota_limit
        )
        saved = self._storage.save_config(update, actor_id, default_limit)
        with self._lock:
            self._current = saved
            self._loaded_at = self._clock()

        self._audit.log_system_action(
            actor_id,
            "config.updated",
            details={
                "url": saved.url,
                "lookback_days": saved.lookback_days,
                "fields": saved.fields.to_mapping(),
                "default_quota_limit": saved.default_quota_limit,
                "previous_url": previous.url,
            },
        )
        return saved
