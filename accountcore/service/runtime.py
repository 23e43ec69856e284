from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from accountcore.config import Settings, get_settings, reset_settings_cache
from accountcore.logging import get_logger
from accountcore.service.auth import AuthService
from accountcore.service.email import EmailService
from accountcore.service.notifications import (
    EmailNotificationDispatcher,
    NotificationDispatcher,
    WebhookNotificationDispatcher,
)
from accountcore.storage.memory import MemoryStore
from accountcore.storage.memory_cache import MemoryCache
from accountcore.storage.postgres import PostgresStore
from accountcore.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging.

    redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


def build_dispatcher(settings: Settings) -> NotificationDispatcher:
    if settings.notification_webhook_url:
        return WebhookNotificationDispatcher(
            settings.notification_webhook_url,
            secret=settings.notification_webhook_secret,
            timeout=settings.notification_timeout_seconds,
        )
    return EmailNotificationDispatcher(
        EmailService.from_settings(settings),
        verification_ttl_hours=settings.email_verification_ttl_hours,
        reset_ttl_minutes=settings.password_reset_ttl_minutes,
    )


class Runtime:
    """Holds the store, cache and auth service for one process."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        encryption_key = self.settings.two_factor_encryption_key or self.settings.jwt_secret
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(
                    fs_root=None if self.settings.test_mode else self.settings.shared_fs_root,
                    encryption_key=encryption_key,
                )
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url, encryption_key=encryption_key)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Union[RedisCache, MemoryCache, None] = None
        cache_error: Exception | None = None
        if self.settings.redis_url and not self.settings.test_mode:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                cache_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_cache_fallback:
                raise RuntimeError(
                    "Redis is required for the session cache and login rate limits; "
                    "start Redis or set TEST_MODE=true/ALLOW_CACHE_FALLBACK=true for local fallback."
                ) from cache_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_CACHE_FALLBACK"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(cache_error) if cache_error else "redis_not_used",
                mode=fallback_mode,
            )
            self.cache = MemoryCache()

        self.dispatcher = build_dispatcher(self.settings)
        self.auth = AuthService(
            self.store,
            self.cache,
            self.settings,
            dispatcher=self.dispatcher,
        )
        logger.info(
            "runtime_init_completed",
            cache_type=type(self.cache).__name__,
            dispatcher=type(self.dispatcher).__name__,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the process Runtime, double-checked under a lock."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
