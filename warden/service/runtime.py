from __future__ import annotations

import threading
from typing import List, Optional
from urllib.parse import urlparse, urlunparse

from warden.config import AuditSinkKind, Settings, get_settings, reset_settings_cache
from warden.logging import get_logger
from warden.service.audit import (
    AuditSink,
    JsonlFileAuditSink,
    LoggingAuditSink,
    NullAuditSink,
)
from warden.service.auth import AdminAuthService
from warden.storage.memory import MemoryAccountStore, MemoryCounterStore
from warden.storage.redis_cache import RedisCounterStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
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
        return url
    except ValueError:
        return "***url_parse_error***"


def build_audit_sinks(settings: Settings) -> List[AuditSink]:
    if settings.audit_sink == AuditSinkKind.CONSOLE:
        return [LoggingAuditSink()]
    if settings.audit_sink == AuditSinkKind.FILE:
        return [JsonlFileAuditSink(settings.resolved_audit_log_path())]
    return [NullAuditSink()]


def build_counter_store(settings: Settings) -> RedisCounterStore | MemoryCounterStore:
    """Shared Redis counters when configured, in-process counters otherwise.

    An unreachable Redis is fatal unless TEST_MODE or ALLOW_REDIS_FALLBACK_DEV
    permits degrading to per-process counters.
    """
    if not settings.redis_url:
        logger.info("rate_limit_store_memory", reason="redis_url_missing")
        return MemoryCounterStore()

    redis_error: Exception | None = None
    try:
        store = RedisCounterStore(settings.redis_url)
        store.verify_connection()
        logger.info("rate_limit_store_redis", redis_url=_mask_url_password(settings.redis_url))
        return store
    except Exception as exc:
        redis_error = exc

    if not settings.test_mode and not settings.allow_redis_fallback_dev:
        raise RuntimeError(
            "Redis is configured for shared login rate limits but unreachable; "
            "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
        ) from redis_error

    fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(redis_error),
        message=f"Running without Redis under {fallback_mode}; login rate limits are per-process only.",
        mode=fallback_mode,
    )
    return MemoryCounterStore()


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)

        try:
            self.accounts = MemoryAccountStore(
                fs_root=self.settings.shared_fs_root,
                mfa_encryption_key=self.settings.mfa_encryption_key or self.settings.jwt_secret,
                persist=self.settings.persist_accounts and not self.settings.test_mode,
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed", error_type=type(exc).__name__, error=str(exc)
            )
            raise

        self.counter_store = build_counter_store(self.settings)
        self.auth = AdminAuthService.from_settings(
            self.accounts,
            self.settings,
            audit_sinks=build_audit_sinks(self.settings),
            counter_store=self.counter_store,
        )
        logger.info(
            "runtime_init_completed",
            audit_sink=self.settings.audit_sink.value,
            shared_rate_limits=isinstance(self.counter_store, RedisCounterStore),
        )

    def close(self) -> None:
        if isinstance(self.counter_store, RedisCounterStore):
            self.counter_store.client.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                runtime.close()
            except Exception as exc:
                logger.warning("runtime_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
