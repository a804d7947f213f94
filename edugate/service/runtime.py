from __future__ import annotations

import math
import threading
import time
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlsplit

from edugate.config import get_settings, reset_settings_cache
from edugate.logging import get_logger
from edugate.service.activity import ActivityRecorder
from edugate.service.auth import AuthService
from edugate.service.tokens import TokenIssuer
from edugate.storage.memory import MemoryStore
from edugate.storage.postgres import PostgresStore
from edugate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """``redis://:pw@host:6379`` -> ``redis://:***@host:6379`` for log output."""
    if not url:
        return url
    try:
        parts = urlsplit(url)
        password = parts.password
    except ValueError:
        return "***"
    if not password:
        return url
    userinfo, _, hostinfo = parts.netloc.rpartition("@")
    user = userinfo.split(":", 1)[0]
    return parts._replace(netloc=f"{user}:***@{hostinfo}").geturl()


class LocalBuckets:
    """Per-process token buckets used when no Redis is configured.

    Each key holds ``(level, stamp)``; the level refills linearly up to the
    limit over the window. Callers on the event loop and in worker threads
    may share one instance.
    """

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._buckets: Dict[str, Tuple[float, float]] = {}

    def __len__(self) -> int:
        return len(self._buckets)

    def take(
        self, key: str, limit: int, window_seconds: int, cost: int = 1
    ) -> Tuple[bool, int, int]:
        per_second = limit / window_seconds
        now = self._clock()
        with self._lock:
            level, stamp = self._buckets.get(key, (float(limit), now))
            level = min(float(limit), level + max(0.0, now - stamp) * per_second)
            allowed = level >= cost
            if allowed:
                level -= cost
            self._buckets[key] = (level, now)
        wait = 0 if allowed else math.ceil((cost - level) / per_second)
        return allowed, int(level), wait


class Runtime:
    """Wires the store, token issuer and services for one process."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                self.store = MemoryStore(fs_root=self.settings.shared_fs_root)
            else:
                self.store = PostgresStore(self.settings.database_url)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = self._connect_cache()
        self.rate_buckets = LocalBuckets()
        self.tokens = TokenIssuer(self.settings)
        self.auth = AuthService(self.store, self.settings, tokens=self.tokens)
        self.activity = ActivityRecorder(self.store, api_prefix=self.settings.api_prefix)
        self.started_at = datetime.now(timezone.utc)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            environment=self.settings.environment.value,
        )

    def _connect_cache(self) -> Optional[RedisCache]:
        if not self.settings.redis_url:
            return None
        cache = RedisCache(self.settings.redis_url)
        try:
            cache.verify_connection()
        except Exception as exc:
            logger.warning(
                "redis_unavailable_using_local_rate_limits",
                redis_url=_mask_url_password(self.settings.redis_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        return cache

    def close(self) -> None:
        closer = getattr(self.store, "close", None)
        if closer is not None:
            closer()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process-wide Runtime, building it on first use."""
    global runtime
    if runtime is None:
        with _runtime_lock:
            if runtime is None:
                runtime = Runtime()
    return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the Runtime from a freshly read environment (TEST_MODE only)."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        if not get_settings().test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            runtime.close()
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Spend ``cost`` from the bucket for ``key``.

    The bucket holds ``limit`` requests and refills over ``window_seconds``.
    A non-positive limit disables the check.

    Returns:
        bool if return_remaining is False, else (allowed, remaining, reset_seconds)
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache is not None:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    result = runtime.rate_buckets.take(key, limit, window_seconds, cost)
    return result if return_remaining else result[0]
