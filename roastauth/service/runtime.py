from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional, Set, Union

import httpx
from redis.exceptions import RedisError

from roastauth.config import Settings, get_settings, reset_settings_cache
from roastauth.logging import get_logger, mask_url_password
from roastauth.service.audit import SecurityAuditLogger
from roastauth.service.auth import AuthService
from roastauth.service.oauth import OAuthService
from roastauth.service.rate_limit import RateLimiter
from roastauth.service.sessions import SessionManager
from roastauth.storage.memory import MemoryCache, MemoryStore
from roastauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

Cache = Union[RedisCache, SyncRedisCache, MemoryCache]


def _select_cache(settings: Settings) -> Cache:
    redis_error: Exception | None = None
    if settings.redis_url:
        try:
            # Sync client in test mode keeps the pool off TestClient's throwaway loops
            cache: Cache = (
                SyncRedisCache(settings.redis_url)
                if settings.test_mode
                else RedisCache(settings.redis_url)
            )
            cache.verify_connection()
            return cache
        except (RedisError, OSError, ValueError) as exc:
            redis_error = exc

    if not settings.test_mode and not settings.allow_redis_fallback_dev:
        raise RuntimeError(
            "Redis is required for rate limits, OAuth state and account linking; "
            "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
        ) from redis_error

    fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
    logger.warning(
        "redis_disabled_fallback",
        redis_url=mask_url_password(settings.redis_url),
        error=str(redis_error) if redis_error else "redis_url_missing",
        message=(
            f"Running without Redis under {fallback_mode}; rate limits and OAuth "
            "state are process-local only."
        ),
        mode=fallback_mode,
    )
    return MemoryCache()


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        oauth_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)

        self.store = MemoryStore(fs_root=self.settings.state_fs_root)
        self.cache = _select_cache(self.settings)
        self.audit = SecurityAuditLogger(self.store)

        self.login_limiter = RateLimiter(
            self.cache,
            max_attempts=self.settings.login_rate_limit_max_attempts,
            window=timedelta(minutes=self.settings.login_rate_limit_window_minutes),
            lockout=timedelta(minutes=self.settings.login_lockout_minutes),
            name="login",
        )
        self.register_limiter = RateLimiter(
            self.cache,
            max_attempts=self.settings.register_rate_limit_max_attempts,
            window=timedelta(minutes=self.settings.register_rate_limit_window_minutes),
            lockout=None,
            name="register",
        )
        self.sessions = SessionManager(self.store, self.audit, self.settings)
        self.auth = AuthService(
            self.store,
            self.sessions,
            self.audit,
            self.settings,
            login_limiter=self.login_limiter,
            register_limiter=self.register_limiter,
        )
        self.oauth = OAuthService(
            self.store,
            self.cache,
            self.sessions,
            self.audit,
            self.settings,
            transport=oauth_transport,
        )
        logger.info(
            "runtime_init_completed",
            cache_type=type(self.cache).__name__,
            oauth_providers=self.oauth.available_providers(),
        )

    async def close(self) -> None:
        await self.cache.close()


runtime: Runtime | None = None
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


def set_runtime(new_runtime: Runtime) -> Runtime:
    """Install a prebuilt runtime, e.g. one wired to a mock OAuth transport."""
    global runtime
    with _runtime_lock:
        runtime = new_runtime
        return runtime


# Strong references to in-flight cache closes until they finish
_pending_closes: Set[asyncio.Task] = set()


def _on_close_done(task: asyncio.Task) -> None:
    _pending_closes.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("runtime_cache_close_failed", error=str(exc))


def _close_cache(cache: Cache) -> None:
    if isinstance(cache, SyncRedisCache):
        cache.client.close()
        return
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(cache.close())
    else:
        task = loop.create_task(cache.close())
        _pending_closes.add(task)
        task.add_done_callback(_on_close_done)


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                _close_cache(runtime.cache)
            except (RedisError, OSError) as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
