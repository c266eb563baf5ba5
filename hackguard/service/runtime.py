from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from hackguard.config import Settings, get_settings, reset_settings_cache
from hackguard.logging import get_logger
from hackguard.service.auth import AuthService
from hackguard.service.cookies import CookiePolicy
from hackguard.service.crypto import resolve_secret
from hackguard.service.csrf import CSRFTokenManager
from hackguard.service.fingerprint import DeviceFingerprinter
from hackguard.service.lockout import LoginAttemptTracker
from hackguard.service.rate_limit import RateLimiter
from hackguard.service.sessions import SessionManager
from hackguard.storage.common import SecurityCache
from hackguard.storage.memory import MemoryCache, MemoryStore
from hackguard.storage.postgres import PostgresStore
from hackguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            app_env=self.settings.app_env,
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        # ConfigurationError propagates and aborts startup
        production = self.settings.is_production
        self.session_secret = resolve_secret(
            self.settings.session_secret, "SESSION_SECRET", production=production
        )
        self.csrf_secret = resolve_secret(
            self.settings.csrf_secret, "CSRF_SECRET", production=production
        )

        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.partition_dsns())
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: SecurityCache = self._build_cache()

        self.fingerprinter = DeviceFingerprinter(self.session_secret)
        self.cookies = CookiePolicy(
            session_cookie_name=self.settings.session_cookie_name,
            csrf_cookie_name=self.settings.csrf_cookie_name,
            secure=production,
            domain=self.settings.session_cookie_domain,
        )
        self.rate_limiter = RateLimiter(self.cache)
        self.lockout = LoginAttemptTracker(
            self.cache,
            max_attempts=self.settings.login_max_attempts,
            lock_minutes=self.settings.login_lockout_minutes,
            extend_on_attempt=self.settings.login_lockout_extend_on_attempt,
        )
        self.csrf = CSRFTokenManager(
            self.cache,
            self.csrf_secret,
            ttl_minutes=self.settings.csrf_token_ttl_minutes,
        )
        self.sessions = SessionManager(
            self.store,
            self.csrf,
            self.cookies,
            ttl_minutes=self.settings.session_ttl_minutes,
            absolute_ttl_minutes=self.settings.session_absolute_ttl_minutes,
            refresh_threshold_minutes=self.settings.session_refresh_threshold_minutes,
        )
        self.auth = AuthService(
            self.store,
            self.sessions,
            self.rate_limiter,
            self.lockout,
            self.fingerprinter,
            login_rate_limit=self.settings.login_rate_limit_per_minute,
            login_rate_window_ms=self.settings.login_rate_limit_window_seconds * 1000,
        )
        logger.info("runtime_init_complete", cache_type=type(self.cache).__name__)

    def _build_cache(self) -> SecurityCache:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for rate limits, login lockouts and CSRF tokens "
                "across workers; start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true "
                "for the single-process fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; rate limits, lockouts and "
                "CSRF tokens are per-process only."
            ),
            mode=fallback_mode,
        )
        return MemoryCache()

    async def close(self) -> None:
        await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the fast path skips the lock once the runtime
    exists.
    """
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
        if runtime is not None and isinstance(runtime.cache, RedisCache):
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
