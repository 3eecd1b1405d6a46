from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Dict, Optional
from urllib.parse import urlparse, urlunparse

from tokenwarden.config import Settings, get_settings, reset_settings_cache
from tokenwarden.logging import get_logger
from tokenwarden.service.auth import AuthService
from tokenwarden.service.email import EmailService
from tokenwarden.service.jwks import PublicKeyPublisher
from tokenwarden.service.keys import KeyStore
from tokenwarden.service.lockout import LockoutGuard, LockoutPolicy
from tokenwarden.service.rate_limit import LocalCounterStore, RateLimiter, RateLimitPolicy
from tokenwarden.service.refresh import RefreshCredentialManager
from tokenwarden.service.secondary import SecondaryCredentialManager
from tokenwarden.service.tokens import TokenIssuer
from tokenwarden.storage.memory import MemoryStore
from tokenwarden.storage.postgres import PostgresStore
from tokenwarden.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

RATE_LIMITED_SCOPES = (
    "login",
    "register",
    "verify_email",
    "resend_verification",
    "forgot_password",
    "refresh",
)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
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
        user = parsed.username or ""
        netloc = f"{user}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Composition root: builds every service once from ``Settings``."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
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

        self.cache = self._init_cache()

        # Key self-test failures propagate and abort startup.
        self.keys = KeyStore.from_settings(self.settings)
        self.jwks = PublicKeyPublisher(self.keys)
        self.tokens = TokenIssuer(
            self.keys,
            access_ttl=timedelta(minutes=self.settings.access_token_ttl_minutes),
        )
        self.refresh = RefreshCredentialManager(
            self.store,
            ttl_days=self.settings.refresh_token_ttl_days,
            revoke_all_on_replay=self.settings.revoke_all_on_refresh_replay,
        )
        self.lockout = LockoutGuard(
            self.store,
            LockoutPolicy(
                threshold=self.settings.lockout_threshold,
                lock_duration=timedelta(minutes=self.settings.lockout_duration_minutes),
            ),
        )
        self.secondary = SecondaryCredentialManager(
            self.store,
            reset_ttl=timedelta(minutes=self.settings.password_reset_ttl_minutes),
            verification_ttl=timedelta(minutes=self.settings.verification_code_ttl_minutes),
            max_attempts=self.settings.verification_max_attempts,
        )
        self.rate_limiter = RateLimiter(self.cache or LocalCounterStore(), fail_open=True)
        self.rate_limits: Dict[str, RateLimitPolicy] = {}
        for scope in RATE_LIMITED_SCOPES:
            configured = self.settings.rate_limit(scope)
            self.rate_limits[scope] = RateLimitPolicy(
                scope, configured.limit, configured.window_seconds
            )
        self.email = EmailService.from_settings(self.settings)
        self.auth = AuthService(
            self.store,
            tokens=self.tokens,
            refresh=self.refresh,
            lockout=self.lockout,
            secondary=self.secondary,
            allow_signup=self.settings.allow_signup,
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            ephemeral_signing_key=self.keys.is_ephemeral,
            key_id=self.keys.key_id,
        )

    def _init_cache(self):
        cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # sync client in test mode avoids binding to a per-test event loop
                if self.settings.test_mode:
                    candidate = SyncRedisCache(self.settings.redis_url)
                else:
                    candidate = RedisCache(self.settings.redis_url)
                candidate.verify_connection()
                cache = candidate
            except Exception as exc:
                redis_error = exc

        if cache is None:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limiting; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for the local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limit counters "
                    "are process-local."
                ),
                mode=fallback_mode,
            )
        return cache

    async def aclose(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: a lock-free fast path for the existing runtime,
    then a second check under the lock before creating one.
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
        if runtime is not None and runtime.cache is not None:
            cache = runtime.cache
            if isinstance(cache, SyncRedisCache):
                asyncio.run(cache.close())
            else:
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(cache.close())
                except RuntimeError:
                    asyncio.run(cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
