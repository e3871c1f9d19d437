from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Dict, Optional
from urllib.parse import urlparse, urlunparse

from accesscore.config import get_settings, reset_settings_cache
from accesscore.logging import get_logger
from accesscore.service.audit import SecurityAuditLog
from accesscore.service.auth import AuthService
from accesscore.service.clock import Clock, SystemClock
from accesscore.service.credentials import Argon2PasswordVerifier
from accesscore.service.mfa import CacheAttemptCounter, MfaGate, StoreAttemptCounter
from accesscore.service.pipeline import PipelineEvaluator
from accesscore.service.rbac import RbacResolver
from accesscore.service.refresh import RefreshTokenRotation
from accesscore.service.sessions import SessionRegistry
from accesscore.service.tenancy import TenantScopeEnforcer
from accesscore.service.tokens import TokenService
from accesscore.storage.memory import MemoryStore
from accesscore.storage.postgres import PostgresStore
from accesscore.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of ``url`` with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
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
    """Holds the singleton store, cache and service instances."""

    def __init__(self, *, clock: Optional[Clock] = None):
        self.settings = get_settings()
        self.clock = clock or SystemClock()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    mfa_encryption_key=self.settings.mfa_encryption_key,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    fs_root=self.settings.shared_fs_root,
                    mfa_encryption_key=self.settings.mfa_encryption_key,
                )
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

        self.cache: RedisCache | SyncRedisCache | None = None
        redis_error: Exception | None = None
        if self.settings.redis_url and not self.settings.test_mode:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None
        elif self.settings.redis_url and not self.settings.use_memory_store:
            # Test mode against a real database still exercises Redis, synchronously
            try:
                cache = SyncRedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for the permission cache and MFA attempt counters; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_not_used",
                message=(
                    f"Running without Redis under {fallback_mode}; MFA attempts are counted in the "
                    "store and permission lookups are uncached."
                ),
                mode=fallback_mode,
            )

        self.audit = SecurityAuditLog(self.store, clock=self.clock)
        self.tokens = TokenService(self.settings, clock=self.clock)
        self.refresh_tokens = RefreshTokenRotation(
            self.store, self.tokens, self.settings, audit=self.audit, clock=self.clock
        )
        self.sessions = SessionRegistry(
            self.store, self.settings, audit=self.audit, clock=self.clock
        )
        window = timedelta(minutes=self.settings.mfa_attempt_window_minutes)
        counter = (
            CacheAttemptCounter(self.cache, window)
            if self.cache is not None
            else StoreAttemptCounter(self.store, window, self.clock)
        )
        self.mfa = MfaGate(
            self.store, self.settings, counter, audit=self.audit, clock=self.clock
        )
        self.rbac = RbacResolver(
            self.store, self.settings, cache=self.cache, clock=self.clock
        )
        self.tenancy = TenantScopeEnforcer(self.rbac, self.settings, audit=self.audit)
        self.authorization = PipelineEvaluator(self.rbac, self.tenancy)
        self.auth = AuthService(
            self.store,
            self.settings,
            tokens=self.tokens,
            refresh=self.refresh_tokens,
            sessions=self.sessions,
            mfa=self.mfa,
            rbac=self.rbac,
            verifier=Argon2PasswordVerifier(),
            clock=self.clock,
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            mfa_enabled=self.settings.enable_mfa,
        )

    def run_sweeps(self) -> Dict[str, int]:
        """Run both expiry sweeps once; safe alongside live traffic and each other."""
        result = {
            "refresh_tokens_deleted": self.refresh_tokens.sweep_expired(),
            "sessions_expired": self.sessions.sweep_expired(),
        }
        logger.info("maintenance_sweeps_completed", **result)
        return result

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


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


def reset_runtime_for_tests(*, clock: Optional[Clock] = None) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            if isinstance(runtime.cache, SyncRedisCache):
                asyncio.run(runtime.cache.close())
            else:
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(runtime.cache.close())
                except RuntimeError:
                    asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(clock=clock)
        return runtime


def run_sweeps() -> Dict[str, int]:
    return get_runtime().run_sweeps()
