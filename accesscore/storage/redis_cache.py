from __future__ import annotations

import json
from typing import Iterable, Optional, Set

import redis.asyncio as aioredis
from redis import Redis

_PERMISSIONS_PREFIX = "rbac:perms:"


class RedisCache:
    """Thin Redis wrapper for the permission cache and MFA attempt counters."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Fixed window: the TTL is set only by the first failure in a window, so
    # later failures never extend it.
    _MFA_ATTEMPT_SCRIPT = """
local attempts = redis.call('INCR', KEYS[1])
if attempts == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return attempts
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async client off a temporary loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _permissions_key(principal_id: str) -> str:
        return f"{_PERMISSIONS_PREFIX}{principal_id}"

    @staticmethod
    def _attempts_key(principal_id: str) -> str:
        return f"mfa:attempts:{principal_id}"

    async def get_cached_permissions(self, principal_id: str) -> Optional[Set[str]]:
        raw = await self.client.get(self._permissions_key(principal_id))
        if raw is None:
            return None
        try:
            return set(json.loads(raw))
        except (TypeError, ValueError):
            return None

    async def set_cached_permissions(
        self, principal_id: str, permissions: Iterable[str], ttl_seconds: int
    ) -> None:
        await self.client.set(
            self._permissions_key(principal_id),
            json.dumps(sorted(permissions)),
            ex=max(int(ttl_seconds), 1),
        )

    async def invalidate_permissions(self, principal_id: str) -> None:
        await self.client.delete(self._permissions_key(principal_id))

    async def invalidate_all_permissions(self) -> int:
        """Drop every cached permission set; used when a role's grants change."""
        removed = 0
        async for key in self.client.scan_iter(match=f"{_PERMISSIONS_PREFIX}*"):
            removed += await self.client.delete(key)
        return removed

    async def record_mfa_failure(self, principal_id: str, window_seconds: int) -> int:
        """Atomically count a failed MFA attempt inside the current window."""
        result = await self.client.eval(
            self._MFA_ATTEMPT_SCRIPT,
            1,
            self._attempts_key(principal_id),
            max(int(window_seconds), 1),
        )
        return int(result)

    async def get_mfa_attempts(self, principal_id: str) -> int:
        raw = await self.client.get(self._attempts_key(principal_id))
        return int(raw) if raw else 0

    async def clear_mfa_attempts(self, principal_id: str) -> None:
        await self.client.delete(self._attempts_key(principal_id))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests and scripts.

    Uses a synchronous client internally to avoid event loop binding issues
    in pytest, but exposes the same awaitable surface as :class:`RedisCache`.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def get_cached_permissions(self, principal_id: str) -> Optional[Set[str]]:
        raw = self._sync_client.get(RedisCache._permissions_key(principal_id))
        if raw is None:
            return None
        try:
            return set(json.loads(raw))
        except (TypeError, ValueError):
            return None

    async def set_cached_permissions(
        self, principal_id: str, permissions: Iterable[str], ttl_seconds: int
    ) -> None:
        self._sync_client.set(
            RedisCache._permissions_key(principal_id),
            json.dumps(sorted(permissions)),
            ex=max(int(ttl_seconds), 1),
        )

    async def invalidate_permissions(self, principal_id: str) -> None:
        self._sync_client.delete(RedisCache._permissions_key(principal_id))

    async def invalidate_all_permissions(self) -> int:
        removed = 0
        for key in self._sync_client.scan_iter(match=f"{_PERMISSIONS_PREFIX}*"):
            removed += self._sync_client.delete(key)
        return removed

    async def record_mfa_failure(self, principal_id: str, window_seconds: int) -> int:
        result = self._sync_client.eval(
            RedisCache._MFA_ATTEMPT_SCRIPT,
            1,
            RedisCache._attempts_key(principal_id),
            max(int(window_seconds), 1),
        )
        return int(result)

    async def get_mfa_attempts(self, principal_id: str) -> int:
        raw = self._sync_client.get(RedisCache._attempts_key(principal_id))
        return int(raw) if raw else 0

    async def clear_mfa_attempts(self, principal_id: str) -> None:
        self._sync_client.delete(RedisCache._attempts_key(principal_id))

    async def close(self) -> None:
        self._sync_client.close()
