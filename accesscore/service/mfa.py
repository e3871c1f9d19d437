from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional, Protocol
from urllib.parse import quote, urlencode

from accesscore.config import Settings
from accesscore.logging import get_logger
from accesscore.service.audit import EVENT_MFA_LOCKOUT, SEVERITY_HIGH, SecurityAuditLog
from accesscore.service.clock import Clock, SystemClock
from accesscore.service.errors import (
    MfaAttemptsExceeded,
    MfaInvalidCode,
    ValidationError,
)
from accesscore.storage.models import Principal
from accesscore.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

TOTP_DIGITS = 6
BACKUP_CODE_LENGTH = 10
_SECRET_BYTES = 20


class AttemptCounter(Protocol):
    """Failed-verification counter keyed by principal with a fixed window."""

    async def record_failure(self, principal_id: str) -> int: ...

    async def attempts(self, principal_id: str) -> int: ...

    async def reset(self, principal_id: str) -> None: ...


class MfaStore(Protocol):
    def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    def set_mfa_state(
        self,
        principal_id: str,
        *,
        secret: Optional[str],
        enabled: bool,
        backup_codes: Optional[List[str]] = None,
    ) -> Principal: ...

    def replace_backup_codes(self, principal_id: str, code_digests: List[str]) -> None: ...

    def consume_backup_code(self, principal_id: str, code_digest: str) -> bool: ...

    def record_mfa_failure(self, principal_id: str, now, window: timedelta) -> int: ...

    def get_mfa_attempts(self, principal_id: str, now, window: timedelta) -> int: ...

    def clear_mfa_attempts(self, principal_id: str) -> None: ...


class StoreAttemptCounter:
    """Counter persisted in the backing store; used when Redis is not configured."""

    def __init__(self, store: MfaStore, window: timedelta, clock: Optional[Clock] = None) -> None:
        self.store = store
        self.window = window
        self.clock = clock or SystemClock()

    async def record_failure(self, principal_id: str) -> int:
        return self.store.record_mfa_failure(principal_id, self.clock.now(), self.window)

    async def attempts(self, principal_id: str) -> int:
        return self.store.get_mfa_attempts(principal_id, self.clock.now(), self.window)

    async def reset(self, principal_id: str) -> None:
        self.store.clear_mfa_attempts(principal_id)


class CacheAttemptCounter:
    """Counter kept in Redis; the key's TTL is the window."""

    def __init__(self, cache: RedisCache | SyncRedisCache, window: timedelta) -> None:
        self.cache = cache
        self.window_seconds = int(window.total_seconds())

    async def record_failure(self, principal_id: str) -> int:
        return await self.cache.record_mfa_failure(principal_id, self.window_seconds)

    async def attempts(self, principal_id: str) -> int:
        return await self.cache.get_mfa_attempts(principal_id)

    async def reset(self, principal_id: str) -> None:
        await self.cache.clear_mfa_attempts(principal_id)


@dataclass(frozen=True)
class MfaSetup:
    secret: str
    provisioning_uri: str
    backup_codes: List[str]


@dataclass(frozen=True)
class MfaStatus:
    enabled: bool
    configured: bool
    backup_codes_remaining: int


def hash_backup_code(code: str) -> str:
    normalized = code.strip().replace("-", "").replace(" ", "").upper()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


class MfaGate:
    """TOTP and backup-code verification with attempt throttling.

    Backup codes are stored only as SHA-256 digests and are consumed by the
    store atomically, so a code can succeed at most once.
    """

    def __init__(
        self,
        store: MfaStore,
        settings: Settings,
        counter: AttemptCounter,
        *,
        audit: Optional[SecurityAuditLog] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.counter = counter
        self.audit = audit
        self.clock = clock or SystemClock()

    def generate_secret(self, principal: Principal) -> str:
        secret = base64.b32encode(secrets.token_bytes(_SECRET_BYTES)).decode("ascii")
        logger.debug("mfa_secret_generated", principal_id=principal.id)
        return secret.rstrip("=")

    def provisioning_uri(self, principal: Principal, secret: str) -> str:
        issuer = self.settings.mfa_issuer
        label = quote(f"{issuer}:{principal.email}")
        query = urlencode(
            {
                "secret": secret,
                "issuer": issuer,
                "algorithm": "SHA1",
                "digits": TOTP_DIGITS,
                "period": self.settings.mfa_time_step_seconds,
            }
        )
        return f"otpauth://totp/{label}?{query}"

    def generate_totp(self, secret: str, timestamp: float) -> str:
        padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
        try:
            key = base64.b32decode(padded, True)
        except (binascii.Error, ValueError):
            logger.warning("totp_secret_invalid")
            return ""
        interval = self.settings.mfa_time_step_seconds
        counter = int(timestamp // interval).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**TOTP_DIGITS
        )
        return str(code_int).zfill(TOTP_DIGITS)

    def verify(self, secret: str, code: str) -> bool:
        """Check ``code`` against the previous, current and next time steps."""
        if not secret or not code:
            return False
        candidate = code.strip().replace(" ", "")
        if len(candidate) != TOTP_DIGITS or not candidate.isdigit():
            return False
        now_ts = self.clock.now().timestamp()
        interval = self.settings.mfa_time_step_seconds
        window = self.settings.mfa_window_steps
        for step in range(-window, window + 1):
            generated = self.generate_totp(secret, now_ts + step * interval)
            if generated and hmac.compare_digest(generated, candidate):
                return True
        return False

    def generate_backup_codes(self) -> List[str]:
        codes = []
        for _ in range(self.settings.mfa_backup_code_count):
            raw = base64.b32encode(secrets.token_bytes(10)).decode("ascii")
            codes.append(raw[:BACKUP_CODE_LENGTH].upper())
        return codes

    async def has_exceeded_attempts(self, principal: Principal) -> bool:
        return await self.counter.attempts(principal.id) >= self.settings.mfa_max_attempts

    async def reset_attempts(self, principal: Principal) -> None:
        await self.counter.reset(principal.id)

    async def verify_for_login(self, principal: Principal, code: str) -> bool:
        """Verify a TOTP or backup code during login.

        Raises :class:`MfaAttemptsExceeded` once the principal is locked out;
        a principal without MFA enabled always passes.
        """
        current = self._reload(principal)
        if not current.mfa_enabled:
            return True
        if await self.has_exceeded_attempts(current):
            raise MfaAttemptsExceeded()
        if self._matches(current, code, allow_backup=True):
            await self.counter.reset(current.id)
            return True
        await self._record_failure(current)
        return False

    def setup(self, principal: Principal) -> MfaSetup:
        current = self._reload(principal)
        if current.mfa_enabled:
            raise ValidationError("multi-factor authentication is already enabled")
        secret = self.generate_secret(current)
        codes = self.generate_backup_codes()
        self.store.set_mfa_state(
            current.id,
            secret=secret,
            enabled=False,
            backup_codes=[hash_backup_code(c) for c in codes],
        )
        logger.info("mfa_setup_started", principal_id=current.id)
        return MfaSetup(
            secret=secret,
            provisioning_uri=self.provisioning_uri(current, secret),
            backup_codes=codes,
        )

    async def enable(self, principal: Principal, code: str) -> Principal:
        current = self._reload(principal)
        if not current.mfa_secret:
            raise ValidationError("multi-factor authentication is not set up")
        if current.mfa_enabled:
            return current
        await self._require_code(current, code, allow_backup=False)
        updated = self.store.set_mfa_state(
            current.id, secret=current.mfa_secret, enabled=True
        )
        logger.info("mfa_enabled", principal_id=current.id)
        return updated

    async def disable(self, principal: Principal, code: str) -> Principal:
        current = self._reload(principal)
        if not current.mfa_enabled:
            raise ValidationError("multi-factor authentication is not enabled")
        await self._require_code(current, code, allow_backup=True)
        updated = self.store.set_mfa_state(
            current.id, secret=None, enabled=False, backup_codes=[]
        )
        logger.info("mfa_disabled", principal_id=current.id)
        return updated

    async def regenerate_backup_codes(self, principal: Principal, code: str) -> List[str]:
        current = self._reload(principal)
        if not current.mfa_enabled:
            raise ValidationError("multi-factor authentication is not enabled")
        await self._require_code(current, code, allow_backup=False)
        codes = self.generate_backup_codes()
        self.store.replace_backup_codes(current.id, [hash_backup_code(c) for c in codes])
        logger.info("mfa_backup_codes_regenerated", principal_id=current.id, count=len(codes))
        return codes

    def status(self, principal: Principal) -> MfaStatus:
        current = self._reload(principal)
        return MfaStatus(
            enabled=current.mfa_enabled,
            configured=bool(current.mfa_secret),
            backup_codes_remaining=len(current.backup_codes),
        )

    def _reload(self, principal: Principal) -> Principal:
        return self.store.get_principal(principal.id) or principal

    def _matches(self, principal: Principal, code: Optional[str], *, allow_backup: bool) -> bool:
        if not code:
            return False
        if principal.mfa_secret and self.verify(principal.mfa_secret, code):
            return True
        normalized = code.strip().replace("-", "").replace(" ", "")
        if allow_backup and len(normalized) == BACKUP_CODE_LENGTH:
            if self.store.consume_backup_code(principal.id, hash_backup_code(normalized)):
                logger.info("mfa_backup_code_used", principal_id=principal.id)
                return True
        return False

    async def _require_code(self, principal: Principal, code: str, *, allow_backup: bool) -> None:
        if await self.has_exceeded_attempts(principal):
            raise MfaAttemptsExceeded()
        if not self._matches(principal, code, allow_backup=allow_backup):
            await self._record_failure(principal)
            raise MfaInvalidCode()
        await self.counter.reset(principal.id)

    async def _record_failure(self, principal: Principal) -> None:
        attempts = await self.counter.record_failure(principal.id)
        logger.warning("mfa_verification_failed", principal_id=principal.id, attempts=attempts)
        if attempts == self.settings.mfa_max_attempts:
            logger.warning("mfa_locked_out", principal_id=principal.id, attempts=attempts)
            if self.audit is not None:
                self.audit.record(
                    EVENT_MFA_LOCKOUT,
                    SEVERITY_HIGH,
                    principal_id=principal.id,
                    tenant_id=principal.tenant_id,
                    attempts=attempts,
                )
