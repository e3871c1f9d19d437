from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from accesscore.config import Settings
from accesscore.logging import get_logger
from accesscore.service.audit import (
    EVENT_REFRESH_TOKEN_REUSE,
    SEVERITY_CRITICAL,
    SecurityAuditLog,
)
from accesscore.service.clock import Clock, IdGenerator, SystemClock, uuid4_id
from accesscore.service.errors import (
    InvalidRefreshToken,
    InvalidToken,
    TokenReuseDetected,
)
from accesscore.service.tokens import AUDIENCE_REFRESH, TokenService
from accesscore.storage.models import Principal, RefreshTokenRecord

logger = get_logger(__name__)

# Upper bound on chain walks; rotation families are linear so this only
# guards against corrupted link fields.
_MAX_CHAIN_LENGTH = 10_000


class RefreshTokenStore(Protocol):
    def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    def insert_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord: ...

    def get_refresh_token(self, token_id: str) -> Optional[RefreshTokenRecord]: ...

    def rotate_refresh_token(
        self, old_token_id: str, new_record: RefreshTokenRecord, now
    ) -> bool: ...

    def revoke_refresh_token(self, token_id: str, now) -> bool: ...

    def revoke_principal_refresh_tokens(self, principal_id: str, now) -> int: ...

    def list_refresh_tokens(self, principal_id: str) -> List[RefreshTokenRecord]: ...

    def delete_expired_refresh_tokens(self, now) -> int: ...


@dataclass(frozen=True)
class IssuedRefreshToken:
    record: RefreshTokenRecord
    token: str


@dataclass(frozen=True)
class RotationResult:
    record: RefreshTokenRecord
    token: str
    old_token_id: str


def refresh_token_digest(token: str, key: str) -> str:
    """Keyed digest of the token's header and payload.

    The signature segment is excluded so re-signing with a rotated secret
    does not invalidate stored digests.
    """
    signing_input = token.rsplit(".", 1)[0]
    return hmac.new(key.encode(), signing_input.encode(), hashlib.sha256).hexdigest()


class RefreshTokenRotation:
    """Persists one record per refresh token and rotates it on every use.

    The store's compare-and-swap on ``revoked`` decides concurrent rotations:
    the first writer wins and every later presentation of the same token is
    reported as reuse. Whether reuse revokes the principal's whole family is
    left to the caller.
    """

    def __init__(
        self,
        store: RefreshTokenStore,
        tokens: TokenService,
        settings: Settings,
        *,
        audit: Optional[SecurityAuditLog] = None,
        clock: Optional[Clock] = None,
        id_generator: IdGenerator = uuid4_id,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.settings = settings
        self.audit = audit
        self.clock = clock or SystemClock()
        self._new_id = id_generator

    def hash_token(self, token: str) -> str:
        return refresh_token_digest(token, self.settings.token_hash_key)

    def create(
        self, principal: Principal, device_info: Optional[Dict[str, Any]] = None
    ) -> IssuedRefreshToken:
        record, token = self._new_record(principal.id, device_info)
        self.store.insert_refresh_token(record)
        logger.info(
            "refresh_token_issued", principal_id=principal.id, token_id=record.token_id
        )
        return IssuedRefreshToken(record=record, token=token)

    def validate(self, raw_token: str) -> Principal:
        """Return the principal owning ``raw_token`` or raise.

        Unknown, expired or mismatched tokens all raise the same
        :class:`InvalidRefreshToken`; a revoked record raises
        :class:`TokenReuseDetected` and writes a security audit entry.
        """
        return self._validated(raw_token)[0]

    def _validated(self, raw_token: str) -> tuple[Principal, RefreshTokenRecord]:
        record, claims = self._load_record(raw_token)
        if record.revoked:
            self._report_reuse(record, reason="revoked_token_presented")
            raise TokenReuseDetected()
        if record.is_expired(self.clock.now()):
            self._reject("record_expired", token_id=record.token_id)
        principal = self.store.get_principal(record.principal_id)
        if principal is None or claims.get("sub") != principal.id:
            self._reject("principal_missing", token_id=record.token_id)
        return principal, record

    def rotate(
        self,
        raw_token: str,
        principal: Principal,
        device_info: Optional[Dict[str, Any]] = None,
    ) -> RotationResult:
        owner, old_record = self._validated(raw_token)
        if owner.id != principal.id:
            self._reject("principal_mismatch", principal_id=principal.id)
        old_token_id = old_record.token_id
        info = device_info if device_info is not None else old_record.device_info
        new_record, token = self._new_record(principal.id, info)
        new_record.replaces_token_id = old_token_id
        if not self.store.rotate_refresh_token(old_token_id, new_record, self.clock.now()):
            # Another request rotated this token between validate and swap
            lost = self.store.get_refresh_token(old_token_id) or old_record
            self._report_reuse(lost, reason="concurrent_rotation")
            raise TokenReuseDetected()
        logger.info(
            "refresh_token_rotated",
            principal_id=principal.id,
            old_token_id=old_token_id,
            new_token_id=new_record.token_id,
        )
        return RotationResult(record=new_record, token=token, old_token_id=old_token_id)

    def revoke(self, token_id: str) -> bool:
        revoked = self.store.revoke_refresh_token(token_id, self.clock.now())
        if revoked:
            logger.info("refresh_token_revoked", token_id=token_id)
        return revoked

    def revoke_presented(self, raw_token: str) -> bool:
        """Revoke the record behind a raw token that is being refused."""
        record, _ = self._load_record(raw_token)
        return self.revoke(record.token_id)

    def revoke_all(self, principal_id: str) -> int:
        count = self.store.revoke_principal_refresh_tokens(principal_id, self.clock.now())
        logger.info("refresh_tokens_revoked_all", principal_id=principal_id, count=count)
        return count

    def detect_reuse(self, raw_token: str) -> bool:
        """True when ``raw_token`` is genuine but its record was already revoked."""
        try:
            claims = self.tokens.verify(raw_token, AUDIENCE_REFRESH, verify_exp=False)
        except InvalidToken:
            return False
        token_id = claims.get("tokenId")
        record = self.store.get_refresh_token(token_id) if token_id else None
        if record is None:
            return False
        if not hmac.compare_digest(record.token_hash, self.hash_token(raw_token)):
            return False
        return record.revoked

    def list_active(self, principal_id: str) -> List[RefreshTokenRecord]:
        now = self.clock.now()
        return [
            record
            for record in self.store.list_refresh_tokens(principal_id)
            if not record.revoked and not record.is_expired(now)
        ]

    def stats(self, principal_id: str) -> Dict[str, int]:
        now = self.clock.now()
        records = self.store.list_refresh_tokens(principal_id)
        revoked = sum(1 for r in records if r.revoked)
        expired = sum(1 for r in records if not r.revoked and r.is_expired(now))
        return {
            "total": len(records),
            "active": len(records) - revoked - expired,
            "expired": expired,
            "revoked": revoked,
        }

    def chain(self, token_id: str) -> List[RefreshTokenRecord]:
        """Rotation family containing ``token_id``, oldest first."""
        start = self.store.get_refresh_token(token_id)
        if start is None:
            return []
        seen = {start.token_id}
        head = start
        while head.replaces_token_id and len(seen) < _MAX_CHAIN_LENGTH:
            previous = self.store.get_refresh_token(head.replaces_token_id)
            if previous is None or previous.token_id in seen:
                break
            seen.add(previous.token_id)
            head = previous
        family = [head]
        current = head
        while current.replaced_by_token_id and len(family) < _MAX_CHAIN_LENGTH:
            following = self.store.get_refresh_token(current.replaced_by_token_id)
            if following is None or any(r.token_id == following.token_id for r in family):
                break
            family.append(following)
            current = following
        return family

    def sweep_expired(self) -> int:
        removed = self.store.delete_expired_refresh_tokens(self.clock.now())
        if removed:
            logger.info("refresh_tokens_swept", count=removed)
        return removed

    def _new_record(
        self, principal_id: str, device_info: Optional[Dict[str, Any]]
    ) -> tuple[RefreshTokenRecord, str]:
        token_id = self._new_id()
        token = self.tokens.issue_refresh_token(principal_id, token_id)
        now = self.clock.now()
        record = RefreshTokenRecord(
            token_id=token_id,
            principal_id=principal_id,
            token_hash=self.hash_token(token),
            issued_at=now,
            expires_at=now + self.tokens.refresh_ttl,
            device_info=dict(device_info) if device_info else None,
        )
        return record, token

    def _load_record(self, raw_token: str) -> tuple[RefreshTokenRecord, Dict[str, Any]]:
        try:
            claims = self.tokens.verify(raw_token, AUDIENCE_REFRESH)
        except InvalidToken as exc:
            self._reject("token_invalid", error=exc.message)
        token_id = claims.get("tokenId")
        record = self.store.get_refresh_token(token_id) if token_id else None
        if record is None:
            self._reject("record_not_found", token_id=token_id)
        if not hmac.compare_digest(record.token_hash, self.hash_token(raw_token)):
            self._reject("hash_mismatch", token_id=token_id)
        return record, claims

    @staticmethod
    def _reject(reason: str, **context: Any):
        # Full detail stays in the log; callers only ever see the uniform message
        logger.warning("refresh_token_rejected", reason=reason, **context)
        raise InvalidRefreshToken()

    def _report_reuse(self, record: RefreshTokenRecord, *, reason: str) -> None:
        logger.warning(
            "refresh_token_reuse_detected",
            principal_id=record.principal_id,
            token_id=record.token_id,
            reason=reason,
        )
        if self.audit is not None:
            self.audit.record(
                EVENT_REFRESH_TOKEN_REUSE,
                SEVERITY_CRITICAL,
                principal_id=record.principal_id,
                token_id=record.token_id,
                replaced_by_token_id=record.replaced_by_token_id,
                reason=reason,
            )
