from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol, Tuple

from accesscore.config import Settings
from accesscore.logging import get_logger
from accesscore.service.audit import (
    EVENT_SESSION_LIMIT_EVICTION,
    EVENT_SUSPICIOUS_SESSION,
    SEVERITY_LOW,
    SEVERITY_MEDIUM,
    SecurityAuditLog,
)
from accesscore.service.clock import Clock, IdGenerator, SystemClock, uuid4_id
from accesscore.service.errors import SessionNotActive, SessionNotFound, ValidationError
from accesscore.storage.models import DeviceType, Session, SessionStatus

logger = get_logger(__name__)

SESSION_LIMIT_REASON = "Session limit exceeded"

# Fields a caller may patch through ``SessionRegistry.update``
_PATCHABLE_FIELDS = frozenset(
    {"device_name", "is_trusted", "refresh_token_hash", "ip_address", "user_agent", "meta"}
)
_LIVE_STATUSES = (SessionStatus.ACTIVE.value, SessionStatus.SUSPICIOUS.value)


class SessionStore(Protocol):
    def insert_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def list_sessions(self, principal_id: str) -> List[Session]: ...

    def find_session_by_fingerprint(
        self, principal_id: str, fingerprint: str, status: str = ...
    ) -> Optional[Session]: ...

    def update_live_session(
        self, session_id: str, fields: Dict[str, Any]
    ) -> Optional[Session]: ...

    def revoke_session(
        self, session_id: str, reason: Optional[str], now: datetime
    ) -> Optional[Session]: ...

    def expire_sessions(self, now: datetime) -> int: ...


@dataclass
class SessionCreate:
    principal_id: str
    user_agent: str = ""
    ip_address: str = ""
    remember_me: bool = False
    device_name: Optional[str] = None
    is_trusted: bool = False
    refresh_token_hash: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)


def generate_fingerprint(user_agent: Optional[str], ip_address: Optional[str]) -> str:
    raw = f"{user_agent or ''}|{ip_address or ''}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def detect_device_type(user_agent: Optional[str]) -> str:
    ua = (user_agent or "").lower()
    if not ua:
        return DeviceType.UNKNOWN.value
    if "ipad" in ua or "tablet" in ua or ("android" in ua and "mobile" not in ua):
        return DeviceType.TABLET.value
    if "mobile" in ua or "iphone" in ua or "android" in ua:
        return DeviceType.MOBILE.value
    if any(marker in ua for marker in ("windows", "macintosh", "mac os", "linux", "x11", "cros")):
        return DeviceType.DESKTOP.value
    return DeviceType.UNKNOWN.value


def parse_user_agent(user_agent: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Best-effort ``(browser, operating_system)`` from a User-Agent header."""
    ua = (user_agent or "").lower()
    if not ua:
        return None, None

    if "edg/" in ua or "edge/" in ua:
        browser = "Edge"
    elif "opr/" in ua or "opera" in ua:
        browser = "Opera"
    elif "firefox/" in ua or "fxios/" in ua:
        browser = "Firefox"
    elif "chrome/" in ua or "crios/" in ua or "chromium/" in ua:
        browser = "Chrome"
    elif "safari/" in ua:
        browser = "Safari"
    else:
        browser = "Other"

    # iOS and Android user agents also mention "like Mac OS X" / "Linux"
    if "iphone" in ua or "ipad" in ua or "ipod" in ua:
        operating_system = "iOS"
    elif "android" in ua:
        operating_system = "Android"
    elif "windows" in ua:
        operating_system = "Windows"
    elif "mac os" in ua or "macintosh" in ua:
        operating_system = "macOS"
    elif "cros" in ua:
        operating_system = "ChromeOS"
    elif "linux" in ua or "x11" in ua:
        operating_system = "Linux"
    else:
        operating_system = "Other"
    return browser, operating_system


class SessionRegistry:
    """Tracks one session per authenticated device.

    A repeat login from the same fingerprint refreshes the existing active
    session instead of creating a second one. New sessions beyond
    ``max_concurrent_sessions`` evict the least recently active session.
    """

    def __init__(
        self,
        store: SessionStore,
        settings: Settings,
        *,
        audit: Optional[SecurityAuditLog] = None,
        clock: Optional[Clock] = None,
        id_generator: IdGenerator = uuid4_id,
    ) -> None:
        self.store = store
        self.settings = settings
        self.audit = audit
        self.clock = clock or SystemClock()
        self._new_id = id_generator

    def _ttl(self, remember_me: bool) -> timedelta:
        if remember_me:
            return timedelta(days=self.settings.remember_me_ttl_days)
        return timedelta(hours=self.settings.session_ttl_hours)

    def create(self, dto: SessionCreate) -> Session:
        now = self.clock.now()
        fingerprint = generate_fingerprint(dto.user_agent, dto.ip_address)
        existing = self.store.find_session_by_fingerprint(
            dto.principal_id, fingerprint, SessionStatus.ACTIVE.value
        )
        if existing is not None and existing.is_active(now):
            fields: Dict[str, Any] = {"last_activity_at": now}
            if dto.refresh_token_hash:
                fields["refresh_token_hash"] = dto.refresh_token_hash
            if dto.remember_me and not existing.is_remember_me:
                fields["is_remember_me"] = True
                fields["expires_at"] = max(existing.expires_at, now + self._ttl(True))
            reused = self.store.update_live_session(existing.id, fields)
            if reused is not None:
                logger.info(
                    "session_reused", session_id=existing.id, principal_id=dto.principal_id
                )
                return reused
            # Revoked after the lookup; fall through to a fresh session
        elif existing is not None:
            # Past expiry but not yet swept; retire it so the fingerprint stays unique
            self.store.update_live_session(
                existing.id, {"status": SessionStatus.EXPIRED.value}
            )

        self._enforce_session_limit(dto.principal_id, now)

        browser, operating_system = parse_user_agent(dto.user_agent)
        session = Session(
            id=self._new_id(),
            principal_id=dto.principal_id,
            device_fingerprint=fingerprint,
            expires_at=now + self._ttl(dto.remember_me),
            status=SessionStatus.ACTIVE.value,
            is_trusted=dto.is_trusted,
            is_remember_me=dto.remember_me,
            created_at=now,
            last_activity_at=now,
            ip_address=dto.ip_address or None,
            user_agent=dto.user_agent or None,
            device_type=detect_device_type(dto.user_agent),
            device_name=dto.device_name,
            browser=browser,
            operating_system=operating_system,
            refresh_token_hash=dto.refresh_token_hash,
            meta=dict(dto.meta) if dto.meta else None,
        )
        self.store.insert_session(session)
        logger.info(
            "session_created",
            session_id=session.id,
            principal_id=session.principal_id,
            device_type=session.device_type,
            remember_me=dto.remember_me,
        )
        return session

    def _enforce_session_limit(self, principal_id: str, now: datetime) -> None:
        # Read-then-write; two racing creates may briefly exceed the cap by one
        active = self.list_active(principal_id)
        limit = self.settings.max_concurrent_sessions
        overflow = len(active) - limit + 1
        if overflow <= 0:
            return
        oldest_first = sorted(active, key=lambda s: s.last_activity_at)
        for victim in oldest_first[:overflow]:
            if self.store.revoke_session(victim.id, SESSION_LIMIT_REASON, now) is None:
                continue
            logger.warning(
                "session_limit_evicted",
                session_id=victim.id,
                principal_id=principal_id,
                limit=limit,
            )
            if self.audit is not None:
                self.audit.record(
                    EVENT_SESSION_LIMIT_EVICTION,
                    SEVERITY_LOW,
                    principal_id=principal_id,
                    session_id=victim.id,
                    limit=limit,
                )

    def get(self, session_id: str) -> Session:
        session = self.store.get_session(session_id)
        if session is None:
            raise SessionNotFound(detail={"session_id": session_id})
        return session

    def list_by_principal(self, principal_id: str) -> List[Session]:
        return self.store.list_sessions(principal_id)

    def list_active(self, principal_id: str) -> List[Session]:
        now = self.clock.now()
        return [s for s in self.store.list_sessions(principal_id) if s.is_active(now)]

    def update(self, session_id: str, patch: Dict[str, Any]) -> Session:
        unknown = set(patch) - _PATCHABLE_FIELDS
        if unknown:
            raise ValidationError(
                "unsupported session fields", detail={"fields": sorted(unknown)}
            )
        return self._update_live(session_id, patch)

    def revoke(self, session_id: str, reason: Optional[str] = None) -> Session:
        """Revoke a session; revoking an already terminal session is a no-op."""
        current = self.get(session_id)
        revoked = self.store.revoke_session(session_id, reason, self.clock.now())
        if revoked is None:
            return current
        logger.info(
            "session_revoked",
            session_id=session_id,
            principal_id=revoked.principal_id,
            reason=reason,
        )
        return revoked

    def revoke_all(self, principal_id: str, reason: Optional[str] = None) -> int:
        return self._revoke_many(principal_id, reason, except_id=None)

    def revoke_others(
        self, principal_id: str, except_id: str, reason: Optional[str] = None
    ) -> int:
        return self._revoke_many(principal_id, reason, except_id=except_id)

    def _revoke_many(
        self, principal_id: str, reason: Optional[str], *, except_id: Optional[str]
    ) -> int:
        now = self.clock.now()
        revoked = 0
        for session in self.store.list_sessions(principal_id):
            if session.id == except_id:
                continue
            if self.store.revoke_session(session.id, reason, now) is not None:
                revoked += 1
        logger.info(
            "sessions_revoked",
            principal_id=principal_id,
            count=revoked,
            kept_session_id=except_id,
            reason=reason,
        )
        return revoked

    def _require_usable(self, session_id: str) -> Session:
        session = self.get(session_id)
        if not session.is_usable(self.clock.now()):
            raise SessionNotActive(
                detail={"session_id": session_id, "status": session.status}
            )
        return session

    def _update_live(self, session_id: str, fields: Dict[str, Any]) -> Session:
        """Write ``fields`` in one conditional store call.

        The store refuses the write once the session is revoked or expired,
        so a concurrent revoke is never overwritten.
        """
        updated = self.store.update_live_session(session_id, fields)
        if updated is None:
            current = self.get(session_id)
            raise SessionNotActive(
                detail={"session_id": session_id, "status": current.status}
            )
        return updated

    def touch(self, session_id: str) -> Session:
        self._require_usable(session_id)
        return self._update_live(session_id, {"last_activity_at": self.clock.now()})

    def extend(self, session_id: str, minutes: int) -> Session:
        if minutes <= 0:
            raise ValidationError("minutes must be positive", detail={"minutes": minutes})
        session = self._require_usable(session_id)
        return self._update_live(
            session_id, {"expires_at": session.expires_at + timedelta(minutes=minutes)}
        )

    def mark_suspicious(self, session_id: str) -> Session:
        session = self._require_usable(session_id)
        if session.status == SessionStatus.SUSPICIOUS.value:
            return session
        session = self._update_live(session_id, {"status": SessionStatus.SUSPICIOUS.value})
        logger.warning(
            "session_marked_suspicious",
            session_id=session_id,
            principal_id=session.principal_id,
        )
        if self.audit is not None:
            self.audit.record(
                EVENT_SUSPICIOUS_SESSION,
                SEVERITY_MEDIUM,
                principal_id=session.principal_id,
                session_id=session_id,
            )
        return session

    def mark_trusted(self, session_id: str, trusted: bool = True) -> Session:
        self._require_usable(session_id)
        return self._update_live(session_id, {"is_trusted": trusted})

    def detect_suspicious(self, session_id: str, observed_ip: Optional[str]) -> bool:
        """Report whether the session looks hijacked or stale; never mutates it."""
        session = self.get(session_id)
        if observed_ip and session.ip_address and observed_ip != session.ip_address:
            logger.info(
                "session_ip_changed",
                session_id=session_id,
                principal_id=session.principal_id,
            )
            return True
        inactivity = timedelta(hours=self.settings.suspicious_inactivity_hours)
        if session.status == SessionStatus.ACTIVE.value and (
            self.clock.now() - session.last_activity_at > inactivity
        ):
            return True
        return False

    def stats(self, principal_id: str) -> Dict[str, int]:
        now = self.clock.now()
        sessions = self.store.list_sessions(principal_id)
        counts = {status.value: 0 for status in SessionStatus}
        for session in sessions:
            # Sessions past expiry count as expired before the sweep catches up
            if session.status in _LIVE_STATUSES and not session.is_usable(now):
                counts[SessionStatus.EXPIRED.value] += 1
            else:
                counts[session.status] = counts.get(session.status, 0) + 1
        counts["total"] = len(sessions)
        return counts

    def sweep_expired(self) -> int:
        expired = self.store.expire_sessions(self.clock.now())
        if expired:
            logger.info("sessions_expired", count=expired)
        return expired
