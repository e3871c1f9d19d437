from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PrincipalStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    DELETED = "deleted"


class SessionStatus(str, Enum):
    """Session lifecycle: active -> {expired, revoked, suspicious}; suspicious -> {expired, revoked}."""

    ACTIVE = "active"
    SUSPICIOUS = "suspicious"
    EXPIRED = "expired"
    REVOKED = "revoked"


class DeviceType(str, Enum):
    DESKTOP = "desktop"
    MOBILE = "mobile"
    TABLET = "tablet"
    UNKNOWN = "unknown"


PERMISSION_ACTIONS: Tuple[str, ...] = (
    "create",
    "read",
    "update",
    "delete",
    "manage",
    "approve",
    "reject",
    "export",
    "import",
    "assign",
    "revoke",
)

MANAGE_ACTION = "manage"


@dataclass
class Principal:
    id: str
    email: str
    tenant_id: Optional[str] = None
    status: str = PrincipalStatus.PENDING.value
    mfa_enabled: bool = False
    mfa_secret: Optional[str] = None
    # SHA-256 digests of the unused backup codes
    backup_codes: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None
    meta: Dict | None = None

    @property
    def is_active(self) -> bool:
        return self.status == PrincipalStatus.ACTIVE.value


@dataclass
class RefreshTokenRecord:
    token_id: str
    principal_id: str
    token_hash: str
    issued_at: datetime
    expires_at: datetime
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    replaces_token_id: Optional[str] = None
    replaced_by_token_id: Optional[str] = None
    device_info: Dict | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


# Columns a conditional session update may write; identity and revocation
# columns only change through insert and revoke.
SESSION_MUTABLE_FIELDS = frozenset(
    {
        "expires_at",
        "status",
        "is_trusted",
        "is_remember_me",
        "last_activity_at",
        "ip_address",
        "user_agent",
        "device_name",
        "refresh_token_hash",
        "meta",
    }
)


@dataclass
class Session:
    id: str
    principal_id: str
    device_fingerprint: str
    expires_at: datetime
    status: str = SessionStatus.ACTIVE.value
    is_trusted: bool = False
    is_remember_me: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    last_activity_at: datetime = field(default_factory=_utcnow)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_type: str = DeviceType.UNKNOWN.value
    device_name: Optional[str] = None
    browser: Optional[str] = None
    operating_system: Optional[str] = None
    refresh_token_hash: Optional[str] = None
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None
    meta: Dict | None = None

    def is_active(self, now: datetime) -> bool:
        """Strictly ``active`` and not past expiry."""
        return self.status == SessionStatus.ACTIVE.value and self.expires_at > now

    def is_usable(self, now: datetime) -> bool:
        """Active or flagged suspicious; suspicious sessions stay usable until revoked."""
        return (
            self.status in (SessionStatus.ACTIVE.value, SessionStatus.SUSPICIOUS.value)
            and self.expires_at > now
        )


@dataclass
class Permission:
    id: str
    name: str
    resource: str
    action: str
    is_system: bool = False
    description: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)

    @staticmethod
    def split_name(name: str) -> Tuple[str, str]:
        resource, sep, action = name.partition(":")
        if not sep or not resource or not action:
            raise ValueError(f"permission name must be '<resource>:<action>', got {name!r}")
        return resource, action


@dataclass
class Role:
    id: str
    name: str
    level: int
    is_system: bool = False
    permissions: Set[str] = field(default_factory=set)
    parent_role_id: Optional[str] = None
    description: Optional[str] = None
    tenant_id: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None


@dataclass
class RoleAssignment:
    principal_id: str
    role_id: str
    assigned_at: datetime = field(default_factory=_utcnow)
    assigned_by: Optional[str] = None


@dataclass
class MfaAttemptWindow:
    principal_id: str
    attempts: int
    window_started_at: datetime


@dataclass
class SecurityEvent:
    id: str
    event_type: str
    severity: str
    principal_id: Optional[str] = None
    tenant_id: Optional[str] = None
    detail: Dict | None = None
    created_at: datetime = field(default_factory=_utcnow)
