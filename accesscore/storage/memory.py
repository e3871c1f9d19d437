from __future__ import annotations

import copy
import json
import threading
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from accesscore.logging import get_logger
from accesscore.storage.common import (
    build_mfa_cipher,
    decrypt_secret,
    deserialize_datetime,
    encrypt_secret,
    serialize_datetime,
)
from accesscore.storage.errors import ConstraintViolation
from accesscore.storage.models import (
    SESSION_MUTABLE_FIELDS,
    MfaAttemptWindow,
    Permission,
    Principal,
    PrincipalStatus,
    RefreshTokenRecord,
    Role,
    RoleAssignment,
    SecurityEvent,
    Session,
    SessionStatus,
)

_LIVE_SESSION_STATUSES = (SessionStatus.ACTIVE.value, SessionStatus.SUSPICIOUS.value)

# Oldest audit entries are dropped past this many
DEFAULT_MAX_SECURITY_EVENTS = 10_000


class MemoryStore:
    """In-process backing store persisted to a JSON state file.

    Every public method takes ``_data_lock`` so compare-and-swap style
    operations (rotation, revocation) are atomic per record. Returned
    entities are copies; callers write back through the store.
    """

    def __init__(
        self,
        fs_root: str = "/tmp/accesscore",
        *,
        mfa_encryption_key: str | None = None,
        max_security_events: int = DEFAULT_MAX_SECURITY_EVENTS,
    ) -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        self.credentials: Dict[str, Tuple[str, str]] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self.sessions: Dict[str, Session] = {}
        self.permissions: Dict[str, Permission] = {}
        self.roles: Dict[str, Role] = {}
        self.role_assignments: Dict[Tuple[str, str], RoleAssignment] = {}
        self.mfa_attempts: Dict[str, MfaAttemptWindow] = {}
        self.security_events: List[SecurityEvent] = []
        self.max_security_events = max_security_events
        # RLock allows nested acquisition from helpers called under the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._mfa_cipher = build_mfa_cipher(mfa_encryption_key, self.fs_root)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "accesscore_store.json"

    # principals
    def create_principal(
        self,
        email: str,
        *,
        tenant_id: Optional[str] = None,
        status: str = PrincipalStatus.PENDING.value,
        principal_id: Optional[str] = None,
        meta: Optional[Dict] = None,
    ) -> Principal:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(p.email == normalized for p in self.principals.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            principal = Principal(
                id=principal_id or str(uuid.uuid4()),
                email=normalized,
                tenant_id=tenant_id,
                status=PrincipalStatus(status).value,
                meta=dict(meta) if meta else {},
            )
            if principal.id in self.principals:
                raise ConstraintViolation("principal id already exists", {"field": "id"})
            self.principals[principal.id] = principal
            self._persist_state()
            return copy.deepcopy(principal)

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            return copy.deepcopy(self.principals.get(principal_id))

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        normalized = email.strip().lower()
        with self._data_lock:
            found = next((p for p in self.principals.values() if p.email == normalized), None)
            return copy.deepcopy(found)

    def list_principals(
        self, tenant_id: Optional[str] = None, limit: int = 100
    ) -> List[Principal]:
        with self._data_lock:
            results = [
                p
                for p in self.principals.values()
                if tenant_id is None or p.tenant_id == tenant_id
            ]
            results.sort(key=lambda p: p.created_at, reverse=True)
            return copy.deepcopy(results[:limit])

    def update_principal_status(
        self, principal_id: str, status: str, *, now: Optional[datetime] = None
    ) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return None
            principal.status = PrincipalStatus(status).value
            principal.updated_at = now or principal.updated_at
            self._persist_state()
            return copy.deepcopy(principal)

    def save_password(
        self, principal_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if principal_id not in self.principals:
                raise ConstraintViolation(
                    "principal not found for credentials", {"principal_id": principal_id}
                )
            self.credentials[principal_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, principal_id: str) -> Optional[Tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(principal_id)

    # mfa
    def set_mfa_state(
        self,
        principal_id: str,
        *,
        secret: Optional[str],
        enabled: bool,
        backup_codes: Optional[List[str]] = None,
    ) -> Principal:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                raise ConstraintViolation("principal not found for mfa", {"principal_id": principal_id})
            principal.mfa_secret = secret
            principal.mfa_enabled = enabled
            if backup_codes is not None:
                principal.backup_codes = list(backup_codes)
            self._persist_state()
            return copy.deepcopy(principal)

    def replace_backup_codes(self, principal_id: str, code_digests: List[str]) -> None:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                raise ConstraintViolation("principal not found for mfa", {"principal_id": principal_id})
            principal.backup_codes = list(code_digests)
            self._persist_state()

    def consume_backup_code(self, principal_id: str, code_digest: str) -> bool:
        """Remove ``code_digest`` if present; the removal is the verification result."""
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal or code_digest not in principal.backup_codes:
                return False
            principal.backup_codes.remove(code_digest)
            self._persist_state()
            return True

    def record_mfa_failure(
        self, principal_id: str, now: datetime, window: timedelta
    ) -> int:
        with self._data_lock:
            current = self.mfa_attempts.get(principal_id)
            if current is None or now - current.window_started_at >= window:
                current = MfaAttemptWindow(principal_id, 0, now)
            current.attempts += 1
            self.mfa_attempts[principal_id] = current
            self._persist_state()
            return current.attempts

    def get_mfa_attempts(
        self, principal_id: str, now: datetime, window: timedelta
    ) -> int:
        with self._data_lock:
            current = self.mfa_attempts.get(principal_id)
            if current is None or now - current.window_started_at >= window:
                return 0
            return current.attempts

    def clear_mfa_attempts(self, principal_id: str) -> None:
        with self._data_lock:
            if self.mfa_attempts.pop(principal_id, None) is not None:
                self._persist_state()

    # refresh tokens
    def insert_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        with self._data_lock:
            self._insert_refresh_token_locked(record)
            self._persist_state()
            return copy.deepcopy(record)

    def _insert_refresh_token_locked(self, record: RefreshTokenRecord) -> None:
        if record.principal_id not in self.principals:
            raise ConstraintViolation(
                "refresh token principal missing", {"principal_id": record.principal_id}
            )
        if record.token_id in self.refresh_tokens:
            raise ConstraintViolation("token id already exists", {"field": "token_id"})
        self.refresh_tokens[record.token_id] = copy.deepcopy(record)

    def get_refresh_token(self, token_id: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            return copy.deepcopy(self.refresh_tokens.get(token_id))

    def rotate_refresh_token(
        self, old_token_id: str, new_record: RefreshTokenRecord, now: datetime
    ) -> bool:
        """Revoke ``old_token_id`` and insert its successor in one step.

        Returns False without writing anything when the old record is missing
        or already revoked; only one concurrent rotation can win.
        """
        with self._data_lock:
            old = self.refresh_tokens.get(old_token_id)
            if old is None or old.revoked:
                return False
            successor = copy.deepcopy(new_record)
            successor.replaces_token_id = old_token_id
            self._insert_refresh_token_locked(successor)
            old.revoked = True
            old.revoked_at = now
            old.replaced_by_token_id = successor.token_id
            self._persist_state()
            return True

    def revoke_refresh_token(self, token_id: str, now: datetime) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            if record is None or record.revoked:
                return False
            record.revoked = True
            record.revoked_at = now
            self._persist_state()
            return True

    def revoke_principal_refresh_tokens(self, principal_id: str, now: datetime) -> int:
        with self._data_lock:
            revoked = 0
            for record in self.refresh_tokens.values():
                if record.principal_id == principal_id and not record.revoked:
                    record.revoked = True
                    record.revoked_at = now
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def list_refresh_tokens(self, principal_id: str) -> List[RefreshTokenRecord]:
        with self._data_lock:
            records = [
                r for r in self.refresh_tokens.values() if r.principal_id == principal_id
            ]
            records.sort(key=lambda r: r.issued_at, reverse=True)
            return copy.deepcopy(records)

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                token_id
                for token_id, record in self.refresh_tokens.items()
                if record.expires_at < now
            ]
            for token_id in stale:
                self.refresh_tokens.pop(token_id, None)
            if stale:
                self._persist_state()
            return len(stale)

    # sessions
    def insert_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.principal_id not in self.principals:
                raise ConstraintViolation(
                    "session principal missing", {"principal_id": session.principal_id}
                )
            if session.id in self.sessions:
                raise ConstraintViolation("session id already exists", {"field": "id"})
            self.sessions[session.id] = copy.deepcopy(session)
            self._persist_state()
            return copy.deepcopy(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return copy.deepcopy(self.sessions.get(session_id))

    def list_sessions(self, principal_id: str) -> List[Session]:
        with self._data_lock:
            sessions = [s for s in self.sessions.values() if s.principal_id == principal_id]
            sessions.sort(key=lambda s: s.last_activity_at, reverse=True)
            return copy.deepcopy(sessions)

    def find_session_by_fingerprint(
        self,
        principal_id: str,
        fingerprint: str,
        status: str = SessionStatus.ACTIVE.value,
    ) -> Optional[Session]:
        with self._data_lock:
            for sess in self.sessions.values():
                if (
                    sess.principal_id == principal_id
                    and sess.device_fingerprint == fingerprint
                    and sess.status == status
                ):
                    return copy.deepcopy(sess)
            return None

    def update_live_session(
        self, session_id: str, fields: Dict[str, Any]
    ) -> Optional[Session]:
        """Apply ``fields`` to a live session; None when it is terminal or missing."""
        unknown = set(fields) - SESSION_MUTABLE_FIELDS
        if unknown:
            raise ConstraintViolation("session fields not writable", {"fields": sorted(unknown)})
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess is None or sess.status not in _LIVE_SESSION_STATUSES:
                return None
            for name, value in fields.items():
                setattr(sess, name, copy.deepcopy(value))
            self._persist_state()
            return copy.deepcopy(sess)

    def revoke_session(
        self, session_id: str, reason: Optional[str], now: datetime
    ) -> Optional[Session]:
        """Revoke a live session; returns None when it was already terminal or missing."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess is None or sess.status not in _LIVE_SESSION_STATUSES:
                return None
            sess.status = SessionStatus.REVOKED.value
            sess.revoked_at = now
            sess.revoked_reason = reason
            self._persist_state()
            return copy.deepcopy(sess)

    def expire_sessions(self, now: datetime) -> int:
        with self._data_lock:
            expired = 0
            for sess in self.sessions.values():
                if sess.status in _LIVE_SESSION_STATUSES and sess.expires_at < now:
                    sess.status = SessionStatus.EXPIRED.value
                    expired += 1
            if expired:
                self._persist_state()
            return expired

    # rbac
    def insert_permission(self, permission: Permission) -> Permission:
        with self._data_lock:
            if any(p.name == permission.name for p in self.permissions.values()):
                raise ConstraintViolation("permission already exists", {"field": "name"})
            self.permissions[permission.id] = copy.deepcopy(permission)
            self._persist_state()
            return copy.deepcopy(permission)

    def get_permission_by_name(self, name: str) -> Optional[Permission]:
        with self._data_lock:
            found = next((p for p in self.permissions.values() if p.name == name), None)
            return copy.deepcopy(found)

    def list_permissions(self, resource: Optional[str] = None) -> List[Permission]:
        with self._data_lock:
            results = [
                p
                for p in self.permissions.values()
                if resource is None or p.resource == resource
            ]
            results.sort(key=lambda p: p.name)
            return copy.deepcopy(results)

    def delete_permission(self, name: str) -> bool:
        with self._data_lock:
            match = next((pid for pid, p in self.permissions.items() if p.name == name), None)
            if match is None:
                return False
            self.permissions.pop(match, None)
            for role in self.roles.values():
                role.permissions.discard(name)
            self._persist_state()
            return True

    def insert_role(self, role: Role) -> Role:
        with self._data_lock:
            if any(r.name == role.name for r in self.roles.values()):
                raise ConstraintViolation("role name already exists", {"field": "name"})
            if role.parent_role_id and role.parent_role_id not in self.roles:
                raise ConstraintViolation("parent role missing", {"field": "parent_role_id"})
            self.roles[role.id] = copy.deepcopy(role)
            self._persist_state()
            return copy.deepcopy(role)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            return copy.deepcopy(self.roles.get(role_id))

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            found = next((r for r in self.roles.values() if r.name == name), None)
            return copy.deepcopy(found)

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            roles = sorted(self.roles.values(), key=lambda r: (r.level, r.name))
            return copy.deepcopy(roles)

    def save_role(self, role: Role) -> Role:
        with self._data_lock:
            if role.id not in self.roles:
                raise ConstraintViolation("role not found", {"role_id": role.id})
            if any(r.name == role.name and r.id != role.id for r in self.roles.values()):
                raise ConstraintViolation("role name already exists", {"field": "name"})
            self.roles[role.id] = copy.deepcopy(role)
            self._persist_state()
            return copy.deepcopy(role)

    def delete_role(self, role_id: str) -> bool:
        with self._data_lock:
            if any(key[1] == role_id for key in self.role_assignments):
                raise ConstraintViolation("role still assigned", {"role_id": role_id})
            if any(r.parent_role_id == role_id for r in self.roles.values()):
                raise ConstraintViolation("role has child roles", {"role_id": role_id})
            removed = self.roles.pop(role_id, None)
            if removed is not None:
                self._persist_state()
            return removed is not None

    def add_role_permissions(self, role_id: str, names: Iterable[str]) -> int:
        with self._data_lock:
            role = self.roles.get(role_id)
            if role is None:
                raise ConstraintViolation("role not found", {"role_id": role_id})
            known = {p.name for p in self.permissions.values()}
            wanted = set(names)
            missing = wanted - known
            if missing:
                raise ConstraintViolation(
                    "unknown permissions", {"field": "permissions", "names": sorted(missing)}
                )
            added = wanted - role.permissions
            if added:
                role.permissions |= added
                self._persist_state()
            return len(added)

    def remove_role_permissions(self, role_id: str, names: Iterable[str]) -> int:
        with self._data_lock:
            role = self.roles.get(role_id)
            if role is None:
                raise ConstraintViolation("role not found", {"role_id": role_id})
            removed = role.permissions & set(names)
            if removed:
                role.permissions -= removed
                self._persist_state()
            return len(removed)

    def assign_role(self, assignment: RoleAssignment) -> RoleAssignment:
        key = (assignment.principal_id, assignment.role_id)
        with self._data_lock:
            if assignment.principal_id not in self.principals:
                raise ConstraintViolation(
                    "principal not found", {"principal_id": assignment.principal_id}
                )
            if assignment.role_id not in self.roles:
                raise ConstraintViolation("role not found", {"role_id": assignment.role_id})
            if key in self.role_assignments:
                raise ConstraintViolation("role already assigned", {"field": "assignment"})
            self.role_assignments[key] = copy.deepcopy(assignment)
            self._persist_state()
            return copy.deepcopy(assignment)

    def unassign_role(self, principal_id: str, role_id: str) -> bool:
        with self._data_lock:
            removed = self.role_assignments.pop((principal_id, role_id), None)
            if removed is not None:
                self._persist_state()
            return removed is not None

    def list_principal_roles(self, principal_id: str) -> List[Role]:
        with self._data_lock:
            roles = [
                self.roles[role_id]
                for (pid, role_id) in self.role_assignments
                if pid == principal_id and role_id in self.roles
            ]
            roles.sort(key=lambda r: (r.level, r.name))
            return copy.deepcopy(roles)

    def count_role_assignments(self, role_id: str) -> int:
        with self._data_lock:
            return sum(1 for (_, rid) in self.role_assignments if rid == role_id)

    # security events
    def append_security_event(self, event: SecurityEvent) -> SecurityEvent:
        with self._data_lock:
            self.security_events.append(copy.deepcopy(event))
            overflow = len(self.security_events) - self.max_security_events
            if overflow > 0:
                del self.security_events[:overflow]
            self._persist_state()
            return event

    def list_security_events(
        self,
        *,
        principal_id: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[SecurityEvent]:
        with self._data_lock:
            events = [
                e
                for e in self.security_events
                if (principal_id is None or e.principal_id == principal_id)
                and (event_type is None or e.event_type == event_type)
            ]
            events.sort(key=lambda e: e.created_at, reverse=True)
            return copy.deepcopy(events[:limit])

    # persistence
    def _persist_state(self) -> None:
        state = {
            "principals": [self._serialize_principal(p) for p in self.principals.values()],
            "credentials": [
                {
                    "principal_id": principal_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for principal_id, creds in self.credentials.items()
            ],
            "refresh_tokens": [
                self._serialize_refresh_token(r) for r in self.refresh_tokens.values()
            ],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "permissions": [
                self._serialize_permission(p) for p in self.permissions.values()
            ],
            "roles": [self._serialize_role(r) for r in self.roles.values()],
            "role_assignments": [
                {
                    "principal_id": a.principal_id,
                    "role_id": a.role_id,
                    "assigned_at": serialize_datetime(a.assigned_at),
                    "assigned_by": a.assigned_by,
                }
                for a in self.role_assignments.values()
            ],
            "mfa_attempts": [
                {
                    "principal_id": w.principal_id,
                    "attempts": w.attempts,
                    "window_started_at": serialize_datetime(w.window_started_at),
                }
                for w in self.mfa_attempts.values()
            ],
            "security_events": [
                self._serialize_security_event(e) for e in self.security_events
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.principals = {
            p["id"]: self._deserialize_principal(p) for p in data.get("principals", [])
        }
        self.credentials = {
            entry["principal_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.refresh_tokens = {
            r["token_id"]: self._deserialize_refresh_token(r)
            for r in data.get("refresh_tokens", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.permissions = {
            p["id"]: self._deserialize_permission(p) for p in data.get("permissions", [])
        }
        self.roles = {r["id"]: self._deserialize_role(r) for r in data.get("roles", [])}
        self.role_assignments = {}
        for entry in data.get("role_assignments", []):
            assignment = RoleAssignment(
                principal_id=entry["principal_id"],
                role_id=entry["role_id"],
                assigned_at=deserialize_datetime(entry.get("assigned_at")),
                assigned_by=entry.get("assigned_by"),
            )
            self.role_assignments[(assignment.principal_id, assignment.role_id)] = assignment
        self.mfa_attempts = {
            entry["principal_id"]: MfaAttemptWindow(
                principal_id=entry["principal_id"],
                attempts=int(entry["attempts"]),
                window_started_at=deserialize_datetime(entry["window_started_at"]),
            )
            for entry in data.get("mfa_attempts", [])
        }
        self.security_events = [
            self._deserialize_security_event(e) for e in data.get("security_events", [])
        ][-self.max_security_events:]
        return True

    def _serialize_principal(self, principal: Principal) -> dict:
        return {
            "id": principal.id,
            "email": principal.email,
            "tenant_id": principal.tenant_id,
            "status": principal.status,
            "mfa_enabled": principal.mfa_enabled,
            "mfa_secret": encrypt_secret(self._mfa_cipher, principal.mfa_secret),
            "backup_codes": list(principal.backup_codes),
            "created_at": serialize_datetime(principal.created_at),
            "updated_at": serialize_datetime(principal.updated_at),
            "meta": principal.meta,
        }

    def _deserialize_principal(self, data: dict) -> Principal:
        return Principal(
            id=str(data["id"]),
            email=data["email"],
            tenant_id=data.get("tenant_id"),
            status=data.get("status", PrincipalStatus.PENDING.value),
            mfa_enabled=bool(data.get("mfa_enabled", False)),
            mfa_secret=decrypt_secret(self._mfa_cipher, data.get("mfa_secret")),
            backup_codes=list(data.get("backup_codes") or []),
            created_at=deserialize_datetime(data["created_at"]),
            updated_at=deserialize_datetime(data.get("updated_at")),
            meta=data.get("meta"),
        )

    @staticmethod
    def _serialize_refresh_token(record: RefreshTokenRecord) -> dict:
        return {
            "token_id": record.token_id,
            "principal_id": record.principal_id,
            "token_hash": record.token_hash,
            "issued_at": serialize_datetime(record.issued_at),
            "expires_at": serialize_datetime(record.expires_at),
            "revoked": record.revoked,
            "revoked_at": serialize_datetime(record.revoked_at),
            "replaces_token_id": record.replaces_token_id,
            "replaced_by_token_id": record.replaced_by_token_id,
            "device_info": record.device_info,
        }

    @staticmethod
    def _deserialize_refresh_token(data: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            token_id=data["token_id"],
            principal_id=data["principal_id"],
            token_hash=data["token_hash"],
            issued_at=deserialize_datetime(data["issued_at"]),
            expires_at=deserialize_datetime(data["expires_at"]),
            revoked=bool(data.get("revoked", False)),
            revoked_at=deserialize_datetime(data.get("revoked_at")),
            replaces_token_id=data.get("replaces_token_id"),
            replaced_by_token_id=data.get("replaced_by_token_id"),
            device_info=data.get("device_info"),
        )

    @staticmethod
    def _serialize_session(session: Session) -> dict:
        return {
            "id": session.id,
            "principal_id": session.principal_id,
            "device_fingerprint": session.device_fingerprint,
            "expires_at": serialize_datetime(session.expires_at),
            "status": session.status,
            "is_trusted": session.is_trusted,
            "is_remember_me": session.is_remember_me,
            "created_at": serialize_datetime(session.created_at),
            "last_activity_at": serialize_datetime(session.last_activity_at),
            "ip_address": session.ip_address,
            "user_agent": session.user_agent,
            "device_type": session.device_type,
            "device_name": session.device_name,
            "browser": session.browser,
            "operating_system": session.operating_system,
            "refresh_token_hash": session.refresh_token_hash,
            "revoked_at": serialize_datetime(session.revoked_at),
            "revoked_reason": session.revoked_reason,
            "meta": session.meta,
        }

    @staticmethod
    def _deserialize_session(data: dict) -> Session:
        return Session(
            id=data["id"],
            principal_id=data["principal_id"],
            device_fingerprint=data["device_fingerprint"],
            expires_at=deserialize_datetime(data["expires_at"]),
            status=data.get("status", SessionStatus.ACTIVE.value),
            is_trusted=bool(data.get("is_trusted", False)),
            is_remember_me=bool(data.get("is_remember_me", False)),
            created_at=deserialize_datetime(data["created_at"]),
            last_activity_at=deserialize_datetime(data["last_activity_at"]),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            device_type=data.get("device_type", "unknown"),
            device_name=data.get("device_name"),
            browser=data.get("browser"),
            operating_system=data.get("operating_system"),
            refresh_token_hash=data.get("refresh_token_hash"),
            revoked_at=deserialize_datetime(data.get("revoked_at")),
            revoked_reason=data.get("revoked_reason"),
            meta=data.get("meta"),
        )

    @staticmethod
    def _serialize_permission(permission: Permission) -> dict:
        return {
            "id": permission.id,
            "name": permission.name,
            "resource": permission.resource,
            "action": permission.action,
            "is_system": permission.is_system,
            "description": permission.description,
            "created_at": serialize_datetime(permission.created_at),
        }

    @staticmethod
    def _deserialize_permission(data: dict) -> Permission:
        return Permission(
            id=data["id"],
            name=data["name"],
            resource=data["resource"],
            action=data["action"],
            is_system=bool(data.get("is_system", False)),
            description=data.get("description"),
            created_at=deserialize_datetime(data["created_at"]),
        )

    @staticmethod
    def _serialize_role(role: Role) -> dict:
        return {
            "id": role.id,
            "name": role.name,
            "level": role.level,
            "is_system": role.is_system,
            "permissions": sorted(role.permissions),
            "parent_role_id": role.parent_role_id,
            "description": role.description,
            "tenant_id": role.tenant_id,
            "created_at": serialize_datetime(role.created_at),
            "updated_at": serialize_datetime(role.updated_at),
        }

    @staticmethod
    def _deserialize_role(data: dict) -> Role:
        permissions: Set[str] = set(data.get("permissions") or [])
        return Role(
            id=data["id"],
            name=data["name"],
            level=int(data["level"]),
            is_system=bool(data.get("is_system", False)),
            permissions=permissions,
            parent_role_id=data.get("parent_role_id"),
            description=data.get("description"),
            tenant_id=data.get("tenant_id"),
            created_at=deserialize_datetime(data["created_at"]),
            updated_at=deserialize_datetime(data.get("updated_at")),
        )

    @staticmethod
    def _serialize_security_event(event: SecurityEvent) -> dict:
        return {
            "id": event.id,
            "event_type": event.event_type,
            "severity": event.severity,
            "principal_id": event.principal_id,
            "tenant_id": event.tenant_id,
            "detail": event.detail,
            "created_at": serialize_datetime(event.created_at),
        }

    @staticmethod
    def _deserialize_security_event(data: dict) -> SecurityEvent:
        return SecurityEvent(
            id=data["id"],
            event_type=data["event_type"],
            severity=data["severity"],
            principal_id=data.get("principal_id"),
            tenant_id=data.get("tenant_id"),
            detail=data.get("detail"),
            created_at=deserialize_datetime(data["created_at"]),
        )
