from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from accesscore.logging import get_logger
from accesscore.storage.common import build_mfa_cipher, decrypt_secret, encrypt_secret
from accesscore.storage.errors import ConstraintViolation
from accesscore.storage.models import (
    SESSION_MUTABLE_FIELDS,
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

_SCHEMA_STATEMENTS: Tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS principal (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        tenant_id TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        mfa_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        mfa_secret TEXT,
        backup_codes TEXT[] NOT NULL DEFAULT '{}',
        meta JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS principal_credential (
        principal_id TEXT PRIMARY KEY REFERENCES principal(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS mfa_attempt (
        principal_id TEXT PRIMARY KEY REFERENCES principal(id) ON DELETE CASCADE,
        attempts INTEGER NOT NULL,
        window_started_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        token_id TEXT PRIMARY KEY,
        principal_id TEXT NOT NULL REFERENCES principal(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        replaces_token_id TEXT,
        replaced_by_token_id TEXT,
        device_info JSONB
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_principal_idx ON refresh_token (principal_id)",
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        principal_id TEXT NOT NULL REFERENCES principal(id) ON DELETE CASCADE,
        device_fingerprint TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        status TEXT NOT NULL DEFAULT 'active',
        is_trusted BOOLEAN NOT NULL DEFAULT FALSE,
        is_remember_me BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL,
        last_activity_at TIMESTAMPTZ NOT NULL,
        ip_address TEXT,
        user_agent TEXT,
        device_type TEXT NOT NULL DEFAULT 'unknown',
        device_name TEXT,
        browser TEXT,
        operating_system TEXT,
        refresh_token_hash TEXT,
        revoked_at TIMESTAMPTZ,
        revoked_reason TEXT,
        meta JSONB
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_principal_idx ON auth_session (principal_id, status)",
    """
    CREATE TABLE IF NOT EXISTS permission (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        resource TEXT NOT NULL,
        action TEXT NOT NULL,
        is_system BOOLEAN NOT NULL DEFAULT FALSE,
        description TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        level INTEGER NOT NULL,
        is_system BOOLEAN NOT NULL DEFAULT FALSE,
        parent_role_id TEXT REFERENCES role(id),
        description TEXT,
        tenant_id TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role_permission (
        role_id TEXT NOT NULL REFERENCES role(id) ON DELETE CASCADE,
        permission_name TEXT NOT NULL REFERENCES permission(name) ON DELETE CASCADE,
        PRIMARY KEY (role_id, permission_name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role_assignment (
        principal_id TEXT NOT NULL REFERENCES principal(id) ON DELETE CASCADE,
        role_id TEXT NOT NULL REFERENCES role(id),
        assigned_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        assigned_by TEXT,
        PRIMARY KEY (principal_id, role_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS security_event (
        id TEXT PRIMARY KEY,
        event_type TEXT NOT NULL,
        severity TEXT NOT NULL,
        principal_id TEXT,
        tenant_id TEXT,
        detail JSONB,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
)

_LIVE_SESSION_STATUSES = [SessionStatus.ACTIVE.value, SessionStatus.SUSPICIOUS.value]


class PostgresStore:
    """Postgres-backed store; same surface as :class:`MemoryStore`.

    Compare-and-swap operations are single conditional statements (or one
    transaction) so concurrent workers cannot both win a rotation.
    """

    def __init__(
        self, dsn: str, fs_root: str, *, mfa_encryption_key: str | None = None
    ) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self._mfa_cipher = build_mfa_cipher(mfa_encryption_key, self.fs_root)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

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
        principal = Principal(
            id=principal_id or str(uuid.uuid4()),
            email=email.strip().lower(),
            tenant_id=tenant_id,
            status=PrincipalStatus(status).value,
            meta=dict(meta) if meta else {},
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO principal (id, email, tenant_id, status, meta, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        principal.id,
                        principal.email,
                        principal.tenant_id,
                        principal.status,
                        json.dumps(principal.meta) if principal.meta else None,
                        principal.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return principal

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM principal WHERE id = %s", (principal_id,)
            ).fetchone()
        return self._principal_from_row(row) if row else None

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM principal WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._principal_from_row(row) if row else None

    def list_principals(
        self, tenant_id: Optional[str] = None, limit: int = 100
    ) -> List[Principal]:
        with self._connect() as conn:
            if tenant_id is None:
                rows = conn.execute(
                    "SELECT * FROM principal ORDER BY created_at DESC LIMIT %s", (limit,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM principal WHERE tenant_id = %s ORDER BY created_at DESC LIMIT %s",
                    (tenant_id, limit),
                ).fetchall()
        return [self._principal_from_row(row) for row in rows]

    def update_principal_status(
        self, principal_id: str, status: str, *, now: Optional[datetime] = None
    ) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE principal SET status = %s, updated_at = COALESCE(%s, now()) WHERE id = %s RETURNING *",
                (PrincipalStatus(status).value, now, principal_id),
            ).fetchone()
        return self._principal_from_row(row) if row else None

    def save_password(
        self, principal_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO principal_credential (principal_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (principal_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (principal_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "principal not found for credentials", {"principal_id": principal_id}
            )

    def get_password_record(self, principal_id: str) -> Optional[Tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM principal_credential WHERE principal_id = %s",
                (principal_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # mfa
    def set_mfa_state(
        self,
        principal_id: str,
        *,
        secret: Optional[str],
        enabled: bool,
        backup_codes: Optional[List[str]] = None,
    ) -> Principal:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE principal
                SET mfa_secret = %s,
                    mfa_enabled = %s,
                    backup_codes = COALESCE(%s, backup_codes),
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (
                    encrypt_secret(self._mfa_cipher, secret),
                    enabled,
                    list(backup_codes) if backup_codes is not None else None,
                    principal_id,
                ),
            ).fetchone()
        if not row:
            raise ConstraintViolation("principal not found for mfa", {"principal_id": principal_id})
        return self._principal_from_row(row)

    def replace_backup_codes(self, principal_id: str, code_digests: List[str]) -> None:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE principal SET backup_codes = %s WHERE id = %s RETURNING id",
                (list(code_digests), principal_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation("principal not found for mfa", {"principal_id": principal_id})

    def consume_backup_code(self, principal_id: str, code_digest: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE principal
                SET backup_codes = array_remove(backup_codes, %s)
                WHERE id = %s AND %s = ANY(backup_codes)
                RETURNING id
                """,
                (code_digest, principal_id, code_digest),
            ).fetchone()
        return row is not None

    def record_mfa_failure(
        self, principal_id: str, now: datetime, window: timedelta
    ) -> int:
        cutoff = now - window
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO mfa_attempt (principal_id, attempts, window_started_at)
                VALUES (%s, 1, %s)
                ON CONFLICT (principal_id) DO UPDATE SET
                    attempts = CASE WHEN mfa_attempt.window_started_at <= %s
                        THEN 1 ELSE mfa_attempt.attempts + 1 END,
                    window_started_at = CASE WHEN mfa_attempt.window_started_at <= %s
                        THEN EXCLUDED.window_started_at ELSE mfa_attempt.window_started_at END
                RETURNING attempts
                """,
                (principal_id, now, cutoff, cutoff),
            ).fetchone()
        return int(row["attempts"])

    def get_mfa_attempts(
        self, principal_id: str, now: datetime, window: timedelta
    ) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT attempts FROM mfa_attempt WHERE principal_id = %s AND window_started_at > %s",
                (principal_id, now - window),
            ).fetchone()
        return int(row["attempts"]) if row else 0

    def clear_mfa_attempts(self, principal_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM mfa_attempt WHERE principal_id = %s", (principal_id,))

    # refresh tokens
    def insert_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        try:
            with self._connect() as conn:
                self._insert_refresh_token_row(conn, record)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "refresh token principal missing", {"principal_id": record.principal_id}
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("token id already exists", {"field": "token_id"})
        return record

    @staticmethod
    def _insert_refresh_token_row(conn, record: RefreshTokenRecord) -> None:
        conn.execute(
            """
            INSERT INTO refresh_token (
                token_id, principal_id, token_hash, issued_at, expires_at,
                revoked, revoked_at, replaces_token_id, replaced_by_token_id, device_info
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                record.token_id,
                record.principal_id,
                record.token_hash,
                record.issued_at,
                record.expires_at,
                record.revoked,
                record.revoked_at,
                record.replaces_token_id,
                record.replaced_by_token_id,
                json.dumps(record.device_info) if record.device_info else None,
            ),
        )

    def get_refresh_token(self, token_id: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_id = %s", (token_id,)
            ).fetchone()
        return self._refresh_token_from_row(row) if row else None

    def rotate_refresh_token(
        self, old_token_id: str, new_record: RefreshTokenRecord, now: datetime
    ) -> bool:
        new_record.replaces_token_id = old_token_id
        try:
            with self._connect() as conn, conn.transaction():
                won = conn.execute(
                    """
                    UPDATE refresh_token
                    SET revoked = TRUE, revoked_at = %s, replaced_by_token_id = %s
                    WHERE token_id = %s AND revoked = FALSE
                    RETURNING token_id
                    """,
                    (now, new_record.token_id, old_token_id),
                ).fetchone()
                if not won:
                    return False
                self._insert_refresh_token_row(conn, new_record)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "refresh token principal missing", {"principal_id": new_record.principal_id}
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("token id already exists", {"field": "token_id"})
        return True

    def revoke_refresh_token(self, token_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE, revoked_at = %s WHERE token_id = %s AND revoked = FALSE RETURNING token_id",
                (now, token_id),
            ).fetchone()
        return row is not None

    def revoke_principal_refresh_tokens(self, principal_id: str, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE, revoked_at = %s WHERE principal_id = %s AND revoked = FALSE",
                (now, principal_id),
            )
            return max(cur.rowcount, 0)

    def list_refresh_tokens(self, principal_id: str) -> List[RefreshTokenRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_token WHERE principal_id = %s ORDER BY issued_at DESC",
                (principal_id,),
            ).fetchall()
        return [self._refresh_token_from_row(row) for row in rows]

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_token WHERE expires_at < %s", (now,))
            return max(cur.rowcount, 0)

    # sessions
    def insert_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (
                        id, principal_id, device_fingerprint, expires_at, status, is_trusted,
                        is_remember_me, created_at, last_activity_at, ip_address, user_agent,
                        device_type, device_name, browser, operating_system, refresh_token_hash,
                        revoked_at, revoked_reason, meta
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.principal_id,
                        session.device_fingerprint,
                        session.expires_at,
                        session.status,
                        session.is_trusted,
                        session.is_remember_me,
                        session.created_at,
                        session.last_activity_at,
                        session.ip_address,
                        session.user_agent,
                        session.device_type,
                        session.device_name,
                        session.browser,
                        session.operating_system,
                        session.refresh_token_hash,
                        session.revoked_at,
                        session.revoked_reason,
                        json.dumps(session.meta) if session.meta else None,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "session principal missing", {"principal_id": session.principal_id}
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("session id already exists", {"field": "id"})
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_sessions(self, principal_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_session WHERE principal_id = %s ORDER BY last_activity_at DESC",
                (principal_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def find_session_by_fingerprint(
        self,
        principal_id: str,
        fingerprint: str,
        status: str = SessionStatus.ACTIVE.value,
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE principal_id = %s AND device_fingerprint = %s AND status = %s
                ORDER BY last_activity_at DESC
                LIMIT 1
                """,
                (principal_id, fingerprint, status),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def update_live_session(
        self, session_id: str, fields: Dict[str, Any]
    ) -> Optional[Session]:
        unknown = set(fields) - SESSION_MUTABLE_FIELDS
        if unknown:
            raise ConstraintViolation("session fields not writable", {"fields": sorted(unknown)})
        if not fields:
            session = self.get_session(session_id)
            if session is None or session.status not in _LIVE_SESSION_STATUSES:
                return None
            return session
        # Column names come from SESSION_MUTABLE_FIELDS only
        columns = sorted(fields)
        assignments = ", ".join(f"{column} = %s" for column in columns)
        values: List[Any] = []
        for column in columns:
            value = fields[column]
            if column == "meta":
                value = json.dumps(value) if value else None
            values.append(value)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE auth_session SET {assignments} "
                "WHERE id = %s AND status = ANY(%s) RETURNING *",
                (*values, session_id, _LIVE_SESSION_STATUSES),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def revoke_session(
        self, session_id: str, reason: Optional[str], now: datetime
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session
                SET status = %s, revoked_at = %s, revoked_reason = %s
                WHERE id = %s AND status = ANY(%s)
                RETURNING *
                """,
                (SessionStatus.REVOKED.value, now, reason, session_id, _LIVE_SESSION_STATUSES),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def expire_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_session SET status = %s WHERE status = ANY(%s) AND expires_at < %s",
                (SessionStatus.EXPIRED.value, _LIVE_SESSION_STATUSES, now),
            )
            return max(cur.rowcount, 0)

    # rbac
    def insert_permission(self, permission: Permission) -> Permission:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO permission (id, name, resource, action, is_system, description, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        permission.id,
                        permission.name,
                        permission.resource,
                        permission.action,
                        permission.is_system,
                        permission.description,
                        permission.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("permission already exists", {"field": "name"})
        return permission

    def get_permission_by_name(self, name: str) -> Optional[Permission]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM permission WHERE name = %s", (name,)
            ).fetchone()
        return self._permission_from_row(row) if row else None

    def list_permissions(self, resource: Optional[str] = None) -> List[Permission]:
        with self._connect() as conn:
            if resource is None:
                rows = conn.execute("SELECT * FROM permission ORDER BY name").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM permission WHERE resource = %s ORDER BY name", (resource,)
                ).fetchall()
        return [self._permission_from_row(row) for row in rows]

    def delete_permission(self, name: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM permission WHERE name = %s", (name,))
            return cur.rowcount > 0

    def insert_role(self, role: Role) -> Role:
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(
                    """
                    INSERT INTO role (id, name, level, is_system, parent_role_id, description, tenant_id, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        role.id,
                        role.name,
                        role.level,
                        role.is_system,
                        role.parent_role_id,
                        role.description,
                        role.tenant_id,
                        role.created_at,
                    ),
                )
                self._insert_role_permission_rows(conn, role.id, role.permissions)
        except errors.UniqueViolation:
            raise ConstraintViolation("role name already exists", {"field": "name"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("role reference missing", {"field": "parent_role_id"})
        return role

    @staticmethod
    def _insert_role_permission_rows(conn, role_id: str, names: Iterable[str]) -> int:
        added = 0
        for name in sorted(set(names)):
            cur = conn.execute(
                "INSERT INTO role_permission (role_id, permission_name) VALUES (%s, %s) ON CONFLICT DO NOTHING",
                (role_id, name),
            )
            added += max(cur.rowcount, 0)
        return added

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE id = %s", (role_id,)).fetchone()
            if not row:
                return None
            return self._roles_with_permissions(conn, [row])[0]

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE name = %s", (name,)).fetchone()
            if not row:
                return None
            return self._roles_with_permissions(conn, [row])[0]

    def list_roles(self) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM role ORDER BY level, name").fetchall()
            return self._roles_with_permissions(conn, rows)

    def save_role(self, role: Role) -> Role:
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    UPDATE role SET name = %s, level = %s, parent_role_id = %s,
                        description = %s, tenant_id = %s, updated_at = now()
                    WHERE id = %s
                    RETURNING id
                    """,
                    (
                        role.name,
                        role.level,
                        role.parent_role_id,
                        role.description,
                        role.tenant_id,
                        role.id,
                    ),
                ).fetchone()
                if not row:
                    raise ConstraintViolation("role not found", {"role_id": role.id})
                conn.execute("DELETE FROM role_permission WHERE role_id = %s", (role.id,))
                self._insert_role_permission_rows(conn, role.id, role.permissions)
        except errors.UniqueViolation:
            raise ConstraintViolation("role name already exists", {"field": "name"})
        return role

    def delete_role(self, role_id: str) -> bool:
        try:
            with self._connect() as conn:
                cur = conn.execute("DELETE FROM role WHERE id = %s", (role_id,))
                return cur.rowcount > 0
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("role still referenced", {"role_id": role_id})

    def add_role_permissions(self, role_id: str, names: Iterable[str]) -> int:
        try:
            with self._connect() as conn, conn.transaction():
                return self._insert_role_permission_rows(conn, role_id, names)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("unknown permissions", {"field": "permissions"})

    def remove_role_permissions(self, role_id: str, names: Iterable[str]) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM role_permission WHERE role_id = %s AND permission_name = ANY(%s)",
                (role_id, list(names)),
            )
            return max(cur.rowcount, 0)

    def assign_role(self, assignment: RoleAssignment) -> RoleAssignment:
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO role_assignment (principal_id, role_id, assigned_at, assigned_by) VALUES (%s, %s, %s, %s)",
                    (
                        assignment.principal_id,
                        assignment.role_id,
                        assignment.assigned_at,
                        assignment.assigned_by,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("role already assigned", {"field": "assignment"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "assignment reference missing",
                {"principal_id": assignment.principal_id, "role_id": assignment.role_id},
            )
        return assignment

    def unassign_role(self, principal_id: str, role_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM role_assignment WHERE principal_id = %s AND role_id = %s",
                (principal_id, role_id),
            )
            return cur.rowcount > 0

    def list_principal_roles(self, principal_id: str) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT r.* FROM role_assignment a JOIN role r ON r.id = a.role_id
                WHERE a.principal_id = %s
                ORDER BY r.level, r.name
                """,
                (principal_id,),
            ).fetchall()
            return self._roles_with_permissions(conn, rows)

    def count_role_assignments(self, role_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM role_assignment WHERE role_id = %s", (role_id,)
            ).fetchone()
        return int(row["n"]) if row else 0

    # security events
    def append_security_event(self, event: SecurityEvent) -> SecurityEvent:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO security_event (id, event_type, severity, principal_id, tenant_id, detail, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.event_type,
                    event.severity,
                    event.principal_id,
                    event.tenant_id,
                    json.dumps(event.detail) if event.detail else None,
                    event.created_at,
                ),
            )
        return event

    def list_security_events(
        self,
        *,
        principal_id: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[SecurityEvent]:
        clauses: List[str] = []
        params: List[Any] = []
        if principal_id is not None:
            clauses.append("principal_id = %s")
            params.append(principal_id)
        if event_type is not None:
            clauses.append("event_type = %s")
            params.append(event_type)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM security_event {where} ORDER BY created_at DESC LIMIT %s",
                tuple(params),
            ).fetchall()
        return [self._security_event_from_row(row) for row in rows]

    # row mapping
    def _principal_from_row(self, row: Dict[str, Any]) -> Principal:
        return Principal(
            id=str(row["id"]),
            email=row["email"],
            tenant_id=row.get("tenant_id"),
            status=row.get("status", PrincipalStatus.PENDING.value),
            mfa_enabled=bool(row.get("mfa_enabled", False)),
            mfa_secret=decrypt_secret(self._mfa_cipher, row.get("mfa_secret")),
            backup_codes=list(row.get("backup_codes") or []),
            created_at=row["created_at"],
            updated_at=row.get("updated_at"),
            meta=row.get("meta"),
        )

    @staticmethod
    def _refresh_token_from_row(row: Dict[str, Any]) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            token_id=row["token_id"],
            principal_id=str(row["principal_id"]),
            token_hash=row["token_hash"],
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            revoked=bool(row.get("revoked", False)),
            revoked_at=row.get("revoked_at"),
            replaces_token_id=row.get("replaces_token_id"),
            replaced_by_token_id=row.get("replaced_by_token_id"),
            device_info=row.get("device_info"),
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            principal_id=str(row["principal_id"]),
            device_fingerprint=row["device_fingerprint"],
            expires_at=row["expires_at"],
            status=row.get("status", SessionStatus.ACTIVE.value),
            is_trusted=bool(row.get("is_trusted", False)),
            is_remember_me=bool(row.get("is_remember_me", False)),
            created_at=row["created_at"],
            last_activity_at=row["last_activity_at"],
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            device_type=row.get("device_type") or "unknown",
            device_name=row.get("device_name"),
            browser=row.get("browser"),
            operating_system=row.get("operating_system"),
            refresh_token_hash=row.get("refresh_token_hash"),
            revoked_at=row.get("revoked_at"),
            revoked_reason=row.get("revoked_reason"),
            meta=row.get("meta"),
        )

    @staticmethod
    def _permission_from_row(row: Dict[str, Any]) -> Permission:
        return Permission(
            id=str(row["id"]),
            name=row["name"],
            resource=row["resource"],
            action=row["action"],
            is_system=bool(row.get("is_system", False)),
            description=row.get("description"),
            created_at=row["created_at"],
        )

    def _roles_with_permissions(self, conn, rows: Sequence[Dict[str, Any]]) -> List[Role]:
        if not rows:
            return []
        role_ids = [str(row["id"]) for row in rows]
        grants = conn.execute(
            "SELECT role_id, permission_name FROM role_permission WHERE role_id = ANY(%s)",
            (role_ids,),
        ).fetchall()
        by_role: Dict[str, set] = {role_id: set() for role_id in role_ids}
        for grant in grants:
            by_role.setdefault(str(grant["role_id"]), set()).add(grant["permission_name"])
        return [
            Role(
                id=str(row["id"]),
                name=row["name"],
                level=int(row["level"]),
                is_system=bool(row.get("is_system", False)),
                permissions=by_role.get(str(row["id"]), set()),
                parent_role_id=row.get("parent_role_id"),
                description=row.get("description"),
                tenant_id=row.get("tenant_id"),
                created_at=row["created_at"],
                updated_at=row.get("updated_at"),
            )
            for row in rows
        ]

    @staticmethod
    def _security_event_from_row(row: Dict[str, Any]) -> SecurityEvent:
        return SecurityEvent(
            id=str(row["id"]),
            event_type=row["event_type"],
            severity=row["severity"],
            principal_id=row.get("principal_id"),
            tenant_id=row.get("tenant_id"),
            detail=row.get("detail"),
            created_at=row["created_at"],
        )
