from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from accesscore.logging import get_logger
from accesscore.storage.common import build_mfa_cipher, encrypt_secret
from accesscore.storage.errors import ConstraintViolation
from accesscore.storage.models import RefreshTokenRecord
from accesscore.storage.postgres import PostgresStore

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self._rows = list(rows or [])
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    """Records statements and replays scripted cursors in order."""

    def __init__(self, results=None, fail_on=None):
        self.results = list(results or [])
        self.fail_on = fail_on or {}
        self.statements = []
        self.transactions = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    @contextmanager
    def transaction(self):
        self.transactions += 1
        yield

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        for fragment, exc in self.fail_on.items():
            if fragment in sql:
                raise exc
        if self.results:
            return self.results.pop(0)
        return FakeCursor()


class FakePool:
    def __init__(self, conn):
        self.conn = conn
        self.closed = False

    def connection(self):
        return self.conn

    def close(self):
        self.closed = True


def _store(tmp_path, conn):
    store = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unused"
    store.fs_root = tmp_path
    store.logger = get_logger("test")
    store._mfa_cipher = build_mfa_cipher("unit-test-key", tmp_path)
    store.pool = FakePool(conn)
    return store


def _record(token_id="new-token"):
    return RefreshTokenRecord(
        token_id=token_id,
        principal_id="p-1",
        token_hash="hash",
        issued_at=NOW,
        expires_at=NOW + timedelta(days=1),
    )


def test_rotation_stops_when_compare_and_swap_loses(tmp_path):
    conn = FakeConnection(results=[FakeCursor(rows=[])])
    store = _store(tmp_path, conn)

    assert store.rotate_refresh_token("old-token", _record(), NOW) is False
    assert conn.transactions == 1
    assert len(conn.statements) == 1
    sql, params = conn.statements[0]
    assert "revoked = FALSE" in sql
    assert params == (NOW, "new-token", "old-token")


def test_rotation_inserts_successor_inside_transaction(tmp_path):
    conn = FakeConnection(results=[FakeCursor(rows=[{"token_id": "old-token"}])])
    store = _store(tmp_path, conn)
    record = _record()

    assert store.rotate_refresh_token("old-token", record, NOW) is True
    assert conn.transactions == 1
    assert record.replaces_token_id == "old-token"
    insert_sql, insert_params = conn.statements[1]
    assert insert_sql.startswith("INSERT INTO refresh_token")
    assert insert_params[0] == "new-token"
    assert insert_params[7] == "old-token"


def test_rotation_maps_duplicate_token_id(tmp_path):
    conn = FakeConnection(
        results=[FakeCursor(rows=[{"token_id": "old-token"}])],
        fail_on={"INSERT INTO refresh_token": errors.UniqueViolation("duplicate")},
    )
    store = _store(tmp_path, conn)

    with pytest.raises(ConstraintViolation) as excinfo:
        store.rotate_refresh_token("old-token", _record(), NOW)
    assert excinfo.value.field == "token_id"


def test_duplicate_email_maps_to_constraint_violation(tmp_path):
    conn = FakeConnection(fail_on={"INSERT INTO principal": errors.UniqueViolation("dup")})
    store = _store(tmp_path, conn)

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_principal("User@Example.com")
    assert excinfo.value.field == "email"
    _, params = conn.statements[0]
    assert params[1] == "user@example.com"


def test_backup_code_consumed_only_when_present(tmp_path):
    conn = FakeConnection(results=[FakeCursor(rows=[{"id": "p-1"}]), FakeCursor(rows=[])])
    store = _store(tmp_path, conn)

    assert store.consume_backup_code("p-1", "digest") is True
    assert store.consume_backup_code("p-1", "digest") is False
    sql, params = conn.statements[0]
    assert "array_remove" in sql
    assert params == ("digest", "p-1", "digest")


def test_mfa_failure_counter_returns_attempts(tmp_path):
    conn = FakeConnection(results=[FakeCursor(rows=[{"attempts": 3}])])
    store = _store(tmp_path, conn)

    window = timedelta(minutes=15)
    assert store.record_mfa_failure("p-1", NOW, window) == 3
    _, params = conn.statements[0]
    assert params == ("p-1", NOW, NOW - window, NOW - window)


def test_bulk_updates_report_rowcount(tmp_path):
    conn = FakeConnection(
        results=[FakeCursor(rowcount=4), FakeCursor(rowcount=-1), FakeCursor(rowcount=2)]
    )
    store = _store(tmp_path, conn)

    assert store.revoke_principal_refresh_tokens("p-1", NOW) == 4
    assert store.delete_expired_refresh_tokens(NOW) == 0
    assert store.expire_sessions(NOW) == 2


def test_principal_rows_decrypt_mfa_secret(tmp_path):
    store = _store(tmp_path, FakeConnection())
    row = {
        "id": "p-1",
        "email": "user@example.com",
        "tenant_id": "t-1",
        "status": "active",
        "mfa_enabled": True,
        "mfa_secret": encrypt_secret(store._mfa_cipher, "JBSWY3DPEHPK3PXP"),
        "backup_codes": ["a", "b"],
        "created_at": NOW,
    }
    conn = FakeConnection(results=[FakeCursor(rows=[row])])
    store.pool = FakePool(conn)

    principal = store.get_principal("p-1")

    assert principal.mfa_secret == "JBSWY3DPEHPK3PXP"
    assert principal.backup_codes == ["a", "b"]
    assert principal.tenant_id == "t-1"


def test_close_releases_pool(tmp_path):
    store = _store(tmp_path, FakeConnection())
    store.close()
    assert store.pool.closed is True


def test_session_update_is_guarded_by_live_status(tmp_path):
    conn = FakeConnection(results=[FakeCursor(rows=[])])
    store = _store(tmp_path, conn)

    assert store.update_live_session("s-1", {"last_activity_at": NOW}) is None
    sql, params = conn.statements[0]
    assert sql == (
        "UPDATE auth_session SET last_activity_at = %s "
        "WHERE id = %s AND status = ANY(%s) RETURNING *"
    )
    assert params == (NOW, "s-1", ["active", "suspicious"])


def test_session_update_encodes_meta(tmp_path):
    conn = FakeConnection(results=[FakeCursor(rows=[])])
    store = _store(tmp_path, conn)

    store.update_live_session("s-1", {"meta": {"mfa_verified": True}, "is_trusted": True})

    sql, params = conn.statements[0]
    assert "SET is_trusted = %s, meta = %s WHERE" in sql
    assert params[:2] == (True, '{"mfa_verified": true}')


def test_session_update_rejects_unlisted_columns(tmp_path):
    conn = FakeConnection()
    store = _store(tmp_path, conn)

    with pytest.raises(ConstraintViolation):
        store.update_live_session("s-1", {"revoked_at = NULL, status": "active"})
    assert conn.statements == []
