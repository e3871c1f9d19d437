"""Tests for the session registry."""

from datetime import timedelta

import pytest

from accesscore.service.audit import EVENT_SESSION_LIMIT_EVICTION, SecurityAuditLog
from accesscore.service.errors import SessionNotActive, SessionNotFound, ValidationError
from accesscore.service.sessions import (
    SESSION_LIMIT_REASON,
    SessionCreate,
    SessionRegistry,
    detect_device_type,
    generate_fingerprint,
    parse_user_agent,
)
from accesscore.storage.models import Session, SessionStatus

CHROME_MAC = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
)
SAFARI_IPHONE = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)


@pytest.fixture
def principal(store):
    return store.create_principal("device@example.com", tenant_id="t1", status="active")


@pytest.fixture
def registry(store, settings, clock):
    return SessionRegistry(store, settings, audit=SecurityAuditLog(store, clock=clock), clock=clock)


def _dto(principal, ip="10.0.0.1", **kwargs):
    return SessionCreate(principal_id=principal.id, user_agent=CHROME_MAC, ip_address=ip, **kwargs)


class TestCreate:
    def test_new_session_fields(self, registry, principal, clock):
        session = registry.create(_dto(principal))

        assert session.status == SessionStatus.ACTIVE.value
        assert session.device_fingerprint == generate_fingerprint(CHROME_MAC, "10.0.0.1")
        assert session.expires_at == clock.now() + timedelta(hours=24)
        assert session.browser == "Chrome"
        assert session.operating_system == "macOS"
        assert session.device_type == "desktop"

    def test_remember_me_extends_ttl(self, registry, principal, clock):
        session = registry.create(_dto(principal, remember_me=True))

        assert session.is_remember_me
        assert session.expires_at == clock.now() + timedelta(days=30)

    def test_same_fingerprint_reuses_active_session(self, registry, principal, store, clock):
        """A repeat login from the same device updates the existing record."""
        first = registry.create(_dto(principal, refresh_token_hash="h1"))
        clock.advance(minutes=10)
        second = registry.create(_dto(principal, refresh_token_hash="h2"))

        assert second.id == first.id
        assert second.last_activity_at == clock.now()
        assert second.refresh_token_hash == "h2"
        assert len(store.list_sessions(principal.id)) == 1

    def test_stale_match_is_retired(self, registry, principal, store, clock):
        """A matching but expired session is not resurrected."""
        first = registry.create(_dto(principal))
        clock.advance(hours=25)
        second = registry.create(_dto(principal))

        assert second.id != first.id
        assert store.get_session(first.id).status == SessionStatus.EXPIRED.value

    def test_concurrency_cap_evicts_least_recently_active(self, registry, principal, store, clock):
        created = []
        for i in range(5):
            created.append(registry.create(_dto(principal, ip=f"10.0.0.{i}")))
            clock.advance(minutes=1)
        # The oldest-created session is now the most recently active
        registry.touch(created[0].id)
        clock.advance(minutes=1)

        newest = registry.create(_dto(principal, ip="10.0.0.99"))

        active = registry.list_active(principal.id)
        assert len(active) == 5
        assert newest.id in {s.id for s in active}
        evicted = store.get_session(created[1].id)
        assert evicted.status == SessionStatus.REVOKED.value
        assert evicted.revoked_reason == SESSION_LIMIT_REASON
        events = store.list_security_events(event_type=EVENT_SESSION_LIMIT_EVICTION)
        assert [e.detail["session_id"] for e in events] == [created[1].id]

    def test_cap_honours_configured_limit(self, store, settings, clock, principal):
        registry = SessionRegistry(
            store, settings.model_copy(update={"max_concurrent_sessions": 2}), clock=clock
        )
        for i in range(4):
            registry.create(_dto(principal, ip=f"10.1.0.{i}"))
            clock.advance(seconds=1)

        assert len(registry.list_active(principal.id)) == 2


class TestLifecycle:
    def test_get_missing_raises(self, registry):
        with pytest.raises(SessionNotFound):
            registry.get("nope")

    def test_revoke_is_idempotent(self, registry, principal):
        session = registry.create(_dto(principal))

        revoked = registry.revoke(session.id, "manual")
        again = registry.revoke(session.id, "other")

        assert revoked.status == SessionStatus.REVOKED.value
        assert again.revoked_reason == "manual"

    def test_touch_and_extend_require_live_session(self, registry, principal, clock):
        session = registry.create(_dto(principal))
        clock.advance(minutes=5)

        touched = registry.touch(session.id)
        extended = registry.extend(session.id, 60)
        assert touched.last_activity_at == clock.now()
        assert extended.expires_at == session.expires_at + timedelta(minutes=60)

        registry.revoke(session.id)
        with pytest.raises(SessionNotActive):
            registry.touch(session.id)
        with pytest.raises(SessionNotActive):
            registry.extend(session.id, 10)

    def test_extend_rejects_non_positive(self, registry, principal):
        session = registry.create(_dto(principal))

        with pytest.raises(ValidationError):
            registry.extend(session.id, 0)

    def test_expired_session_cannot_be_touched(self, registry, principal, clock):
        session = registry.create(_dto(principal))
        clock.advance(hours=25)

        with pytest.raises(SessionNotActive):
            registry.touch(session.id)

    def test_revoke_all_and_others(self, registry, principal):
        sessions = [registry.create(_dto(principal, ip=f"10.2.0.{i}")) for i in range(3)]

        assert registry.revoke_others(principal.id, sessions[0].id) == 2
        assert [s.id for s in registry.list_active(principal.id)] == [sessions[0].id]
        assert registry.revoke_all(principal.id) == 1
        assert registry.list_active(principal.id) == []

    def test_update_rejects_unknown_fields(self, registry, principal):
        session = registry.create(_dto(principal))

        updated = registry.update(session.id, {"device_name": "Work laptop"})
        assert updated.device_name == "Work laptop"
        with pytest.raises(ValidationError):
            registry.update(session.id, {"status": "active"})

    def test_mark_trusted(self, registry, principal):
        session = registry.create(_dto(principal))

        assert registry.mark_trusted(session.id).is_trusted
        assert not registry.mark_trusted(session.id, False).is_trusted

    def test_update_refused_after_revoke(self, registry, principal, store):
        session = registry.create(_dto(principal))
        registry.revoke(session.id, "manual")

        with pytest.raises(SessionNotActive):
            registry.update(session.id, {"device_name": "Work laptop"})
        assert store.get_session(session.id).device_name is None


def _revoke_before_write(monkeypatch, store, clock):
    """Let a revoke land between the registry's read and its write."""
    write = store.update_live_session

    def racing(session_id, fields):
        store.revoke_session(session_id, "concurrent revoke", clock.now())
        return write(session_id, fields)

    monkeypatch.setattr(store, "update_live_session", racing)


class TestRevokeRaces:
    @pytest.mark.parametrize(
        "mutate",
        [
            lambda registry, sid: registry.touch(sid),
            lambda registry, sid: registry.extend(sid, 30),
            lambda registry, sid: registry.mark_suspicious(sid),
            lambda registry, sid: registry.mark_trusted(sid),
            lambda registry, sid: registry.update(sid, {"device_name": "Phone"}),
        ],
        ids=["touch", "extend", "mark_suspicious", "mark_trusted", "update"],
    )
    def test_mutation_never_revives_revoked_session(
        self, registry, principal, store, clock, monkeypatch, mutate
    ):
        session = registry.create(_dto(principal))
        _revoke_before_write(monkeypatch, store, clock)

        with pytest.raises(SessionNotActive):
            mutate(registry, session.id)

        stored = store.get_session(session.id)
        assert stored.status == SessionStatus.REVOKED.value
        assert stored.revoked_reason == "concurrent revoke"
        assert stored.expires_at == session.expires_at

    def test_repeat_login_after_revoke_starts_new_session(
        self, registry, principal, store, clock, monkeypatch
    ):
        first = registry.create(_dto(principal, refresh_token_hash="h1"))
        _revoke_before_write(monkeypatch, store, clock)

        second = registry.create(_dto(principal, refresh_token_hash="h2"))

        assert second.id != first.id
        assert second.refresh_token_hash == "h2"
        stored = store.get_session(first.id)
        assert stored.status == SessionStatus.REVOKED.value
        assert stored.refresh_token_hash == "h1"


class TestSuspicious:
    def test_suspicious_is_not_terminal(self, registry, principal):
        session = registry.create(_dto(principal))

        flagged = registry.mark_suspicious(session.id)
        assert flagged.status == SessionStatus.SUSPICIOUS.value
        # Still usable until explicitly revoked
        assert registry.touch(session.id).status == SessionStatus.SUSPICIOUS.value
        assert registry.revoke(session.id).status == SessionStatus.REVOKED.value

    def test_detect_ip_change(self, registry, principal):
        session = registry.create(_dto(principal, ip="10.0.0.1"))

        assert registry.detect_suspicious(session.id, "192.168.1.1")
        assert not registry.detect_suspicious(session.id, "10.0.0.1")
        assert registry.get(session.id).status == SessionStatus.ACTIVE.value

    def test_detect_long_inactivity(self, registry, principal, clock):
        session = registry.create(_dto(principal, remember_me=True))
        clock.advance(hours=25)

        assert registry.detect_suspicious(session.id, "10.0.0.1")


class TestSweepAndStats:
    def test_sweep_never_touches_revoked(self, registry, principal, store, clock):
        live = registry.create(_dto(principal, ip="10.3.0.1"))
        flagged = registry.create(_dto(principal, ip="10.3.0.2"))
        registry.mark_suspicious(flagged.id)
        revoked = registry.create(_dto(principal, ip="10.3.0.3"))
        registry.revoke(revoked.id, "manual")
        clock.advance(hours=25)

        assert registry.sweep_expired() == 2
        assert registry.sweep_expired() == 0
        assert store.get_session(live.id).status == SessionStatus.EXPIRED.value
        assert store.get_session(flagged.id).status == SessionStatus.EXPIRED.value
        assert store.get_session(revoked.id).status == SessionStatus.REVOKED.value

    def test_stats(self, registry, principal, clock):
        a = registry.create(_dto(principal, ip="10.4.0.1"))
        registry.create(_dto(principal, ip="10.4.0.2"))
        registry.revoke(a.id)

        stats = registry.stats(principal.id)
        assert stats["total"] == 2
        assert stats["active"] == 1
        assert stats["revoked"] == 1


class TestDeviceParsing:
    def test_parse_user_agent(self):
        assert parse_user_agent(CHROME_MAC) == ("Chrome", "macOS")
        assert parse_user_agent(SAFARI_IPHONE) == ("Safari", "iOS")
        assert parse_user_agent("") == (None, None)

    def test_detect_device_type(self):
        assert detect_device_type(CHROME_MAC) == "desktop"
        assert detect_device_type(SAFARI_IPHONE) == "mobile"
        assert detect_device_type(None) == "unknown"

    def test_fingerprint_depends_on_ip_and_agent(self):
        assert generate_fingerprint("ua", "1.1.1.1") != generate_fingerprint("ua", "1.1.1.2")
        assert generate_fingerprint("ua", "1.1.1.1") == generate_fingerprint("ua", "1.1.1.1")


class TestStatusChecks:
    @pytest.mark.parametrize(
        "status,active,usable",
        [
            ("active", True, True),
            ("suspicious", False, True),
            ("expired", False, False),
            ("revoked", False, False),
        ],
    )
    def test_stored_status_strings(self, clock, status, active, usable):
        session = Session(
            id="s-1",
            principal_id="p-1",
            device_fingerprint="fp",
            expires_at=clock.now() + timedelta(hours=1),
            status=status,
        )

        assert session.is_active(clock.now()) is active
        assert session.is_usable(clock.now()) is usable
        assert session.is_usable(clock.now() + timedelta(hours=2)) is False
