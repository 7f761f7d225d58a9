"""Tests for the in-memory durable store and its on-disk mirror."""

from datetime import datetime, timedelta, timezone

import pytest

from admingate.storage.errors import StorageUnavailable
from admingate.storage.memory import MemoryStore
from admingate.storage.models import AdminIdentity, AuditEvent, Session, SessionMetadata

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def make_session(user_id="admin-1", *, created=NOW, expires_in=timedelta(hours=12), token="t1"):
    return Session(
        id=Session.new_id(),
        user_id=user_id,
        access_token=token,
        refresh_token=f"r-{token}",
        expires_at=created + expires_in,
        metadata=SessionMetadata(
            user_agent="ua",
            network_origin="8.8.8.8",
            fingerprint_hash="a" * 64,
            created_at=created,
            last_activity_at=created,
            device_class="mac",
        ),
    )


class TestIdentityDirectory:
    def test_upsert_and_lookup(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        store.upsert_user(AdminIdentity(id="u1", email="Root@Example.com"))

        assert store.lookup_user("u1").email == "Root@Example.com"
        assert store.get_user_by_email("root@example.com").id == "u1"
        assert store.lookup_user("missing") is None

    def test_lookup_returns_copy(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        store.upsert_user(AdminIdentity(id="u1", email="a@example.com"))

        fetched = store.lookup_user("u1")
        fetched.is_banned = True

        assert store.lookup_user("u1").is_banned is False

    def test_eligibility(self):
        assert AdminIdentity(id="u", email="e").is_eligible()
        assert not AdminIdentity(id="u", email="e", role="user").is_eligible()
        assert not AdminIdentity(id="u", email="e", is_active=False).is_eligible()
        assert not AdminIdentity(id="u", email="e", is_banned=True).is_eligible()


class TestSessionRecords:
    def test_upsert_keeps_later_expiry(self, tmp_path):
        """A stale writer cannot shorten a session or swap its tokens back."""
        store = MemoryStore(fs_root=str(tmp_path))
        session = make_session(token="old")
        store.upsert_session(session)

        refreshed = session.copy()
        refreshed.expires_at = session.expires_at + timedelta(hours=1)
        refreshed.access_token = "new"
        store.upsert_session(refreshed)
        merged = store.upsert_session(session)

        assert merged.expires_at == refreshed.expires_at
        assert merged.access_token == "new"

    def test_upsert_never_reactivates(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        session = make_session()
        store.upsert_session(session)
        store.deactivate_session(session.id, NOW)

        merged = store.upsert_session(session)

        assert merged.is_valid is False

    def test_touch_ignores_inactive(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        session = make_session()
        store.upsert_session(session)

        assert store.touch_session(session.id, NOW + timedelta(minutes=1), "1.1.1.1")
        assert store.get_session(session.id).metadata.network_origin == "1.1.1.1"
        store.deactivate_session(session.id, NOW)
        assert store.touch_session(session.id, NOW + timedelta(minutes=2)) is False

    def test_deactivate_reports_prior_state(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        session = make_session()
        store.upsert_session(session)

        assert store.deactivate_session(session.id, NOW) is True
        assert store.deactivate_session(session.id, NOW) is False
        assert store.deactivate_session("missing", NOW) is False

    def test_deactivate_user_sessions_spares_current(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        keep, drop_a, drop_b = make_session(), make_session(), make_session()
        other = make_session(user_id="someone-else")
        for s in (keep, drop_a, drop_b, other):
            store.upsert_session(s)

        revoked = store.deactivate_user_sessions("admin-1", NOW, except_session_id=keep.id)

        assert sorted(revoked) == sorted([drop_a.id, drop_b.id])
        assert store.get_session(keep.id).is_valid
        assert store.get_session(other.id).is_valid

    def test_expire_sessions(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        expired = make_session(expires_in=timedelta(minutes=1))
        live = make_session()
        store.upsert_session(expired)
        store.upsert_session(live)

        assert store.expire_sessions(NOW + timedelta(minutes=2)) == 1
        assert store.get_session(expired.id).is_valid is False
        assert store.get_session(live.id).is_valid is True

    def test_list_user_sessions_oldest_first(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        newer = make_session(created=NOW + timedelta(minutes=5))
        older = make_session(created=NOW)
        revoked = make_session()
        for s in (newer, older, revoked):
            store.upsert_session(s)
        store.deactivate_session(revoked.id, NOW)

        listed = store.list_user_sessions("admin-1", NOW + timedelta(minutes=10))

        assert [s.id for s in listed] == [older.id, newer.id]


class TestPersistence:
    def test_state_survives_restart(self, tmp_path):
        """A second store over the same root sees sessions, users and audit events."""
        store = MemoryStore(fs_root=str(tmp_path))
        store.upsert_user(AdminIdentity(id="u1", email="a@example.com", created_at=NOW))
        session = make_session(user_id="u1")
        store.upsert_session(session)
        store.append_audit_event(
            AuditEvent(actor="u1", action="SESSION_CREATED", success=True, timestamp=NOW)
        )

        reloaded = MemoryStore(fs_root=str(tmp_path))

        restored = reloaded.get_session(session.id)
        assert restored.access_token == session.access_token
        assert restored.expires_at == session.expires_at
        assert restored.metadata.device_class == "mac"
        assert reloaded.lookup_user("u1").email == "a@example.com"
        assert reloaded.list_audit_events()[0].action == "SESSION_CREATED"

    def test_write_failure_raises_storage_unavailable(self, tmp_path, monkeypatch):
        store = MemoryStore(fs_root=str(tmp_path))

        def boom(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr("pathlib.Path.write_text", boom)
        with pytest.raises(StorageUnavailable):
            store.upsert_session(make_session())

    def test_failed_write_leaves_records_untouched(self, tmp_path, monkeypatch):
        """State in memory only changes once the state file has been written."""
        store = MemoryStore(fs_root=str(tmp_path))
        kept = make_session()
        store.upsert_session(kept)

        def boom(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr("pathlib.Path.write_text", boom)
        fresh = make_session(token="t2")
        with pytest.raises(StorageUnavailable):
            store.upsert_session(fresh)
        with pytest.raises(StorageUnavailable):
            store.deactivate_session(kept.id, NOW)
        with pytest.raises(StorageUnavailable):
            store.touch_session(kept.id, NOW + timedelta(minutes=5))
        with pytest.raises(StorageUnavailable):
            store.append_audit_event(AuditEvent(actor="u1", action="X", success=True))

        assert store.get_session(fresh.id) is None
        assert store.get_session(kept.id).is_valid is True
        assert store.get_session(kept.id).metadata.last_activity_at == NOW
        assert store.list_audit_events() == []

    def test_corrupt_state_file_starts_empty(self, tmp_path):
        state = tmp_path / "state"
        state.mkdir()
        (state / "admin_store.json").write_text("{not json")

        store = MemoryStore(fs_root=str(tmp_path))

        assert store.sessions == {}


class TestAuditLog:
    def test_filters_and_pagination(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        for minute in range(5):
            store.append_audit_event(
                AuditEvent(
                    actor="u1" if minute % 2 == 0 else "u2",
                    action="SESSION_CREATED",
                    success=minute != 4,
                    timestamp=NOW + timedelta(minutes=minute),
                )
            )

        newest_first = store.list_audit_events()
        assert [e.timestamp for e in newest_first] == sorted(
            (e.timestamp for e in newest_first), reverse=True
        )
        assert len(store.list_audit_events(actor="u1")) == 3
        assert len(store.list_audit_events(success=False)) == 1
        page = store.list_audit_events(limit=2, offset=1)
        assert [e.timestamp for e in page] == [
            NOW + timedelta(minutes=3),
            NOW + timedelta(minutes=2),
        ]
