"""Tests for the cache/durable coordination layer."""

from datetime import timedelta

import pytest

from admingate.service.errors import PersistenceDegraded
from admingate.service.session_store import Criticality, SessionStore
from admingate.storage.errors import StorageUnavailable
from admingate.storage.memory import MemoryStore
from admingate.storage.models import AdminIdentity, Session, SessionMetadata
from admingate.storage.session_cache import SessionCache


class FlakyStore:
    """Delegates to a MemoryStore until ``down`` is set, then every call fails."""

    def __init__(self, inner: MemoryStore):
        self.inner = inner
        self.down = False

    def __getattr__(self, name):
        target = getattr(self.inner, name)
        if not callable(target):
            return target

        def call(*args, **kwargs):
            if self.down:
                raise StorageUnavailable("durable store unavailable")
            return target(*args, **kwargs)

        return call


def new_session(engine, identity: AdminIdentity, **overrides) -> Session:
    now = engine.clock()
    fields = dict(
        id=Session.new_id(),
        user_id=identity.id,
        access_token="acc",
        refresh_token="ref",
        expires_at=now + timedelta(hours=12),
        metadata=SessionMetadata(
            user_agent="ua",
            network_origin="8.8.8.8",
            fingerprint_hash="f" * 64,
            created_at=now,
            last_activity_at=now,
        ),
    )
    fields.update(overrides)
    return Session(**fields)


@pytest.fixture
def flaky_engine(make_engine, tmp_path):
    flaky = FlakyStore(MemoryStore(fs_root=str(tmp_path / "durable")))
    engine = make_engine(durable=flaky)
    engine.store = flaky.inner
    engine.audit.sink = flaky.inner
    return engine, flaky


class TestPersist:
    def test_persist_writes_both_layers(self, engine):
        admin = engine.add_admin()
        session = new_session(engine, admin)

        stored = engine.session_store.persist(session, Criticality.CRITICAL)

        assert stored.is_valid
        assert engine.cache.get(session.id) is not None
        assert engine.store.get_session(session.id) is not None

    def test_critical_failure_raises_and_skips_cache(self, flaky_engine):
        engine, flaky = flaky_engine
        admin = engine.add_admin()
        session = new_session(engine, admin)
        flaky.down = True

        with pytest.raises(PersistenceDegraded) as excinfo:
            engine.session_store.persist(session, Criticality.CRITICAL)

        assert excinfo.value.status_code == 503
        assert engine.cache.get(session.id) is None

    def test_best_effort_failure_still_caches(self, flaky_engine):
        engine, flaky = flaky_engine
        admin = engine.add_admin()
        session = new_session(engine, admin)
        flaky.down = True

        stored = engine.session_store.persist(session, Criticality.BEST_EFFORT)

        assert stored.is_valid
        assert engine.cache.get(session.id) is not None

    def test_persist_after_invalidate_reports_invalid(self, engine):
        """A write racing a revoke comes back flagged invalid."""
        admin = engine.add_admin()
        session = new_session(engine, admin)
        engine.session_store.persist(session, Criticality.CRITICAL)
        engine.session_store.invalidate(session.id)

        stored = engine.session_store.persist(session, Criticality.BEST_EFFORT)

        assert stored.is_valid is False
        assert engine.cache.get(session.id) is None


class TestRecover:
    """Cold-cache re-hydration from the durable layer."""

    def test_recovers_on_cache_miss(self, engine):
        admin = engine.add_admin()
        session = new_session(engine, admin)
        engine.store.upsert_session(session)

        recovered = engine.session_store.lookup(session.id)

        assert recovered.id == session.id
        assert session.id in engine.cache

    def test_expired_record_not_recovered(self, engine):
        admin = engine.add_admin()
        session = new_session(engine, admin, expires_at=engine.clock() - timedelta(seconds=1))
        engine.store.upsert_session(session)

        assert engine.session_store.recover(session.id) is None
        assert session.id not in engine.cache

    def test_inactive_record_not_recovered(self, engine):
        admin = engine.add_admin()
        session = new_session(engine, admin, is_valid=False)
        engine.store.upsert_session(session)

        assert engine.session_store.recover(session.id) is None

    def test_ineligible_owner_purges_record(self, engine):
        """A banned owner's session is deactivated instead of recovered."""
        admin = engine.add_admin(is_banned=True)
        session = new_session(engine, admin)
        engine.store.upsert_session(session)

        assert engine.session_store.recover(session.id) is None
        assert engine.store.get_session(session.id).is_valid is False
        assert engine.cache.is_tombstoned(session.id)

    def test_missing_owner_purges_record(self, engine):
        session = new_session(engine, AdminIdentity(id="ghost", email="g@example.com"))
        engine.store.upsert_session(session)

        assert engine.session_store.recover(session.id) is None
        assert engine.store.get_session(session.id).is_valid is False

    def test_tombstoned_id_is_not_rehydrated(self, engine):
        """After invalidation a stale durable row cannot resurrect the session."""
        admin = engine.add_admin()
        session = new_session(engine, admin)
        engine.session_store.persist(session, Criticality.CRITICAL)
        engine.session_store.invalidate(session.id)
        # Simulate a durable write that lost the race with the revoke
        engine.store.sessions[session.id].is_valid = True

        assert engine.session_store.lookup(session.id) is None

    def test_durable_outage_is_degraded_not_invalid(self, flaky_engine):
        engine, flaky = flaky_engine
        flaky.down = True

        with pytest.raises(PersistenceDegraded):
            engine.session_store.lookup("unknown-session")


class TestInvalidate:
    def test_invalidate_reaches_both_layers(self, engine):
        admin = engine.add_admin()
        session = new_session(engine, admin)
        engine.session_store.persist(session, Criticality.CRITICAL)

        removed = engine.session_store.invalidate(session.id)

        assert removed.is_valid is False
        assert engine.cache.get(session.id) is None
        assert engine.store.get_session(session.id).is_valid is False

    def test_invalidate_survives_durable_outage(self, flaky_engine):
        """The cache is cleared even when the durable write fails."""
        engine, flaky = flaky_engine
        admin = engine.add_admin()
        session = new_session(engine, admin)
        engine.session_store.persist(session, Criticality.CRITICAL)
        flaky.down = True

        engine.session_store.invalidate(session.id)

        assert engine.cache.get(session.id) is None
        assert engine.cache.is_tombstoned(session.id)

    def test_invalidate_user_covers_uncached_sessions(self, engine):
        admin = engine.add_admin()
        cached = new_session(engine, admin)
        durable_only = new_session(engine, admin)
        current = new_session(engine, admin)
        engine.session_store.persist(cached, Criticality.CRITICAL)
        engine.session_store.persist(current, Criticality.CRITICAL)
        engine.store.upsert_session(durable_only)

        revoked = engine.session_store.invalidate_user(admin.id, except_session_id=current.id)

        assert revoked == sorted([cached.id, durable_only.id])
        assert engine.session_store.lookup(durable_only.id) is None
        assert engine.session_store.lookup(current.id) is not None

    def test_invalidate_user_outage_is_critical(self, flaky_engine):
        engine, flaky = flaky_engine
        admin = engine.add_admin()
        flaky.down = True

        with pytest.raises(PersistenceDegraded):
            engine.session_store.invalidate_user(admin.id)


class TestHousekeeping:
    def test_update_activity_is_best_effort(self, flaky_engine):
        engine, flaky = flaky_engine
        admin = engine.add_admin()
        session = new_session(engine, admin)
        engine.session_store.persist(session, Criticality.CRITICAL)
        flaky.down = True
        later = engine.clock.advance(minutes=3)

        engine.session_store.update_activity(session.id, later, "1.1.1.1")

        assert engine.cache.get(session.id).metadata.last_activity_at == later

    def test_list_user_sessions_falls_back_to_cache(self, flaky_engine):
        engine, flaky = flaky_engine
        admin = engine.add_admin()
        session = new_session(engine, admin)
        engine.session_store.persist(session, Criticality.CRITICAL)
        flaky.down = True

        listed = engine.session_store.list_user_sessions(admin.id)

        assert [s.id for s in listed] == [session.id]

    def test_expire_sweeps_both_layers(self, engine):
        admin = engine.add_admin()
        short = new_session(engine, admin, expires_at=engine.clock() + timedelta(minutes=1))
        engine.session_store.persist(short, Criticality.CRITICAL)
        engine.clock.advance(minutes=2)

        evicted, deactivated = engine.session_store.expire()

        assert evicted == [short.id]
        assert deactivated == 1
        assert engine.store.get_session(short.id).is_valid is False


class TestSharedDurableStore:
    """Two processes, each with its own cache, over one durable store."""

    def other_process(self, engine):
        return SessionStore(
            engine.store,
            SessionCache(),
            session_ttl=timedelta(hours=12),
            required_role="admin",
            clock=engine.clock,
        )

    def test_activity_reports_revocation_made_elsewhere(self, engine):
        admin = engine.add_admin()
        session = engine.session_store.persist(new_session(engine, admin), Criticality.CRITICAL)
        other = self.other_process(engine)
        assert other.lookup(session.id) is not None

        engine.session_store.invalidate(session.id)
        later = engine.clock.advance(minutes=1)

        assert other.update_activity(session.id, later) is False
        assert engine.session_store.update_activity(session.id, later) is False

    def test_activity_on_live_record_stays_active(self, engine):
        admin = engine.add_admin()
        session = engine.session_store.persist(new_session(engine, admin), Criticality.CRITICAL)
        other = self.other_process(engine)
        other.lookup(session.id)

        assert other.update_activity(session.id, engine.clock.advance(minutes=1)) is True
