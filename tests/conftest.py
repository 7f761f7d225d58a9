import asyncio
import inspect
import os
import sys
import tempfile
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="admingate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SESSION_SWEEPER_ENABLED", "false")
os.environ.setdefault(
    "ADMIN_ACCESS_TOKEN_SECRET", "test-access-secret-for-testing-only-do-not-use-in-production"
)
os.environ.setdefault(
    "ADMIN_REFRESH_TOKEN_SECRET", "test-refresh-secret-for-testing-only-do-not-use-in-production"
)
# Empty REDIS_URL keeps suspicious-activity markers in-process during tests
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from admingate.config import Settings  # noqa: E402
from admingate.service.audit import AuditTrail, InProcessMarkerStore  # noqa: E402
from admingate.service.fingerprint import FingerprintEngine, RequestMetadata  # noqa: E402
from admingate.service.heartbeat import HeartbeatMonitor  # noqa: E402
from admingate.service.runtime import reset_runtime_for_tests  # noqa: E402
from admingate.service.session_store import SessionStore  # noqa: E402
from admingate.service.sessions import SessionService  # noqa: E402
from admingate.service.tokens import TokenCodec  # noqa: E402
from admingate.storage.memory import MemoryStore  # noqa: E402
from admingate.storage.models import AdminIdentity  # noqa: E402
from admingate.storage.session_cache import SessionCache  # noqa: E402

BROWSER_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_4) AppleWebKit/605.1.15 Safari/605.1.15",
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate, br",
    "Accept": "text/html,application/json",
    "X-Forwarded-For": "8.8.8.8",
}


class FakeClock:
    """Deterministic, manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@dataclass
class Engine:
    clock: FakeClock
    settings: Settings
    store: MemoryStore
    cache: SessionCache
    session_store: SessionStore
    codec: TokenCodec
    fingerprints: FingerprintEngine
    markers: InProcessMarkerStore
    audit: AuditTrail
    heartbeat: HeartbeatMonitor
    sessions: SessionService

    def add_admin(self, **overrides) -> AdminIdentity:
        fields = {"id": str(uuid.uuid4()), "email": f"{uuid.uuid4().hex[:8]}@example.com"}
        fields.update(overrides)
        return self.store.upsert_user(AdminIdentity(**fields))


def make_settings(tmp_path: Path, **overrides) -> Settings:
    fields = {
        "shared_fs_root": str(tmp_path),
        "environment": "test",
        "test_mode": True,
        "use_memory_store": True,
        "access_token_secret": "unit-access-secret-0123456789abcdef0123456789",
        "refresh_token_secret": "unit-refresh-secret-0123456789abcdef012345678",
    }
    fields.update(overrides)
    return Settings(**fields)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings_factory(tmp_path):
    """Build Settings rooted in the test's tmp dir, with keyword overrides."""

    def _build(**overrides) -> Settings:
        return make_settings(tmp_path, **overrides)

    return _build


@pytest.fixture
def request_metadata():
    return RequestMetadata(headers=BROWSER_HEADERS, connection_address="10.0.0.5")


@pytest.fixture
def make_engine(tmp_path, clock):
    """Factory for a fully wired in-memory engine driven by the fake clock."""

    def _build(*, durable=None, **setting_overrides) -> Engine:
        settings = make_settings(tmp_path, **setting_overrides)
        store = MemoryStore(fs_root=str(tmp_path / "store"))
        cache = SessionCache(max_size=settings.session_cache_max_size)
        session_store = SessionStore(
            durable if durable is not None else store,
            cache,
            session_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            required_role=settings.required_role,
            clock=clock,
        )
        codec = TokenCodec(settings, clock=clock)
        fingerprints = FingerprintEngine(
            settings.fingerprint_signals, bind_origin=settings.fingerprint_bind_origin
        )
        markers = InProcessMarkerStore(clock=clock)
        audit = AuditTrail(
            store,
            markers,
            marker_ttl_seconds=settings.suspicious_marker_ttl_seconds,
            clock=clock,
        )
        heartbeat = HeartbeatMonitor(
            session_store,
            audit,
            interval_seconds=settings.heartbeat_interval_seconds,
            clock=clock,
        )
        sessions = SessionService(
            settings, session_store, codec, fingerprints, audit, heartbeat, clock=clock
        )
        return Engine(
            clock=clock,
            settings=settings,
            store=store,
            cache=cache,
            session_store=session_store,
            codec=codec,
            fingerprints=fingerprints,
            markers=markers,
            audit=audit,
            heartbeat=heartbeat,
            sessions=sessions,
        )

    return _build


@pytest.fixture
def engine(make_engine):
    return make_engine()


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "runtime"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
