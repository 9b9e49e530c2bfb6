"""
Shared test fixtures.

Provides: in-memory SQLite store, a controllable clock, a pushed location
provider, a recording WebSocket manager and fakes for audio, blob storage
and geocoding.
"""

from __future__ import annotations

import os

# Must be set before any guardian module reads settings
os.environ.setdefault("GUARDIAN_DB_URL", "sqlite://")
os.environ.setdefault("GUARDIAN_GEOLOCATION_TIMEOUT_S", "0.2")

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest
from sqlalchemy.orm import sessionmaker

from guardian.common.errors import BlobUploadError, MicrophoneUnavailable
from guardian.common.schemas import AlertKind, GeoPoint, Position
from guardian.database import models  # noqa: F401  (registers tables)
from guardian.database.session import Base, make_engine
from guardian.database.store import TrackingStore
from guardian.services.change_feed import ChangeFeed
from guardian.services.geolocation import PushedLocationProvider
from guardian.services.session_manager import SessionManager
from guardian.services.watcher_notifier import WatcherNotifier
from guardian.services.websocket_manager import ConnectionManager

T0 = datetime(2026, 3, 14, 18, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, minutes: float = 0) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, minutes=minutes)
        return self.now


class RecordingConnectionManager(ConnectionManager):
    """Captures sync sends instead of writing to sockets."""

    def __init__(self, connected: Optional[List[str]] = None) -> None:
        super().__init__()
        self.connected = set(connected or [])
        self.sent: List[tuple] = []

    def send_to_user_sync(self, user_id: str, data: dict) -> bool:
        if user_id not in self.connected:
            return False
        self.sent.append((user_id, data))
        return True


class FakeAudioStream:
    def __init__(self, chunks: List[bytes]) -> None:
        self.chunks = chunks
        self.stopped = False

    def stop(self) -> List[bytes]:
        self.stopped = True
        return list(self.chunks)


class FakeAudioInput:
    def __init__(self, chunks: Optional[List[bytes]] = None, available: bool = True) -> None:
        self.chunks = chunks if chunks is not None else [b"RIFF", b"audio"]
        self.available = available
        self.opened: List[tuple] = []

    def open(self, user_id: str, kind: AlertKind) -> FakeAudioStream:
        if not self.available:
            raise MicrophoneUnavailable()
        self.opened.append((user_id, kind))
        return FakeAudioStream(self.chunks)


class FakeBlobStorage:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.objects: Dict[str, bytes] = {}

    def upload(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        if self.fail:
            raise BlobUploadError()
        self.objects[key] = data
        return f"http://blobs.test/incident-media/{key}"


class FakeGeocoder:
    def __init__(self, name: Optional[str] = "Main Street, Springfield") -> None:
        self.name = name
        self.calls = 0

    def place_name(self, point: GeoPoint) -> Optional[str]:
        self.calls += 1
        return self.name


def make_position(clock: FakeClock, lat: float = 40.7128, lon: float = -74.0060,
                  accuracy: float = 8.0) -> Position:
    return Position(point=GeoPoint(latitude=lat, longitude=lon), accuracy_m=accuracy, timestamp=clock())


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def feed() -> ChangeFeed:
    return ChangeFeed()


@pytest.fixture
def store(session_factory, feed, clock) -> TrackingStore:
    store = TrackingStore(session_factory, feed=feed, clock=clock, retry_delay_s=0)
    store.upsert_profile("owner-1", full_name="Olivia Owner")
    store.upsert_profile("w1", full_name="Wendy Watcher")
    store.upsert_profile("w2", full_name=None, display_name="walt")
    return store


@pytest.fixture
def file_store(tmp_path, feed, clock) -> TrackingStore:
    """Store on a SQLite file: each thread gets its own pooled connection."""
    engine = make_engine(f"sqlite:///{tmp_path / 'guardian.db'}")
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    store = TrackingStore(factory, feed=feed, clock=clock, retry_delay_s=0)
    store.upsert_profile("owner-1", full_name="Olivia Owner")
    store.upsert_profile("w1", full_name="Wendy Watcher")
    yield store
    engine.dispose()


@pytest.fixture
def provider(clock) -> PushedLocationProvider:
    return PushedLocationProvider(clock=clock, max_age_s=30, default_timeout_s=0.05)


@pytest.fixture
def ws() -> RecordingConnectionManager:
    return RecordingConnectionManager(connected=["w1"])


@pytest.fixture
def notifier(store, ws) -> WatcherNotifier:
    return WatcherNotifier(store, ws)


@pytest.fixture
def manager(store, provider, notifier, clock):
    manager = SessionManager(
        store, provider, notifier, clock=clock, run_timers=False, location_min_interval_s=5,
    )
    yield manager
    manager.shutdown()


@pytest.fixture
def located(provider, clock) -> PushedLocationProvider:
    """Provider that already holds a fresh fix for owner-1."""
    provider.push("owner-1", make_position(clock))
    return provider
