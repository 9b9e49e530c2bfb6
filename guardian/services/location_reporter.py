"""
Guardian — Location Reporter

While a trip is live, follows the owner's position watch and persists each
accepted fix to the session's current location.

Rules:
  - one lost ping is recoverable, a stopped reporter is not: write failures
    and position errors are logged and the watch stays open
  - pings closer together than `location_min_interval_s` are dropped, since
    pushed positions carry no platform-side rate limit
  - stop() tears the watch down exactly once; a write that finds the
    session no longer accepting pings stops the reporter too
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Optional

from guardian.common.errors import LocationUnavailable, StoreWriteError
from guardian.common.schemas import Position
from guardian.common.utils import as_utc
from guardian.config import get_settings
from guardian.database.store import TrackingStore
from guardian.services.geolocation import LocationProvider, PositionWatch

logger = logging.getLogger(__name__)
settings = get_settings()


class LocationReporter:
    """Background position → store pump bound to one tracking session."""

    def __init__(
        self,
        session_id: str,
        owner_id: str,
        provider: LocationProvider,
        store: TrackingStore,
        min_interval_s: Optional[float] = None,
    ) -> None:
        self.session_id = session_id
        self.owner_id = owner_id
        self._provider = provider
        self._store = store
        self._min_interval_s = (
            min_interval_s if min_interval_s is not None else settings.location_min_interval_s
        )
        self._watch: Optional[PositionWatch] = None
        self._last_written_at: Optional[datetime] = None
        self._lock = threading.Lock()
        self._stopped = False

        self.pings_written = 0
        self.pings_throttled = 0
        self.pings_failed = 0

    @property
    def running(self) -> bool:
        return self._watch is not None and not self._stopped

    def start(self) -> None:
        with self._lock:
            if self._watch is not None or self._stopped:
                return
            self._watch = self._provider.watch_position(
                self.owner_id, self._on_position, self._on_error
            )
        logger.info(
            "Location reporting started",
            extra={"context": {"session_id": self.session_id, "owner_id": self.owner_id}},
        )

    def stop(self) -> bool:
        """Tear the position watch down. Returns True only the first time."""
        with self._lock:
            if self._stopped:
                return False
            self._stopped = True
            watch = self._watch
        if watch is not None:
            watch.clear()
        logger.info(
            "Location reporting stopped",
            extra={"context": {
                "session_id": self.session_id,
                "written": self.pings_written,
                "throttled": self.pings_throttled,
                "failed": self.pings_failed,
            }},
        )
        return True

    # ── Watch callbacks ───────────────────────────────────────────────────────

    def _throttled(self, at: datetime) -> bool:
        if self._last_written_at is None:
            return False
        return (at - self._last_written_at).total_seconds() < self._min_interval_s

    def _on_position(self, position: Position) -> None:
        at = as_utc(position.timestamp)
        with self._lock:
            if self._stopped:
                return
            if self._throttled(at):
                self.pings_throttled += 1
                return
            previous = self._last_written_at
            self._last_written_at = at

        try:
            accepted = self._store.update_location(self.session_id, position.point, at=at)
        except StoreWriteError as exc:
            with self._lock:
                self._last_written_at = previous
            self.pings_failed += 1
            logger.warning(
                f"Dropped location ping: {exc}",
                extra={"context": {"session_id": self.session_id}},
            )
            return

        if not accepted:
            logger.info(f"Session {self.session_id} no longer accepts pings; stopping reporter")
            self.stop()
            return

        self.pings_written += 1
        logger.debug(
            "Location ping stored",
            extra={"context": {"session_id": self.session_id, "accuracy_m": position.accuracy_m}},
        )

    def _on_error(self, error: LocationUnavailable) -> None:
        logger.warning(
            f"Location watch error: {error.message}",
            extra={"context": {"session_id": self.session_id}},
        )
