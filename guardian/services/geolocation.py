"""
Guardian — Geolocation

Position source for the tracking core. Devices push fixes (and permission
denials) to the service; the core consumes them through two shapes:

  - one-shot:   get_current_position(user_id, timeout_s) → Position
  - continuous: watch_position(user_id, on_position, on_error) → PositionWatch

A one-shot request accepts the latest fix only if it is fresh
(younger than `position_max_age_s`), otherwise it waits for the next push
up to the timeout. Timeout and denial both raise LocationUnavailable.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol

from guardian.common.errors import LocationUnavailable
from guardian.common.schemas import Position
from guardian.common.utils import as_utc, utc_now
from guardian.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

PositionCallback = Callable[[Position], None]
ErrorCallback = Callable[[LocationUnavailable], None]


class PositionWatch:
    """A live subscription to one user's positions."""

    def __init__(self, provider: "PushedLocationProvider", user_id: str,
                 on_position: PositionCallback, on_error: Optional[ErrorCallback]) -> None:
        self._provider = provider
        self.user_id = user_id
        self.on_position = on_position
        self.on_error = on_error
        self._cleared = False
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        return not self._cleared

    def clear(self) -> bool:
        """Stop receiving positions. Returns True only on the first call."""
        with self._lock:
            if self._cleared:
                return False
            self._cleared = True
        self._provider._remove_watch(self)
        return True


class LocationProvider(Protocol):
    def get_current_position(self, user_id: str, timeout_s: Optional[float] = None) -> Position: ...

    def watch_position(self, user_id: str, on_position: PositionCallback,
                       on_error: Optional[ErrorCallback] = None) -> PositionWatch: ...


class PushedLocationProvider:
    """Location service fed by device pushes over the API."""

    def __init__(
        self,
        clock: Callable[[], datetime] = utc_now,
        max_age_s: Optional[float] = None,
        default_timeout_s: Optional[float] = None,
    ) -> None:
        self._clock = clock
        self._max_age_s = max_age_s if max_age_s is not None else settings.position_max_age_s
        self._default_timeout_s = (
            default_timeout_s if default_timeout_s is not None else settings.geolocation_timeout_s
        )
        self._latest: Dict[str, Position] = {}
        self._denied: Dict[str, str] = {}
        self._watches: Dict[str, List[PositionWatch]] = {}
        self._cond = threading.Condition()

    # ── Device side ───────────────────────────────────────────────────────────

    def push(self, user_id: str, position: Position) -> int:
        """Record a fix from the device; returns how many watches received it."""
        with self._cond:
            self._latest[user_id] = position
            self._denied.pop(user_id, None)
            watches = list(self._watches.get(user_id, []))
            self._cond.notify_all()

        delivered = 0
        for watch in watches:
            if not watch.active:
                continue
            try:
                watch.on_position(position)
                delivered += 1
            except Exception as exc:
                logger.error(
                    f"Position callback failed for {user_id}: {exc}",
                    exc_info=True,
                    extra={"context": {"user_id": user_id}},
                )
        return delivered

    def report_error(self, user_id: str, message: str = "Location permission denied") -> None:
        """Record a denial/failure from the device and tell pending requests and watches."""
        with self._cond:
            self._denied[user_id] = message
            watches = list(self._watches.get(user_id, []))
            self._cond.notify_all()

        error = LocationUnavailable(message)
        for watch in watches:
            if watch.active and watch.on_error is not None:
                try:
                    watch.on_error(error)
                except Exception as exc:
                    logger.error(f"Position error callback failed for {user_id}: {exc}", exc_info=True)

    # ── Core side ─────────────────────────────────────────────────────────────

    def latest(self, user_id: str) -> Optional[Position]:
        with self._cond:
            return self._latest.get(user_id)

    def _is_fresh(self, position: Optional[Position]) -> bool:
        if position is None:
            return False
        age = (self._clock() - as_utc(position.timestamp)).total_seconds()
        return age <= self._max_age_s

    def get_current_position(self, user_id: str, timeout_s: Optional[float] = None) -> Position:
        """
        Resolve the user's current position.

        Raises:
            LocationUnavailable: On denial, or when no fresh fix arrives in time
        """
        timeout = self._default_timeout_s if timeout_s is None else timeout_s
        with self._cond:
            ready = self._cond.wait_for(
                lambda: user_id in self._denied or self._is_fresh(self._latest.get(user_id)),
                timeout=timeout,
            )
            if user_id in self._denied:
                raise LocationUnavailable(self._denied[user_id])
            if not ready:
                logger.info(f"Geolocation timed out for {user_id} after {timeout}s")
                raise LocationUnavailable("Could not get your location in time")
            return self._latest[user_id]

    def watch_position(self, user_id: str, on_position: PositionCallback,
                       on_error: Optional[ErrorCallback] = None) -> PositionWatch:
        watch = PositionWatch(self, user_id, on_position, on_error)
        with self._cond:
            self._watches.setdefault(user_id, []).append(watch)
        return watch

    def _remove_watch(self, watch: PositionWatch) -> None:
        with self._cond:
            watches = self._watches.get(watch.user_id, [])
            if watch in watches:
                watches.remove(watch)
            if not watches:
                self._watches.pop(watch.user_id, None)

    def watch_count(self, user_id: str) -> int:
        with self._cond:
            return len(self._watches.get(user_id, []))


# Global singleton
location_provider = PushedLocationProvider()
