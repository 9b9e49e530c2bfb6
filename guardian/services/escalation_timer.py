"""
Guardian — Escalation Timer

Derives the trip clock (elapsed, remaining, overdue) from a session's
started_at / estimated_arrival and solicits check-ins on a fixed cadence.

Reminder policy:
  - nothing before `checkin_first_reminder_s` (1h) of elapsed time
  - afterwards, a reminder at every `checkin_reminder_interval_s` (30 min)
    boundary; the timer samples every `checkin_poll_interval_s`, and the
    first sample at or past a boundary fires it, however far the samples
    drift from the boundary itself
  - each boundary fires at most once; when several were crossed between
    two samples (a stalled thread, a reattach after restart) one reminder
    covers them all

The timer is advisory: it never changes session status by itself. The only
exception is the opt-in `auto_escalate_after_overdue_s`, which hands the
session to `on_overdue` once the trip is that far past its estimated arrival.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from guardian.common.schemas import TripClock
from guardian.common.utils import as_utc, format_duration, utc_now
from guardian.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

OVERDUE = "Overdue"

_UNSET = object()


# ─── Pure clock arithmetic ────────────────────────────────────────────────────

def elapsed_since(started_at: datetime, now: datetime) -> timedelta:
    """Time on the trip so far; never negative."""
    return max(as_utc(now) - as_utc(started_at), timedelta(0))


def remaining_label(estimated_arrival: Optional[datetime], now: datetime) -> Optional[str]:
    """`{h}h {m}m` until arrival, `Overdue` at or after it, None without an ETA."""
    if estimated_arrival is None:
        return None
    remaining = as_utc(estimated_arrival) - as_utc(now)
    if remaining <= timedelta(0):
        return OVERDUE
    return format_duration(remaining)


def reminder_boundary(
    elapsed: timedelta,
    first_after_s: float,
    interval_s: float,
) -> Optional[int]:
    """
    Index k of the latest reminder boundary (k * interval_s) reached by
    `elapsed`, or None before `first_after_s`.
    """
    seconds = elapsed.total_seconds()
    if seconds < first_after_s:
        return None
    return int(seconds // interval_s)


def trip_clock(
    started_at: datetime,
    estimated_arrival: Optional[datetime],
    now: datetime,
    should_remind: bool = False,
) -> TripClock:
    remaining = remaining_label(estimated_arrival, now)
    return TripClock(
        elapsed=format_duration(elapsed_since(started_at, now)),
        remaining=remaining,
        overdue=remaining == OVERDUE,
        should_remind=should_remind,
    )


# ─── Background timer ─────────────────────────────────────────────────────────

class EscalationTimer:
    """Polling check-in reminder bound to one tracking session."""

    def __init__(
        self,
        session_id: str,
        started_at: datetime,
        estimated_arrival: Optional[datetime] = None,
        on_reminder: Optional[Callable[[str, TripClock], None]] = None,
        on_overdue: Optional[Callable[[str], None]] = None,
        clock: Callable[[], datetime] = utc_now,
        poll_interval_s: Optional[float] = None,
        first_reminder_s: Optional[float] = None,
        reminder_interval_s: Optional[float] = None,
        auto_escalate_after_overdue_s=_UNSET,
    ) -> None:
        self.session_id = session_id
        self.started_at = as_utc(started_at)
        self.estimated_arrival = as_utc(estimated_arrival) if estimated_arrival else None
        self._on_reminder = on_reminder
        self._on_overdue = on_overdue
        self._clock = clock
        self._poll_s = poll_interval_s or settings.checkin_poll_interval_s
        self._first_s = first_reminder_s or settings.checkin_first_reminder_s
        self._interval_s = reminder_interval_s or settings.checkin_reminder_interval_s
        self._auto_escalate_s = (
            settings.auto_escalate_after_overdue_s
            if auto_escalate_after_overdue_s is _UNSET
            else auto_escalate_after_overdue_s
        )

        self.should_remind = False
        self.reminders_fired = 0
        self.escalated = False
        self._last_boundary: Optional[int] = None

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._stopped = False

    # ── Sampling ──────────────────────────────────────────────────────────────

    def view(self, now: Optional[datetime] = None) -> TripClock:
        """Current clock without side effects."""
        return trip_clock(self.started_at, self.estimated_arrival, now or self._clock(), self.should_remind)

    def tick(self, now: Optional[datetime] = None) -> TripClock:
        """Take one sample: fire a due reminder and, if enabled, auto-escalate."""
        now = now or self._clock()
        boundary = reminder_boundary(
            elapsed_since(self.started_at, now),
            self._first_s,
            self._interval_s,
        )
        fire_reminder = False
        fire_overdue = False
        with self._lock:
            if self._stopped:
                return self.view(now)
            if boundary is not None and (self._last_boundary is None or boundary > self._last_boundary):
                self._last_boundary = boundary
                self.should_remind = True
                self.reminders_fired += 1
                fire_reminder = True
            if self._overdue_past_grace(now) and not self.escalated:
                self.escalated = True
                fire_overdue = True

        clock_view = self.view(now)
        if fire_reminder:
            logger.info(
                "Check-in reminder due",
                extra={"context": {"session_id": self.session_id, "elapsed": clock_view.elapsed}},
            )
            self._safe_call(self._on_reminder, self.session_id, clock_view)
        if fire_overdue:
            logger.warning(
                "Trip overdue past grace period; escalating",
                extra={"context": {"session_id": self.session_id}},
            )
            self._safe_call(self._on_overdue, self.session_id)
        return clock_view

    def _overdue_past_grace(self, now: datetime) -> bool:
        if self._auto_escalate_s is None or self.estimated_arrival is None:
            return False
        return (as_utc(now) - self.estimated_arrival).total_seconds() >= self._auto_escalate_s

    def _safe_call(self, callback, *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as exc:
            logger.error(
                f"Escalation callback failed: {exc}",
                exc_info=True,
                extra={"context": {"session_id": self.session_id}},
            )

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self._thread is not None or self._stopped:
                return
            self._thread = threading.Thread(
                target=self._run,
                name=f"escalation-{self.session_id[:8]}",
                daemon=True,
            )
        self._thread.start()

    def _run(self) -> None:
        while not self._stop_event.wait(self._poll_s):
            try:
                self.tick()
            except Exception as exc:
                logger.error(f"Escalation tick failed: {exc}", exc_info=True)

    def stop(self) -> bool:
        """Stop sampling. Returns True only the first time."""
        with self._lock:
            if self._stopped:
                return False
            self._stopped = True
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self._poll_s + 1)
        return True
