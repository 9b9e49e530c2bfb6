"""
Guardian — Session Manager ("Look After Me")

Owns the tracking-session lifecycle:

    active ──check_in──▶ completed
       │────end_session─▶ cancelled
       └──trigger_emergency─▶ emergency

All three targets are terminal; nothing leads back to `active`. Every
transition is one conditional store UPDATE, so a call against a session
that is no longer active fails with NoActiveSession and mutates nothing.

Each active session carries two background processes, started with the
session:
  - LocationReporter (kept running through `emergency` until the
    emergency alert is resolved or marked a false alarm)
  - EscalationTimer (stopped when the session leaves `active`)

The store is the single source of truth. The manager listens to the
tracking_sessions change feed and, for any status change on a session it
runs processes for, re-reads the row and reconciles, so a check-in made
on another device stops this process's reporter too.
It also listens to the alerts feed: resolving the alert of a session in
`emergency` tears that session's reporter down.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from guardian.common.errors import (
    DestinationRequired,
    GuardianError,
    NoActiveSession,
    NoWatchersSelected,
    SessionAlreadyActive,
)
from guardian.common.events import ChangeType, RecordChangedEvent, Table
from guardian.common.schemas import (
    Alert,
    AlertStatus,
    AlertType,
    GeoPoint,
    NewAlert,
    SessionStatusView,
    TrackingSession,
    TrackingStatus,
    TripClock,
    TripMetadata,
)
from guardian.common.utils import haversine_distance_m, utc_now
from guardian.config import get_settings
from guardian.database.store import TrackingStore
from guardian.services.escalation_timer import EscalationTimer, trip_clock
from guardian.services.geolocation import LocationProvider
from guardian.services.location_reporter import LocationReporter
from guardian.services.watcher_notifier import WatcherNotifier

logger = logging.getLogger(__name__)
settings = get_settings()

ReminderHook = Callable[[TrackingSession, TripClock], None]


@dataclass
class _Tracker:
    """Background processes bound to one session."""
    session_id: str
    owner_id: str
    reporter: Optional[LocationReporter]
    timer: Optional[EscalationTimer]

    def stop_timer(self) -> None:
        if self.timer is not None:
            self.timer.stop()

    def stop_all(self) -> None:
        self.stop_timer()
        if self.reporter is not None:
            self.reporter.stop()


class SessionManager:
    """Trip lifecycle state machine plus its background processes."""

    def __init__(
        self,
        store: TrackingStore,
        provider: LocationProvider,
        notifier: WatcherNotifier,
        clock: Callable[[], datetime] = utc_now,
        on_reminder: Optional[ReminderHook] = None,
        run_timers: bool = True,
        location_min_interval_s: Optional[float] = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._notifier = notifier
        self._clock = clock
        self._on_reminder_hook = on_reminder
        self._run_timers = run_timers
        self._location_min_interval_s = location_min_interval_s
        self._trackers: Dict[str, _Tracker] = {}
        self._lock = threading.RLock()
        self._subscriptions = [
            store.feed.subscribe(Table.TRACKING_SESSIONS, self._on_session_change),
            store.feed.subscribe(Table.ALERTS, self._on_alert_change, ChangeType.UPDATE),
        ]

    # ── Queries ───────────────────────────────────────────────────────────────

    def fetch_active_session(self, owner_id: str) -> Optional[TrackingSession]:
        """
        The owner's single active session, or None.

        Also the resync entry point: an active session, or an unresolved
        emergency, with no background processes in this process (e.g.
        after a restart) gets them back.
        """
        session = self._store.find_active_session(owner_id)
        live = [session] if session is not None else self._store.find_open_emergency_sessions(owner_id)
        for s in live:
            with self._lock:
                tracked = s.id in self._trackers
            if not tracked:
                self._attach(s)
        return session

    def session_status(self, owner_id: str) -> Optional[SessionStatusView]:
        session = self.fetch_active_session(owner_id)
        if session is None:
            return None
        return self._status_view(session)

    def watched_sessions(self, watcher_id: str) -> List[SessionStatusView]:
        """Live trips (active or in emergency) that `watcher_id` is watching."""
        return [self._status_view(s) for s in self._store.sessions_watched_by(watcher_id)]

    def tracked_session_ids(self) -> List[str]:
        with self._lock:
            return list(self._trackers)

    def tracker(self, session_id: str) -> Optional[_Tracker]:
        with self._lock:
            return self._trackers.get(session_id)

    def _status_view(self, session: TrackingSession) -> SessionStatusView:
        tracker = self.tracker(session.id)
        should_remind = bool(tracker and tracker.timer and tracker.timer.should_remind)
        now = self._clock()
        clock = trip_clock(session.started_at, session.estimated_arrival, now, should_remind)

        distance = None
        if session.current_location and session.destination_location:
            distance = round(haversine_distance_m(
                session.current_location.latitude, session.current_location.longitude,
                session.destination_location.latitude, session.destination_location.longitude,
            ), 1)

        return SessionStatusView(
            session=session,
            watchers=self._notifier.resolve_watchers(session.watcher_ids),
            clock=clock,
            distance_to_destination_m=distance,
        )

    # ── Lifecycle operations ──────────────────────────────────────────────────

    def start_session(
        self,
        owner_id: str,
        destination_name: str,
        watcher_ids: Sequence[str],
        estimated_arrival: Optional[datetime] = None,
        destination_location: Optional[GeoPoint] = None,
        metadata: Optional[TripMetadata] = None,
    ) -> TrackingSession:
        """
        Start a trip for `owner_id` and its background processes.

        Raises:
            DestinationRequired: Blank destination
            NoWatchersSelected: Empty watcher list
            SessionAlreadyActive: The owner already has an active trip
            LocationUnavailable: The current position could not be acquired
            StoreWriteError: The session could not be saved
        """
        destination_name = (destination_name or "").strip()
        if not destination_name:
            raise DestinationRequired()
        watchers = [w for w in dict.fromkeys(watcher_ids) if w]
        if not watchers:
            raise NoWatchersSelected()
        if self._store.find_active_session(owner_id) is not None:
            raise SessionAlreadyActive()

        position = self._provider.get_current_position(owner_id)

        session = self._store.insert_session(
            owner_id=owner_id,
            destination_name=destination_name,
            watcher_ids=watchers,
            current_location=position.point,
            started_at=self._clock(),
            estimated_arrival=estimated_arrival,
            destination_location=destination_location,
            metadata=metadata,
        )
        self._attach(session)

        logger.info(
            f"Trip started to {destination_name}",
            extra={"context": {
                "session_id": session.id,
                "owner_id": owner_id,
                "watchers": len(watchers),
                "estimated_arrival": estimated_arrival,
            }},
        )
        return session

    def check_in(self, owner_id: str, session_id: Optional[str] = None) -> TrackingSession:
        """Arrived safely: active → completed."""
        session = self._finish(owner_id, session_id, TrackingStatus.COMPLETED)
        logger.info(
            "Checked in safely",
            extra={"context": {"session_id": session.id, "duration_s": self._duration_s(session)}},
        )
        return session

    def end_session(self, owner_id: str, session_id: Optional[str] = None) -> TrackingSession:
        """Voluntary early end: active → cancelled."""
        session = self._finish(owner_id, session_id, TrackingStatus.CANCELLED)
        logger.info(
            "Trip ended early",
            extra={"context": {"session_id": session.id, "duration_s": self._duration_s(session)}},
        )
        return session

    def trigger_emergency(self, owner_id: str, session_id: Optional[str] = None) -> Alert:
        """
        active → emergency, then emit a panic Alert and notify watchers.

        Location reporting keeps running. If the Alert cannot be stored the
        status change still stands, watchers are still pushed, and the
        StoreWriteError reaches the caller, who can resend_emergency_alert().
        """
        session = self._transition(owner_id, session_id, TrackingStatus.EMERGENCY, completed_at=None)
        tracker = self.tracker(session.id)
        if tracker is not None:
            tracker.stop_timer()

        logger.warning(
            "Emergency triggered during trip",
            extra={"context": {"session_id": session.id, "location": session.current_location}},
        )
        try:
            alert = self._emit_emergency_alert(session)
        except GuardianError:
            self._notifier.notify_emergency(session, None)
            raise
        self._notifier.notify_emergency(session, alert)
        return alert

    def resend_emergency_alert(self, owner_id: str, session_id: str) -> Alert:
        """Emit the emergency Alert again for a session already in `emergency`."""
        session = self._store.get_session(session_id)
        if session is None or session.owner_id != owner_id or session.status != TrackingStatus.EMERGENCY:
            raise NoActiveSession("There is no emergency on this trip to resend")
        alert = self._emit_emergency_alert(session)
        self._notifier.notify_emergency(session, alert)
        return alert

    # ── Background process management ─────────────────────────────────────────

    def detach(self, session_id: str) -> bool:
        """Tear down a session's background processes (view dismount)."""
        with self._lock:
            tracker = self._trackers.pop(session_id, None)
        if tracker is None:
            return False
        tracker.stop_all()
        return True

    def shutdown(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        with self._lock:
            trackers = list(self._trackers.values())
            self._trackers.clear()
        for tracker in trackers:
            tracker.stop_all()
        logger.info(f"Session manager stopped ({len(trackers)} trackers torn down)")

    def _attach(self, session: TrackingSession) -> None:
        if session.status not in (TrackingStatus.ACTIVE, TrackingStatus.EMERGENCY):
            return
        reporter = LocationReporter(
            session.id, session.owner_id, self._provider, self._store,
            min_interval_s=self._location_min_interval_s,
        )
        # An emergency only keeps reporting location
        timer = None
        if session.status == TrackingStatus.ACTIVE:
            timer = EscalationTimer(
                session.id,
                session.started_at,
                session.estimated_arrival,
                on_reminder=self._on_reminder,
                on_overdue=self._on_overdue,
                clock=self._clock,
            )
        with self._lock:
            if session.id in self._trackers:
                return
            self._trackers[session.id] = _Tracker(session.id, session.owner_id, reporter, timer)
        reporter.start()
        if timer is not None and self._run_timers:
            timer.start()

    def _reconcile(self, session: TrackingSession) -> None:
        if session.status == TrackingStatus.ACTIVE:
            return
        if session.status == TrackingStatus.EMERGENCY:
            tracker = self.tracker(session.id)
            if tracker is not None:
                tracker.stop_timer()
            return
        self.detach(session.id)

    def _on_session_change(self, event: RecordChangedEvent) -> None:
        # Location pings carry no status and cannot change the lifecycle
        if event.status is None:
            return
        with self._lock:
            tracked = event.record_id in self._trackers
        if not tracked:
            return
        session = self._store.get_session(event.record_id)
        if session is None:
            self.detach(event.record_id)
            return
        self._reconcile(session)

    def _on_alert_change(self, event: RecordChangedEvent) -> None:
        if event.status not in (AlertStatus.RESOLVED.value, AlertStatus.FALSE_ALARM.value):
            return
        alert = self._store.get_alert(event.record_id)
        if alert is None or alert.session_id is None:
            return
        if self.detach(alert.session_id):
            logger.info(
                "Emergency resolved; location reporting stopped",
                extra={"context": {"session_id": alert.session_id, "alert_id": alert.id}},
            )

    def _on_reminder(self, session_id: str, clock: TripClock) -> None:
        if self._on_reminder_hook is None:
            return
        session = self._store.get_session(session_id)
        if session is not None and session.status == TrackingStatus.ACTIVE:
            self._on_reminder_hook(session, clock)

    def _on_overdue(self, session_id: str) -> None:
        tracker = self.tracker(session_id)
        if tracker is None:
            return
        try:
            self.trigger_emergency(tracker.owner_id, session_id)
        except NoActiveSession:
            logger.info(f"Overdue escalation skipped; session {session_id} already ended")
        except GuardianError as exc:
            logger.error(f"Overdue escalation failed for {session_id}: {exc.message}")

    # ── Internals ─────────────────────────────────────────────────────────────

    def _resolve_target(self, owner_id: str, session_id: Optional[str]) -> str:
        if session_id is not None:
            return session_id
        active = self._store.find_active_session(owner_id)
        if active is None:
            raise NoActiveSession()
        return active.id

    def _transition(
        self,
        owner_id: str,
        session_id: Optional[str],
        to_status: TrackingStatus,
        completed_at: Optional[datetime],
    ) -> TrackingSession:
        target = self._resolve_target(owner_id, session_id)
        session = self._store.transition_from_active(
            target, to_status, completed_at=completed_at, owner_id=owner_id
        )
        if session is None:
            raise NoActiveSession()
        return session

    def _finish(self, owner_id: str, session_id: Optional[str], to_status: TrackingStatus) -> TrackingSession:
        session = self._transition(owner_id, session_id, to_status, completed_at=self._clock())
        self.detach(session.id)
        return session

    def _emit_emergency_alert(self, session: TrackingSession) -> Alert:
        location = session.current_location or session.destination_location
        if location is None:
            raise NoActiveSession("The trip has no known location to report")
        return self._store.insert_alert(NewAlert(
            alert_type=AlertType.PANIC,
            location=location,
            description=f"Emergency during tracking session to {session.destination_name}",
            user_id=session.owner_id,
            session_id=session.id,
        ))

    def _duration_s(self, session: TrackingSession) -> float:
        return round((self._clock() - session.started_at).total_seconds(), 1)
