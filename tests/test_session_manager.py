"""
Tests — Session Manager ("Look After Me" lifecycle)

Tier 2: Start/check-in/end/emergency against a real in-memory store, with
background timers disabled; timer samples are driven through tick().
"""

from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from conftest import make_position
from guardian.common.errors import (
    DestinationRequired,
    LocationUnavailable,
    NoActiveSession,
    NoWatchersSelected,
    SessionAlreadyActive,
    StoreWriteError,
)
from guardian.common.schemas import AlertType, GeoPoint, TrackingStatus, TripMetadata
from guardian.services import escalation_timer
from guardian.services.session_manager import SessionManager
from guardian.services.watcher_notifier import WatcherNotifier

MALL = GeoPoint(latitude=40.7306, longitude=-73.9866)


def _start(manager, clock, **kwargs):
    params = dict(
        owner_id="owner-1",
        destination_name="Downtown Mall",
        watcher_ids=["w1", "w2"],
        estimated_arrival=clock() + timedelta(hours=1),
    )
    params.update(kwargs)
    return manager.start_session(**params)


class TestStartSession:
    def test_start_and_fetch_active(self, manager, located, store, notifier, clock) -> None:
        session = _start(manager, clock)

        assert session.status == TrackingStatus.ACTIVE
        assert session.current_location.latitude == 40.7128
        assert manager.fetch_active_session("owner-1").id == session.id
        assert [w.full_name for w in notifier.resolve_watchers(["w1", "w2"])] == ["Wendy Watcher", "walt"]
        assert notifier.resolve_watchers(["w1", "w3"])[0].id == "w1"
        assert len(notifier.resolve_watchers(["w1", "w3"])) == 1

    def test_start_attaches_background_processes(self, manager, located, clock) -> None:
        session = _start(manager, clock)

        tracker = manager.tracker(session.id)
        assert tracker.reporter.running is True
        assert tracker.timer is not None
        assert located.watch_count("owner-1") == 1

    def test_blank_destination_rejected(self, manager, located, clock) -> None:
        with pytest.raises(DestinationRequired):
            _start(manager, clock, destination_name="   ")

    def test_empty_watchers_rejected(self, manager, located, clock) -> None:
        with pytest.raises(NoWatchersSelected):
            _start(manager, clock, watcher_ids=[])

    def test_second_start_rejected(self, manager, located, store, clock) -> None:
        first = _start(manager, clock)

        with pytest.raises(SessionAlreadyActive):
            _start(manager, clock, destination_name="Airport")

        assert store.find_active_session("owner-1").id == first.id

    def test_no_location_creates_nothing(self, manager, store, clock) -> None:
        with pytest.raises(LocationUnavailable):
            _start(manager, clock)

        assert store.find_active_session("owner-1") is None
        assert manager.tracked_session_ids() == []

    def test_metadata_is_carried(self, manager, located, store, clock) -> None:
        session = _start(manager, clock, metadata=TripMetadata(outfit_description="Red jacket"))
        assert store.get_session(session.id).metadata.outfit_description == "Red jacket"


class TestCheckInAndEnd:
    def test_check_in_completes_and_tears_down(self, manager, located, store, clock) -> None:
        session = _start(manager, clock)
        clock.advance(minutes=42)

        done = manager.check_in("owner-1")

        assert done.status == TrackingStatus.COMPLETED
        assert done.completed_at == clock()
        assert manager.tracked_session_ids() == []
        assert located.watch_count("owner-1") == 0
        assert manager.fetch_active_session("owner-1") is None
        assert store.get_session(session.id).status == TrackingStatus.COMPLETED

    def test_end_session_cancels(self, manager, located, clock) -> None:
        session = _start(manager, clock)

        ended = manager.end_session("owner-1", session.id)

        assert ended.status == TrackingStatus.CANCELLED
        assert ended.completed_at is not None

    def test_check_in_without_active_session(self, manager, located, store, clock) -> None:
        session = _start(manager, clock)
        manager.check_in("owner-1", session.id)
        completed_at = store.get_session(session.id).completed_at
        clock.advance(minutes=5)

        with pytest.raises(NoActiveSession):
            manager.check_in("owner-1")
        with pytest.raises(NoActiveSession):
            manager.check_in("owner-1", session.id)

        reloaded = store.get_session(session.id)
        assert reloaded.status == TrackingStatus.COMPLETED
        assert reloaded.completed_at == completed_at

    @pytest.mark.parametrize("terminal", ["check_in", "end_session", "trigger_emergency"])
    def test_terminal_states_never_change(self, manager, located, store, clock, terminal) -> None:
        session = _start(manager, clock)
        getattr(manager, terminal)("owner-1", session.id)
        status = store.get_session(session.id).status

        for op in (manager.check_in, manager.end_session, manager.trigger_emergency):
            with pytest.raises(NoActiveSession):
                op("owner-1", session.id)

        assert store.get_session(session.id).status == status

    def test_concurrent_check_ins_have_one_winner(self, file_store, located, ws, clock) -> None:
        manager = SessionManager(
            file_store, located, WatcherNotifier(file_store, ws), clock=clock, run_timers=False,
        )
        session = _start(manager, clock)
        barrier = threading.Barrier(2)
        outcomes = []

        def check_in() -> None:
            barrier.wait()
            try:
                outcomes.append(manager.check_in("owner-1", session.id).status)
            except NoActiveSession:
                outcomes.append("rejected")

        try:
            workers = [threading.Thread(target=check_in) for _ in range(2)]
            for worker in workers:
                worker.start()
            for worker in workers:
                worker.join(timeout=30)
        finally:
            manager.shutdown()

        assert len(outcomes) == 2
        assert outcomes.count(TrackingStatus.COMPLETED) == 1
        assert outcomes.count("rejected") == 1
        reloaded = file_store.get_session(session.id)
        assert reloaded.status == TrackingStatus.COMPLETED
        assert reloaded.completed_at == clock()

    def test_other_owner_cannot_check_in(self, manager, located, store, clock) -> None:
        session = _start(manager, clock)

        with pytest.raises(NoActiveSession):
            manager.check_in("w1", session.id)

        assert store.get_session(session.id).status == TrackingStatus.ACTIVE


class TestEmergency:
    def test_emergency_creates_panic_alert_and_keeps_reporting(self, manager, located, store, ws, clock) -> None:
        session = _start(manager, clock)
        clock.advance(seconds=10)
        located.push("owner-1", make_position(clock, lat=40.75, lon=-73.99))

        alert = manager.trigger_emergency("owner-1")

        assert store.get_session(session.id).status == TrackingStatus.EMERGENCY
        assert alert.alert_type == AlertType.PANIC
        assert alert.session_id == session.id
        assert alert.location == GeoPoint(latitude=40.75, longitude=-73.99)
        assert alert.description == "Emergency during tracking session to Downtown Mall"

        tracker = manager.tracker(session.id)
        assert tracker.reporter.running is True
        assert tracker.timer.tick(clock() + timedelta(hours=2)).should_remind is False

        clock.advance(seconds=10)
        located.push("owner-1", make_position(clock, lat=40.76))
        assert store.get_session(session.id).current_location.latitude == 40.76

        assert [(uid, msg["type"], msg["alert_id"]) for uid, msg in ws.sent] == [("w1", "EMERGENCY", alert.id)]

    def test_emergency_visible_to_watchers(self, manager, located, clock) -> None:
        session = _start(manager, clock)
        manager.trigger_emergency("owner-1", session.id)

        watched = manager.watched_sessions("w2")

        assert [v.session.status for v in watched] == [TrackingStatus.EMERGENCY]

    def test_alert_failure_keeps_emergency_and_can_resend(self, manager, located, store, ws, clock, monkeypatch) -> None:
        session = _start(manager, clock)
        real_insert = store.insert_alert

        def failing_insert(alert):
            raise StoreWriteError()

        monkeypatch.setattr(store, "insert_alert", failing_insert)
        with pytest.raises(StoreWriteError):
            manager.trigger_emergency("owner-1")

        assert store.get_session(session.id).status == TrackingStatus.EMERGENCY
        assert ws.sent[0][1]["alert_id"] is None

        monkeypatch.setattr(store, "insert_alert", real_insert)
        alert = manager.resend_emergency_alert("owner-1", session.id)

        assert alert.alert_type == AlertType.PANIC
        assert [a.id for a in store.list_alerts()] == [alert.id]

    def test_resend_requires_emergency(self, manager, located, clock) -> None:
        session = _start(manager, clock)

        with pytest.raises(NoActiveSession):
            manager.resend_emergency_alert("owner-1", session.id)


class TestStatusAndReminders:
    def test_session_status_view(self, manager, located, clock) -> None:
        _start(manager, clock, destination_location=MALL)
        clock.advance(minutes=20)

        view = manager.session_status("owner-1")

        assert view.clock.elapsed == "0h 20m"
        assert view.clock.remaining == "0h 40m"
        assert view.clock.overdue is False
        assert [w.id for w in view.watchers] == ["w1", "w2"]
        assert 1_500 < view.distance_to_destination_m < 3_000

    def test_reminder_hook_and_flag(self, store, located, notifier, clock) -> None:
        reminders = []
        manager = SessionManager(
            store, located, notifier, clock=clock, run_timers=False,
            on_reminder=lambda session, trip: reminders.append((session.id, trip.elapsed)),
        )
        try:
            session = _start(manager, clock)
            clock.advance(minutes=60)
            manager.tracker(session.id).timer.tick()

            assert reminders == [(session.id, "1h 0m")]
            assert manager.session_status("owner-1").clock.should_remind is True
        finally:
            manager.shutdown()

    def test_auto_escalation_when_enabled(self, manager, located, store, clock, monkeypatch) -> None:
        monkeypatch.setattr(escalation_timer.settings, "auto_escalate_after_overdue_s", 600)
        session = _start(manager, clock, estimated_arrival=clock() + timedelta(minutes=30))

        manager.tracker(session.id).timer.tick(clock() + timedelta(minutes=40))

        assert store.get_session(session.id).status == TrackingStatus.EMERGENCY
        assert [a.session_id for a in store.list_alerts()] == [session.id]


class TestResync:
    def test_check_in_from_another_device_stops_reporter(self, manager, located, store, clock) -> None:
        session = _start(manager, clock)

        store.transition_from_active(session.id, TrackingStatus.COMPLETED, completed_at=clock())

        assert manager.tracked_session_ids() == []
        assert located.watch_count("owner-1") == 0

    def test_emergency_from_another_device_keeps_reporter(self, manager, located, store, clock) -> None:
        session = _start(manager, clock)

        store.transition_from_active(session.id, TrackingStatus.EMERGENCY)

        tracker = manager.tracker(session.id)
        assert tracker.reporter.running is True
        assert tracker.timer.stop() is False

    def test_location_pings_do_not_detach(self, manager, located, store, clock) -> None:
        session = _start(manager, clock)
        clock.advance(seconds=10)
        located.push("owner-1", make_position(clock))

        assert manager.tracked_session_ids() == [session.id]

    def test_fetch_reattaches_after_restart(self, manager, located, store, notifier, clock) -> None:
        session = _start(manager, clock)
        restarted = SessionManager(store, located, notifier, clock=clock, run_timers=False)
        try:
            assert restarted.tracked_session_ids() == []

            assert restarted.fetch_active_session("owner-1").id == session.id
            assert restarted.tracked_session_ids() == [session.id]
        finally:
            restarted.shutdown()

    def test_detach_stops_processes_once(self, manager, located, clock) -> None:
        session = _start(manager, clock)

        assert manager.detach(session.id) is True
        assert manager.detach(session.id) is False
        assert located.watch_count("owner-1") == 0

    def test_resolving_emergency_alert_stops_reporter(self, manager, located, store, clock) -> None:
        session = _start(manager, clock)
        alert = manager.trigger_emergency("owner-1")
        assert located.watch_count("owner-1") == 1

        store.resolve_alert(alert.id)

        assert manager.tracked_session_ids() == []
        assert located.watch_count("owner-1") == 0
        assert store.get_session(session.id).status == TrackingStatus.EMERGENCY

    def test_false_alarm_also_stops_reporter(self, manager, located, store, clock) -> None:
        _start(manager, clock)
        alert = manager.trigger_emergency("owner-1")

        store.resolve_alert(alert.id, false_alarm=True)

        assert manager.tracked_session_ids() == []

    def test_fetch_reattaches_open_emergency_after_restart(self, manager, located, store, notifier, clock) -> None:
        session = _start(manager, clock)
        manager.trigger_emergency("owner-1")
        manager.shutdown()
        restarted = SessionManager(store, located, notifier, clock=clock, run_timers=False)
        try:
            assert restarted.fetch_active_session("owner-1") is None

            tracker = restarted.tracker(session.id)
            assert tracker.reporter.running is True
            assert tracker.timer is None

            clock.advance(seconds=10)
            located.push("owner-1", make_position(clock, lat=40.77))
            assert store.get_session(session.id).current_location.latitude == 40.77
        finally:
            restarted.shutdown()

    def test_resolved_emergency_not_reattached(self, manager, located, store, notifier, clock) -> None:
        _start(manager, clock)
        alert = manager.trigger_emergency("owner-1")
        store.resolve_alert(alert.id)
        restarted = SessionManager(store, located, notifier, clock=clock, run_timers=False)
        try:
            restarted.fetch_active_session("owner-1")

            assert restarted.tracked_session_ids() == []
        finally:
            restarted.shutdown()
