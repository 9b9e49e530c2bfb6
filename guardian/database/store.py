"""
Guardian — Tracking Store

The persistent-store boundary the tracking core runs against: durable
records (profiles, tracking sessions, alerts) plus a change notification
after every committed write.

Field ownership on tracking sessions is enforced here:
  - status / completed_at change only through `transition_from_active`,
    an atomic conditional UPDATE, so two racing check-ins cannot both win
  - current location changes only through `update_location`, which never
    touches status
No method ever read-modify-writes a whole session row.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, List, Optional, Sequence

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from guardian.common.errors import SessionAlreadyActive, StoreReadError, StoreWriteError
from guardian.common.events import ChangeType, RecordChangedEvent, Table
from guardian.common.schemas import (
    Alert,
    AlertStatus,
    AlertType,
    Companion,
    GeoPoint,
    NewAlert,
    TrackingSession,
    TrackingStatus,
    TripMetadata,
    VehicleDetails,
)
from guardian.common.utils import as_utc, utc_now
from guardian.config import get_settings
from guardian.database.models import ONE_ACTIVE_INDEX, AlertRecord, ProfileRecord, TrackingSessionRecord
from guardian.services.change_feed import ChangeFeed, change_feed

logger = logging.getLogger(__name__)
settings = get_settings()

# Statuses during which location pings are still accepted
_LOCATION_WRITABLE = (TrackingStatus.ACTIVE.value, TrackingStatus.EMERGENCY.value)


# ── Record → schema conversion ─────────────────────────────────────────────────

def _point(lon: Optional[float], lat: Optional[float]) -> Optional[GeoPoint]:
    if lon is None or lat is None:
        return None
    return GeoPoint(longitude=lon, latitude=lat)


def _opt_utc(value: Optional[datetime]) -> Optional[datetime]:
    return as_utc(value) if value is not None else None


def _violates_one_active(exc: IntegrityError) -> bool:
    """True when `exc` comes from the one-active-session-per-owner index."""
    message = str(exc.orig)
    # PostgreSQL names the index; SQLite names the indexed column
    return ONE_ACTIVE_INDEX in message or "UNIQUE constraint failed: tracking_sessions.owner_id" in message


def session_from_record(r: TrackingSessionRecord) -> TrackingSession:
    vehicle = None
    if any((r.vehicle_make, r.vehicle_model, r.vehicle_color, r.vehicle_plate)):
        vehicle = VehicleDetails(
            make=r.vehicle_make, model=r.vehicle_model,
            color=r.vehicle_color, plate=r.vehicle_plate,
        )
    return TrackingSession(
        id=r.id,
        owner_id=r.owner_id,
        destination_name=r.destination_name,
        current_location=_point(r.current_longitude, r.current_latitude),
        destination_location=_point(r.destination_longitude, r.destination_latitude),
        status=TrackingStatus(r.status),
        watcher_ids=list(r.watcher_ids or []),
        started_at=as_utc(r.started_at),
        estimated_arrival=_opt_utc(r.estimated_arrival),
        completed_at=_opt_utc(r.completed_at),
        metadata=TripMetadata(
            companions=[Companion(**c) for c in (r.companions or [])],
            vehicle=vehicle,
            outfit_description=r.outfit_description,
            outfit_photo_url=r.outfit_photo_url,
            might_be_late=bool(r.might_be_late),
            staying_overnight=bool(r.staying_overnight),
        ),
    )


def alert_from_record(r: AlertRecord) -> Alert:
    return Alert(
        id=r.id,
        alert_type=AlertType(r.alert_type),
        location=GeoPoint(longitude=r.longitude, latitude=r.latitude),
        location_name=r.location_name,
        description=r.description,
        audio_url=r.audio_url,
        user_id=r.user_id,
        session_id=r.session_id,
        status=AlertStatus(r.status or AlertStatus.ACTIVE.value),
        is_false_alarm=bool(r.is_false_alarm),
        created_at=_opt_utc(r.created_at),
    )


# ── Store ──────────────────────────────────────────────────────────────────────

class TrackingStore:
    """Durable records + change notifications for the tracking core."""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        feed: Optional[ChangeFeed] = None,
        clock: Callable[[], datetime] = utc_now,
        alert_insert_attempts: Optional[int] = None,
        retry_delay_s: float = 0.5,
    ) -> None:
        if session_factory is None:
            from guardian.database.session import SessionLocal
            session_factory = SessionLocal
        self._session_factory = session_factory
        self.feed = feed or change_feed
        self._clock = clock
        self._alert_attempts = alert_insert_attempts or settings.alert_insert_attempts
        self._retry_delay_s = retry_delay_s

    # ── plumbing ──────────────────────────────────────────────────────────────

    @contextmanager
    def _write(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            if _violates_one_active(exc):
                raise SessionAlreadyActive() from exc
            logger.error(f"Store write rejected by a constraint: {exc.orig}")
            raise StoreWriteError() from exc
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(f"Store write failed: {exc}")
            raise StoreWriteError() from exc
        finally:
            db.close()

    @contextmanager
    def _read(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
        except SQLAlchemyError as exc:
            logger.error(f"Store read failed: {exc}")
            raise StoreReadError() from exc
        finally:
            db.close()

    def _publish(self, table: Table, change: ChangeType, record_id: str,
                 owner_id: Optional[str] = None, status: Optional[str] = None) -> None:
        self.feed.publish(RecordChangedEvent(
            table=table, event_type=change, record_id=record_id,
            owner_id=owner_id, status=status,
        ))

    # ── Profiles ──────────────────────────────────────────────────────────────

    def upsert_profile(self, profile_id: str, full_name: Optional[str] = None,
                       display_name: Optional[str] = None) -> ProfileRecord:
        with self._write() as db:
            record = db.query(ProfileRecord).filter_by(id=profile_id).first()
            change = ChangeType.UPDATE
            if record is None:
                record = ProfileRecord(id=profile_id)
                db.add(record)
                change = ChangeType.INSERT
            record.full_name = full_name
            record.display_name = display_name
        self._publish(Table.PROFILES, change, profile_id, owner_id=profile_id)
        return record

    def profiles_by_ids(self, ids: Sequence[str]) -> List[ProfileRecord]:
        """Profiles whose id is in `ids` (store order, unknown ids absent)."""
        if not ids:
            return []
        with self._read() as db:
            return db.query(ProfileRecord).filter(ProfileRecord.id.in_(list(ids))).all()

    # ── Tracking sessions ─────────────────────────────────────────────────────

    def insert_session(
        self,
        owner_id: str,
        destination_name: str,
        watcher_ids: Sequence[str],
        current_location: GeoPoint,
        started_at: datetime,
        estimated_arrival: Optional[datetime] = None,
        destination_location: Optional[GeoPoint] = None,
        metadata: Optional[TripMetadata] = None,
    ) -> TrackingSession:
        metadata = metadata or TripMetadata()
        vehicle = metadata.vehicle or VehicleDetails()
        record = TrackingSessionRecord(
            owner_id=owner_id,
            destination_name=destination_name,
            destination_latitude=destination_location.latitude if destination_location else None,
            destination_longitude=destination_location.longitude if destination_location else None,
            current_latitude=current_location.latitude,
            current_longitude=current_location.longitude,
            location_updated_at=started_at,
            status=TrackingStatus.ACTIVE.value,
            watcher_ids=list(watcher_ids),
            started_at=started_at,
            estimated_arrival=estimated_arrival,
            companions=[c.model_dump() for c in metadata.companions] or None,
            vehicle_make=vehicle.make,
            vehicle_model=vehicle.model,
            vehicle_color=vehicle.color,
            vehicle_plate=vehicle.plate,
            outfit_description=metadata.outfit_description,
            outfit_photo_url=metadata.outfit_photo_url,
            might_be_late=metadata.might_be_late,
            staying_overnight=metadata.staying_overnight,
        )
        try:
            with self._write() as db:
                db.add(record)
                db.flush()
                session = session_from_record(record)
        except SessionAlreadyActive:
            logger.warning(f"Rejected second active session for owner {owner_id}")
            raise

        self._publish(Table.TRACKING_SESSIONS, ChangeType.INSERT, session.id,
                      owner_id=owner_id, status=session.status.value)
        return session

    def get_session(self, session_id: str) -> Optional[TrackingSession]:
        with self._read() as db:
            record = db.query(TrackingSessionRecord).filter_by(id=session_id).first()
            return session_from_record(record) if record else None

    def find_active_session(self, owner_id: str) -> Optional[TrackingSession]:
        """The single `active` session for `owner_id`, or None."""
        with self._read() as db:
            record = (
                db.query(TrackingSessionRecord)
                .filter(
                    TrackingSessionRecord.owner_id == owner_id,
                    TrackingSessionRecord.status == TrackingStatus.ACTIVE.value,
                )
                .order_by(TrackingSessionRecord.started_at.desc())
                .first()
            )
            return session_from_record(record) if record else None

    def find_open_emergency_sessions(self, owner_id: str) -> List[TrackingSession]:
        """`emergency` sessions of `owner_id` whose alert has not been resolved."""
        closed = (AlertStatus.RESOLVED.value, AlertStatus.FALSE_ALARM.value)
        with self._read() as db:
            resolved_ids = {
                row.session_id
                for row in db.query(AlertRecord.session_id)
                .filter(AlertRecord.session_id.isnot(None), AlertRecord.status.in_(closed))
                .all()
            }
            records = (
                db.query(TrackingSessionRecord)
                .filter(
                    TrackingSessionRecord.owner_id == owner_id,
                    TrackingSessionRecord.status == TrackingStatus.EMERGENCY.value,
                )
                .order_by(TrackingSessionRecord.started_at.desc())
                .all()
            )
            return [session_from_record(r) for r in records if r.id not in resolved_ids]

    def sessions_watched_by(self, watcher_id: str) -> List[TrackingSession]:
        """Live (`active` or `emergency`) sessions listing `watcher_id` as a watcher."""
        with self._read() as db:
            records = (
                db.query(TrackingSessionRecord)
                .filter(TrackingSessionRecord.status.in_(_LOCATION_WRITABLE))
                .order_by(TrackingSessionRecord.started_at.desc())
                .all()
            )
            # JSON membership is not portable across backends; filter here
            return [session_from_record(r) for r in records if watcher_id in (r.watcher_ids or [])]

    def transition_from_active(
        self,
        session_id: str,
        to_status: TrackingStatus,
        completed_at: Optional[datetime] = None,
        owner_id: Optional[str] = None,
    ) -> Optional[TrackingSession]:
        """
        Move a session out of `active` in one conditional UPDATE.

        Returns the updated session, or None when the row was not `active`
        (already terminal, lost a race, or not owned by `owner_id`).
        Terminal rows are never touched.
        """
        values = {"status": to_status.value}
        if completed_at is not None:
            values["completed_at"] = completed_at

        with self._write() as db:
            q = db.query(TrackingSessionRecord).filter(
                TrackingSessionRecord.id == session_id,
                TrackingSessionRecord.status == TrackingStatus.ACTIVE.value,
            )
            if owner_id is not None:
                q = q.filter(TrackingSessionRecord.owner_id == owner_id)
            updated = q.update(values, synchronize_session=False)
            record = db.query(TrackingSessionRecord).filter_by(id=session_id).first() if updated else None
            session = session_from_record(record) if record else None

        if session is None:
            return None
        self._publish(Table.TRACKING_SESSIONS, ChangeType.UPDATE, session_id,
                      owner_id=session.owner_id, status=to_status.value)
        return session

    def update_location(self, session_id: str, point: GeoPoint, at: Optional[datetime] = None) -> bool:
        """Persist a location ping; False when the session no longer accepts pings."""
        with self._write() as db:
            updated = (
                db.query(TrackingSessionRecord)
                .filter(
                    TrackingSessionRecord.id == session_id,
                    TrackingSessionRecord.status.in_(_LOCATION_WRITABLE),
                )
                .update(
                    {
                        "current_latitude": point.latitude,
                        "current_longitude": point.longitude,
                        "location_updated_at": at or self._clock(),
                    },
                    synchronize_session=False,
                )
            )
        if updated:
            self._publish(Table.TRACKING_SESSIONS, ChangeType.UPDATE, session_id)
        return bool(updated)

    # ── Alerts ────────────────────────────────────────────────────────────────

    def insert_alert(self, alert: NewAlert) -> Alert:
        """
        Create an Alert record, retrying transient failures.

        At-least-once: a retry after an ambiguous failure may leave a
        duplicate row, which downstream consumers tolerate.
        """
        last_exc: Optional[StoreWriteError] = None
        for attempt in range(self._alert_attempts):
            try:
                with self._write() as db:
                    record = AlertRecord(
                        alert_type=alert.alert_type.value,
                        latitude=alert.location.latitude,
                        longitude=alert.location.longitude,
                        location_name=alert.location_name,
                        description=alert.description,
                        audio_url=alert.audio_url,
                        user_id=alert.user_id,
                        session_id=alert.session_id,
                        status=alert.status.value,
                        is_false_alarm=False,
                        created_at=self._clock(),
                    )
                    db.add(record)
                    db.flush()
                    created = alert_from_record(record)
                self._publish(Table.ALERTS, ChangeType.INSERT, created.id,
                              owner_id=created.user_id, status=created.status.value)
                return created
            except StoreWriteError as exc:
                last_exc = exc
                remaining = self._alert_attempts - attempt - 1
                logger.warning(
                    f"Alert insert attempt {attempt + 1}/{self._alert_attempts} failed. "
                    + ("Retrying…" if remaining else "Giving up."),
                    extra={"context": {"user_id": alert.user_id, "alert_type": alert.alert_type.value}},
                )
                if remaining:
                    time.sleep(self._retry_delay_s * (2 ** attempt))
        raise last_exc

    def list_alerts(
        self,
        limit: int = 50,
        alert_type: Optional[AlertType] = None,
        status: Optional[AlertStatus] = None,
        user_id: Optional[str] = None,
    ) -> List[Alert]:
        """Alerts ordered by recency, newest first."""
        with self._read() as db:
            q = db.query(AlertRecord)
            if alert_type:
                q = q.filter(AlertRecord.alert_type == alert_type.value)
            if status:
                q = q.filter(AlertRecord.status == status.value)
            if user_id:
                q = q.filter(AlertRecord.user_id == user_id)
            records = q.order_by(AlertRecord.created_at.desc()).limit(limit).all()
            return [alert_from_record(r) for r in records]

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        with self._read() as db:
            record = db.query(AlertRecord).filter_by(id=alert_id).first()
            return alert_from_record(record) if record else None

    def resolve_alert(self, alert_id: str, false_alarm: bool = False) -> Optional[Alert]:
        with self._write() as db:
            record = db.query(AlertRecord).filter_by(id=alert_id).first()
            if record is None:
                return None
            record.status = (AlertStatus.FALSE_ALARM if false_alarm else AlertStatus.RESOLVED).value
            record.is_false_alarm = false_alarm
            db.flush()
            alert = alert_from_record(record)
        self._publish(Table.ALERTS, ChangeType.UPDATE, alert_id,
                      owner_id=alert.user_id, status=alert.status.value)
        return alert
