"""
Guardian — SQLAlchemy ORM Models

Tables for profiles, tracking sessions and alerts. Uses create_all() at
startup — no migrations.
"""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, ForeignKey, Index, String, text
from sqlalchemy.sql import func

from guardian.database.session import Base


ONE_ACTIVE_INDEX = "uq_tracking_sessions_one_active"


def _uuid() -> str:
    return str(uuid4())


# ── Profiles ───────────────────────────────────────────────────────────────────

class ProfileRecord(Base):
    __tablename__ = "profiles"

    id = Column(String, primary_key=True, default=_uuid)
    full_name = Column(String, nullable=True)
    display_name = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


# ── Tracking Sessions ("Look After Me" trips) ──────────────────────────────────

class TrackingSessionRecord(Base):
    __tablename__ = "tracking_sessions"
    __table_args__ = (
        # At most one active trip per owner, even under concurrent starts
        Index(
            ONE_ACTIVE_INDEX,
            "owner_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    id = Column(String, primary_key=True, default=_uuid)
    # Owner profiles are managed outside this service; not a foreign key
    owner_id = Column(String, nullable=False, index=True)
    destination_name = Column(String, nullable=False)
    destination_latitude = Column(Float, nullable=True)
    destination_longitude = Column(Float, nullable=True)

    # Written only by the location reporter (and once at creation)
    current_latitude = Column(Float, nullable=True)
    current_longitude = Column(Float, nullable=True)
    location_updated_at = Column(DateTime(timezone=True), nullable=True)

    # Written only by the session manager
    status = Column(String, nullable=False, default="active", index=True)  # active | completed | cancelled | emergency
    completed_at = Column(DateTime(timezone=True), nullable=True)

    watcher_ids = Column(JSON, nullable=False, default=list)
    started_at = Column(DateTime(timezone=True), nullable=False)
    estimated_arrival = Column(DateTime(timezone=True), nullable=True)

    # Inert trip metadata
    companions = Column(JSON, nullable=True)
    vehicle_make = Column(String, nullable=True)
    vehicle_model = Column(String, nullable=True)
    vehicle_color = Column(String, nullable=True)
    vehicle_plate = Column(String, nullable=True)
    outfit_description = Column(String, nullable=True)
    outfit_photo_url = Column(String, nullable=True)
    might_be_late = Column(Boolean, default=False)
    staying_overnight = Column(Boolean, default=False)


# ── Alerts ─────────────────────────────────────────────────────────────────────

class AlertRecord(Base):
    __tablename__ = "alerts"

    id = Column(String, primary_key=True, default=_uuid)
    alert_type = Column(String, nullable=False, index=True)  # panic | amber | ...
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    location_name = Column(String, nullable=True)
    description = Column(String, nullable=True)
    audio_url = Column(String, nullable=True)
    user_id = Column(String, nullable=False, index=True)
    session_id = Column(String, ForeignKey("tracking_sessions.id"), nullable=True)
    status = Column(String, default="active")  # active | resolved | false_alarm
    is_false_alarm = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
