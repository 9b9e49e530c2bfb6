"""
Guardian — Pydantic Domain Schemas

Strict type-safe data models for every data boundary (API, store, events).
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


# ─── Enums ────────────────────────────────────────────────────────────────────

class TrackingStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EMERGENCY = "emergency"

    @property
    def is_terminal(self) -> bool:
        return self is not TrackingStatus.ACTIVE


class AlertType(str, Enum):
    PANIC = "panic"
    AMBER = "amber"
    ROBBERY = "robbery"
    ASSAULT = "assault"
    SUSPICIOUS = "suspicious"
    HOUSE_BREAKING = "house_breaking"
    ACCIDENT = "accident"
    KIDNAPPING = "kidnapping"
    FIRE = "fire"
    MEDICAL = "medical"
    UNSAFE_AREA = "unsafe_area"
    OTHER = "other"


class AlertKind(str, Enum):
    """Alert classes produced by the panic/amber capture buttons."""
    PANIC = "panic"
    AMBER = "amber"


class AlertStatus(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"
    FALSE_ALARM = "false_alarm"


class AlertCategory(str, Enum):
    CRITICAL = "critical"
    CRIME = "crime"
    EMERGENCY = "emergency"
    OTHER = "other"


class Audience(str, Enum):
    NEARBY = "nearby"
    CONTACTS = "contacts"
    PUBLIC = "public"

    @property
    def label(self) -> str:
        return {
            Audience.NEARBY: "nearby users",
            Audience.CONTACTS: "contacts",
            Audience.PUBLIC: "public feed",
        }[self]


# ─── Value Objects ────────────────────────────────────────────────────────────

class GeoPoint(BaseModel):
    longitude: float = Field(..., ge=-180, le=180)
    latitude: float = Field(..., ge=-90, le=90)


class Position(BaseModel):
    """One fix from a device's location service."""
    point: GeoPoint
    accuracy_m: Optional[float] = Field(default=None, ge=0.0)
    timestamp: datetime


class Companion(BaseModel):
    name: str
    phone: str = ""
    relationship: str = "Friend"


class VehicleDetails(BaseModel):
    make: Optional[str] = None
    model: Optional[str] = None
    color: Optional[str] = None
    plate: Optional[str] = None


class TripMetadata(BaseModel):
    """Inert payload echoed back to watchers; the core never interprets it."""
    companions: List[Companion] = Field(default_factory=list)
    vehicle: Optional[VehicleDetails] = None
    outfit_description: Optional[str] = None
    outfit_photo_url: Optional[str] = None
    might_be_late: bool = False
    staying_overnight: bool = False


# ─── Domain Models ────────────────────────────────────────────────────────────

class TrackingSession(BaseModel):
    id: str
    owner_id: str
    destination_name: str
    current_location: Optional[GeoPoint] = None
    destination_location: Optional[GeoPoint] = None
    status: TrackingStatus = TrackingStatus.ACTIVE
    watcher_ids: List[str]
    started_at: datetime
    estimated_arrival: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    metadata: TripMetadata = Field(default_factory=TripMetadata)


class Watcher(BaseModel):
    id: str
    full_name: str


class Alert(BaseModel):
    id: str
    alert_type: AlertType
    location: GeoPoint
    location_name: Optional[str] = None
    description: Optional[str] = None
    audio_url: Optional[str] = None
    user_id: str
    session_id: Optional[str] = None
    status: AlertStatus = AlertStatus.ACTIVE
    is_false_alarm: bool = False
    created_at: Optional[datetime] = None


class NewAlert(BaseModel):
    """Alert payload at creation time, before the store assigns an id."""
    alert_type: AlertType
    location: GeoPoint
    location_name: Optional[str] = None
    description: Optional[str] = None
    audio_url: Optional[str] = None
    user_id: str
    session_id: Optional[str] = None
    status: AlertStatus = AlertStatus.ACTIVE


class TripClock(BaseModel):
    elapsed: str
    remaining: Optional[str] = None
    overdue: bool = False
    should_remind: bool = False


class SessionStatusView(BaseModel):
    session: TrackingSession
    watchers: List[Watcher]
    clock: TripClock
    distance_to_destination_m: Optional[float] = None
