"""
Guardian — FastAPI Application

REST + WebSocket API for the "Look After Me" trip watch and panic alerts.

Endpoints:
  PUT    /api/v1/users/{user_id}/position                    — device pushes a GPS fix
  POST   /api/v1/users/{user_id}/position/error              — device reports location denied
  POST   /api/v1/sessions                                    — start a trip
  GET    /api/v1/sessions/active                             — owner's active trip
  GET    /api/v1/sessions/active/status                      — trip + watchers + clock
  POST   /api/v1/sessions/{id}/check-in                      — arrived safely
  POST   /api/v1/sessions/{id}/end                           — end trip early
  POST   /api/v1/sessions/{id}/emergency                     — raise emergency
  POST   /api/v1/sessions/{id}/emergency/resend              — re-emit emergency alert
  POST   /api/v1/sessions/{id}/detach                        — stop background tracking
  GET    /api/v1/watching/{watcher_id}                       — trips a user is watching
  POST   /api/v1/watchers/resolve                            — ids → display names
  POST   /api/v1/users/{user_id}/alerts/{kind}/recording      — start recording
  POST   /api/v1/users/{user_id}/alerts/{kind}/recording/chunks — upload audio chunk
  POST   /api/v1/users/{user_id}/alerts/{kind}/recording/stop — stop and send alert
  POST   /api/v1/users/{user_id}/alerts/{kind}/recording/error — device reports microphone denied
  GET    /api/v1/alerts                                      — alerts, newest first
  POST   /api/v1/alerts/{id}/resolve                         — resolve / mark false alarm
  POST   /api/v1/uploads/outfit                              — outfit photo upload
  WS     /ws/users/{user_id}                                 — live updates for owners and watchers
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

import uvicorn
from fastapi import (
    FastAPI,
    File,
    HTTPException,
    Query,
    Request,
    UploadFile,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from guardian.common.errors import (
    CooldownActive,
    EnvironmentalError,
    GuardianError,
    NoActiveSession,
    PreconditionError,
    SessionAlreadyActive,
    TransientError,
)
from guardian.common.logger import configure_logging
from guardian.common.schemas import (
    Alert,
    AlertKind,
    AlertStatus,
    AlertType,
    Audience,
    GeoPoint,
    Position,
    SessionStatusView,
    TrackingSession,
    TripClock,
    TripMetadata,
    Watcher,
)
from guardian.common.utils import group_alerts_by_category, utc_now
from guardian.config import get_settings
from guardian.database.session import Base, engine
from guardian.database.store import TrackingStore
from guardian.services.alert_capture import (
    AlertCapture,
    AlertCaptureRegistry,
    UploadedAudioInput,
)
from guardian.services.blob_storage import BlobStorage
from guardian.services.change_feed import change_feed
from guardian.services.geocoding import reverse_geocoder
from guardian.services.geolocation import location_provider
from guardian.services.session_manager import SessionManager
from guardian.services.watcher_notifier import WatcherNotifier
from guardian.services.websocket_manager import ChangeFeedBridge, ws_manager

logger = logging.getLogger(__name__)
settings = get_settings()

# ── Wiring ────────────────────────────────────────────────────────────────────

store = TrackingStore(feed=change_feed)
blob_storage = BlobStorage()
audio_input = UploadedAudioInput()
notifier = WatcherNotifier(store, ws_manager)


def _push_check_in_reminder(session: TrackingSession, clock: TripClock) -> None:
    ws_manager.send_to_user_sync(session.owner_id, {
        "type": "CHECK_IN_REMINDER",
        "session_id": session.id,
        "title": "Time to Check In",
        "description": "Please confirm you're safe by checking in.",
        "clock": clock.model_dump(),
    })


session_manager = SessionManager(
    store,
    location_provider,
    notifier,
    on_reminder=_push_check_in_reminder,
)

alert_captures = AlertCaptureRegistry(
    lambda user_id: AlertCapture(
        user_id=user_id,
        audio_input=audio_input,
        provider=location_provider,
        store=store,
        blob_storage=blob_storage,
        geocoder=reverse_geocoder,
    )
)

_bridge_subscriptions: list = []

# ── App ───────────────────────────────────────────────────────────────────────

app = FastAPI(
    title="Guardian — Trip Watch API",
    description="Live trip tracking with check-in reminders, emergency escalation to watchers, and panic alerts.",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup() -> None:
    configure_logging(settings.log_level.value)
    Base.metadata.create_all(bind=engine)
    ws_manager.set_event_loop(asyncio.get_event_loop())
    if not _bridge_subscriptions:
        _bridge_subscriptions.extend(ChangeFeedBridge(store, ws_manager).attach(change_feed))
    logger.info("Guardian started — DB tables ready, WebSocket loop captured.")


@app.on_event("shutdown")
async def shutdown() -> None:
    session_manager.shutdown()
    for sub in _bridge_subscriptions:
        sub.unsubscribe()
    _bridge_subscriptions.clear()


# ── Error mapping ─────────────────────────────────────────────────────────────

def _status_for(exc: GuardianError) -> int:
    if isinstance(exc, CooldownActive):
        return status.HTTP_429_TOO_MANY_REQUESTS
    if isinstance(exc, (NoActiveSession, SessionAlreadyActive)):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, PreconditionError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(exc, EnvironmentalError):
        return status.HTTP_424_FAILED_DEPENDENCY
    if isinstance(exc, TransientError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@app.exception_handler(GuardianError)
async def guardian_error_handler(request: Request, exc: GuardianError) -> JSONResponse:
    headers = None
    if isinstance(exc, CooldownActive):
        headers = {"Retry-After": str(max(int(exc.retry_after_s + 0.999), 1))}
    return JSONResponse(status_code=_status_for(exc), content=exc.to_dict(), headers=headers)


# ── Request models ────────────────────────────────────────────────────────────

class PositionPushRequest(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy_m: Optional[float] = Field(default=None, ge=0.0)
    timestamp: Optional[datetime] = None

    def to_position(self) -> Position:
        return Position(
            point=GeoPoint(longitude=self.longitude, latitude=self.latitude),
            accuracy_m=self.accuracy_m,
            timestamp=self.timestamp or utc_now(),
        )


class PositionErrorRequest(BaseModel):
    message: str = "Location permission denied"


class StartSessionRequest(BaseModel):
    owner_id: str
    destination_name: str
    watcher_ids: List[str]
    estimated_arrival: Optional[datetime] = None
    destination_location: Optional[GeoPoint] = None
    metadata: TripMetadata = Field(default_factory=TripMetadata)


class OwnerRequest(BaseModel):
    owner_id: str


class ResolveWatchersRequest(BaseModel):
    ids: List[str]


class RecordingErrorRequest(BaseModel):
    message: str = "Microphone permission denied"


class SendAlertRequest(BaseModel):
    audience: Audience = Audience.NEARBY
    low_data_mode: bool = False


# ── Health ────────────────────────────────────────────────────────────────────

@app.get("/health", tags=["System"])
async def health() -> Dict[str, Any]:
    return {
        "status": "ok",
        "environment": settings.environment.value,
        "tracked_sessions": len(session_manager.tracked_session_ids()),
    }


# ── Device position ───────────────────────────────────────────────────────────

@app.put("/api/v1/users/{user_id}/position", tags=["Location"])
def push_position(user_id: str, req: PositionPushRequest) -> Dict[str, Any]:
    """Device GPS fix. Feeds one-shot requests and any live location reporter."""
    delivered = location_provider.push(user_id, req.to_position())
    return {"user_id": user_id, "status": "accepted", "watchers": delivered}


@app.post("/api/v1/users/{user_id}/position/error", tags=["Location"])
def push_position_error(user_id: str, req: PositionErrorRequest) -> Dict[str, str]:
    location_provider.report_error(user_id, req.message)
    return {"user_id": user_id, "status": "recorded"}


# ── Tracking sessions ─────────────────────────────────────────────────────────

@app.post("/api/v1/sessions", status_code=status.HTTP_201_CREATED, tags=["Trips"])
def start_session(req: StartSessionRequest) -> TrackingSession:
    return session_manager.start_session(
        owner_id=req.owner_id,
        destination_name=req.destination_name,
        watcher_ids=req.watcher_ids,
        estimated_arrival=req.estimated_arrival,
        destination_location=req.destination_location,
        metadata=req.metadata,
    )


@app.get("/api/v1/sessions/active", tags=["Trips"])
def get_active_session(owner_id: str = Query(...)) -> Optional[TrackingSession]:
    return session_manager.fetch_active_session(owner_id)


@app.get("/api/v1/sessions/active/status", tags=["Trips"])
def get_active_session_status(owner_id: str = Query(...)) -> Optional[SessionStatusView]:
    return session_manager.session_status(owner_id)


@app.post("/api/v1/sessions/{session_id}/check-in", tags=["Trips"])
def check_in(session_id: str, req: OwnerRequest) -> TrackingSession:
    return session_manager.check_in(req.owner_id, session_id)


@app.post("/api/v1/sessions/{session_id}/end", tags=["Trips"])
def end_session(session_id: str, req: OwnerRequest) -> TrackingSession:
    return session_manager.end_session(req.owner_id, session_id)


@app.post("/api/v1/sessions/{session_id}/emergency", tags=["Trips"])
def trigger_emergency(session_id: str, req: OwnerRequest) -> Alert:
    return session_manager.trigger_emergency(req.owner_id, session_id)


@app.post("/api/v1/sessions/{session_id}/emergency/resend", tags=["Trips"])
def resend_emergency(session_id: str, req: OwnerRequest) -> Alert:
    return session_manager.resend_emergency_alert(req.owner_id, session_id)


@app.post("/api/v1/sessions/{session_id}/detach", tags=["Trips"])
def detach_session(session_id: str) -> Dict[str, Any]:
    return {"session_id": session_id, "detached": session_manager.detach(session_id)}


@app.get("/api/v1/watching/{watcher_id}", tags=["Watchers"])
def list_watched_sessions(watcher_id: str) -> List[SessionStatusView]:
    return session_manager.watched_sessions(watcher_id)


@app.post("/api/v1/watchers/resolve", tags=["Watchers"])
def resolve_watchers(req: ResolveWatchersRequest) -> List[Watcher]:
    return notifier.resolve_watchers(req.ids)


# ── Panic / amber capture ─────────────────────────────────────────────────────

@app.post("/api/v1/users/{user_id}/alerts/{kind}/recording",
          status_code=status.HTTP_201_CREATED, tags=["Alerts"])
def start_recording(user_id: str, kind: AlertKind) -> Dict[str, Any]:
    alert_captures.get(user_id).start_recording(kind)
    return {"user_id": user_id, "kind": kind.value, "state": "recording"}


@app.post("/api/v1/users/{user_id}/alerts/{kind}/recording/chunks", tags=["Alerts"])
async def upload_recording_chunk(user_id: str, kind: AlertKind, file: UploadFile = File(...)) -> Dict[str, Any]:
    chunk = await file.read()
    total = audio_input.append(user_id, kind, chunk)
    return {
        "user_id": user_id,
        "kind": kind.value,
        "bytes": total,
        "recording_seconds": alert_captures.get(user_id).recording_seconds(kind),
    }


@app.post("/api/v1/users/{user_id}/alerts/{kind}/recording/stop", tags=["Alerts"])
def stop_recording_and_send(user_id: str, kind: AlertKind, req: SendAlertRequest) -> Alert:
    return alert_captures.get(user_id).stop_recording_and_send(
        kind, audience=req.audience, low_data_mode=req.low_data_mode
    )


@app.post("/api/v1/users/{user_id}/alerts/{kind}/recording/error", tags=["Alerts"])
def report_recording_error(user_id: str, kind: AlertKind, req: RecordingErrorRequest) -> Dict[str, Any]:
    """Microphone lost or denied on the device; the next stop or start for this recorder fails."""
    hit_stream = audio_input.report_error(user_id, kind, req.message)
    logger.warning(
        "Device reported microphone failure",
        extra={"context": {"user_id": user_id, "alert_kind": kind.value, "while_recording": hit_stream}},
    )
    return {"user_id": user_id, "kind": kind.value, "status": "recorded", "while_recording": hit_stream}


# ── Alerts feed ───────────────────────────────────────────────────────────────

@app.get("/api/v1/alerts", tags=["Alerts"])
def list_alerts(
    alert_type: Optional[AlertType] = Query(None),
    status_filter: Optional[AlertStatus] = Query(None, alias="status"),
    user_id: Optional[str] = Query(None),
    grouped: bool = Query(False),
    limit: int = Query(50, le=200),
) -> Any:
    alerts = store.list_alerts(limit=limit, alert_type=alert_type, status=status_filter, user_id=user_id)
    if not grouped:
        return alerts
    buckets = group_alerts_by_category(alerts, type_of=lambda a: a.alert_type)
    return {category.value: items for category, items in buckets.items()}


@app.post("/api/v1/alerts/{alert_id}/resolve", tags=["Alerts"])
def resolve_alert(alert_id: str, false_alarm: bool = Query(False)) -> Alert:
    alert = store.resolve_alert(alert_id, false_alarm=false_alarm)
    if alert is None:
        raise HTTPException(status_code=404, detail="Alert not found")
    return alert


# ── Uploads ───────────────────────────────────────────────────────────────────

@app.post("/api/v1/uploads/outfit", status_code=status.HTTP_201_CREATED, tags=["Uploads"])
async def upload_outfit_photo(file: UploadFile = File(...)) -> Dict[str, str]:
    """Store an outfit photo; the returned URL goes into the trip metadata."""
    data = await file.read()
    key = f"outfit-{uuid4().hex}-{file.filename or 'photo'}"
    url = await asyncio.to_thread(
        blob_storage.upload, key, data, file.content_type or "application/octet-stream"
    )
    return {"url": url}


# ── WebSocket ─────────────────────────────────────────────────────────────────

@app.websocket("/ws/users/{user_id}")
async def user_websocket(websocket: WebSocket, user_id: str) -> None:
    """
    Persistent connection for trip owners and watchers.
    Receives TRACKING_SESSION_UPDATED, RECORD_CHANGED, CHECK_IN_REMINDER and
    EMERGENCY messages. Devices may also stream POSITION messages upstream.
    """
    await ws_manager.connect(websocket, user_id)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except ValueError:
                logger.warning(f"Ignoring non-JSON frame from {user_id}")
                continue
            if not isinstance(data, dict):
                logger.warning(f"Ignoring non-object frame from {user_id}")
                continue
            if data.get("type") == "POSITION":
                try:
                    req = PositionPushRequest(**{k: v for k, v in data.items() if k != "type"})
                except ValidationError as exc:
                    logger.warning(f"Bad POSITION message from {user_id}: {exc}")
                    continue
                await asyncio.to_thread(location_provider.push, user_id, req.to_position())
    except WebSocketDisconnect:
        logger.info(f"User {user_id} disconnected")
    finally:
        ws_manager.disconnect(user_id, websocket)


# ── Entry point ───────────────────────────────────────────────────────────────

def run_server() -> None:
    uvicorn.run(
        "guardian.services.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.environment.value == "dev",
    )


if __name__ == "__main__":
    run_server()
