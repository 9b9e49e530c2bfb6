"""
Guardian — Panic / Amber Alert Capture

Press-to-record, press-again-to-send emergency alerts. Each user has two
independent recorders, one per alert kind (panic, amber), each cycling
idle → recording → idle. Both share one send cooldown: any alert within
`alert_cooldown_s` of the last successful one is refused with
CooldownActive and no work is done.

Send pipeline (stop_recording_and_send):
  1. stop capture, join chunks into one audio blob
  2. cooldown gate
  3. resolve current position (LocationUnavailable aborts, nothing stored)
  4. reverse-geocode a place name, unless low-data mode is on
  5. upload audio; a failed upload still sends the alert, without audio
  6. insert the Alert record

The audience choice is carried in the description only; routing to that
audience is left to consumers of the alerts table.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from guardian.common.errors import (
    AlreadyRecording,
    BlobUploadError,
    CooldownActive,
    MicrophoneUnavailable,
    NotRecording,
)
from guardian.common.schemas import Alert, AlertKind, AlertType, Audience, NewAlert
from guardian.common.utils import utc_now
from guardian.config import get_settings
from guardian.database.store import TrackingStore
from guardian.services.blob_storage import BlobStorage
from guardian.services.geocoding import ReverseGeocoder
from guardian.services.geolocation import LocationProvider

logger = logging.getLogger(__name__)
settings = get_settings()

AUDIO_CONTENT_TYPE = "audio/webm"
DEFAULT_LOCATION_NAME = "Current Location"


def alert_description(kind: AlertKind, audience: Audience) -> str:
    if kind == AlertKind.PANIC:
        return f"Emergency — need help (sent to {audience.label})"
    return f"Amber Alert — need assistance (sent to {audience.label})"


# ── Audio capture ──────────────────────────────────────────────────────────────

class AudioStream(Protocol):
    def stop(self) -> List[bytes]: ...


class AudioInput(Protocol):
    def open(self, user_id: str, kind: AlertKind) -> AudioStream:
        """Acquire a capture stream; raises MicrophoneUnavailable."""
        ...


class UploadedAudioStream:
    """
    Capture stream whose chunks are uploaded by the device while recording.

    A device that loses its microphone mid-recording reports it through
    fail(); every later append() or stop() then raises MicrophoneUnavailable.
    """

    def __init__(self, on_close: Callable[[], None]) -> None:
        self._chunks: List[bytes] = []
        self._on_close = on_close
        self._open = True
        self._error: Optional[MicrophoneUnavailable] = None
        self._lock = threading.Lock()

    def fail(self, message: Optional[str] = None) -> None:
        with self._lock:
            self._error = MicrophoneUnavailable(message)

    def append(self, chunk: bytes) -> int:
        with self._lock:
            if self._error is not None:
                raise self._error
            if not self._open:
                raise NotRecording()
            if chunk:
                self._chunks.append(chunk)
            return sum(len(c) for c in self._chunks)

    def stop(self) -> List[bytes]:
        with self._lock:
            self._open = False
            chunks = list(self._chunks)
            error = self._error
        self._on_close()
        if error is not None:
            raise error
        return chunks


class UploadedAudioInput:
    """
    Server-side audio input: one open upload stream per (user, kind).

    Microphone errors reported by the device fail the open stream, or, when
    none is open, make the next open() for that recorder raise.
    """

    def __init__(self) -> None:
        self._streams: Dict[Tuple[str, AlertKind], UploadedAudioStream] = {}
        self._denied: Dict[Tuple[str, AlertKind], Optional[str]] = {}
        self._lock = threading.Lock()

    def open(self, user_id: str, kind: AlertKind) -> UploadedAudioStream:
        key = (user_id, kind)
        stream = UploadedAudioStream(on_close=lambda: self._close(key))
        with self._lock:
            if key in self._denied:
                raise MicrophoneUnavailable(self._denied.pop(key))
            self._streams[key] = stream
        return stream

    def report_error(self, user_id: str, kind: AlertKind, message: Optional[str] = None) -> bool:
        """Record a device microphone failure; True when it hit an open stream."""
        key = (user_id, kind)
        with self._lock:
            stream = self._streams.get(key)
            if stream is None:
                self._denied[key] = message
        if stream is None:
            return False
        stream.fail(message)
        return True

    def append(self, user_id: str, kind: AlertKind, chunk: bytes) -> int:
        with self._lock:
            stream = self._streams.get((user_id, kind))
        if stream is None:
            raise NotRecording()
        return stream.append(chunk)

    def _close(self, key: Tuple[str, AlertKind]) -> None:
        with self._lock:
            self._streams.pop(key, None)


# ── Per-user capture state machine ─────────────────────────────────────────────

@dataclass
class _Recorder:
    kind: AlertKind
    stream: Optional[AudioStream] = None
    started_at: Optional[datetime] = None

    @property
    def recording(self) -> bool:
        return self.stream is not None


@dataclass
class AlertCapture:
    """Panic + amber recorders for one user, sharing one send cooldown."""

    user_id: str
    audio_input: AudioInput
    provider: LocationProvider
    store: TrackingStore
    blob_storage: BlobStorage
    geocoder: ReverseGeocoder
    clock: Callable[[], datetime] = utc_now
    cooldown_s: float = field(default_factory=lambda: settings.alert_cooldown_s)

    def __post_init__(self) -> None:
        self._recorders = {kind: _Recorder(kind) for kind in AlertKind}
        self._last_sent_at: Optional[datetime] = None
        self._lock = threading.Lock()

    def is_recording(self, kind: AlertKind) -> bool:
        return self._recorders[kind].recording

    def recording_seconds(self, kind: AlertKind) -> int:
        recorder = self._recorders[kind]
        if not recorder.recording or recorder.started_at is None:
            return 0
        return int((self.clock() - recorder.started_at).total_seconds())

    def start_recording(self, kind: AlertKind) -> None:
        """idle → recording. MicrophoneUnavailable leaves the recorder idle."""
        with self._lock:
            recorder = self._recorders[kind]
            if recorder.recording:
                raise AlreadyRecording()
            recorder.stream = self.audio_input.open(self.user_id, kind)
            recorder.started_at = self.clock()
        logger.info(
            "Alert recording started",
            extra={"context": {"user_id": self.user_id, "alert_kind": kind.value}},
        )

    def stop_recording_and_send(
        self,
        kind: AlertKind,
        audience: Audience = Audience.NEARBY,
        low_data_mode: bool = False,
    ) -> Alert:
        """recording → idle, then send the captured audio as an alert."""
        with self._lock:
            recorder = self._recorders[kind]
            if not recorder.recording:
                raise NotRecording()
            stream = recorder.stream
            recorder.stream = None
            recorder.started_at = None
        try:
            chunks = stream.stop()
        except MicrophoneUnavailable:
            logger.warning(
                "Alert recording lost its microphone; nothing sent",
                extra={"context": {"user_id": self.user_id, "alert_kind": kind.value}},
            )
            raise
        audio = b"".join(chunks)
        return self.send_alert(kind, audio, audience=audience, low_data_mode=low_data_mode)

    def send_alert(
        self,
        kind: AlertKind,
        audio: bytes,
        audience: Audience = Audience.NEARBY,
        low_data_mode: bool = False,
    ) -> Alert:
        now = self.clock()
        with self._lock:
            previous = self._last_sent_at
            if previous is not None:
                waited = (now - previous).total_seconds()
                if waited < self.cooldown_s:
                    logger.info(
                        "Alert refused: cooldown",
                        extra={"context": {"user_id": self.user_id, "alert_kind": kind.value}},
                    )
                    raise CooldownActive(self.cooldown_s - waited)
            # Hold the slot while sending so a concurrent press cannot slip through
            self._last_sent_at = now

        try:
            alert = self._send(kind, audio, audience, low_data_mode, now)
        except Exception:
            with self._lock:
                if self._last_sent_at == now:
                    self._last_sent_at = previous
            raise

        logger.warning(
            f"🚨 {kind.value.upper()} ALERT SENT",
            extra={"context": {
                "user_id": self.user_id,
                "alert_id": alert.id,
                "audience": audience.value,
                "has_audio": alert.audio_url is not None,
            }},
        )
        return alert

    def _send(self, kind: AlertKind, audio: bytes, audience: Audience,
              low_data_mode: bool, now: datetime) -> Alert:
        position = self.provider.get_current_position(self.user_id)
        place_name = None if low_data_mode else self.geocoder.place_name(position.point)
        audio_url = self._upload_audio(audio, now)
        return self.store.insert_alert(NewAlert(
            alert_type=AlertType(kind.value),
            location=position.point,
            location_name=place_name or DEFAULT_LOCATION_NAME,
            description=alert_description(kind, audience),
            audio_url=audio_url,
            user_id=self.user_id,
        ))

    def _upload_audio(self, audio: bytes, now: datetime) -> Optional[str]:
        if not audio:
            return None
        key = f"audio-{self.user_id}-{int(now.timestamp() * 1000)}.webm"
        try:
            return self.blob_storage.upload(key, audio, AUDIO_CONTENT_TYPE)
        except BlobUploadError:
            logger.warning(
                "Audio upload failed; sending alert without audio",
                extra={"context": {"user_id": self.user_id}},
            )
            return None


class AlertCaptureRegistry:
    """Lazily creates one AlertCapture per user."""

    def __init__(self, factory: Callable[[str], AlertCapture]) -> None:
        self._factory = factory
        self._captures: Dict[str, AlertCapture] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str) -> AlertCapture:
        with self._lock:
            capture = self._captures.get(user_id)
            if capture is None:
                capture = self._factory(user_id)
                self._captures[user_id] = capture
            return capture
