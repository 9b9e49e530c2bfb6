"""
Guardian — Error Taxonomy

Every failure the core reports to a user carries a short message and the
action the user can take about it. The HTTP layer maps each class to a
status code; background callbacks log them and carry on.
"""

from __future__ import annotations

from typing import Optional


class GuardianError(Exception):
    """Base class for all user-reportable Guardian failures."""

    code = "guardian_error"
    action = "retry"
    default_message = "Something went wrong"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, "action": self.action}


# ── Environmental / permission failures ───────────────────────────────────────

class EnvironmentalError(GuardianError):
    action = "enable_permission"


class LocationUnavailable(EnvironmentalError):
    code = "location_unavailable"
    default_message = "Enable location to continue"


class MicrophoneUnavailable(EnvironmentalError):
    code = "microphone_unavailable"
    default_message = "Enable microphone to capture emergency audio"


# ── Precondition violations ───────────────────────────────────────────────────

class PreconditionError(GuardianError):
    action = "fix_input"


class NoActiveSession(PreconditionError):
    code = "no_active_session"
    action = "refresh"
    default_message = "There is no active tracking session"


class NoWatchersSelected(PreconditionError):
    code = "no_watchers_selected"
    default_message = "Please select at least one watcher"


class DestinationRequired(PreconditionError):
    code = "destination_required"
    default_message = "Please enter your destination"


class SessionAlreadyActive(PreconditionError):
    code = "session_already_active"
    action = "end_current_session"
    default_message = "You already have an active trip"


class NotRecording(PreconditionError):
    code = "not_recording"
    action = "start_recording"
    default_message = "No recording in progress"


class AlreadyRecording(PreconditionError):
    code = "already_recording"
    action = "stop_recording"
    default_message = "Recording already in progress"


# ── Transient I/O failures ────────────────────────────────────────────────────

class TransientError(GuardianError):
    action = "retry"


class StoreWriteError(TransientError):
    code = "store_write_failed"
    default_message = "Could not save your change, please try again"


class StoreReadError(TransientError):
    code = "store_read_failed"
    default_message = "Could not load your data, please try again"


class BlobUploadError(TransientError):
    code = "blob_upload_failed"
    default_message = "Upload failed, please try again"


# ── Rate limiting ─────────────────────────────────────────────────────────────

class CooldownActive(GuardianError):
    """Soft notice: the user should wait, nothing broke."""

    code = "cooldown"
    action = "wait"
    default_message = "Please wait before sending another alert"

    def __init__(self, retry_after_s: float, message: Optional[str] = None) -> None:
        self.retry_after_s = max(retry_after_s, 0.0)
        super().__init__(message)

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["retry_after_s"] = round(self.retry_after_s, 1)
        return body
