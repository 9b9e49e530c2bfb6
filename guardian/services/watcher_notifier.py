"""
Guardian — Watcher Notifier

Resolves a session's watcher ids to display identities, and fans an
emergency out to every watcher that is currently connected.

Watchers who are offline still learn about the emergency: the session's
`emergency` status and the Alert record both reach them through the change
feed the next time their view resyncs. The direct push only shortens that
delay.
"""

from __future__ import annotations

import logging
from typing import List, Sequence

from guardian.common.schemas import Alert, TrackingSession, Watcher
from guardian.database.store import TrackingStore
from guardian.services.websocket_manager import ConnectionManager, ws_manager

logger = logging.getLogger(__name__)

FALLBACK_NAME = "User"


class WatcherNotifier:
    """Watcher identity lookup + emergency fan-out."""

    def __init__(self, store: TrackingStore, manager: ConnectionManager = ws_manager) -> None:
        self._store = store
        self._manager = manager

    def resolve_watchers(self, ids: Sequence[str]) -> List[Watcher]:
        """
        Ids that still resolve to a profile, in the order requested.

        Missing ids are dropped silently: a deleted account must not break
        the watcher list.
        """
        profiles = {p.id: p for p in self._store.profiles_by_ids(list(dict.fromkeys(ids)))}
        watchers: List[Watcher] = []
        seen = set()
        for watcher_id in ids:
            profile = profiles.get(watcher_id)
            if profile is None or watcher_id in seen:
                continue
            seen.add(watcher_id)
            watchers.append(Watcher(
                id=profile.id,
                full_name=profile.full_name or profile.display_name or FALLBACK_NAME,
            ))
        dropped = len(set(ids)) - len(watchers)
        if dropped:
            logger.debug(f"{dropped} watcher id(s) no longer resolve to a profile")
        return watchers

    def notify_emergency(self, session: TrackingSession, alert: Alert | None) -> List[str]:
        """Push an EMERGENCY message to each connected watcher; returns who was reached."""
        location = session.current_location.model_dump() if session.current_location else None
        message = {
            "type": "EMERGENCY",
            "session_id": session.id,
            "owner_id": session.owner_id,
            "destination_name": session.destination_name,
            "location": location,
            "alert_id": alert.id if alert else None,
            "metadata": session.metadata.model_dump(mode="json"),
        }

        reached: List[str] = []
        for watcher_id in session.watcher_ids:
            try:
                if self._manager.send_to_user_sync(watcher_id, message):
                    reached.append(watcher_id)
            except Exception as exc:
                logger.warning(f"Emergency push to watcher {watcher_id} failed: {exc}")

        logger.warning(
            f"🚨 EMERGENCY on trip to {session.destination_name}: "
            f"{len(reached)}/{len(session.watcher_ids)} watchers reached directly",
            extra={"context": {"session_id": session.id, "reached": reached}},
        )
        return reached
