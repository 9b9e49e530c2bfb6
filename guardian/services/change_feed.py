"""
Guardian — Change-Notification Stream

In-process pub/sub over store writes. The store publishes one
RecordChangedEvent per committed write; subscribers (the session manager's
resync, the WebSocket bridge) register per table and optionally per event
type.

A subscriber that raises is logged and skipped. A broken listener must
never fail the write that triggered it or starve the other listeners.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List, Optional

from guardian.common.events import ChangeType, RecordChangedEvent, Table

logger = logging.getLogger(__name__)

Listener = Callable[[RecordChangedEvent], None]


class Subscription:
    """Handle returned by ChangeFeed.subscribe(); unsubscribe() is idempotent."""

    def __init__(self, feed: "ChangeFeed", table: Table, event_type: Optional[ChangeType], listener: Listener) -> None:
        self._feed = feed
        self.table = table
        self.event_type = event_type
        self.listener = listener
        self.active = True

    def matches(self, event: RecordChangedEvent) -> bool:
        if event.table != self.table:
            return False
        return self.event_type is None or self.event_type == event.event_type

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._feed._remove(self)


class ChangeFeed:
    """Fan-out of change events to table subscribers."""

    def __init__(self) -> None:
        self._subscriptions: Dict[Table, List[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(
        self,
        table: Table,
        listener: Listener,
        event_type: Optional[ChangeType] = None,
    ) -> Subscription:
        """Listen to `table`; `event_type=None` means every event ("*")."""
        sub = Subscription(self, table, event_type, listener)
        with self._lock:
            self._subscriptions.setdefault(table, []).append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subscriptions.get(sub.table, [])
            if sub in subs:
                subs.remove(sub)

    def subscriber_count(self, table: Table) -> int:
        with self._lock:
            return len(self._subscriptions.get(table, []))

    def publish(self, event: RecordChangedEvent) -> None:
        with self._lock:
            targets = [s for s in self._subscriptions.get(event.table, []) if s.matches(event)]

        for sub in targets:
            try:
                sub.listener(event)
            except Exception as exc:
                logger.error(
                    f"Change listener failed on {event.table.value} {event.event_type.value}: {exc}",
                    exc_info=True,
                    extra={"context": {"record_id": event.record_id}},
                )


# Global singleton shared across the entire app
change_feed = ChangeFeed()
