"""
In-process change feed.

Workflow modules publish a ChangeEvent after their transaction commits.
Subscribers register per table and receive every event for that table;
relevance filtering is left to the subscriber.
"""
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    operation: str  # INSERT / UPDATE / DELETE
    row_id: int
    affected_users: FrozenSet[int] = field(default_factory=frozenset)

    def concerns(self, user_id: int) -> bool:
        # No affected users means the publisher could not tell; treat as relevant.
        return not self.affected_users or user_id in self.affected_users


Callback = Callable[[ChangeEvent], None]


class Subscription:
    def __init__(self, feed: "ChangeFeed", table: str, callback: Callback):
        self._feed = feed
        self.table = table
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._feed._remove(self)
            self.active = False


class ChangeFeed:
    """Thread-safe subscriber registry; route handlers may publish from worker threads."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: Dict[str, List[Subscription]] = {}

    def subscribe(self, table: str, callback: Callback) -> Subscription:
        sub = Subscription(self, table, callback)
        with self._lock:
            self._subscribers.setdefault(table, []).append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subscribers.get(sub.table, [])
            if sub in subs:
                subs.remove(sub)

    def subscriber_count(self, table: Optional[str] = None) -> int:
        with self._lock:
            if table is not None:
                return len(self._subscribers.get(table, []))
            return sum(len(s) for s in self._subscribers.values())

    def publish(self, event: ChangeEvent) -> None:
        with self._lock:
            subs = list(self._subscribers.get(event.table, []))
        for sub in subs:
            try:
                sub.callback(event)
            except Exception as e:
                # One broken subscriber must not stop delivery to the rest.
                logger.warning(f"Change feed subscriber failed on {event.table}#{event.row_id}: {e}")


# Global instance (singleton pattern)
_feed_instance: Optional[ChangeFeed] = None


def get_feed() -> ChangeFeed:
    """Get or create global change feed."""
    global _feed_instance
    if _feed_instance is None:
        _feed_instance = ChangeFeed()
    return _feed_instance
