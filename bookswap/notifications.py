import datetime
import logging
import socket
import sqlite3
from typing import Callable, List, Optional

import httpx

from bookswap.changefeed import ChangeEvent, ChangeFeed, Subscription, get_feed
from bookswap.db import db
from bookswap.models import NotificationCounts, RequestStatus
from bookswap.settings import settings

logger = logging.getLogger(__name__)


def compute_counts(c: sqlite3.Connection, user_id: int) -> NotificationCounts:
    incoming = c.execute(
        "SELECT COUNT(*) AS cnt FROM requests r JOIN textbooks t ON t.id = r.textbook_id "
        "WHERE t.owner_id=? AND r.status=?",
        (user_id, RequestStatus.PENDING.value),
    ).fetchone()["cnt"]
    to_pickup = c.execute(
        "SELECT COUNT(*) AS cnt FROM requests WHERE borrower_id=? AND status=?",
        (user_id, RequestStatus.APPROVED.value),
    ).fetchone()["cnt"]
    return NotificationCounts(
        incoming_pending_requests=incoming,
        approved_requests_to_pickup=to_pickup,
        total_pending=incoming + to_pickup,
    )


def get_counts(user_id: int) -> NotificationCounts:
    with db() as c:
        return compute_counts(c, user_id)


def users_with_pending_actions(c: sqlite3.Connection) -> List[dict]:
    """Every profile with at least one pending incoming request or approved pickup."""
    users = []
    for profile in c.execute("SELECT id, first_name, last_name, email FROM profiles ORDER BY id").fetchall():
        counts = compute_counts(c, profile["id"])
        if counts.total_pending > 0:
            users.append({
                **dict(profile),
                "pending_incoming": counts.incoming_pending_requests,
                "approved_outgoing": counts.approved_requests_to_pickup,
            })
    return users


class NotificationAggregator:
    """
    Live notification counts for one user.

    Computes the counts on start, then listens to the requests change feed and
    recomputes only for events that concern this user. ``on_change`` receives
    the fresh counts after every recomputation.
    """

    def __init__(
        self,
        user_id: int,
        feed: Optional[ChangeFeed] = None,
        on_change: Optional[Callable[[NotificationCounts], None]] = None,
    ):
        self.user_id = user_id
        self.feed = feed or get_feed()
        self.on_change = on_change
        self.counts = NotificationCounts()
        self.recomputations = 0
        self._subscription: Optional[Subscription] = None

    def start(self) -> NotificationCounts:
        if self._subscription is None:
            self._subscription = self.feed.subscribe("requests", self._on_event)
        return self.refresh()

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def refresh(self) -> NotificationCounts:
        self.counts = get_counts(self.user_id)
        self.recomputations += 1
        if self.on_change is not None:
            self.on_change(self.counts)
        return self.counts

    def _on_event(self, event: ChangeEvent) -> None:
        if event.concerns(self.user_id):
            self.refresh()


async def notify_activity(event: str, extra: Optional[dict] = None, client: Optional[httpx.AsyncClient] = None) -> bool:
    """
    Best-effort delivery of a workflow event to the configured webhook.
    Returns False when delivery is disabled or fails; never raises.
    """
    webhook_url = settings.notify_webhook_url
    if not webhook_url:
        return False
    now = datetime.datetime.now(datetime.timezone.utc).isoformat()
    host = socket.gethostname()
    fields = [{"name": "host", "value": host, "inline": True}]
    for key, value in (extra or {}).items():
        fields.append({"name": str(key), "value": str(value)[:256] or "-", "inline": True})
    payload = {
        "content": f"[{event}] {host} @ {now}",
        "embeds": [
            {
                "title": f"bookswap: {event}",
                "timestamp": now,
                "fields": fields,
            }
        ],
    }
    try:
        if client is not None:
            response = await client.post(webhook_url, json=payload)
        else:
            async with httpx.AsyncClient(timeout=settings.webhook_timeout_seconds) as own_client:
                response = await own_client.post(webhook_url, json=payload)
        response.raise_for_status()
        return True
    except httpx.HTTPError as e:
        logger.warning(f"Failed to send {event} notification: {e}")
        return False
