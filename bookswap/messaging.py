"""Append-only message thread attached to a borrow request."""
import logging
import sqlite3
from typing import List

from bookswap.changefeed import ChangeEvent, get_feed
from bookswap.db import db, utcnow
from bookswap.errors import NotAuthorized, NotFound, ValidationFailed
from bookswap.models import MessageKind
from bookswap.settings import settings

logger = logging.getLogger(__name__)


def participants(c: sqlite3.Connection, request_id: int) -> frozenset:
    row = c.execute(
        "SELECT r.borrower_id, t.owner_id FROM requests r JOIN textbooks t ON t.id = r.textbook_id WHERE r.id=?",
        (request_id,),
    ).fetchone()
    if not row:
        raise NotFound("Request not found")
    return frozenset((row["borrower_id"], row["owner_id"]))


def insert_message(
    c: sqlite3.Connection,
    request_id: int,
    sender_id: int,
    body: str,
    kind: MessageKind = MessageKind.USER,
) -> int:
    """Write one message row inside the caller's transaction."""
    body = (body or "").strip()
    if not body:
        raise ValidationFailed("Message body cannot be empty")
    if len(body) > settings.max_message_length:
        raise ValidationFailed(f"Message must be {settings.max_message_length} characters or less")
    cur = c.execute(
        "INSERT INTO messages(request_id, from_id, body, kind, created_at) VALUES(?,?,?,?,?)",
        (request_id, sender_id, body, MessageKind(kind).value, utcnow()),
    )
    return cur.lastrowid


def post_message(
    request_id: int,
    sender_id: int,
    body: str,
    kind: MessageKind = MessageKind.USER,
) -> dict:
    with db() as c:
        members = participants(c, request_id)
        if sender_id not in members:
            raise NotAuthorized("Only the borrower and the owner can post on this request")
        message_id = insert_message(c, request_id, sender_id, body, kind)
        row = c.execute("SELECT * FROM messages WHERE id=?", (message_id,)).fetchone()
    get_feed().publish(ChangeEvent("messages", "INSERT", message_id, members))
    return dict(row)


def list_messages(request_id: int, caller_id: int) -> List[dict]:
    with db() as c:
        if caller_id not in participants(c, request_id):
            raise NotAuthorized("Only the borrower and the owner can read this request's messages")
        rows = c.execute(
            "SELECT m.*, p.first_name AS from_first_name, p.last_name AS from_last_name "
            "FROM messages m JOIN profiles p ON p.id = m.from_id "
            "WHERE m.request_id=? ORDER BY m.created_at ASC, m.id ASC",
            (request_id,),
        ).fetchall()
    return [dict(r) for r in rows]
