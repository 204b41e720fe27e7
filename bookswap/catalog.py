"""Textbook records: owner-side CRUD, status/owner updates and library browsing."""
import logging
import sqlite3
from typing import List, Optional

from bookswap.db import utcnow
from bookswap.errors import NotAuthorized, NotFound, PreconditionFailed
from bookswap.models import Condition, RequestStatus, TextbookCreate, TextbookStatus, TextbookUpdate

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("title", "author", "isbn", "edition", "condition", "photo_url")


def _value(v):
    return v.value if hasattr(v, "value") else v


def get_textbook(c: sqlite3.Connection, textbook_id: int) -> dict:
    row = c.execute("SELECT * FROM textbooks WHERE id=?", (textbook_id,)).fetchone()
    if not row:
        raise NotFound("Textbook not found")
    return dict(row)


def require_owner(textbook: dict, caller_id: int) -> None:
    if textbook["owner_id"] != caller_id:
        raise NotAuthorized("Only the owner can do this")


def create_textbook(c: sqlite3.Connection, owner: dict, payload: TextbookCreate) -> dict:
    cur = c.execute(
        "INSERT INTO textbooks(owner_id, school_id, title, author, isbn, edition, condition, photo_url, status, created_at) "
        "VALUES(?,?,?,?,?,?,?,?,?,?)",
        (
            owner["id"],
            owner.get("school_id"),
            payload.title,
            payload.author,
            payload.isbn,
            payload.edition,
            _value(payload.condition),
            payload.photo_url,
            TextbookStatus.AVAILABLE.value,
            utcnow(),
        ),
    )
    logger.info(f"User {owner['id']} listed textbook {cur.lastrowid}")
    return get_textbook(c, cur.lastrowid)


def update_textbook(c: sqlite3.Connection, textbook_id: int, caller_id: int, payload: TextbookUpdate) -> dict:
    textbook = get_textbook(c, textbook_id)
    require_owner(textbook, caller_id)
    changes = {k: _value(v) for k, v in payload.model_dump(exclude_unset=True).items() if k in EDITABLE_FIELDS}
    if "title" in changes and changes["title"] is None:
        del changes["title"]
    if changes:
        assignments = ", ".join(f"{k}=?" for k in changes)
        c.execute(f"UPDATE textbooks SET {assignments} WHERE id=?", (*changes.values(), textbook_id))
    return get_textbook(c, textbook_id)


def delete_textbook(c: sqlite3.Connection, textbook_id: int, caller_id: int) -> None:
    textbook = get_textbook(c, textbook_id)
    require_owner(textbook, caller_id)
    in_flight = c.execute(
        "SELECT COUNT(*) AS cnt FROM requests WHERE textbook_id=? AND status IN (?, ?)",
        (textbook_id, RequestStatus.PENDING.value, RequestStatus.APPROVED.value),
    ).fetchone()["cnt"]
    if in_flight:
        raise PreconditionFailed("Textbook has pending or approved requests")
    c.execute("DELETE FROM textbooks WHERE id=?", (textbook_id,))
    logger.info(f"User {caller_id} deleted textbook {textbook_id}")


def update_textbook_status(
    c: sqlite3.Connection,
    textbook_id: int,
    status: TextbookStatus,
    expected: Optional[TextbookStatus] = None,
) -> None:
    """Set the status; with ``expected`` the write only applies if the row still holds that status."""
    if expected is None:
        cur = c.execute("UPDATE textbooks SET status=? WHERE id=?", (TextbookStatus(status).value, textbook_id))
    else:
        cur = c.execute(
            "UPDATE textbooks SET status=? WHERE id=? AND status=?",
            (TextbookStatus(status).value, textbook_id, TextbookStatus(expected).value),
        )
    if cur.rowcount == 0:
        get_textbook(c, textbook_id)
        raise PreconditionFailed(f"Textbook is no longer {TextbookStatus(expected).value}")


def update_textbook_owner(c: sqlite3.Connection, textbook_id: int, owner_id: int) -> None:
    cur = c.execute("UPDATE textbooks SET owner_id=? WHERE id=?", (owner_id, textbook_id))
    if cur.rowcount == 0:
        raise NotFound("Textbook not found")


def toggle_status(c: sqlite3.Connection, textbook_id: int, caller_id: int) -> dict:
    textbook = get_textbook(c, textbook_id)
    require_owner(textbook, caller_id)
    current = TextbookStatus(textbook["status"])
    if current == TextbookStatus.AVAILABLE:
        new_status = TextbookStatus.LENT
    elif current == TextbookStatus.LENT:
        new_status = TextbookStatus.AVAILABLE
    else:
        raise PreconditionFailed("Reserved textbooks cannot be toggled")
    update_textbook_status(c, textbook_id, new_status, expected=current)
    return get_textbook(c, textbook_id)


def list_owned(c: sqlite3.Connection, owner_id: int) -> List[dict]:
    rows = c.execute(
        "SELECT * FROM textbooks WHERE owner_id=? ORDER BY created_at DESC, id DESC", (owner_id,)
    ).fetchall()
    return [dict(r) for r in rows]


def list_library(
    c: sqlite3.Connection,
    q: Optional[str] = None,
    condition: Optional[Condition] = None,
    status: Optional[TextbookStatus] = None,
    school_id: Optional[int] = None,
) -> List[dict]:
    """Library listing, newest first. ``q`` is a plain case-insensitive substring match on title/author/isbn."""
    sql = (
        "SELECT t.*, p.first_name AS owner_first_name, p.last_name AS owner_last_name "
        "FROM textbooks t JOIN profiles p ON p.id = t.owner_id WHERE 1=1"
    )
    params: list = []
    if school_id is not None:
        sql += " AND t.school_id=?"
        params.append(school_id)
    if condition is not None:
        sql += " AND t.condition=?"
        params.append(Condition(condition).value)
    if status is not None:
        sql += " AND t.status=?"
        params.append(TextbookStatus(status).value)
    q = (q or "").strip()
    if q:
        like = f"%{q.lower()}%"
        sql += " AND (lower(t.title) LIKE ? OR lower(coalesce(t.author, '')) LIKE ? OR coalesce(t.isbn, '') LIKE ?)"
        params.extend([like, like, like])
    sql += " ORDER BY t.created_at DESC, t.id DESC"
    return [dict(r) for r in c.execute(sql, params).fetchall()]
