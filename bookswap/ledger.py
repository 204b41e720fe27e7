"""
Request ledger: the borrow-request state machine.

Every transition is a conditional UPDATE that only applies while the row is
still in the expected status, so a concurrent transition on the same request
surfaces as PreconditionFailed instead of being silently overwritten.
Authorization (owner for approve/reject, borrower for pickup/return) is
checked before the status precondition.

Approving one request does not reject competing pending requests for the same
textbook, and approval does not reserve the textbook.
"""
import logging
import sqlite3
from typing import Dict, FrozenSet, List, Optional

from bookswap import catalog, directory, transfer
from bookswap.changefeed import ChangeEvent, get_feed
from bookswap.db import db, utcnow
from bookswap.errors import NotAuthorized, NotFound, PreconditionFailed, ValidationFailed
from bookswap.messaging import insert_message
from bookswap.models import MessageKind, RequestStatus, TextbookStatus

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[RequestStatus, FrozenSet[RequestStatus]] = {
    RequestStatus.PENDING: frozenset({RequestStatus.APPROVED, RequestStatus.REJECTED}),
    RequestStatus.APPROVED: frozenset({RequestStatus.COMPLETED}),
    RequestStatus.COMPLETED: frozenset({RequestStatus.RETURNED}),
    RequestStatus.REJECTED: frozenset(),
    RequestStatus.RETURNED: frozenset(),
}

APPROVAL_NOTICE = "Your request has been approved! Please pick up the book at: {location}"

REQUEST_COLUMNS = (
    "r.*, t.title AS textbook_title, t.author AS textbook_author, t.photo_url AS textbook_photo_url, "
    "t.owner_id AS owner_id, t.status AS textbook_status, l.name AS location_name"
)


def can_transition(current: RequestStatus, target: RequestStatus) -> bool:
    return RequestStatus(target) in TRANSITIONS[RequestStatus(current)]


def _fetch(c: sqlite3.Connection, request_id: int) -> dict:
    row = c.execute(
        f"SELECT {REQUEST_COLUMNS} FROM requests r "
        "JOIN textbooks t ON t.id = r.textbook_id "
        "LEFT JOIN locations l ON l.id = r.location_id "
        "WHERE r.id=?",
        (request_id,),
    ).fetchone()
    if not row:
        raise NotFound("Request not found")
    return dict(row)


def _transition(
    c: sqlite3.Connection,
    request_id: int,
    expected: RequestStatus,
    target: RequestStatus,
    location_id: Optional[int] = None,
) -> None:
    if not can_transition(expected, target):
        raise PreconditionFailed(f"Cannot move a request from {expected.value} to {target.value}")
    if location_id is not None:
        cur = c.execute(
            "UPDATE requests SET status=?, location_id=? WHERE id=? AND status=?",
            (target.value, location_id, request_id, expected.value),
        )
    else:
        cur = c.execute(
            "UPDATE requests SET status=? WHERE id=? AND status=?",
            (target.value, request_id, expected.value),
        )
    if cur.rowcount == 0:
        raise PreconditionFailed(f"Request is not {expected.value}")


def _publish(request_id: int, operation: str, *users: int) -> None:
    get_feed().publish(ChangeEvent("requests", operation, request_id, frozenset(users)))


def create_request(
    borrower_id: int,
    textbook_id: int,
    location_id: Optional[int] = None,
    proposed_time: Optional[str] = None,
) -> dict:
    with db() as c:
        directory.get_profile(c, borrower_id)
        textbook = catalog.get_textbook(c, textbook_id)
        if textbook["owner_id"] == borrower_id:
            raise ValidationFailed("You cannot request your own textbook")
        if textbook["status"] != TextbookStatus.AVAILABLE.value:
            raise PreconditionFailed("Textbook is not available")
        if location_id is not None:
            directory.get_location(c, location_id)
        cur = c.execute(
            "INSERT INTO requests(borrower_id, textbook_id, location_id, status, proposed_time, created_at) "
            "VALUES(?,?,?,?,?,?)",
            (borrower_id, textbook_id, location_id, RequestStatus.PENDING.value, proposed_time, utcnow()),
        )
        request = _fetch(c, cur.lastrowid)
    logger.info(f"User {borrower_id} requested textbook {textbook_id} (request {request['id']})")
    _publish(request["id"], "INSERT", borrower_id, textbook["owner_id"])
    return request


def get_request(request_id: int, caller_id: int) -> dict:
    with db() as c:
        request = _fetch(c, request_id)
    if caller_id not in (request["borrower_id"], request["owner_id"]):
        raise NotAuthorized("Only the borrower and the owner can view this request")
    return request


def approve(request_id: int, caller_id: int, location_id: int) -> dict:
    with db() as c:
        request = _fetch(c, request_id)
        if request["owner_id"] != caller_id:
            raise NotAuthorized("Only the textbook owner can approve this request")
        location = directory.get_location(c, location_id)
        _transition(c, request_id, RequestStatus.PENDING, RequestStatus.APPROVED, location_id=location_id)
        insert_message(
            c,
            request_id,
            caller_id,
            APPROVAL_NOTICE.format(location=location["name"]),
            MessageKind.SYSTEM,
        )
        request = _fetch(c, request_id)
    logger.info(f"Request {request_id} approved by {caller_id}, pickup at location {location_id}")
    _publish(request_id, "UPDATE", request["borrower_id"], request["owner_id"])
    return request


def reject(request_id: int, caller_id: int) -> dict:
    with db() as c:
        request = _fetch(c, request_id)
        if request["owner_id"] != caller_id:
            raise NotAuthorized("Only the textbook owner can reject this request")
        _transition(c, request_id, RequestStatus.PENDING, RequestStatus.REJECTED)
        request = _fetch(c, request_id)
    logger.info(f"Request {request_id} rejected by {caller_id}")
    _publish(request_id, "UPDATE", request["borrower_id"], request["owner_id"])
    return request


def confirm_pickup(request_id: int, caller_id: int) -> dict:
    with db() as c:
        request = _fetch(c, request_id)
    if request["borrower_id"] != caller_id:
        raise NotAuthorized("Only the borrower can confirm pickup")
    if request["status"] != RequestStatus.APPROVED.value:
        raise PreconditionFailed(f"Request is {request['status']}, not approved")
    previous_owner = request["owner_id"]
    # The transfer re-checks the approved status inside its own transaction.
    transfer.transfer_ownership(request_id, request["textbook_id"], request["borrower_id"])
    with db() as c:
        request = _fetch(c, request_id)
    _publish(request_id, "UPDATE", request["borrower_id"], previous_owner)
    return request


def return_book(request_id: int, caller_id: int) -> dict:
    with db() as c:
        request = _fetch(c, request_id)
        if request["borrower_id"] != caller_id:
            raise NotAuthorized("Only the borrower can return this book")
        _transition(c, request_id, RequestStatus.COMPLETED, RequestStatus.RETURNED)
        catalog.update_textbook_status(c, request["textbook_id"], TextbookStatus.AVAILABLE)
        request = _fetch(c, request_id)
    logger.info(f"Request {request_id} returned, textbook {request['textbook_id']} available again")
    _publish(request_id, "UPDATE", request["borrower_id"], request["owner_id"])
    return request


def list_outgoing(borrower_id: int) -> List[dict]:
    with db() as c:
        rows = c.execute(
            f"SELECT {REQUEST_COLUMNS} FROM requests r "
            "JOIN textbooks t ON t.id = r.textbook_id "
            "LEFT JOIN locations l ON l.id = r.location_id "
            "WHERE r.borrower_id=? ORDER BY r.created_at DESC, r.id DESC",
            (borrower_id,),
        ).fetchall()
    return [dict(r) for r in rows]


def list_incoming(owner_id: int) -> List[dict]:
    with db() as c:
        rows = c.execute(
            f"SELECT {REQUEST_COLUMNS}, p.first_name AS borrower_first_name, p.last_name AS borrower_last_name "
            "FROM requests r "
            "JOIN textbooks t ON t.id = r.textbook_id "
            "JOIN profiles p ON p.id = r.borrower_id "
            "LEFT JOIN locations l ON l.id = r.location_id "
            "WHERE t.owner_id=? ORDER BY r.created_at DESC, r.id DESC",
            (owner_id,),
        ).fetchall()
    return [dict(r) for r in rows]


def list_borrowed(borrower_id: int) -> List[dict]:
    return [r for r in list_outgoing(borrower_id) if r["status"] == RequestStatus.COMPLETED.value]
