import itertools

import pytest

from bookswap import catalog, ledger, messaging
from bookswap.db import db
from bookswap.errors import NotAuthorized, NotFound, PreconditionFailed, ValidationFailed
from bookswap.models import RequestStatus, TextbookStatus
from bookswap.notifications import get_counts


def _textbook(textbook_id):
    with db() as c:
        return catalog.get_textbook(c, textbook_id)


def test_transition_table_is_closed():
    allowed = {
        (RequestStatus.PENDING, RequestStatus.APPROVED),
        (RequestStatus.PENDING, RequestStatus.REJECTED),
        (RequestStatus.APPROVED, RequestStatus.COMPLETED),
        (RequestStatus.COMPLETED, RequestStatus.RETURNED),
    }
    for current, target in itertools.product(RequestStatus, RequestStatus):
        assert ledger.can_transition(current, target) == ((current, target) in allowed)


def test_full_lifecycle_scenarios(world, textbook):
    alice, bob = world.alice, world.bob

    # A: Bob requests Alice's book
    request = ledger.create_request(bob["id"], textbook["id"])
    assert request["status"] == "pending"
    assert request["borrower_id"] == bob["id"]
    assert request["location_id"] is None
    assert get_counts(alice["id"]).incoming_pending_requests == 1
    assert _textbook(textbook["id"])["status"] == "available"

    # B: Alice approves with a pickup location
    approved = ledger.approve(request["id"], alice["id"], world.library["id"])
    assert approved["status"] == "approved"
    assert approved["location_id"] == world.library["id"]
    bodies = [m["body"] for m in messaging.list_messages(request["id"], bob["id"])]
    assert any("Main Library" in body for body in bodies)
    assert get_counts(bob["id"]).approved_requests_to_pickup == 1
    assert get_counts(alice["id"]).incoming_pending_requests == 0

    # C: Bob confirms pickup, ownership moves to him
    completed = ledger.confirm_pickup(request["id"], bob["id"])
    assert completed["status"] == "completed"
    assert _textbook(textbook["id"])["owner_id"] == bob["id"]
    assert get_counts(bob["id"]).approved_requests_to_pickup == 0
    assert [r["id"] for r in ledger.list_borrowed(bob["id"])] == [request["id"]]

    # D: Bob returns the book
    returned = ledger.return_book(request["id"], bob["id"])
    assert returned["status"] == "returned"
    assert _textbook(textbook["id"])["status"] == "available"
    assert ledger.list_borrowed(bob["id"]) == []


def test_approving_one_request_leaves_competitors_pending(world, textbook):
    first = ledger.create_request(world.bob["id"], textbook["id"])
    second = ledger.create_request(world.carol["id"], textbook["id"])

    ledger.approve(first["id"], world.alice["id"], world.library["id"])

    assert ledger.get_request(second["id"], world.carol["id"])["status"] == "pending"
    assert get_counts(world.alice["id"]).incoming_pending_requests == 1
    # approval does not reserve the book either
    assert _textbook(textbook["id"])["status"] == "available"


def test_duplicate_requests_from_same_borrower_are_accepted(world, textbook):
    ledger.create_request(world.bob["id"], textbook["id"])
    ledger.create_request(world.bob["id"], textbook["id"])
    assert len(ledger.list_outgoing(world.bob["id"])) == 2


def test_reject_twice_fails_second_time(world, textbook):
    request = ledger.create_request(world.bob["id"], textbook["id"])
    assert ledger.reject(request["id"], world.alice["id"])["status"] == "rejected"
    with pytest.raises(PreconditionFailed):
        ledger.reject(request["id"], world.alice["id"])


def test_rejected_request_is_terminal(world, textbook):
    request = ledger.create_request(world.bob["id"], textbook["id"])
    ledger.reject(request["id"], world.alice["id"])
    with pytest.raises(PreconditionFailed):
        ledger.approve(request["id"], world.alice["id"], world.library["id"])
    with pytest.raises(PreconditionFailed):
        ledger.confirm_pickup(request["id"], world.bob["id"])
    with pytest.raises(PreconditionFailed):
        ledger.return_book(request["id"], world.bob["id"])


def test_approve_twice_fails(world, textbook):
    request = ledger.create_request(world.bob["id"], textbook["id"])
    ledger.approve(request["id"], world.alice["id"], world.library["id"])
    with pytest.raises(PreconditionFailed):
        ledger.approve(request["id"], world.alice["id"], world.cafeteria["id"])
    assert ledger.get_request(request["id"], world.bob["id"])["location_id"] == world.library["id"]


def test_pickup_requires_approval(world, textbook):
    request = ledger.create_request(world.bob["id"], textbook["id"])
    with pytest.raises(PreconditionFailed):
        ledger.confirm_pickup(request["id"], world.bob["id"])
    assert _textbook(textbook["id"])["owner_id"] == world.alice["id"]


def test_return_requires_completion(world, textbook):
    request = ledger.create_request(world.bob["id"], textbook["id"])
    ledger.approve(request["id"], world.alice["id"], world.library["id"])
    with pytest.raises(PreconditionFailed):
        ledger.return_book(request["id"], world.bob["id"])


def test_returned_request_is_terminal(world, textbook):
    request = ledger.create_request(world.bob["id"], textbook["id"])
    ledger.approve(request["id"], world.alice["id"], world.library["id"])
    ledger.confirm_pickup(request["id"], world.bob["id"])
    ledger.return_book(request["id"], world.bob["id"])
    with pytest.raises(PreconditionFailed):
        ledger.return_book(request["id"], world.bob["id"])


def test_only_owner_can_approve_or_reject(world, textbook):
    request = ledger.create_request(world.bob["id"], textbook["id"])
    with pytest.raises(NotAuthorized):
        ledger.approve(request["id"], world.carol["id"], world.library["id"])
    with pytest.raises(NotAuthorized):
        ledger.reject(request["id"], world.bob["id"])
    assert ledger.get_request(request["id"], world.bob["id"])["status"] == "pending"


def test_only_borrower_can_pickup_and_return(world, textbook):
    request = ledger.create_request(world.bob["id"], textbook["id"])
    ledger.approve(request["id"], world.alice["id"], world.library["id"])
    with pytest.raises(NotAuthorized):
        ledger.confirm_pickup(request["id"], world.alice["id"])
    ledger.confirm_pickup(request["id"], world.bob["id"])
    with pytest.raises(NotAuthorized):
        ledger.return_book(request["id"], world.carol["id"])


def test_cannot_request_own_textbook(world, textbook):
    with pytest.raises(ValidationFailed):
        ledger.create_request(world.alice["id"], textbook["id"])


def test_cannot_request_unavailable_textbook(world, textbook):
    with db() as c:
        catalog.update_textbook_status(c, textbook["id"], TextbookStatus.LENT)
    with pytest.raises(PreconditionFailed):
        ledger.create_request(world.bob["id"], textbook["id"])


def test_create_request_unknown_references(world, textbook):
    with pytest.raises(NotFound):
        ledger.create_request(world.bob["id"], 9999)
    with pytest.raises(NotFound):
        ledger.create_request(world.bob["id"], textbook["id"], location_id=9999)
    with pytest.raises(NotFound):
        ledger.approve(9999, world.alice["id"], world.library["id"])


def test_create_request_keeps_proposed_location(world, textbook):
    request = ledger.create_request(
        world.bob["id"], textbook["id"], location_id=world.cafeteria["id"], proposed_time="2026-10-20T12:00"
    )
    assert request["location_id"] == world.cafeteria["id"]
    assert request["location_name"] == "Cafeteria"
    assert request["proposed_time"] == "2026-10-20T12:00"


def test_get_request_hidden_from_outsiders(world, textbook):
    request = ledger.create_request(world.bob["id"], textbook["id"])
    with pytest.raises(NotAuthorized):
        ledger.get_request(request["id"], world.carol["id"])


def test_listings(world, textbook):
    mine = ledger.create_request(world.bob["id"], textbook["id"])
    theirs = ledger.create_request(world.carol["id"], textbook["id"])

    outgoing = ledger.list_outgoing(world.bob["id"])
    assert [r["id"] for r in outgoing] == [mine["id"]]
    assert outgoing[0]["textbook_title"] == textbook["title"]

    incoming = ledger.list_incoming(world.alice["id"])
    assert [r["id"] for r in incoming] == [theirs["id"], mine["id"]]
    assert {r["borrower_first_name"] for r in incoming} == {"Bob", "Carol"}


def _row(request_id):
    with db() as c:
        return dict(c.execute("SELECT status, location_id FROM requests WHERE id=?", (request_id,)).fetchone())


def test_failed_approval_notice_rolls_back_approval(world, textbook, monkeypatch):
    request = ledger.create_request(world.bob["id"], textbook["id"])

    def explode(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(ledger, "insert_message", explode)

    with pytest.raises(RuntimeError):
        ledger.approve(request["id"], world.alice["id"], world.library["id"])

    assert _row(request["id"]) == {"status": "pending", "location_id": None}
    with db() as c:
        assert c.execute("SELECT COUNT(*) FROM messages WHERE request_id=?", (request["id"],)).fetchone()[0] == 0


def test_failed_book_release_rolls_back_return(world, textbook, monkeypatch):
    request = ledger.create_request(world.bob["id"], textbook["id"])
    ledger.approve(request["id"], world.alice["id"], world.library["id"])
    ledger.confirm_pickup(request["id"], world.bob["id"])
    with db() as c:
        catalog.toggle_status(c, textbook["id"], world.bob["id"])

    def explode(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(catalog, "update_textbook_status", explode)

    with pytest.raises(RuntimeError):
        ledger.return_book(request["id"], world.bob["id"])

    assert _row(request["id"])["status"] == "completed"
    assert _textbook(textbook["id"])["status"] == "lent"
