import pytest

from bookswap import ledger, messaging
from bookswap.errors import NotAuthorized, NotFound, PreconditionFailed, ValidationFailed
from bookswap.settings import settings


@pytest.fixture
def request_row(world, textbook):
    return ledger.create_request(world.bob["id"], textbook["id"])


def test_messages_are_listed_oldest_first(world, request_row):
    messaging.post_message(request_row["id"], world.bob["id"], "Is the cover torn?")
    messaging.post_message(request_row["id"], world.alice["id"], "  No, it's fine.  ")
    messaging.post_message(request_row["id"], world.bob["id"], "Great")

    messages = messaging.list_messages(request_row["id"], world.alice["id"])

    assert [m["body"] for m in messages] == ["Is the cover torn?", "No, it's fine.", "Great"]
    assert [m["from_first_name"] for m in messages] == ["Bob", "Alice", "Bob"]
    assert {m["kind"] for m in messages} == {"user"}


def test_blank_message_rejected(world, request_row):
    with pytest.raises(ValidationFailed):
        messaging.post_message(request_row["id"], world.bob["id"], "   \n ")
    assert messaging.list_messages(request_row["id"], world.bob["id"]) == []


def test_overlong_message_rejected(world, request_row, monkeypatch):
    monkeypatch.setattr(settings, "max_message_length", 10)
    with pytest.raises(ValidationFailed):
        messaging.post_message(request_row["id"], world.bob["id"], "x" * 11)


def test_outsiders_cannot_post_or_read(world, request_row):
    with pytest.raises(NotAuthorized):
        messaging.post_message(request_row["id"], world.carol["id"], "hello")
    with pytest.raises(NotAuthorized):
        messaging.list_messages(request_row["id"], world.carol["id"])


def test_unknown_request(world):
    with pytest.raises(NotFound):
        messaging.post_message(9999, world.bob["id"], "hello")


def test_approval_notice_is_tagged_system(world, request_row):
    messaging.post_message(request_row["id"], world.bob["id"], "Please?")
    ledger.approve(request_row["id"], world.alice["id"], world.library["id"])

    messages = messaging.list_messages(request_row["id"], world.bob["id"])

    assert [m["kind"] for m in messages] == ["user", "system"]
    assert messages[1]["body"] == "Your request has been approved! Please pick up the book at: Main Library"
    assert messages[1]["from_id"] == world.alice["id"]


def test_rejected_approval_posts_no_notice(world, request_row):
    ledger.reject(request_row["id"], world.alice["id"])
    with pytest.raises(PreconditionFailed):
        ledger.approve(request_row["id"], world.alice["id"], world.library["id"])
    assert messaging.list_messages(request_row["id"], world.bob["id"]) == []
