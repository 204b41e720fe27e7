import json

import httpx
import pytest

from bookswap import ledger
from bookswap.changefeed import ChangeEvent, get_feed
from bookswap.db import db
from bookswap.notifications import NotificationAggregator, get_counts, notify_activity, users_with_pending_actions
from bookswap.settings import settings


def _assert_total(user):
    counts = get_counts(user["id"])
    assert counts.total_pending == counts.incoming_pending_requests + counts.approved_requests_to_pickup
    return counts


def test_counts_start_at_zero(world):
    counts = get_counts(world.alice["id"])
    assert counts.model_dump() == {
        "incoming_pending_requests": 0,
        "approved_requests_to_pickup": 0,
        "total_pending": 0,
    }


def test_total_is_sum_throughout_lifecycle(world, textbook):
    people = [world.alice, world.bob, world.carol]
    first = ledger.create_request(world.bob["id"], textbook["id"])
    second = ledger.create_request(world.carol["id"], textbook["id"])
    for person in people:
        _assert_total(person)
    assert get_counts(world.alice["id"]).incoming_pending_requests == 2

    ledger.approve(first["id"], world.alice["id"], world.library["id"])
    for person in people:
        _assert_total(person)
    assert get_counts(world.alice["id"]).total_pending == 1
    assert get_counts(world.bob["id"]).total_pending == 1

    ledger.reject(second["id"], world.alice["id"])
    ledger.confirm_pickup(first["id"], world.bob["id"])
    for person in people:
        assert _assert_total(person).total_pending == 0


def test_aggregator_recomputes_on_relevant_events(world, textbook):
    seen = []
    aggregator = NotificationAggregator(world.alice["id"], on_change=seen.append)
    assert aggregator.start().total_pending == 0

    ledger.create_request(world.bob["id"], textbook["id"])

    assert aggregator.counts.incoming_pending_requests == 1
    assert [c.total_pending for c in seen] == [0, 1]
    aggregator.stop()


def test_aggregator_ignores_events_for_other_users(world, textbook):
    aggregator = NotificationAggregator(world.carol["id"])
    aggregator.start()
    assert aggregator.recomputations == 1

    ledger.create_request(world.bob["id"], textbook["id"])

    assert aggregator.recomputations == 1
    aggregator.stop()


def test_aggregator_recomputes_on_unattributed_event(world):
    aggregator = NotificationAggregator(world.carol["id"])
    aggregator.start()
    get_feed().publish(ChangeEvent("requests", "UPDATE", 1))
    assert aggregator.recomputations == 2
    aggregator.stop()


def test_aggregator_stop_unsubscribes(world, textbook):
    aggregator = NotificationAggregator(world.alice["id"])
    aggregator.start()
    assert get_feed().subscriber_count("requests") == 1
    aggregator.stop()
    assert get_feed().subscriber_count("requests") == 0

    ledger.create_request(world.bob["id"], textbook["id"])
    assert aggregator.counts.incoming_pending_requests == 0


def test_previous_owner_hears_about_pickup(world, textbook):
    request = ledger.create_request(world.bob["id"], textbook["id"])
    ledger.approve(request["id"], world.alice["id"], world.library["id"])
    aggregator = NotificationAggregator(world.alice["id"])
    aggregator.start()

    ledger.confirm_pickup(request["id"], world.bob["id"])

    assert aggregator.recomputations == 2
    aggregator.stop()


def test_users_with_pending_actions(world, textbook):
    request = ledger.create_request(world.bob["id"], textbook["id"])
    with db() as c:
        users = users_with_pending_actions(c)
    assert [(u["first_name"], u["pending_incoming"], u["approved_outgoing"]) for u in users] == [("Alice", 1, 0)]

    ledger.approve(request["id"], world.alice["id"], world.library["id"])
    with db() as c:
        users = users_with_pending_actions(c)
    assert [(u["first_name"], u["pending_incoming"], u["approved_outgoing"]) for u in users] == [("Bob", 0, 1)]


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.mark.anyio
async def test_notify_activity_disabled_without_webhook():
    assert await notify_activity("request_created", {"request_id": 1}) is False


@pytest.mark.anyio
async def test_notify_activity_posts_payload(monkeypatch):
    monkeypatch.setattr(settings, "notify_webhook_url", "https://hooks.example.test/bookswap")
    received = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(json.loads(request.content))
        return httpx.Response(204)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        ok = await notify_activity("request_approved", {"request_id": 7, "location": "Main Library"}, client=client)

    assert ok is True
    assert received[0]["embeds"][0]["title"] == "bookswap: request_approved"
    fields = {f["name"]: f["value"] for f in received[0]["embeds"][0]["fields"]}
    assert fields["request_id"] == "7"
    assert fields["location"] == "Main Library"


@pytest.mark.anyio
async def test_notify_activity_failure_is_logged_not_raised(monkeypatch, caplog):
    monkeypatch.setattr(settings, "notify_webhook_url", "https://hooks.example.test/bookswap")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        ok = await notify_activity("book_returned", {}, client=client)

    assert ok is False
    assert "Failed to send book_returned notification" in caplog.text
