import asyncio
import json

import redis

from barpos import realtime
from barpos.main import _offer
from barpos.models import DiningTable, Order, PrepTicket
from barpos.orders import create_order
from barpos.realtime import EventBus, Outbox, station_channels
from barpos.schemas import OrderCreate, OrderItemInput


def test_publish_reaches_channel_subscribers_until_unsubscribed() -> None:
    bus = EventBus()
    received = []
    unsubscribe = bus.subscribe("kitchen", lambda channel, event: received.append((channel, event["id"])))

    bus.publish(["kitchen", "bartender", "kitchen"], {"type": "ticket_created", "id": 1})
    unsubscribe()
    bus.publish(["kitchen"], {"type": "ticket_created", "id": 2})

    assert received == [("kitchen", 1)]


def test_failing_subscriber_does_not_stop_delivery() -> None:
    bus = EventBus()
    received = []

    def broken(channel, event):
        raise RuntimeError("display gone")

    bus.subscribe("orders", broken)
    bus.subscribe("orders", lambda channel, event: received.append(event["id"]))
    bus.publish(["orders"], {"type": "order_created", "id": 9})

    assert received == [9]


def test_both_destination_fans_out_to_both_stations() -> None:
    assert station_channels("both") == ["kitchen", "bartender"]
    assert station_channels("bartender") == ["bartender"]


def test_outbox_holds_events_until_sent() -> None:
    bus = EventBus()
    received = []
    for channel in ("orders", "session:3", "table:4", "kitchen", "bartender", "tables"):
        bus.subscribe(channel, lambda channel, event: received.append((channel, event["type"])))
    outbox = Outbox(bus)

    outbox.order(Order(id=1, status="confirmed", session_id=3, table_id=4), "order_created")
    outbox.ticket(PrepTicket(id=2, status="pending", order_id=1, destination="both"), "ticket_created")
    outbox.table(DiningTable(id=4, status="occupied"), "table_occupied")
    assert received == []

    outbox.send()
    assert received == [
        ("orders", "order_created"),
        ("session:3", "order_created"),
        ("table:4", "order_created"),
        ("kitchen", "ticket_created"),
        ("bartender", "ticket_created"),
        ("tables", "table_occupied"),
        ("table:4", "table_occupied"),
    ]
    outbox.send()
    assert len(received) == 7


def test_discarded_events_are_never_sent() -> None:
    bus = EventBus()
    received = []
    bus.subscribe("tables", lambda channel, event: received.append(event))
    outbox = Outbox(bus)
    outbox.table(DiningTable(id=1, status="cleaning"), "table_released")
    outbox.discard()
    outbox.send()
    assert received == []


class _FakeRedis:
    def __init__(self, fail=False):
        self.fail = fail
        self.published = []

    def publish(self, channel, message):
        if self.fail:
            raise redis.ConnectionError("connection refused")
        self.published.append((channel, json.loads(message)))


def test_events_are_mirrored_to_redis(monkeypatch) -> None:
    fake = _FakeRedis()
    monkeypatch.setattr(realtime.redis, "from_url", lambda url: fake)
    bus = EventBus("redis://localhost:6379/0")

    bus.publish(["kitchen"], {"type": "ticket_created", "id": 5})

    assert fake.published == [("barpos:kitchen", {"type": "ticket_created", "id": 5})]


def test_redis_errors_are_swallowed(monkeypatch) -> None:
    monkeypatch.setattr(realtime.redis, "from_url", lambda url: _FakeRedis(fail=True))
    bus = EventBus("redis://localhost:6379/0")
    received = []
    bus.subscribe("orders", lambda channel, event: received.append(event["id"]))

    bus.publish(["orders"], {"type": "order_created", "id": 1})

    assert received == [1]


def test_events_are_published_after_commit(db, seed, events) -> None:
    ids = seed()
    create_order(db, OrderCreate(items=[OrderItemInput(product_id=ids.flaming, quantity=1)]))

    kinds = [(channel, event["type"]) for channel, event in events]
    assert ("orders", "order_created") in kinds
    assert ("kitchen", "ticket_created") in kinds
    assert ("bartender", "ticket_created") in kinds
    assert ("notifications", "notification_created") in kinds


def test_websocket_streams_channel_events(client, seed) -> None:
    ids = seed()
    with client.websocket_connect("/ws/kitchen") as websocket:
        assert websocket.receive_json() == {"type": "subscribed", "channel": "kitchen"}

        resp = client.post("/api/v1/orders", json={"items": [{"product_id": ids.sisig, "quantity": 1}]})
        assert resp.status_code == 200
        ticket_id = resp.json()["data"]["tickets"][0]["prep_ticket_id"]

        event = websocket.receive_json()
        assert event["type"] == "ticket_created"
        assert event["entity"] == "ticket"
        assert event["id"] == ticket_id
        assert event["destination"] == "kitchen"


def test_slow_display_drops_events_past_queue_limit() -> None:
    queue = asyncio.Queue(maxsize=2)
    for event_id in (1, 2, 3):
        _offer(queue, {"type": "order_updated", "id": event_id})

    assert queue.qsize() == 2
    assert [queue.get_nowait()["id"] for _ in range(2)] == [1, 2]
