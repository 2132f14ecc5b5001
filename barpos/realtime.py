"""Best-effort fan-out of state changes to kitchen, bar, floor and customer displays.

Events are refresh signals keyed by entity id. A display that receives one
re-fetches the entity over HTTP instead of trusting the payload, so duplicate
or out-of-order delivery is harmless.
"""
import json
import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Iterable, Optional

import redis

from barpos.config import settings
from barpos.models import Destination, DiningTable, Notification, Order, OrderSession, PrepTicket

logger = logging.getLogger(__name__)

Subscriber = Callable[[str, dict], None]

REDIS_CHANNEL_PREFIX = "barpos"


class EventBus:
    def __init__(self, redis_url: Optional[str] = None) -> None:
        self._subscribers: dict[str, list[Subscriber]] = defaultdict(list)
        self._lock = threading.Lock()
        self._redis_url = redis_url
        self._redis: Optional[redis.Redis] = None

    def subscribe(self, channel: str, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers[channel].append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers.get(channel, []):
                    self._subscribers[channel].remove(callback)

        return unsubscribe

    def publish(self, channels: Iterable[str], event: dict) -> None:
        for channel in dict.fromkeys(channels):
            with self._lock:
                callbacks = list(self._subscribers.get(channel, []))
            for callback in callbacks:
                try:
                    callback(channel, event)
                except Exception:
                    logger.warning("realtime subscriber on %s failed", channel, exc_info=True)
            self._publish_redis(channel, event)

    def _redis_client(self) -> Optional[redis.Redis]:
        if self._redis is None and self._redis_url:
            self._redis = redis.from_url(self._redis_url)
        return self._redis

    def _publish_redis(self, channel: str, event: dict) -> None:
        client = self._redis_client()
        if client is None:
            return
        try:
            client.publish(f"{REDIS_CHANNEL_PREFIX}:{channel}", json.dumps(event, default=str))
        except redis.RedisError as exc:
            logger.warning("redis publish to %s failed: %s", channel, exc)


bus = EventBus(settings.redis_url)


def station_channels(destination: str) -> list[str]:
    if destination == Destination.BOTH.value:
        return [Destination.KITCHEN.value, Destination.BARTENDER.value]
    return [destination]


class Outbox:
    """Collects events during a unit of work; ``send`` is called after commit."""

    def __init__(self, event_bus: Optional[EventBus] = None) -> None:
        self.bus = event_bus or bus
        self.events: list[tuple[list[str], dict]] = []

    def add(self, channels: list[str], event_type: str, entity: str, entity_id: Any, **extra: Any) -> None:
        event = {"type": event_type, "entity": entity, "id": entity_id}
        event.update(extra)
        self.events.append((channels, event))

    def order(self, order: Order, event_type: str) -> None:
        channels = ["orders"]
        if order.session_id is not None:
            channels.append(f"session:{order.session_id}")
        if order.table_id is not None:
            channels.append(f"table:{order.table_id}")
        self.add(channels, event_type, "order", order.id, status=order.status, session_id=order.session_id)

    def ticket(self, ticket: PrepTicket, event_type: str) -> None:
        self.add(
            station_channels(ticket.destination),
            event_type,
            "ticket",
            ticket.id,
            status=ticket.status,
            order_id=ticket.order_id,
            destination=ticket.destination,
        )

    def session(self, session: OrderSession, event_type: str) -> None:
        self.add(
            ["sessions", f"session:{session.id}", f"table:{session.table_id}"],
            event_type,
            "session",
            session.id,
            status=session.status,
            table_id=session.table_id,
        )

    def table(self, table: DiningTable, event_type: str) -> None:
        self.add(["tables", f"table:{table.id}"], event_type, "table", table.id, status=table.status)

    def notification(self, notification: Notification) -> None:
        self.add(
            ["notifications"],
            "notification_created",
            "notification",
            notification.id,
            notification_type=notification.type,
            role=notification.role,
            user_id=notification.user_id,
        )

    def send(self) -> None:
        events, self.events = self.events, []
        for channels, event in events:
            self.bus.publish(channels, event)

    def discard(self) -> None:
        self.events = []
