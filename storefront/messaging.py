"""Server-to-client event channel.

Events are best-effort notifications (``new-order``, ``order-updated``,
``order-cancelled``, ``product-updated``); clients reconcile through the REST
endpoints. The order and product code only talks to ``EventPublisher``; the
transport behind it is picked by the composition root.
"""
from __future__ import annotations

import json
import logging
import threading
from typing import Any, Dict, List, Optional, Tuple

import pika

from .config import EVENTS_EXCHANGE, RABBITMQ_URL

logger = logging.getLogger(__name__)

NEW_ORDER = "new-order"
ORDER_UPDATED = "order-updated"
ORDER_CANCELLED = "order-cancelled"
PRODUCT_UPDATED = "product-updated"

ADMIN_AUDIENCE = "admin"
ALL_AUDIENCE = "all"


def user_audience(user_id: str) -> str:
    return f"user-{user_id}"


class EventPublisher:
    def publish(self, event: str, payload: Dict[str, Any], *, audience: str = ALL_AUDIENCE) -> None:
        raise NotImplementedError


class RabbitMQEventPublisher(EventPublisher):
    """Publishes to a durable topic exchange with routing key ``<event>.<audience>``."""

    def __init__(self, url: str = RABBITMQ_URL, exchange: str = EVENTS_EXCHANGE) -> None:
        self.url = url
        self.exchange = exchange

    def _connect(self) -> pika.BlockingConnection:
        params = pika.URLParameters(self.url)
        # a few sane defaults
        params.heartbeat = 30
        params.blocked_connection_timeout = 30
        return pika.BlockingConnection(params)

    def publish(self, event: str, payload: Dict[str, Any], *, audience: str = ALL_AUDIENCE) -> None:
        routing_key = f"{event}.{audience}"
        try:
            connection = self._connect()
        except Exception:
            logger.exception("Could not connect to broker; dropping event %s", routing_key)
            return

        try:
            ch = connection.channel()
            ch.exchange_declare(exchange=self.exchange, exchange_type="topic", durable=True)
            body = json.dumps({"event": event, **payload}, ensure_ascii=False, default=str).encode("utf-8")
            ch.basic_publish(
                exchange=self.exchange,
                routing_key=routing_key,
                body=body,
                properties=pika.BasicProperties(
                    content_type="application/json",
                    delivery_mode=2,  # persistent
                ),
            )
        except Exception:
            logger.exception("Failed to publish event %s", routing_key)
        finally:
            try:
                connection.close()
            except Exception:
                logger.debug("Error closing broker connection", exc_info=True)


class InMemoryEventPublisher(EventPublisher):
    """Keeps published events in a list; used for local runs and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: List[Tuple[str, str, Dict[str, Any]]] = []

    def publish(self, event: str, payload: Dict[str, Any], *, audience: str = ALL_AUDIENCE) -> None:
        with self._lock:
            self.events.append((event, audience, payload))

    def of(self, event: str, audience: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                payload
                for name, aud, payload in self.events
                if name == event and (audience is None or aud == audience)
            ]


def make_publisher(backend: str) -> EventPublisher:
    if backend == "memory":
        return InMemoryEventPublisher()
    if backend == "rabbitmq":
        return RabbitMQEventPublisher()
    raise ValueError(f"unknown events backend: {backend}")
