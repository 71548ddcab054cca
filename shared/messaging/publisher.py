from __future__ import annotations

from typing import Optional, Protocol

import structlog
from aio_pika.abc import AbstractChannel, AbstractExchange
from aio_pika.exceptions import AMQPError

from shared.config.settings import BrokerSettings
from shared.errors import TransientInfraError
from shared.observability.metrics import broker_events_published_total

from .connection import ResilientConnection
from .events import BaseEvent
from .topology import declare_exchanges, exchange_for, exchange_specs, persistent_message

logger = structlog.get_logger(__name__)


class Publisher(Protocol):
    async def publish(self, event: BaseEvent) -> None: ...


class EventPublisher:
    """Publishes typed events to the exchange their routing key belongs to."""

    def __init__(self, connection: ResilientConnection, settings: BrokerSettings):
        self.connection = connection
        self.settings = settings
        self._channel: Optional[AbstractChannel] = None
        self._exchanges: dict[str, AbstractExchange] = {}

    async def start(self):
        self._channel = await self.connection.channel()
        self._exchanges = await declare_exchanges(self._channel, exchange_specs(self.settings))

    async def publish(self, event: BaseEvent) -> None:
        if not self.settings.enabled:
            logger.info("event_publish_skipped", routing_key=event.routing_key, idempotency_key=event.idempotency_key)
            return
        if self._channel is None:
            await self.start()

        exchange_name = exchange_for(type(event), self.settings)
        message = persistent_message(event.to_body(), message_id=event.idempotency_key)
        try:
            await self._exchanges[exchange_name].publish(message, routing_key=event.routing_key)
        except (AMQPError, ConnectionError) as exc:
            logger.error(
                "event_publish_failed",
                routing_key=event.routing_key,
                idempotency_key=event.idempotency_key,
                error=str(exc),
            )
            raise TransientInfraError(f"Could not publish {event.routing_key}: {exc}") from exc

        broker_events_published_total.labels(routing_key=event.routing_key).inc()
        logger.info(
            "event_published",
            exchange=exchange_name,
            routing_key=event.routing_key,
            idempotency_key=event.idempotency_key,
        )
