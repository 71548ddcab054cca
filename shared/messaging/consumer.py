"""
Queue consumer with explicit acknowledgement.

Every message ends in exactly one of three dispositions:

    ACK    handled (or a stale/duplicate event that was a no-op)
    RETRY  transient failure: republished to the same queue with an attempt
           counter, dead-lettered after max_delivery_attempts
    DROP   permanent failure (malformed payload, unknown routing key, a
           business rule violation): acked and logged, never retried
"""
from __future__ import annotations

import asyncio
from enum import Enum
from typing import Awaitable, Callable, Optional, Type

import structlog
from aio_pika.abc import AbstractChannel, AbstractIncomingMessage, AbstractQueue
from aio_pika.exceptions import AMQPError
from sqlalchemy.exc import InterfaceError, OperationalError

from shared.config.settings import BrokerSettings
from shared.errors import DomainError, TransientInfraError
from shared.observability.metrics import broker_events_consumed_total

from .connection import ResilientConnection
from .events import BaseEvent, parse_event
from .topology import QueueSpec, declare_exchanges, declare_queue, exchange_specs, persistent_message

logger = structlog.get_logger(__name__)

ATTEMPT_HEADER = "x-delivery-attempt"
ROUTING_KEY_HEADER = "x-routing-key"

Handler = Callable[[BaseEvent], Awaitable[None]]

TRANSIENT_ERRORS = (
    TransientInfraError,
    OperationalError,
    InterfaceError,
    AMQPError,
    ConnectionError,
    asyncio.TimeoutError,
)


class Disposition(str, Enum):
    ACK = "ack"
    RETRY = "retry"
    DROP = "drop"


def disposition_for(exc: Optional[BaseException]) -> Disposition:
    if exc is None:
        return Disposition.ACK
    if isinstance(exc, TRANSIENT_ERRORS):
        return Disposition.RETRY
    return Disposition.DROP


def delivery_attempt(message: AbstractIncomingMessage) -> int:
    headers = message.headers or {}
    try:
        return int(headers.get(ATTEMPT_HEADER, 1))
    except (TypeError, ValueError):
        return 1


def original_routing_key(message: AbstractIncomingMessage) -> str:
    # Retried messages go through the default exchange, which rewrites the
    # routing key to the queue name.
    headers = message.headers or {}
    key = headers.get(ROUTING_KEY_HEADER)
    if isinstance(key, bytes):
        key = key.decode("utf-8")
    return key or message.routing_key


class EventConsumer:
    def __init__(
        self,
        connection: ResilientConnection,
        settings: BrokerSettings,
        queue_spec: QueueSpec,
        handlers: dict[Type[BaseEvent], Handler],
        service_name: str,
    ):
        self.connection = connection
        self.settings = settings
        self.queue_spec = queue_spec
        self.handlers = handlers
        self.service_name = service_name
        self._channel: Optional[AbstractChannel] = None
        self._queue: Optional[AbstractQueue] = None
        self._consumer_tag: Optional[str] = None

    async def start(self):
        self._channel = await self.connection.channel(prefetch_count=self.settings.prefetch_count)
        exchanges = await declare_exchanges(self._channel, exchange_specs(self.settings))
        self._queue = await declare_queue(self._channel, self.queue_spec, exchanges)
        self._consumer_tag = await self._queue.consume(self.on_message)
        logger.info(
            "consumer_started",
            service=self.service_name,
            queue=self.queue_spec.name,
            routing_keys=[b.routing_key for b in self.queue_spec.bindings],
        )

    async def stop(self):
        if self._queue is not None and self._consumer_tag is not None:
            await self._queue.cancel(self._consumer_tag)
            logger.info("consumer_stopped", service=self.service_name, queue=self.queue_spec.name)
        self._consumer_tag = None

    async def on_message(self, message: AbstractIncomingMessage):
        routing_key = original_routing_key(message)
        try:
            event = parse_event(routing_key, message.body)
            handler = self.handlers.get(type(event))
            if handler is None:
                raise DomainError(f"No handler registered for {routing_key}", error="UnhandledEvent")
            await handler(event)
        except Exception as exc:
            await self._settle_failure(message, routing_key, exc)
            return

        await message.ack()
        broker_events_consumed_total.labels(routing_key=routing_key, outcome=Disposition.ACK.value).inc()
        logger.info(
            "event_consumed",
            service=self.service_name,
            routing_key=routing_key,
            idempotency_key=message.message_id,
        )

    async def _settle_failure(self, message: AbstractIncomingMessage, routing_key: str, exc: Exception):
        disposition = disposition_for(exc)
        attempt = delivery_attempt(message)
        broker_events_consumed_total.labels(routing_key=routing_key, outcome=disposition.value).inc()

        if disposition is Disposition.DROP:
            logger.warning(
                "event_dropped",
                service=self.service_name,
                routing_key=routing_key,
                idempotency_key=message.message_id,
                error=str(exc),
            )
            await message.ack()
            return

        if attempt >= self.settings.max_delivery_attempts:
            logger.error(
                "event_retries_exhausted",
                service=self.service_name,
                routing_key=routing_key,
                idempotency_key=message.message_id,
                attempt=attempt,
                error=str(exc),
            )
            await message.reject(requeue=False)
            return

        logger.warning(
            "event_retry_scheduled",
            service=self.service_name,
            routing_key=routing_key,
            idempotency_key=message.message_id,
            attempt=attempt,
            error=str(exc),
        )
        await asyncio.sleep(self.settings.retry_delay)
        retry = persistent_message(
            message.body,
            message_id=message.message_id,
            headers={ATTEMPT_HEADER: attempt + 1, ROUTING_KEY_HEADER: routing_key},
        )
        try:
            await self._channel.default_exchange.publish(retry, routing_key=self.queue_spec.name)
        except (AMQPError, ConnectionError) as publish_exc:
            logger.error(
                "event_retry_publish_failed",
                service=self.service_name,
                routing_key=routing_key,
                error=str(publish_exc),
            )
            await message.nack(requeue=True)
            return
        await message.ack()
