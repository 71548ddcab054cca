from __future__ import annotations

from typing import Type

import structlog

from shared.config.settings import BrokerSettings

from .connection import ResilientConnection
from .consumer import EventConsumer, Handler
from .events import BaseEvent
from .publisher import EventPublisher
from .topology import QueueSpec

logger = structlog.get_logger(__name__)


class EventRelay:
    """A service's broker connection, its publisher and one consumer per owned queue.

    Handlers are bound at start() because they usually need the publisher this
    relay owns.
    """

    def __init__(
        self,
        settings: BrokerSettings,
        service_name: str,
        queue_specs: list[QueueSpec],
        connection: ResilientConnection | None = None,
    ):
        self.settings = settings
        self.service_name = service_name
        self.queue_specs = queue_specs
        self.connection = connection or ResilientConnection(settings, service_name)
        self.publisher = EventPublisher(self.connection, settings)
        self.consumers: list[EventConsumer] = []

    async def start(self, handlers: dict[Type[BaseEvent], Handler]):
        if not self.settings.enabled:
            logger.warning("broker_disabled", service=self.service_name)
            return
        await self.connection.connect()
        await self.publisher.start()
        for spec in self.queue_specs:
            consumer = EventConsumer(self.connection, self.settings, spec, handlers, self.service_name)
            await consumer.start()
            self.consumers.append(consumer)
        logger.info("event_relay_started", service=self.service_name, queues=len(self.consumers))

    async def stop(self):
        for consumer in self.consumers:
            await consumer.stop()
        self.consumers = []
        await self.connection.close()
