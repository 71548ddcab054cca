"""
One broker connection per service process.

Connects with a fixed delay between a bounded number of attempts, then gives
up and lets startup fail. Once connected, aio-pika's robust connection takes
care of transparent reconnects.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

import aio_pika
import structlog
from aio_pika.abc import AbstractChannel, AbstractRobustConnection
from aio_pika.exceptions import AMQPError

from shared.config.settings import BrokerSettings
from shared.errors import TransientInfraError

logger = structlog.get_logger(__name__)

Connector = Callable[[str], Awaitable[AbstractRobustConnection]]


class ResilientConnection:
    # TODO: switch the fixed delay to exponential backoff with jitter once
    # several replicas start against the same broker.

    def __init__(
        self,
        settings: BrokerSettings,
        service_name: str,
        connector: Connector = aio_pika.connect_robust,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings
        self.service_name = service_name
        self._connector = connector
        self._sleep = sleep
        self._connection: Optional[AbstractRobustConnection] = None
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed

    async def connect(self) -> AbstractRobustConnection:
        async with self._lock:
            if self.is_connected:
                return self._connection

            attempts = self.settings.connect_attempts
            last_error: Optional[BaseException] = None
            for attempt in range(1, attempts + 1):
                logger.info(
                    "broker_connecting",
                    service=self.service_name,
                    attempt=attempt,
                    max_attempts=attempts,
                )
                try:
                    self._connection = await self._connector(self.settings.url)
                except (AMQPError, OSError, asyncio.TimeoutError) as exc:
                    last_error = exc
                    logger.warning(
                        "broker_connect_failed",
                        service=self.service_name,
                        attempt=attempt,
                        error=str(exc),
                    )
                    if attempt < attempts:
                        await self._sleep(self.settings.connect_delay)
                    continue

                logger.info("broker_connected", service=self.service_name)
                return self._connection

            raise TransientInfraError(
                f"Failed to connect to RabbitMQ after {attempts} attempts: {last_error}"
            )

    async def channel(self, prefetch_count: Optional[int] = None) -> AbstractChannel:
        connection = await self.connect()
        channel = await connection.channel()
        if prefetch_count:
            await channel.set_qos(prefetch_count=prefetch_count)
        return channel

    async def close(self):
        if self._connection is not None and not self._connection.is_closed:
            await self._connection.close()
            logger.info("broker_connection_closed", service=self.service_name)
        self._connection = None
