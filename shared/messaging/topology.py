"""
Exchanges, queues and bindings.

Every domain has one durable exchange. Every consuming service owns durable
queues named after its prefix and binds only the routing keys it handles.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Type

import aio_pika
from aio_pika import ExchangeType
from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractQueue

from shared.config.settings import BrokerSettings

from .events import (
    BaseEvent,
    DeliveryPartnerRegistered,
    DeliveryStatusUpdated,
    OrderCreated,
    OrderUpdated,
    PaymentFailed,
    PaymentSucceeded,
    ProfileUpdated,
    utcnow,
)


@dataclass(frozen=True)
class ExchangeSpec:
    name: str
    type: ExchangeType


@dataclass(frozen=True)
class Binding:
    exchange: str
    routing_key: str


@dataclass(frozen=True)
class QueueSpec:
    name: str
    bindings: tuple[Binding, ...]


def exchange_specs(settings: BrokerSettings) -> list[ExchangeSpec]:
    return [
        ExchangeSpec(settings.order_events_exchange, ExchangeType.TOPIC),
        ExchangeSpec(settings.delivery_events_exchange, ExchangeType.TOPIC),
        ExchangeSpec(settings.payment_exchange, ExchangeType.TOPIC),
        ExchangeSpec(settings.user_registration_exchange, ExchangeType.DIRECT),
        ExchangeSpec(settings.auth_exchange, ExchangeType.DIRECT),
    ]


def exchange_for(event_type: Type[BaseEvent], settings: BrokerSettings) -> str:
    return getattr(settings, event_type.exchange_setting)


def _bind(settings: BrokerSettings, *event_types: Type[BaseEvent]) -> tuple[Binding, ...]:
    return tuple(Binding(exchange_for(t, settings), t.routing_key) for t in event_types)


def order_service_queues(settings: BrokerSettings) -> list[QueueSpec]:
    prefix = settings.order_queue_prefix
    return [
        QueueSpec(f"{prefix}.delivery", _bind(settings, DeliveryStatusUpdated)),
        QueueSpec(f"{prefix}.payment", _bind(settings, PaymentSucceeded, PaymentFailed)),
    ]


def delivery_service_queues(settings: BrokerSettings) -> list[QueueSpec]:
    prefix = settings.delivery_queue_prefix
    return [
        QueueSpec(f"{prefix}.orders", _bind(settings, OrderCreated, OrderUpdated)),
        QueueSpec(f"{prefix}.partners", _bind(settings, DeliveryPartnerRegistered, ProfileUpdated)),
    ]


async def declare_exchanges(
    channel: AbstractChannel, specs: Iterable[ExchangeSpec]
) -> dict[str, AbstractExchange]:
    declared = {}
    for spec in specs:
        declared[spec.name] = await channel.declare_exchange(spec.name, spec.type, durable=True)
    return declared


async def declare_queue(
    channel: AbstractChannel,
    spec: QueueSpec,
    exchanges: dict[str, AbstractExchange],
) -> AbstractQueue:
    queue = await channel.declare_queue(spec.name, durable=True)
    for binding in spec.bindings:
        await queue.bind(exchanges[binding.exchange], routing_key=binding.routing_key)
    return queue


def persistent_message(body: bytes, message_id: str, headers: dict | None = None) -> aio_pika.Message:
    return aio_pika.Message(
        body=body,
        content_type="application/json",
        delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        message_id=message_id,
        timestamp=utcnow(),
        headers=headers or {},
    )
