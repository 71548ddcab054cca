"""
Message contracts exchanged through the broker.

One pydantic model per routing key. Consumers never look at raw dicts: they
call parse_event() and dispatch on the event class, so an unknown or malformed
message is rejected in one place (as a PermanentError) instead of failing deep
inside a handler.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, ClassVar, List, Optional, Type

from pydantic import Field, PlainSerializer
from pydantic import ValidationError as PydanticValidationError

from shared.errors import PermanentError
from shared.lifecycle import OrderStatus
from shared.schemas import CamelModel

Money = Annotated[
    Decimal,
    Field(ge=0, max_digits=12, decimal_places=2),
    PlainSerializer(float, return_type=float, when_used="json"),
]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Address(CamelModel):
    street: str
    city: str
    state: str
    zip_code: str
    country: str


class ProductSnapshot(CamelModel):
    id: str
    name: str
    price: Money
    image_url: Optional[str] = None


class LineItem(CamelModel):
    product: ProductSnapshot
    quantity: int = Field(ge=1)


class BaseEvent(CamelModel):
    routing_key: ClassVar[str]
    # Name of the BrokerSettings field holding the exchange this event goes to
    exchange_setting: ClassVar[str]

    def natural_key(self) -> str:
        return self.order_id  # type: ignore[attr-defined]

    @property
    def idempotency_key(self) -> str:
        return f"{self.natural_key()}:{self.routing_key}"

    def to_body(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")


# --- order_events ---

class OrderCreated(BaseEvent):
    routing_key: ClassVar[str] = "order.created"
    exchange_setting: ClassVar[str] = "order_events_exchange"

    order_id: str
    customer_email: str
    address: Address
    total: Money
    items: List[LineItem] = Field(default_factory=list)
    created_at: Optional[datetime] = None


class OrderUpdated(BaseEvent):
    routing_key: ClassVar[str] = "order.updated"
    exchange_setting: ClassVar[str] = "order_events_exchange"

    order_id: str
    status: OrderStatus
    assigned_partner_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


# --- delivery_events ---

class DeliveryStatusUpdated(BaseEvent):
    routing_key: ClassVar[str] = "delivery.status_updated"
    exchange_setting: ClassVar[str] = "delivery_events_exchange"

    order_id: str
    status: OrderStatus
    assigned_partner_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


# --- payment ---

class PaymentSucceeded(BaseEvent):
    routing_key: ClassVar[str] = "payment.success"
    exchange_setting: ClassVar[str] = "payment_exchange"

    order_id: str


class PaymentFailed(BaseEvent):
    routing_key: ClassVar[str] = "payment.failed"
    exchange_setting: ClassVar[str] = "payment_exchange"

    order_id: str


# --- user-registration / auth ---

class ProfileUpdated(BaseEvent):
    routing_key: ClassVar[str] = "profile.updated"
    exchange_setting: ClassVar[str] = "user_registration_exchange"

    user_id: str
    email: str
    name: str
    phone: Optional[str] = None

    def natural_key(self) -> str:
        return self.email


class DeliveryPartnerRegistered(BaseEvent):
    routing_key: ClassVar[str] = "delivery_partner.registered"
    exchange_setting: ClassVar[str] = "auth_exchange"

    email: str
    name: str
    phone: Optional[str] = None
    vehicle_type: str
    vehicle_number: str

    def natural_key(self) -> str:
        return self.email


EVENT_TYPES: dict[str, Type[BaseEvent]] = {
    cls.routing_key: cls
    for cls in (
        OrderCreated,
        OrderUpdated,
        DeliveryStatusUpdated,
        PaymentSucceeded,
        PaymentFailed,
        ProfileUpdated,
        DeliveryPartnerRegistered,
    )
}


@dataclass(frozen=True)
class EventEnvelope:
    routing_key: str
    payload: BaseEvent
    idempotency_key: str

    @classmethod
    def wrap(cls, event: BaseEvent) -> "EventEnvelope":
        return cls(event.routing_key, event, event.idempotency_key)


def parse_event(routing_key: str, body: bytes | str | dict) -> BaseEvent:
    """Decodes a message body into the event type registered for routing_key."""
    event_type = EVENT_TYPES.get(routing_key)
    if event_type is None:
        raise PermanentError(f"Unknown routing key: {routing_key}", error="UnknownRoutingKey")

    if isinstance(body, (bytes, bytearray)):
        body = body.decode("utf-8")
    try:
        data = json.loads(body) if isinstance(body, str) else body
    except json.JSONDecodeError as exc:
        raise PermanentError(f"Undecodable {routing_key} payload: {exc}", error="MalformedPayload") from exc

    try:
        return event_type.model_validate(data)
    except PydanticValidationError as exc:
        raise PermanentError(
            f"Invalid {routing_key} payload: {exc.error_count()} error(s)",
            error="MalformedPayload",
        ) from exc
