from .events import (
    BaseEvent,
    EventEnvelope,
    DeliveryPartnerRegistered,
    DeliveryStatusUpdated,
    OrderCreated,
    OrderUpdated,
    PaymentFailed,
    PaymentSucceeded,
    ProfileUpdated,
    parse_event,
)
from .connection import ResilientConnection
from .consumer import Disposition, EventConsumer, disposition_for
from .publisher import EventPublisher, Publisher
from .relay import EventRelay

__all__ = [
    "BaseEvent",
    "EventEnvelope",
    "DeliveryPartnerRegistered",
    "DeliveryStatusUpdated",
    "OrderCreated",
    "OrderUpdated",
    "PaymentFailed",
    "PaymentSucceeded",
    "ProfileUpdated",
    "parse_event",
    "ResilientConnection",
    "Disposition",
    "EventConsumer",
    "disposition_for",
    "EventPublisher",
    "Publisher",
    "EventRelay",
]
