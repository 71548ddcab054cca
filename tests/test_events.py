"""Broker message contracts."""
import json
from decimal import Decimal

import pytest

from shared.errors import PermanentError
from shared.lifecycle import OrderStatus
from shared.messaging.events import (
    EVENT_TYPES,
    DeliveryPartnerRegistered,
    DeliveryStatusUpdated,
    EventEnvelope,
    OrderCreated,
    PaymentFailed,
    ProfileUpdated,
    parse_event,
)

from conftest import order_created


class TestParseEvent:
    def test_decodes_camel_case_body(self):
        body = json.dumps(
            {
                "orderId": "o-1",
                "customerEmail": "ada@example.com",
                "address": {"street": "s", "city": "c", "state": "st", "zipCode": "z", "country": "UK"},
                "total": 25.0,
            }
        ).encode()
        event = parse_event("order.created", body)
        assert isinstance(event, OrderCreated)
        assert event.order_id == "o-1"
        assert event.total == Decimal("25")
        assert event.items == []

    def test_status_event(self):
        event = parse_event(
            "delivery.status_updated",
            {"orderId": "o-1", "status": "picked_up", "assignedPartnerId": "rider@example.com"},
        )
        assert isinstance(event, DeliveryStatusUpdated)
        assert event.status is OrderStatus.PICKED_UP

    def test_unknown_routing_key(self):
        with pytest.raises(PermanentError) as exc:
            parse_event("order.exploded", b"{}")
        assert exc.value.error == "UnknownRoutingKey"

    def test_undecodable_body(self):
        with pytest.raises(PermanentError) as exc:
            parse_event("payment.success", b"not json")
        assert exc.value.error == "MalformedPayload"

    def test_unknown_status_value(self):
        with pytest.raises(PermanentError) as exc:
            parse_event("delivery.status_updated", {"orderId": "o-1", "status": "teleported"})
        assert exc.value.error == "MalformedPayload"

    def test_missing_field(self):
        with pytest.raises(PermanentError):
            parse_event("payment.failed", {})


class TestIdempotencyKey:
    def test_order_events_use_order_id(self):
        assert PaymentFailed(order_id="o-9").idempotency_key == "o-9:payment.failed"

    def test_partner_events_use_email(self):
        event = DeliveryPartnerRegistered(
            email="rider@example.com", name="R", vehicle_type="bike", vehicle_number="B-1"
        )
        assert event.idempotency_key == "rider@example.com:delivery_partner.registered"

    def test_profile_events_use_email(self):
        event = ProfileUpdated(user_id="u-1", email="ada@example.com", name="Ada")
        assert event.idempotency_key == "ada@example.com:profile.updated"

    def test_envelope_wraps_event(self):
        event = order_created(order_id="o-2")
        envelope = EventEnvelope.wrap(event)
        assert envelope.routing_key == "order.created"
        assert envelope.payload is event
        assert envelope.idempotency_key == "o-2:order.created"


def test_body_is_camel_case_json_with_numeric_total():
    body = json.loads(order_created(order_id="o-3").to_body())
    assert body["orderId"] == "o-3"
    assert body["customerEmail"] == "ada@example.com"
    assert body["address"]["zipCode"] == "NW1"
    assert body["total"] == 25.0
    assert body["items"][0]["product"]["price"] == 12.5


def test_every_routing_key_is_registered():
    assert set(EVENT_TYPES) == {
        "order.created",
        "order.updated",
        "delivery.status_updated",
        "payment.success",
        "payment.failed",
        "profile.updated",
        "delivery_partner.registered",
    }
