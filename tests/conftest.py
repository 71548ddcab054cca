import asyncio
import os
import tempfile
from decimal import Decimal
from uuid import uuid4

# Must be set before any service module reads its configuration
_TMP_DIR = tempfile.mkdtemp(prefix="dispatch-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_TMP_DIR, 'test.db')}"
os.environ["BROKER_ENABLED"] = "false"
os.environ["TRACING_ENABLED"] = "false"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["INTERNAL_API_KEY"] = "test-internal-key"
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret"

import pytest

from shared.config.database import AsyncSessionLocal, Base, engine
from shared.messaging.events import Address, DeliveryPartnerRegistered, LineItem, OrderCreated, ProductSnapshot
from shared.security.jwt_handler import create_access_token
from shared.security.rate_limiter import limiter

# Register every table with Base
from services.order_service import models as order_models  # noqa: F401
from services.delivery_service import models as delivery_models  # noqa: F401

INTERNAL_HEADERS = {"X-Internal-API-Key": "test-internal-key"}


class RecordingPublisher:
    def __init__(self):
        self.events = []

    async def publish(self, event):
        self.events.append(event)

    def of_type(self, event_type):
        return [e for e in self.events if isinstance(e, event_type)]

    def routing_keys(self):
        return [e.routing_key for e in self.events]


class RecordingNotifier:
    def __init__(self):
        self.new_orders = []
        self.taken = []
        self.status_updates = []
        self.joined = []

    async def broadcast_new_order(self, order: dict):
        self.new_orders.append(order)

    async def broadcast_order_taken(self, order_id, accepting_partner_id):
        self.taken.append((order_id, accepting_partner_id))

    async def broadcast_status_update(self, order_id, status, partner_id=None):
        self.status_updates.append((order_id, status.value if hasattr(status, "value") else status, partner_id))

    def join_partner_to_order(self, partner_id, order_id):
        self.joined.append((partner_id, order_id))


async def _reset_schema():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)


@pytest.fixture(autouse=True)
def clean_database():
    asyncio.run(_reset_schema())
    limiter.reset()
    yield


@pytest.fixture
async def db():
    async with AsyncSessionLocal() as session:
        yield session


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def session_factory():
    return AsyncSessionLocal


def partner_token(email: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': email})}"}


def sample_address() -> Address:
    return Address(street="12 Baker St", city="London", state="LDN", zip_code="NW1", country="UK")


def sample_items(price: str = "12.50", quantity: int = 2) -> list:
    return [
        LineItem(
            product=ProductSnapshot(id="p-1", name="Margherita", price=Decimal(price)),
            quantity=quantity,
        )
    ]


def order_created(order_id: str | None = None, total: str = "25.00", customer_email: str = "ada@example.com"):
    return OrderCreated(
        order_id=order_id or str(uuid4()),
        customer_email=customer_email,
        address=sample_address(),
        total=Decimal(total),
        items=sample_items(),
    )


def partner_registered(email: str = "rider@example.com", name: str = "Rider"):
    return DeliveryPartnerRegistered(
        email=email,
        name=name,
        phone="+44 7700 900000",
        vehicle_type="bike",
        vehicle_number="B-1",
    )


def order_body(total: float = 25.0, quantity: int = 2, price: float = 12.5) -> dict:
    return {
        "items": [{"product": {"id": "p-1", "name": "Margherita", "price": price}, "quantity": quantity}],
        "total": total,
        "address": {"street": "12 Baker St", "city": "London", "state": "LDN", "zipCode": "NW1", "country": "UK"},
        "customerEmail": "ada@example.com",
    }
