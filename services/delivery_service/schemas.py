from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import Field

from shared.lifecycle import OrderStatus
from shared.messaging.events import Address, Money
from shared.schemas import CamelModel

class DeliveryOrderResponse(CamelModel):
    order_id: str
    customer_email: str
    customer_address: Address
    total: Money
    status: OrderStatus
    assigned_partner_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

class PartnerResponse(CamelModel):
    email: str
    name: Optional[str] = None
    phone: Optional[str] = None
    vehicle_type: Optional[str] = None
    vehicle_number: Optional[str] = None
    available: bool
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    active_order_id: Optional[str] = None

class AssignRequest(CamelModel):
    order_id: str
    partner_id: str

class AcceptRequest(CamelModel):
    order_id: str

class DeliveryStatusRequest(CamelModel):
    status: OrderStatus
    partner_id: Optional[str] = None

class AvailabilityUpdate(CamelModel):
    available: bool

class LocationUpdate(CamelModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)

# --- Real-time frames ---

class ClientFrame(CamelModel):
    """Inbound WebSocket frame: {"event": ..., "data": {...}}"""
    event: str
    data: Dict[str, Any] = Field(default_factory=dict)

class PartnerConnected(CamelModel):
    """The partner is taken from the token's `sub`; email, when sent, must match it."""
    token: Optional[str] = None
    email: Optional[str] = None

class CustomerConnected(CamelModel):
    email: str
    order_id: Optional[str] = None

class JoinOrder(CamelModel):
    order_id: str

class AcceptOrder(CamelModel):
    order_id: str
    partner_id: Optional[str] = None

class UpdateOrderStatus(CamelModel):
    order_id: str
    status: OrderStatus
