from datetime import datetime
from typing import List, Optional

from pydantic import EmailStr, Field

from shared.lifecycle import OrderStatus, PaymentStatus
from shared.messaging.events import Address, LineItem, Money
from shared.schemas import CamelModel

class OrderCreate(CamelModel):
    items: List[LineItem]
    total: Money
    address: Address
    customer_email: EmailStr

class OrderStatusUpdate(CamelModel):
    status: OrderStatus
    partner_id: Optional[str] = None

class PaymentStatusUpdate(CamelModel):
    status: PaymentStatus

class OrderResponse(CamelModel):
    order_id: str
    customer_email: str
    status: OrderStatus
    payment_status: PaymentStatus
    assigned_partner_id: Optional[str] = None
    items: List[LineItem] = Field(default_factory=list)
    total: Money
    address: Address
    created_at: datetime
    updated_at: datetime

class OrderListResponse(CamelModel):
    orders: List[OrderResponse]
    count: int
