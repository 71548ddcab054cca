from sqlalchemy import Boolean, Column, DateTime, Float, JSON, Numeric, String
from shared.config.database import Base
from shared.lifecycle import OrderStatus
from shared.messaging.events import utcnow

class DeliveryOrder(Base):
    """The dispatch-side mirror of an order, fed by order.created / order.updated."""
    __tablename__ = "delivery_orders"
    __table_args__ = {"schema": "delivery_schema"}

    order_id = Column(String(36), primary_key=True)
    customer_email = Column(String, nullable=False, index=True)
    customer_address = Column(JSON, nullable=False)
    total = Column(Numeric(12, 2), nullable=False)
    status = Column(String, nullable=False, default=OrderStatus.PENDING.value, index=True)
    assigned_partner_id = Column(String, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

class DeliveryPartner(Base):
    __tablename__ = "delivery_partners"
    __table_args__ = {"schema": "delivery_schema"}

    email = Column(String, primary_key=True)
    name = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    vehicle_type = Column(String, nullable=True)
    vehicle_number = Column(String, nullable=True)
    available = Column(Boolean, nullable=False, default=False)
    current_socket_id = Column(String, nullable=True) # owned by the notifier
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    active_order_id = Column(String(36), nullable=True) # the single in-flight order
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
