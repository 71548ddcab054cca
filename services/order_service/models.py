from sqlalchemy import Column, DateTime, JSON, Numeric, String
from shared.config.database import Base
from shared.lifecycle import OrderStatus, PaymentStatus
from shared.messaging.events import utcnow

class Order(Base):
    __tablename__ = "orders"
    # We use a separate schema to simulate microservice isolation
    __table_args__ = {"schema": "order_schema"}

    order_id = Column(String(36), primary_key=True)
    customer_email = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default=OrderStatus.PENDING.value)
    payment_status = Column(String, nullable=False, default=PaymentStatus.PENDING.value)
    # Partner email; set exactly while the order is assigned..delivered
    assigned_partner_id = Column(String, nullable=True)
    items = Column(JSON, nullable=False, default=list) # product snapshots at creation
    total = Column(Numeric(12, 2), nullable=False)
    address = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
