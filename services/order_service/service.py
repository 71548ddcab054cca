from decimal import Decimal
from typing import Optional
from uuid import uuid4

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from shared.errors import NotFoundError, PermanentError, ValidationError
from shared.lifecycle import OrderStatus, PaymentStatus, Transition, classify_transition, requires_partner
from shared.messaging.events import DeliveryStatusUpdated, OrderCreated, OrderUpdated
from shared.messaging.publisher import Publisher
from shared.observability.metrics import order_status_transitions_total
from .models import Order
from .repository import OrderRepository
from .schemas import OrderCreate

logger = structlog.get_logger(__name__)

# Allowed difference between the declared total and the sum of the line items
TOTAL_TOLERANCE = Decimal("0.01")


class OrderService:
    def __init__(self, db: AsyncSession, publisher: Publisher):
        self.db = db
        self.publisher = publisher

    async def create_order(self, data: OrderCreate) -> Order:
        if not data.items:
            raise ValidationError("Order must contain at least one item")

        computed = sum((item.product.price * item.quantity for item in data.items), Decimal("0"))
        if abs(computed - data.total) > TOTAL_TOLERANCE:
            raise ValidationError(f"Order total {data.total} does not match item total {computed}")

        order = Order(
            order_id=str(uuid4()),
            customer_email=data.customer_email,
            status=OrderStatus.PENDING.value,
            payment_status=PaymentStatus.PENDING.value,
            items=[item.model_dump(mode="json") for item in data.items],
            total=data.total,
            address=data.address.model_dump(mode="json"),
        )
        order = await OrderRepository.create_order(self.db, order)
        logger.info("order_created", order_id=order.order_id, total=str(order.total))

        await self.publisher.publish(
            OrderCreated(
                order_id=order.order_id,
                customer_email=order.customer_email,
                address=data.address,
                total=data.total,
                items=data.items,
                created_at=order.created_at,
            )
        )
        return order

    async def get_order(self, order_id: str) -> Order:
        order = await OrderRepository.get_order(self.db, order_id)
        if not order:
            raise NotFoundError(f"Order {order_id} not found")
        return order

    async def list_orders(self, customer_email: Optional[str] = None) -> list[Order]:
        return await OrderRepository.list_orders(self.db, customer_email)

    async def update_status(
        self, order_id: str, new_status: OrderStatus, partner_id: Optional[str] = None
    ) -> Order:
        """Direct (admin/internal) status change. Illegal transitions are rejected.

        Assignment belongs to the delivery service: this path never assigns an
        order nor changes its partner, it can only move an assigned order along
        or cancel it.
        """
        new_status = OrderStatus(new_status)
        order = await OrderRepository.get_order(self.db, order_id, for_update=True)
        if not order:
            raise NotFoundError(f"Order {order_id} not found")

        if new_status == OrderStatus.ASSIGNED:
            raise ValidationError(
                "Orders are assigned by the delivery service (POST /delivery/orders/assign)",
                error="AssignmentNotAllowed",
            )
        if partner_id and partner_id != order.assigned_partner_id:
            raise ValidationError(
                f"Order {order_id} is assigned to {order.assigned_partner_id}, not {partner_id}",
                error="AssignmentNotAllowed",
            )

        transition = classify_transition(order.status, new_status)
        if transition is Transition.NOOP:
            return order
        if transition is Transition.ILLEGAL:
            raise ValidationError(f"Illegal status transition: {order.status} -> {new_status.value}")

        self._apply_status(order, new_status, None, ValidationError)
        order = await OrderRepository.save(self.db, order)

        await self.publisher.publish(
            OrderUpdated(
                order_id=order.order_id,
                status=order.status,
                assigned_partner_id=order.assigned_partner_id,
                timestamp=order.updated_at,
            )
        )
        return order

    async def update_payment_status(self, order_id: str, payment_status: PaymentStatus) -> Order:
        order = await OrderRepository.get_order(self.db, order_id, for_update=True)
        if not order:
            raise NotFoundError(f"Order {order_id} not found")

        payment_status = PaymentStatus(payment_status)
        if order.payment_status == payment_status.value:
            return order

        order.payment_status = payment_status.value
        order = await OrderRepository.save(self.db, order)
        logger.info("payment_status_updated", order_id=order_id, payment_status=payment_status.value)
        return order

    async def apply_delivery_update(self, event: DeliveryStatusUpdated) -> Optional[Order]:
        """Consumer side of delivery.status_updated: stale or duplicate events are ignored."""
        order = await OrderRepository.get_order(self.db, event.order_id, for_update=True)
        if not order:
            raise NotFoundError(f"Order {event.order_id} not found")

        transition = classify_transition(order.status, event.status)
        if transition is Transition.NOOP:
            if event.assigned_partner_id and event.assigned_partner_id != order.assigned_partner_id:
                # The delivery service owns assignment
                logger.warning(
                    "assignment_adopted",
                    order_id=order.order_id,
                    previous=order.assigned_partner_id,
                    partner_id=event.assigned_partner_id,
                )
                order.assigned_partner_id = event.assigned_partner_id
                return await OrderRepository.save(self.db, order)
            logger.info("duplicate_status_ignored", order_id=order.order_id, status=order.status)
            return order
        if transition is Transition.ILLEGAL:
            logger.info(
                "stale_status_ignored",
                order_id=order.order_id,
                current=order.status,
                received=event.status.value,
            )
            return order

        self._apply_status(order, event.status, event.assigned_partner_id, PermanentError)
        return await OrderRepository.save(self.db, order)

    @staticmethod
    def _apply_status(order: Order, new_status: OrderStatus, partner_id: Optional[str], error_cls):
        if new_status == OrderStatus.CANCELLED:
            order.assigned_partner_id = None
        elif requires_partner(new_status):
            partner = partner_id or order.assigned_partner_id
            if not partner:
                raise error_cls(f"Status {new_status.value} requires an assigned partner")
            order.assigned_partner_id = partner

        logger.info(
            "order_status_changed",
            order_id=order.order_id,
            previous=order.status,
            status=new_status.value,
            partner_id=order.assigned_partner_id,
        )
        order.status = new_status.value
        order_status_transitions_total.labels(service="order", status=new_status.value).inc()
