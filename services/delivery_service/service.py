"""
Dispatch coordination: mirrors orders, lets partners claim them, tracks the
delivery progression and keeps partner availability in step.

Concurrency rule: anything two partners (or two service instances) can race on
is a single conditional UPDATE checked through its rowcount, never a read
followed by a write.
"""
from typing import Optional, Protocol

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from shared.errors import ConflictError, NotFoundError, PermanentError, TransientInfraError, ValidationError
from shared.lifecycle import OrderStatus, Transition, classify_transition, is_terminal, requires_partner
from shared.messaging.events import (
    DeliveryPartnerRegistered,
    DeliveryStatusUpdated,
    OrderCreated,
    OrderUpdated,
    ProfileUpdated,
)
from shared.messaging.publisher import Publisher
from shared.observability.metrics import dispatch_accept_total, order_status_transitions_total
from .models import DeliveryOrder, DeliveryPartner
from .repository import DeliveryOrderRepository, DeliveryPartnerRepository
from .schemas import DeliveryOrderResponse

logger = structlog.get_logger(__name__)

# Statuses a partner (or an admin on the partner's behalf) may report
PARTNER_REPORTED_STATUSES = frozenset(
    {OrderStatus.PICKED_UP, OrderStatus.ON_THE_WAY, OrderStatus.DELIVERED, OrderStatus.CANCELLED}
)


class Notifier(Protocol):
    async def broadcast_new_order(self, order: dict) -> None: ...

    async def broadcast_order_taken(self, order_id: str, accepting_partner_id: str) -> None: ...

    async def broadcast_status_update(
        self, order_id: str, status: OrderStatus, partner_id: Optional[str] = None
    ) -> None: ...

    def join_partner_to_order(self, partner_id: str, order_id: str) -> None: ...


def order_payload(order: DeliveryOrder) -> dict:
    return DeliveryOrderResponse.model_validate(order).model_dump(mode="json", by_alias=True)


class DispatchService:
    def __init__(self, db: AsyncSession, publisher: Publisher, notifier: Notifier):
        self.db = db
        self.publisher = publisher
        self.notifier = notifier

    # --- orders ---

    async def register_order(self, event: OrderCreated) -> tuple[DeliveryOrder, bool]:
        """Mirrors an order.created event. Redeliveries return the existing record."""
        existing = await DeliveryOrderRepository.get_order(self.db, event.order_id)
        if existing:
            logger.info("order_already_mirrored", order_id=event.order_id)
            return existing, False

        order = DeliveryOrder(
            order_id=event.order_id,
            customer_email=event.customer_email,
            customer_address=event.address.model_dump(mode="json"),
            total=event.total,
            status=OrderStatus.PENDING.value,
        )
        if not await DeliveryOrderRepository.insert_order(self.db, order):
            logger.info("order_already_mirrored", order_id=event.order_id)
            return await DeliveryOrderRepository.get_order(self.db, event.order_id), False

        logger.info("order_mirrored", order_id=order.order_id, total=str(order.total))
        await self.notifier.broadcast_new_order(order_payload(order))
        return order, True

    async def get_order(self, order_id: str) -> DeliveryOrder:
        order = await DeliveryOrderRepository.get_order(self.db, order_id)
        if not order:
            raise NotFoundError(f"Order {order_id} not found")
        return order

    async def list_pending_orders(self) -> list[DeliveryOrder]:
        return await DeliveryOrderRepository.list_pending_orders(self.db)

    async def get_active_order(self, partner_email: str) -> Optional[DeliveryOrder]:
        return await DeliveryOrderRepository.get_active_order(self.db, partner_email)

    async def list_completed_orders(self, partner_email: str) -> list[DeliveryOrder]:
        return await DeliveryOrderRepository.list_completed_orders(self.db, partner_email)

    async def accept_order(self, order_id: str, partner_id: str) -> DeliveryOrder:
        partner = await DeliveryPartnerRepository.get_partner(self.db, partner_id)
        if not partner:
            dispatch_accept_total.labels(outcome="not_found").inc()
            raise NotFoundError(f"Delivery partner {partner_id} not found")

        if not await DeliveryOrderRepository.claim_order(self.db, order_id, partner_id):
            await self.db.rollback()
            if not await DeliveryOrderRepository.get_order(self.db, order_id):
                dispatch_accept_total.labels(outcome="not_found").inc()
                raise NotFoundError(f"Order {order_id} not found")
            dispatch_accept_total.labels(outcome="already_assigned").inc()
            logger.info("accept_rejected", order_id=order_id, partner_id=partner_id, reason="AlreadyAssigned")
            raise ConflictError("AlreadyAssigned", f"Order {order_id} is no longer available")

        if not await DeliveryPartnerRepository.claim_partner(self.db, partner_id, order_id):
            await self.db.rollback()
            dispatch_accept_total.labels(outcome="partner_busy").inc()
            logger.info("accept_rejected", order_id=order_id, partner_id=partner_id, reason="PartnerBusy")
            raise ConflictError("PartnerBusy", f"Partner {partner_id} already has an order in progress")

        await self.db.commit()
        order = await DeliveryOrderRepository.get_order(self.db, order_id)
        dispatch_accept_total.labels(outcome="assigned").inc()
        order_status_transitions_total.labels(service="delivery", status=OrderStatus.ASSIGNED.value).inc()
        logger.info("order_assigned", order_id=order_id, partner_id=partner_id)

        await self.publisher.publish(
            DeliveryStatusUpdated(
                order_id=order_id,
                status=OrderStatus.ASSIGNED,
                assigned_partner_id=partner_id,
                timestamp=order.updated_at,
            )
        )
        self.notifier.join_partner_to_order(partner_id, order_id)
        await self.notifier.broadcast_order_taken(order_id, partner_id)
        await self.notifier.broadcast_status_update(order_id, OrderStatus.ASSIGNED, partner_id)
        return order

    async def update_delivery_status(
        self, order_id: str, status: OrderStatus, partner_id: Optional[str] = None
    ) -> DeliveryOrder:
        """Partner-reported progression. partner_id, when given, must be the assigned partner."""
        status = OrderStatus(status)
        if status not in PARTNER_REPORTED_STATUSES:
            raise ValidationError(f"Status {status.value} cannot be reported for a delivery")

        order = await self.get_order(order_id)
        if partner_id and order.assigned_partner_id != partner_id:
            raise ConflictError("NotAssignedPartner", f"Order {order_id} is not assigned to {partner_id}")

        transition = classify_transition(order.status, status)
        if transition is Transition.NOOP:
            return order
        if transition is Transition.ILLEGAL:
            raise ValidationError(f"Illegal status transition: {order.status} -> {status.value}")
        if requires_partner(status) and not order.assigned_partner_id:
            raise ValidationError(f"Status {status.value} requires an assigned partner")

        order = await self._transition(order, status, order.assigned_partner_id, ConflictError("ConcurrentUpdate"))

        await self.publisher.publish(
            DeliveryStatusUpdated(
                order_id=order.order_id,
                status=status,
                assigned_partner_id=order.assigned_partner_id,
                timestamp=order.updated_at,
            )
        )
        await self.notifier.broadcast_status_update(order.order_id, status, order.assigned_partner_id)
        return order

    async def apply_order_update(self, event: OrderUpdated) -> Optional[DeliveryOrder]:
        """Consumer side of order.updated (e.g. an admin cancellation). Never republished.

        Assignment is never taken from this event: a partner only gets an order
        through accept_order, which claims the partner in the same transaction.
        """
        order = await DeliveryOrderRepository.get_order(self.db, event.order_id)
        if not order:
            raise NotFoundError(f"Order {event.order_id} not mirrored")

        transition = classify_transition(order.status, event.status)
        if transition is not Transition.APPLY:
            logger.info(
                "stale_status_ignored",
                order_id=order.order_id,
                current=order.status,
                received=event.status.value,
            )
            return order

        partner_id = None
        if requires_partner(event.status):
            partner_id = order.assigned_partner_id
            if not partner_id:
                raise PermanentError(
                    f"Order {order.order_id} has no claimed partner, assign it through POST /orders/assign",
                    error="AssignmentNotAllowed",
                )
            if event.assigned_partner_id and event.assigned_partner_id != partner_id:
                logger.warning(
                    "foreign_assignment_ignored",
                    order_id=order.order_id,
                    partner_id=partner_id,
                    received=event.assigned_partner_id,
                )

        order = await self._transition(
            order,
            event.status,
            partner_id,
            TransientInfraError(f"Order {order.order_id} changed concurrently", error="ConcurrentUpdate"),
        )
        await self.notifier.broadcast_status_update(order.order_id, event.status, order.assigned_partner_id)
        return order

    async def _transition(
        self, order: DeliveryOrder, status: OrderStatus, partner_id: Optional[str], on_conflict: Exception
    ) -> DeliveryOrder:
        previous_partner = order.assigned_partner_id
        new_partner = None if status == OrderStatus.CANCELLED else partner_id

        if not await DeliveryOrderRepository.transition_order(
            self.db, order.order_id, order.status, status.value, new_partner
        ):
            await self.db.rollback()
            raise on_conflict
        if is_terminal(status) and previous_partner:
            await DeliveryPartnerRepository.release_partner(self.db, previous_partner, order.order_id)
        await self.db.commit()

        logger.info(
            "delivery_status_changed",
            order_id=order.order_id,
            previous=order.status,
            status=status.value,
            partner_id=new_partner,
        )
        order_status_transitions_total.labels(service="delivery", status=status.value).inc()
        return await DeliveryOrderRepository.get_order(self.db, order.order_id)

    # --- partners ---

    async def register_partner(self, event: DeliveryPartnerRegistered) -> tuple[DeliveryPartner, bool]:
        existing = await DeliveryPartnerRepository.get_partner(self.db, event.email)
        if existing:
            logger.info("partner_already_registered", partner_id=event.email)
            return existing, False

        partner = DeliveryPartner(
            email=event.email,
            name=event.name,
            phone=event.phone,
            vehicle_type=event.vehicle_type,
            vehicle_number=event.vehicle_number,
            available=False,
        )
        if not await DeliveryPartnerRepository.insert_partner(self.db, partner):
            return await DeliveryPartnerRepository.get_partner(self.db, event.email), False

        logger.info("partner_registered", partner_id=partner.email, vehicle_type=partner.vehicle_type)
        return partner, True

    async def apply_profile_update(self, event: ProfileUpdated) -> Optional[DeliveryPartner]:
        updated = await DeliveryPartnerRepository.update_partner(
            self.db, event.email, name=event.name, phone=event.phone
        )
        if not updated:
            # Profile of a customer or of a partner not registered yet
            await self.db.rollback()
            logger.info("profile_update_ignored", email=event.email)
            return None
        await self.db.commit()
        return await DeliveryPartnerRepository.get_partner(self.db, event.email)

    async def get_partner(self, partner_id: str) -> DeliveryPartner:
        partner = await DeliveryPartnerRepository.get_partner(self.db, partner_id)
        if not partner:
            raise NotFoundError(f"Delivery partner {partner_id} not found")
        return partner

    async def update_partner_availability(self, partner_id: str, available: bool) -> DeliveryPartner:
        partner = await self.get_partner(partner_id)
        if available and partner.active_order_id:
            raise ConflictError("PartnerBusy", f"Partner {partner_id} has order {partner.active_order_id} in progress")

        if not await DeliveryPartnerRepository.set_available(self.db, partner_id, available):
            await self.db.rollback()
            raise ConflictError("PartnerBusy", f"Partner {partner_id} has an order in progress")
        await self.db.commit()
        logger.info("partner_availability_changed", partner_id=partner_id, available=available)
        return await self.get_partner(partner_id)

    async def update_partner_location(self, partner_id: str, latitude: float, longitude: float) -> DeliveryPartner:
        if not await DeliveryPartnerRepository.update_partner(
            self.db, partner_id, latitude=latitude, longitude=longitude
        ):
            await self.db.rollback()
            raise NotFoundError(f"Delivery partner {partner_id} not found")
        await self.db.commit()
        return await self.get_partner(partner_id)

    async def list_available_partners(self) -> list[DeliveryPartner]:
        return await DeliveryPartnerRepository.list_available_partners(self.db)
