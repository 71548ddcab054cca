"""Broker handlers for the order service (delivery and payment queues)."""
from typing import Callable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from shared.lifecycle import PaymentStatus
from shared.messaging.events import DeliveryStatusUpdated, PaymentFailed, PaymentSucceeded
from shared.messaging.publisher import Publisher
from .service import OrderService

logger = structlog.get_logger(__name__)


class OrderEventHandlers:
    def __init__(self, session_factory: Callable[[], AsyncSession], publisher: Publisher):
        self.session_factory = session_factory
        self.publisher = publisher

    def table(self) -> dict:
        return {
            DeliveryStatusUpdated: self.on_delivery_status_updated,
            PaymentSucceeded: self.on_payment_succeeded,
            PaymentFailed: self.on_payment_failed,
        }

    async def on_delivery_status_updated(self, event: DeliveryStatusUpdated):
        async with self.session_factory() as db:
            await OrderService(db, self.publisher).apply_delivery_update(event)

    async def on_payment_succeeded(self, event: PaymentSucceeded):
        async with self.session_factory() as db:
            await OrderService(db, self.publisher).update_payment_status(event.order_id, PaymentStatus.COMPLETED)

    async def on_payment_failed(self, event: PaymentFailed):
        # Payment and delivery are independent axes: status is left untouched
        async with self.session_factory() as db:
            await OrderService(db, self.publisher).update_payment_status(event.order_id, PaymentStatus.FAILED)
        logger.warning("payment_failed", order_id=event.order_id)
