"""Broker handlers for the delivery service (orders and partners queues)."""
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from shared.messaging.events import DeliveryPartnerRegistered, OrderCreated, OrderUpdated, ProfileUpdated
from shared.messaging.publisher import Publisher
from .service import DispatchService, Notifier


class DeliveryEventHandlers:
    def __init__(self, session_factory: Callable[[], AsyncSession], publisher: Publisher, notifier: Notifier):
        self.session_factory = session_factory
        self.publisher = publisher
        self.notifier = notifier

    def table(self) -> dict:
        return {
            OrderCreated: self.on_order_created,
            OrderUpdated: self.on_order_updated,
            DeliveryPartnerRegistered: self.on_partner_registered,
            ProfileUpdated: self.on_profile_updated,
        }

    def _service(self, db: AsyncSession) -> DispatchService:
        return DispatchService(db, self.publisher, self.notifier)

    async def on_order_created(self, event: OrderCreated):
        async with self.session_factory() as db:
            await self._service(db).register_order(event)

    async def on_order_updated(self, event: OrderUpdated):
        async with self.session_factory() as db:
            await self._service(db).apply_order_update(event)

    async def on_partner_registered(self, event: DeliveryPartnerRegistered):
        async with self.session_factory() as db:
            await self._service(db).register_partner(event)

    async def on_profile_updated(self, event: ProfileUpdated):
        async with self.session_factory() as db:
            await self._service(db).apply_profile_update(event)
