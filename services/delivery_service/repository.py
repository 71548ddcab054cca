from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from shared.lifecycle import IN_FLIGHT_STATUSES, OrderStatus
from shared.messaging.events import utcnow
from .models import DeliveryOrder, DeliveryPartner

_IN_FLIGHT = [s.value for s in IN_FLIGHT_STATUSES]


class DeliveryOrderRepository:
    @staticmethod
    async def get_order(db: AsyncSession, order_id: str):
        result = await db.execute(
            select(DeliveryOrder)
            .where(DeliveryOrder.order_id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    @staticmethod
    async def insert_order(db: AsyncSession, order: DeliveryOrder) -> bool:
        """Inserts the mirror once. Returns False when it already existed."""
        db.add(order)
        try:
            await db.commit()
        except IntegrityError:
            # A concurrent redelivery of the same order.created won the insert
            await db.rollback()
            return False
        await db.refresh(order)
        return True

    @staticmethod
    async def list_pending_orders(db: AsyncSession):
        result = await db.execute(
            select(DeliveryOrder)
            .where(
                DeliveryOrder.assigned_partner_id.is_(None),
                DeliveryOrder.status == OrderStatus.PENDING.value,
            )
            .order_by(DeliveryOrder.created_at.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    @staticmethod
    async def claim_order(db: AsyncSession, order_id: str, partner_id: str) -> bool:
        """Compare-and-swap on assigned_partner_id. Exactly one concurrent caller gets True."""
        result = await db.execute(
            update(DeliveryOrder)
            .where(
                DeliveryOrder.order_id == order_id,
                DeliveryOrder.assigned_partner_id.is_(None),
                DeliveryOrder.status == OrderStatus.PENDING.value,
            )
            .values(
                assigned_partner_id=partner_id,
                status=OrderStatus.ASSIGNED.value,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def transition_order(
        db: AsyncSession,
        order_id: str,
        expected_status: str,
        new_status: str,
        partner_id: Optional[str],
    ) -> bool:
        """Moves the order only if nobody changed its status since it was read."""
        result = await db.execute(
            update(DeliveryOrder)
            .where(DeliveryOrder.order_id == order_id, DeliveryOrder.status == expected_status)
            .values(status=new_status, assigned_partner_id=partner_id, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def get_active_order(db: AsyncSession, partner_email: str):
        result = await db.execute(
            select(DeliveryOrder)
            .where(
                DeliveryOrder.assigned_partner_id == partner_email,
                DeliveryOrder.status.in_(_IN_FLIGHT),
            )
            .order_by(DeliveryOrder.updated_at.desc())
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    @staticmethod
    async def list_completed_orders(db: AsyncSession, partner_email: str):
        result = await db.execute(
            select(DeliveryOrder)
            .where(
                DeliveryOrder.assigned_partner_id == partner_email,
                DeliveryOrder.status == OrderStatus.DELIVERED.value,
            )
            .order_by(DeliveryOrder.updated_at.desc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())


class DeliveryPartnerRepository:
    @staticmethod
    async def get_partner(db: AsyncSession, email: str):
        result = await db.execute(
            select(DeliveryPartner)
            .where(DeliveryPartner.email == email)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    @staticmethod
    async def insert_partner(db: AsyncSession, partner: DeliveryPartner) -> bool:
        db.add(partner)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            return False
        await db.refresh(partner)
        return True

    @staticmethod
    async def update_partner(db: AsyncSession, email: str, **values) -> bool:
        result = await db.execute(
            update(DeliveryPartner)
            .where(DeliveryPartner.email == email)
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def claim_partner(db: AsyncSession, email: str, order_id: str) -> bool:
        """Marks the partner busy with order_id unless another order is already in flight."""
        result = await db.execute(
            update(DeliveryPartner)
            .where(DeliveryPartner.email == email, DeliveryPartner.active_order_id.is_(None))
            .values(available=False, active_order_id=order_id, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def release_partner(db: AsyncSession, email: str, order_id: str) -> bool:
        result = await db.execute(
            update(DeliveryPartner)
            .where(DeliveryPartner.email == email, DeliveryPartner.active_order_id == order_id)
            .values(available=True, active_order_id=None, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def set_available(db: AsyncSession, email: str, available: bool) -> bool:
        """available=True only sticks for a partner without an in-flight order."""
        query = update(DeliveryPartner).where(DeliveryPartner.email == email)
        if available:
            query = query.where(DeliveryPartner.active_order_id.is_(None))
        result = await db.execute(
            query.values(available=available, updated_at=utcnow()).execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def list_available_partners(db: AsyncSession, connected_only: bool = False):
        query = select(DeliveryPartner).where(DeliveryPartner.available.is_(True))
        if connected_only:
            query = query.where(DeliveryPartner.current_socket_id.is_not(None))
        result = await db.execute(query.order_by(DeliveryPartner.email).execution_options(populate_existing=True))
        return list(result.scalars().all())

    @staticmethod
    async def clear_socket(db: AsyncSession, email: str, channel_id: str) -> bool:
        """Forgets the channel unless the partner already reconnected on a newer one."""
        result = await db.execute(
            update(DeliveryPartner)
            .where(DeliveryPartner.email == email, DeliveryPartner.current_socket_id == channel_id)
            .values(current_socket_id=None, available=False, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
