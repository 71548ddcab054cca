from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from .models import Order

class OrderRepository:
    @staticmethod
    async def create_order(db: AsyncSession, order: Order):
        db.add(order)
        await db.commit()
        await db.refresh(order)
        return order

    @staticmethod
    async def get_order(db: AsyncSession, order_id: str, for_update: bool = False):
        query = select(Order).where(Order.order_id == order_id)
        if for_update:
            query = query.with_for_update()
        result = await db.execute(query)
        return result.scalars().first()

    @staticmethod
    async def list_orders(db: AsyncSession, customer_email: Optional[str] = None):
        query = select(Order).order_by(Order.created_at.desc())
        if customer_email:
            query = query.where(Order.customer_email == customer_email)
        result = await db.execute(query)
        return list(result.scalars().all())

    @staticmethod
    async def save(db: AsyncSession, order: Order):
        await db.commit()
        await db.refresh(order)
        return order
