from typing import Optional
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from shared.config.database import get_db
from shared.messaging.dependencies import get_publisher
from shared.messaging.publisher import Publisher
from shared.schemas import ok
from shared.security.dependencies import verify_internal_api_key
from .schemas import OrderCreate, OrderListResponse, OrderResponse, OrderStatusUpdate, PaymentStatusUpdate
from .service import OrderService

public_router = APIRouter()

# Status and payment changes come from other services or admins only
internal_router = APIRouter(dependencies=[Depends(verify_internal_api_key)])


def get_order_service(
    db: AsyncSession = Depends(get_db),
    publisher: Publisher = Depends(get_publisher),
) -> OrderService:
    return OrderService(db, publisher)


def _dump(order) -> dict:
    return OrderResponse.model_validate(order).model_dump(mode="json", by_alias=True)


@public_router.get("/health")
async def health_check():
    return {"service": "order", "status": "running"}

@public_router.post("/", status_code=status.HTTP_201_CREATED)
async def create_order(data: OrderCreate, service: OrderService = Depends(get_order_service)):
    order = await service.create_order(data)
    return ok(_dump(order), "Order created")

@public_router.get("/")
async def list_orders(
    customer_email: Optional[str] = Query(None, alias="customerEmail"),
    service: OrderService = Depends(get_order_service),
):
    orders = await service.list_orders(customer_email)
    payload = OrderListResponse(orders=[OrderResponse.model_validate(o) for o in orders], count=len(orders))
    return ok(payload.model_dump(mode="json", by_alias=True))

@public_router.get("/{order_id}")
async def get_order(order_id: str, service: OrderService = Depends(get_order_service)):
    return ok(_dump(await service.get_order(order_id)))

@internal_router.put("/{order_id}/status")
async def update_order_status(
    order_id: str, data: OrderStatusUpdate, service: OrderService = Depends(get_order_service)
):
    order = await service.update_status(order_id, data.status, data.partner_id)
    return ok(_dump(order), "Order status updated")

@internal_router.put("/{order_id}/payment")
async def update_payment_status(
    order_id: str, data: PaymentStatusUpdate, service: OrderService = Depends(get_order_service)
):
    order = await service.update_payment_status(order_id, data.status)
    return ok(_dump(order), "Payment status updated")
