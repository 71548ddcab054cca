import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, WebSocket, status
from starlette.websockets import WebSocketDisconnect
from shared.messaging.dependencies import get_publisher
from shared.messaging.publisher import Publisher
from shared.schemas import ok
from shared.security.dependencies import get_current_partner, verify_internal_api_key
from shared.security.rate_limiter import limiter
from .dependencies import get_dispatch_service, get_notifier
from .notifier import ConnectionManager
from .schemas import AcceptRequest, AssignRequest, AvailabilityUpdate, DeliveryStatusRequest, LocationUpdate, PartnerResponse
from .service import DispatchService, order_payload

logger = structlog.get_logger(__name__)

public_router = APIRouter()

# Admin and service-to-service operations
internal_router = APIRouter(dependencies=[Depends(verify_internal_api_key)])


def _partner(partner) -> dict:
    return PartnerResponse.model_validate(partner).model_dump(mode="json", by_alias=True)


def _ensure_self(email: str, partner_id: str):
    if email != partner_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Partners can only update themselves")


@public_router.get("/health")
async def health_check():
    return {"service": "delivery", "status": "running"}

@public_router.get("/orders/pending")
async def list_pending_orders(service: DispatchService = Depends(get_dispatch_service)):
    orders = await service.list_pending_orders()
    return ok([order_payload(o) for o in orders])

@public_router.get("/orders/active")
async def get_active_order(
    partner_email: str = Query(..., alias="partnerEmail"),
    service: DispatchService = Depends(get_dispatch_service),
):
    order = await service.get_active_order(partner_email)
    if order is None:
        return ok(None, "No active order")
    return ok(order_payload(order))

@public_router.get("/orders/completed")
async def list_completed_orders(
    partner_email: str = Query(..., alias="partnerEmail"),
    service: DispatchService = Depends(get_dispatch_service),
):
    orders = await service.list_completed_orders(partner_email)
    return ok([order_payload(o) for o in orders])

@public_router.post("/orders/accept")
@limiter.limit("10/minute")
async def accept_order(
    request: Request,
    data: AcceptRequest,
    partner_id: str = Depends(get_current_partner),
    service: DispatchService = Depends(get_dispatch_service),
):
    order = await service.accept_order(data.order_id, partner_id)
    return ok(order_payload(order), "Order accepted")

@internal_router.post("/orders/assign")
async def assign_order(data: AssignRequest, service: DispatchService = Depends(get_dispatch_service)):
    order = await service.accept_order(data.order_id, data.partner_id)
    return ok(order_payload(order), "Order assigned")

@internal_router.put("/orders/{order_id}/status")
async def update_delivery_status(
    order_id: str, data: DeliveryStatusRequest, service: DispatchService = Depends(get_dispatch_service)
):
    order = await service.update_delivery_status(order_id, data.status, data.partner_id)
    return ok(order_payload(order), "Delivery status updated")

@public_router.get("/orders/{order_id}")
async def get_order(order_id: str, service: DispatchService = Depends(get_dispatch_service)):
    return ok(order_payload(await service.get_order(order_id)))

@public_router.get("/partners")
async def list_available_partners(service: DispatchService = Depends(get_dispatch_service)):
    partners = await service.list_available_partners()
    return ok([_partner(p) for p in partners])

@public_router.put("/partners/{email}/availability")
async def update_partner_availability(
    email: str,
    data: AvailabilityUpdate,
    partner_id: str = Depends(get_current_partner),
    service: DispatchService = Depends(get_dispatch_service),
):
    _ensure_self(email, partner_id)
    partner = await service.update_partner_availability(email, data.available)
    return ok(_partner(partner), "Availability updated")

@public_router.put("/partners/{email}/location")
async def update_partner_location(
    email: str,
    data: LocationUpdate,
    partner_id: str = Depends(get_current_partner),
    service: DispatchService = Depends(get_dispatch_service),
):
    _ensure_self(email, partner_id)
    partner = await service.update_partner_location(email, data.lat, data.lng)
    return ok(_partner(partner), "Location updated")

@public_router.websocket("/ws")
async def realtime_channel(
    websocket: WebSocket,
    publisher: Publisher = Depends(get_publisher),
    notifier: ConnectionManager = Depends(get_notifier),
):
    channel_id = await notifier.connect(websocket)
    try:
        while True:
            raw = await websocket.receive_text()
            await notifier.handle_frame(channel_id, raw, lambda db: DispatchService(db, publisher, notifier))
    except WebSocketDisconnect:
        logger.info("realtime_client_disconnected", channel_id=channel_id)
    finally:
        await notifier.disconnect(channel_id)
