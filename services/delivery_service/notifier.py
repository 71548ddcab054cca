"""
Real-time channel registry for partners and customers.

Every WebSocket gets a channel id. Partners are mapped to their channel (and
the channel id is stored on the partner row so availability follows the
connection); customers and assigned partners join per-order rooms, and status
updates only go to the room of the order they concern.

Delivery is best effort: a failed send drops the channel, clients reconcile
through GET /orders/active.
"""
import json
from collections import defaultdict
from typing import Callable, Optional
from uuid import uuid4

import structlog
from fastapi import WebSocket
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.websockets import WebSocketDisconnect

from shared.errors import DomainError, NotFoundError
from shared.lifecycle import OrderStatus
from shared.messaging.events import utcnow
from shared.observability.metrics import realtime_connections
from shared.security.jwt_handler import verify_access_token
from .repository import DeliveryPartnerRepository
from .service import order_payload
from .schemas import AcceptOrder, ClientFrame, CustomerConnected, JoinOrder, PartnerConnected, UpdateOrderStatus

logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], AsyncSession]


def status_event_name(order_id: str) -> str:
    return f"order:{order_id}:status_update"


class ConnectionManager:
    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory
        self.channels: dict[str, WebSocket] = {}
        self.partner_channels: dict[str, str] = {}   # partner_id -> channel_id
        self.channel_partners: dict[str, str] = {}   # channel_id -> partner_id
        self.channel_customers: dict[str, str] = {}  # channel_id -> customer email
        self.rooms: dict[str, set[str]] = defaultdict(set)  # order_id -> channel ids

    # --- registry ---

    async def connect(self, websocket: WebSocket) -> str:
        await websocket.accept()
        channel_id = uuid4().hex
        self.channels[channel_id] = websocket
        realtime_connections.inc()
        logger.info("realtime_channel_opened", channel_id=channel_id)
        return channel_id

    async def register_partner_connection(self, partner_id: str, channel_id: str):
        async with self.session_factory() as db:
            if not await DeliveryPartnerRepository.update_partner(db, partner_id, current_socket_id=channel_id):
                await db.rollback()
                raise NotFoundError(f"Delivery partner {partner_id} not found")
            # Only an idle partner becomes available
            await DeliveryPartnerRepository.set_available(db, partner_id, True)
            await db.commit()
            partner = await DeliveryPartnerRepository.get_partner(db, partner_id)

        previous = self.partner_channels.get(partner_id)
        if previous and previous != channel_id:
            self.channel_partners.pop(previous, None)
        self.partner_channels[partner_id] = channel_id
        self.channel_partners[channel_id] = partner_id

        if partner.active_order_id:
            self.join_order_room(partner.active_order_id, channel_id)
        logger.info(
            "partner_connected",
            partner_id=partner_id,
            channel_id=channel_id,
            available=partner.available,
            active_order_id=partner.active_order_id,
        )
        return partner

    def register_customer_connection(self, customer_email: str, channel_id: str):
        self.channel_customers[channel_id] = customer_email
        logger.info("customer_connected", customer_email=customer_email, channel_id=channel_id)

    def join_order_room(self, order_id: str, channel_id: str):
        if channel_id in self.channels:
            self.rooms[order_id].add(channel_id)

    def join_partner_to_order(self, partner_id: str, order_id: str):
        channel_id = self.partner_channels.get(partner_id)
        if channel_id:
            self.join_order_room(order_id, channel_id)

    async def disconnect(self, channel_id: str):
        if self.channels.pop(channel_id, None) is None:
            return
        realtime_connections.dec()

        for order_id in list(self.rooms):
            self.rooms[order_id].discard(channel_id)
            if not self.rooms[order_id]:
                del self.rooms[order_id]
        self.channel_customers.pop(channel_id, None)

        partner_id = self.channel_partners.pop(channel_id, None)
        if partner_id:
            if self.partner_channels.get(partner_id) == channel_id:
                del self.partner_channels[partner_id]
            # The in-flight assignment is kept; only the channel goes away
            async with self.session_factory() as db:
                await DeliveryPartnerRepository.clear_socket(db, partner_id, channel_id)
                await db.commit()
        logger.info("realtime_channel_closed", channel_id=channel_id, partner_id=partner_id)

    # --- outbound ---

    async def send(self, channel_id: str, event: str, data: dict):
        websocket = self.channels.get(channel_id)
        if websocket is None:
            return
        try:
            await websocket.send_json({"event": event, "data": data})
        except (WebSocketDisconnect, RuntimeError, ConnectionError) as exc:
            logger.warning("realtime_send_failed", channel_id=channel_id, event=event, error=str(exc))
            await self.disconnect(channel_id)

    async def _send_many(self, channel_ids, event: str, data: dict):
        for channel_id in list(channel_ids):
            await self.send(channel_id, event, data)

    async def broadcast_new_order(self, order: dict):
        async with self.session_factory() as db:
            partners = await DeliveryPartnerRepository.list_available_partners(db, connected_only=True)
        targets = [self.partner_channels[p.email] for p in partners if p.email in self.partner_channels]
        await self._send_many(targets, "new_order", order)
        logger.info("new_order_broadcast", order_id=order.get("orderId"), recipients=len(targets))

    async def broadcast_order_taken(self, order_id: str, accepting_partner_id: str):
        targets = [
            channel_id
            for partner_id, channel_id in self.partner_channels.items()
            if partner_id != accepting_partner_id
        ]
        await self._send_many(targets, "order_taken", {"orderId": order_id})

    async def broadcast_status_update(
        self, order_id: str, status: OrderStatus, partner_id: Optional[str] = None
    ):
        payload = {
            "orderId": order_id,
            "status": OrderStatus(status).value,
            "assignedPartnerId": partner_id,
            "timestamp": utcnow().isoformat(),
        }
        members = list(self.rooms.get(order_id, ()))
        await self._send_many(members, status_event_name(order_id), payload)
        await self._send_many(members, "order_status_updated", payload)

    # --- inbound ---

    async def handle_frame(self, channel_id: str, raw: str, service_factory: Callable[[AsyncSession], object]):
        """Dispatches one client frame; failures are answered with an error frame."""
        try:
            frame = ClientFrame.model_validate(json.loads(raw))
        except (json.JSONDecodeError, PydanticValidationError):
            await self.send(channel_id, "error", {"message": "Malformed frame", "error": "ValidationError"})
            return

        handler = {
            "delivery_partner_connected": self._on_partner_connected,
            "customer_connected": self._on_customer_connected,
            "join_order": self._on_join_order,
            "accept_order": self._on_accept_order,
            "update_order_status": self._on_update_order_status,
        }.get(frame.event)
        if handler is None:
            await self.send(
                channel_id, "error", {"message": f"Unknown event {frame.event}", "error": "UnknownEvent"}
            )
            return

        try:
            await handler(channel_id, frame.data, service_factory)
        except PydanticValidationError as exc:
            await self.send(
                channel_id,
                "error",
                {"event": frame.event, "message": f"Invalid {frame.event} payload", "error": "ValidationError",
                 "details": exc.errors(include_url=False, include_context=False, include_input=False)},
            )
        except DomainError as exc:
            await self.send(channel_id, "error", {"event": frame.event, "message": exc.message, "error": exc.error})

    async def _on_partner_connected(self, channel_id: str, data: dict, service_factory):
        message = PartnerConnected.model_validate(data)
        partner_id = self._authenticated_partner(message)
        partner = await self.register_partner_connection(partner_id, channel_id)
        await self.send(
            channel_id,
            "connected",
            {"role": "partner", "channelId": channel_id, "activeOrderId": partner.active_order_id},
        )

    @staticmethod
    def _authenticated_partner(message: PartnerConnected) -> str:
        payload = verify_access_token(message.token) if message.token else None
        partner_id = payload.get("sub") if payload else None
        if not partner_id or (message.email and message.email != partner_id):
            logger.warning("partner_authentication_failed", claimed=message.email)
            raise DomainError("Invalid or missing partner token", error="Unauthorized")
        return partner_id

    async def _on_customer_connected(self, channel_id: str, data: dict, service_factory):
        message = CustomerConnected.model_validate(data)
        self.register_customer_connection(message.email, channel_id)
        if message.order_id:
            self.join_order_room(message.order_id, channel_id)
        await self.send(channel_id, "connected", {"role": "customer", "channelId": channel_id})

    async def _on_join_order(self, channel_id: str, data: dict, service_factory):
        message = JoinOrder.model_validate(data)
        self.join_order_room(message.order_id, channel_id)
        await self.send(channel_id, "joined_order", {"orderId": message.order_id})

    def _registered_partner(self, channel_id: str, claimed: Optional[str] = None) -> str:
        partner_id = self.channel_partners.get(channel_id)
        if partner_id is None or (claimed and claimed != partner_id):
            raise DomainError("Channel is not registered for this delivery partner", error="NotRegistered")
        return partner_id

    async def _on_accept_order(self, channel_id: str, data: dict, service_factory):
        message = AcceptOrder.model_validate(data)
        partner_id = self._registered_partner(channel_id, message.partner_id)
        async with self.session_factory() as db:
            order = await service_factory(db).accept_order(message.order_id, partner_id)
            payload = order_payload(order)
        await self.send(channel_id, "accept_order_result", {"success": True, "order": payload})

    async def _on_update_order_status(self, channel_id: str, data: dict, service_factory):
        message = UpdateOrderStatus.model_validate(data)
        partner_id = self._registered_partner(channel_id)
        async with self.session_factory() as db:
            order = await service_factory(db).update_delivery_status(message.order_id, message.status, partner_id)
            payload = order_payload(order)
        await self.send(channel_id, "update_order_status_result", {"success": True, "order": payload})
