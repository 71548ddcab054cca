from fastapi import FastAPI
from shared.config.database import AsyncSessionLocal, create_service_schema
from shared.config.settings import broker_settings
from shared.errors import register_exception_handlers
from shared.messaging.relay import EventRelay
from shared.messaging.topology import order_service_queues
from shared.observability import setup_observability
from .consumers import OrderEventHandlers
from .router import internal_router, public_router
from .models import Order # Import to register with Base

order_app = FastAPI(title="Order Service", version="1.0.0")

# --- OBSERVABILITY BOOTSTRAP ---
setup_observability(order_app, "order_service")
register_exception_handlers(order_app)

order_app.include_router(public_router)
order_app.include_router(internal_router)

order_app.state.relay = EventRelay(broker_settings, "order_service", order_service_queues(broker_settings))


async def start_order_service():
    await create_service_schema("order_schema")
    relay = order_app.state.relay
    await relay.start(OrderEventHandlers(AsyncSessionLocal, relay.publisher).table())


async def stop_order_service():
    await order_app.state.relay.stop()


@order_app.on_event("startup")
async def startup_event():
    await start_order_service()

@order_app.on_event("shutdown")
async def shutdown_event():
    await stop_order_service()
