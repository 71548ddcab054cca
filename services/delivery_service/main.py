from fastapi import FastAPI
from slowapi.errors import RateLimitExceeded
from shared.config.database import AsyncSessionLocal, create_service_schema
from shared.config.settings import broker_settings
from shared.errors import register_exception_handlers
from shared.messaging.relay import EventRelay
from shared.messaging.topology import delivery_service_queues
from shared.observability import setup_observability
from shared.security.rate_limiter import limiter, rate_limit_exceeded_handler
from .consumers import DeliveryEventHandlers
from .notifier import ConnectionManager
from .router import internal_router, public_router
from .models import DeliveryOrder, DeliveryPartner # Import to register with Base

delivery_app = FastAPI(title="Delivery Service", version="1.0.0")

# --- OBSERVABILITY BOOTSTRAP ---
setup_observability(delivery_app, "delivery_service")
register_exception_handlers(delivery_app)

# --- RATE LIMITING ---
delivery_app.state.limiter = limiter
delivery_app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

delivery_app.include_router(public_router)
delivery_app.include_router(internal_router)

delivery_app.state.notifier = ConnectionManager(AsyncSessionLocal)
delivery_app.state.relay = EventRelay(broker_settings, "delivery_service", delivery_service_queues(broker_settings))


async def start_delivery_service():
    await create_service_schema("delivery_schema")
    relay = delivery_app.state.relay
    handlers = DeliveryEventHandlers(AsyncSessionLocal, relay.publisher, delivery_app.state.notifier)
    await relay.start(handlers.table())


async def stop_delivery_service():
    await delivery_app.state.relay.stop()


@delivery_app.on_event("startup")
async def startup_event():
    await start_delivery_service()

@delivery_app.on_event("shutdown")
async def shutdown_event():
    await stop_delivery_service()
