from fastapi import FastAPI

from services.order_service.main import order_app, start_order_service, stop_order_service
from services.delivery_service.main import delivery_app, start_delivery_service, stop_delivery_service

app = FastAPI(title="Dispatch Cluster")

# Mounted apps do not receive lifespan events, so the cluster starts them
@app.on_event("startup")
async def startup_event():
    await start_order_service()
    await start_delivery_service()

@app.on_event("shutdown")
async def shutdown_event():
    await stop_delivery_service()
    await stop_order_service()

@app.get("/health")
async def health_check():
    return {"service": "cluster", "status": "running"}

app.mount("/orders", order_app)
app.mount("/delivery", delivery_app)
