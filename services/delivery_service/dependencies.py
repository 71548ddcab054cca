from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import HTTPConnection
from shared.config.database import get_db
from shared.messaging.dependencies import get_publisher
from shared.messaging.publisher import Publisher
from .notifier import ConnectionManager
from .service import DispatchService


async def get_notifier(connection: HTTPConnection) -> ConnectionManager:
    return connection.app.state.notifier


def get_dispatch_service(
    db: AsyncSession = Depends(get_db),
    publisher: Publisher = Depends(get_publisher),
    notifier: ConnectionManager = Depends(get_notifier),
) -> DispatchService:
    return DispatchService(db, publisher, notifier)
