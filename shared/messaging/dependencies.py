from starlette.requests import HTTPConnection

from .publisher import Publisher


async def get_publisher(connection: HTTPConnection) -> Publisher:
    """The publisher of the relay started with the app (works for HTTP and WebSocket routes)."""
    return connection.app.state.relay.publisher
