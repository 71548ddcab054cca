from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from fastapi import Request, status
from fastapi.responses import JSONResponse
from shared.errors import error_envelope
from .jwt_handler import verify_access_token

def partner_id_or_ip(request: Request) -> str:
    """
    Key function for SlowAPI.
    Extracts the partner email from the Authorization header if available.
    Falls back to the client's IP address if unauthenticated.
    """
    auth_header = request.headers.get("Authorization")

    if auth_header and auth_header.startswith("Bearer "):
        token = auth_header.split(" ")[1]
        payload = verify_access_token(token)
        if payload and "sub" in payload:
            return f"partner:{payload['sub']}"

    return f"ip:{get_remote_address(request)}"

limiter = Limiter(key_func=partner_id_or_ip)

async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content=error_envelope(f"Rate limit exceeded: {exc.detail}", "RateLimited"),
    )
