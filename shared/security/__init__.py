from .jwt_handler import create_access_token, verify_access_token
from .api_key import verify_api_key
from .dependencies import get_current_partner, verify_internal_api_key
from .rate_limiter import limiter, partner_id_or_ip, rate_limit_exceeded_handler

__all__ = [
    "create_access_token",
    "verify_access_token",
    "verify_api_key",
    "get_current_partner",
    "verify_internal_api_key",
    "limiter",
    "partner_id_or_ip",
    "rate_limit_exceeded_handler"
]
