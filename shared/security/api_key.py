"""X-Internal-API-Key check for service-to-service and admin routes."""
import secrets

from shared.config.settings import INTERNAL_API_KEY


def verify_api_key(provided_key: str | None, expected_key: str = INTERNAL_API_KEY) -> bool:
    if not provided_key:
        return False
    return secrets.compare_digest(provided_key.encode(), expected_key.encode())
