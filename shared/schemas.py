from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """snake_case in Python, camelCase on the wire (REST bodies, broker payloads)."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


def ok(data: Any = None, message: str = "OK") -> dict:
    """Every REST response: {success, message, data}."""
    return {"success": True, "message": message, "data": data}
