"""
JSON serialization for values stored in the DLQ and the cache.

DLQ payloads and cached query results routinely contain UUIDs, timestamps,
decimals (message costs) and pydantic models, none of which the standard
encoder accepts.

Example:
    >>> from tenantcore.serialization import json_dumps, json_loads
    >>> from uuid import uuid4
    >>> payload = json_dumps({"message_id": uuid4()})
    >>> json_loads(payload)["message_id"]  # doctest: +ELLIPSIS
    '...'
"""

import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel


class TenantCoreJSONEncoder(json.JSONEncoder):
    """
    JSON encoder for the types tenantcore persists.

    - UUID: string form
    - datetime/date: ISO 8601
    - Decimal: string, so no precision is lost
    - Enum: its value
    - pydantic models: ``model_dump(mode="json")``
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, UUID):
            return str(obj)
        if isinstance(obj, datetime | date):
            return obj.isoformat()
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        return super().default(obj)


def json_dumps(obj: Any) -> str:
    """
    Serialize object to a JSON string using TenantCoreJSONEncoder.

    Args:
        obj: Object to serialize

    Returns:
        JSON string representation
    """
    return json.dumps(obj, cls=TenantCoreJSONEncoder)


def json_loads(s: str | bytes) -> Any:
    """
    Deserialize a JSON string.

    UUID and datetime strings are NOT converted back to their original
    types; callers own that.
    """
    return json.loads(s)


__all__ = [
    "TenantCoreJSONEncoder",
    "json_dumps",
    "json_loads",
]
