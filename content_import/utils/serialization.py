from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel


def _make_json_safe(value: Any) -> Any:
    """
    Convert job records, audit details and snapshot payloads into plain
    JSON structures.
    """
    if isinstance(value, BaseModel):
        return _make_json_safe(value.model_dump(mode="json"))
    if isinstance(value, dict):
        return {str(key): _make_json_safe(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_make_json_safe(item) for item in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode(errors="ignore")
    if isinstance(value, (int, float, str, bool)) or value is None:
        return value
    return str(value)
