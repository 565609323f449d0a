"""
Shared utilities and helpers.
"""

import json
import uuid
from typing import Any, Dict
from datetime import date, datetime


def generate_id(prefix: str = "") -> str:
    """Generate a unique record id."""
    return f"{prefix}{uuid.uuid4().hex}"


def now() -> datetime:
    """Current local timestamp used for created/updated fields."""
    return datetime.now()


def calendar_date(value: date) -> date:
    """The calendar day of a date or datetime."""
    if isinstance(value, datetime):
        return value.date()
    return value


def serialize_for_json(obj: Any) -> Any:
    """Serialize objects that aren't JSON-serializable by default."""
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    elif hasattr(obj, 'model_dump'):  # Pydantic model
        return obj.model_dump(mode="json", by_alias=True)
    elif hasattr(obj, '__dict__'):
        return obj.__dict__
    return str(obj)


def dict_to_json_string(data: Dict) -> str:
    """Convert dict to JSON string, handling non-serializable types."""
    return json.dumps(data, default=serialize_for_json, indent=2)
