"""
Base model shared by every persisted record.
Serializes with the camelCase keys of the stored snapshot.
"""

from datetime import date, datetime
from typing import Annotated, Any
from pydantic import BaseModel, BeforeValidator, ConfigDict
from pydantic.alias_generators import to_camel


def _as_text(value: Any) -> Any:
    # Snapshot loading turns ISO-looking strings into dates; free text gets
    # back the exact string it was read from
    if isinstance(value, (datetime, date)):
        return getattr(value, "source", "") or value.isoformat()
    return value


Text = Annotated[str, BeforeValidator(_as_text)]


class ErpModel(BaseModel):
    """Base for all snapshot records."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_snapshot(self) -> dict:
        """Dump to the JSON-ready camelCase shape."""
        return self.model_dump(mode="json", by_alias=True)
