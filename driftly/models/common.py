# /driftly/models/common.py

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Annotated, Optional
from bson import ObjectId
from pydantic import BaseModel, BeforeValidator, AfterValidator, ConfigDict
from pydantic.alias_generators import to_camel

# Documents are stored camelCase in MongoDB (flowPath, nextProcessingDate, ...)
# while the Python side works with snake_case attributes.


def _stringify_object_id(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    return value


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Mongo hands back naive datetimes unless the client is tz-aware.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def plain(value: Any) -> Any:
    """Enums to their values, recursively, so documents hold only BSON types."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [plain(v) for v in value]
    return value


ObjectIdStr = Annotated[str, BeforeValidator(_stringify_object_id)]
UtcDatetime = Annotated[datetime, AfterValidator(ensure_utc)]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class MongoModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_document(self) -> dict:
        """Dump with the persisted (camelCase) field names."""
        return plain(self.model_dump(by_alias=True, exclude_none=True))
