"""
Common schemas used across the application.
"""

from datetime import datetime, timezone
from typing import Annotated, Optional, Any
from pydantic import AfterValidator, BaseModel


def ensure_utc(value: datetime) -> datetime:
    # Ensure timestamps are timezone-aware
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UTCDatetime = Annotated[datetime, AfterValidator(ensure_utc)]


class StandardSuccessResponse(BaseModel):
    success: bool = True
    message: str
    data: Optional[Any] = None
