# attendance_monitor/schemas/notification.py
from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, Field


class Severity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class NotificationEntry(BaseModel):
    """
    A user-facing notification accepted by the notification queue.
    """

    id: int = Field(..., examples=[1])
    message: str = Field(..., examples=["Jane Doe joined the meeting"])
    severity: Severity = Field(Severity.INFO, examples=["info"])
    category: str = Field("general", examples=["participants"])
    created_at: datetime
    auto_hide: bool = True
    duration_ms: int = Field(4000, ge=0)

    @property
    def expires_at(self) -> datetime | None:
        if not self.auto_hide:
            return None
        return self.created_at + timedelta(milliseconds=self.duration_ms)
