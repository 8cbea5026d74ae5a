# attendance_monitor/schemas/realtime.py
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class RealtimeStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class RealtimeEventType(str, Enum):
    PARTICIPANT_JOINED = "participant_joined"
    PARTICIPANT_LEFT = "participant_left"
    PARTICIPANT_UPDATE = "participant_update"
    BULK_PARTICIPANT_UPDATE = "bulk_participant_update"


class RealtimeEvent(BaseModel):
    """
    Normalized inbound event republished by the realtime channel.
    """

    type: RealtimeEventType = Field(..., examples=["participant_joined"])
    data: dict[str, Any] | list[dict[str, Any]] = Field(
        ...,
        description=(
            "Participant payload. A list of `{id, ...patch}` objects for "
            "`bulk_participant_update`, a single object otherwise."
        ),
        examples=[{"id": "participant_1", "name": "Jane Doe"}],
    )
    timestamp: datetime | None = None


class ConnectionState(BaseModel):
    """
    Snapshot of the realtime channel's connection state.
    """

    status: RealtimeStatus = RealtimeStatus.DISCONNECTED
    last_heartbeat: datetime | None = None
    reconnect_attempts: int = 0
    error: str | None = None
    uptime_seconds: float = 0.0

    @property
    def connected(self) -> bool:
        return self.status == RealtimeStatus.CONNECTED
