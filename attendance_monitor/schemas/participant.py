# attendance_monitor/schemas/participant.py
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class AttendanceStatus(str, Enum):
    """
    Derived attendance classification of a participant record.
    """

    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"
    LEFT_EARLY = "Left Early"
    PRESENT = "Present"
    ABSENT = "Absent"
    PARTIAL = "Partial"
    LATE = "Late"


class ConnectionStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class MeetingStatus(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    ENDED = "ended"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ParticipantRecord(_CamelModel):
    """
    One participant's attendance lifecycle entry within a meeting.

    `attendance_status`, `attendance_percentage` and `duration` are derived
    by the ledger and must not be set by callers.
    """

    id: str = Field(..., description="Stable identifier within the meeting.", examples=["participant_1"])
    name: str = Field("Unknown Participant", examples=["Jane Doe"])
    email: str = Field("", examples=["jane@example.edu"])
    participant_id: str = Field("", description="Identifier assigned by the meeting provider.")
    user_id: str | None = None
    is_host: bool = False
    role: str = "participant"
    device: str | None = None
    audio_status: bool = False
    video_status: bool = False
    hand_raised: bool = False

    join_time: datetime
    leave_time: datetime | None = None
    duration: int = Field(0, ge=0, description="Minutes between join and leave (or now while active).")
    is_active: bool = True
    attendance_status: AttendanceStatus = AttendanceStatus.IN_PROGRESS
    attendance_percentage: int = Field(0, ge=0, le=100)
    connection_status: ConnectionStatus = ConnectionStatus.CONNECTED
    last_activity: datetime
    leave_reason: str | None = None


class ParticipantInfo(_CamelModel):
    """
    Payload accepted by `ParticipantLedger.add_or_update_participant`.

    At least one of `id`, `participant_id` or `name` must be present.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    id: str | None = None
    name: str | None = None
    email: str | None = None
    participant_id: str | None = None
    user_id: str | None = None
    is_host: bool | None = None
    role: str | None = None
    device: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _coerce_ids(cls, data: Any) -> Any:
        # Provider payloads carry numeric ids
        if isinstance(data, dict):
            data = dict(data)
            for key in ("id", "participantId", "participant_id", "userId", "user_id"):
                if isinstance(data.get(key), int) and not isinstance(data.get(key), bool):
                    data[key] = str(data[key])
        return data

    @model_validator(mode="after")
    def _require_identity(self) -> "ParticipantInfo":
        if not (self.id or self.participant_id or self.name):
            raise ValueError("participant payload requires an id, participantId or name")
        return self


class ParticipantPatch(_CamelModel):
    """
    Explicit set of fields a caller may change on an existing record.

    Lifecycle fields (join/leave time, activity, derived status) are not
    patchable; unknown keys are rejected.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    name: str | None = None
    email: str | None = None
    participant_id: str | None = None
    user_id: str | None = None
    is_host: bool | None = None
    role: str | None = None
    device: str | None = None
    audio_status: bool | None = None
    video_status: bool | None = None
    hand_raised: bool | None = None
    leave_reason: str | None = None

    def changes(self) -> dict[str, Any]:
        """
        Fields explicitly provided by the caller, by attribute name.

        Explicit nulls are dropped; a patch never blanks a field.
        """
        return self.model_dump(exclude_unset=True, exclude_none=True)


class MeetingStats(_CamelModel):
    total: int = Field(0, examples=[12])
    active: int = Field(0, examples=[9])
    completed: int = Field(0, examples=[2])
    left_early: int = Field(0, examples=[1])
    in_progress: int = Field(0, examples=[9])
    present_percentage: int = Field(0, description="round(active / total * 100)", examples=[75])
    completion_rate: int = Field(0, description="round(completed / total * 100)", examples=[17])
    average_duration: int = Field(0, description="Mean duration in minutes (rounded).", examples=[24])


class MeetingSnapshot(_CamelModel):
    """
    Read-only view of the current meeting for API consumers.
    """

    status: MeetingStatus
    meeting: dict[str, Any] | None = None
    total_meeting_duration: int | None = None
    participants: list[ParticipantRecord] = Field(default_factory=list)
    stats: MeetingStats
