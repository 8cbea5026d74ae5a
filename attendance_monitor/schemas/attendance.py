# attendance_monitor/schemas/attendance.py
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _StoredModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class StoredAttendanceRecord(_StoredModel):
    """
    A participant's attendance for one meeting as kept in the local store
    and sent to the remote attendance API.
    """

    id: str = Field(..., examples=["participant_1"])
    name: str = Field(..., examples=["Jane Doe"])
    email: str = ""
    participant_id: str = Field("", description="Provider identifier; the upsert key together with meeting_id.")
    join_time: datetime
    leave_time: datetime | None = None
    duration: int = Field(0, description="Minutes attended.")
    attendance_status: str = Field(..., examples=["Completed"])
    attendance_percentage: int = 0
    meeting_id: str | None = None
    meeting_topic: str | None = None
    timestamp: datetime = Field(..., description="When this record was written.")
    updated_at: datetime | None = None


class AttendanceHistoryEntry(_StoredModel):
    meeting_id: str | None = None
    meeting_topic: str | None = None
    date: datetime
    duration: int = 0
    percentage: int = 0
    status: str


class ParticipantProfile(_StoredModel):
    """
    Running per-participant aggregate across meetings.
    """

    name: str
    email: str = ""
    participant_id: str
    total_meetings: int = 0
    total_duration: int = 0
    average_attendance: int = Field(
        0,
        description="Rounded mean of history percentages greater than zero.",
    )
    attendance_history: list[AttendanceHistoryEntry] = Field(default_factory=list)
    last_seen: datetime | None = None
    created_at: datetime


class ParticipantInfoUpdate(_StoredModel):
    """
    Dashboard edit of a participant's identity fields.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    name: str | None = None
    email: str | None = None


class AttendanceStoreSummary(_StoredModel):
    total_participants: int = Field(0, examples=[25])
    total_meetings: int = Field(0, examples=[4])
    total_records: int = Field(0, examples=[80])
    present_count: int = Field(0, examples=[61])
    average_attendance: int = Field(0, examples=[88])
    generated_at: datetime
