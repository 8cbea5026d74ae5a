# attendance_monitor/api/routes/meetings.py
from http import HTTPStatus
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Path
from pydantic import BaseModel, Field

from attendance_monitor.api.dependencies.tracker import get_tracker
from attendance_monitor.schemas.participant import (
    MeetingSnapshot,
    MeetingStats,
    ParticipantInfo,
    ParticipantPatch,
    ParticipantRecord,
)
from attendance_monitor.services.attendance_tracker import AttendanceTracker
from attendance_monitor.services.participant_ledger import SessionStateError

router = APIRouter(prefix="/meeting", tags=["Meeting"])


class MeetingStartRequest(BaseModel):
    meeting: dict[str, Any] | None = Field(
        None,
        description="Free-form meeting data (id, topic, host...).",
        examples=[{"meetingId": "84512345678", "topic": "Physics 101"}],
    )
    total_meeting_duration: int | None = Field(
        None,
        ge=0,
        description=(
            "Planned meeting length in minutes. When given, departed participants "
            "are classified by attendance percentage instead of the left-early rule."
        ),
        examples=[60],
    )


@router.get(
    "",
    response_model=MeetingSnapshot,
    summary="Current meeting with participants and statistics",
)
async def get_meeting(tracker: AttendanceTracker = Depends(get_tracker)) -> MeetingSnapshot:
    return tracker.ledger.snapshot()


@router.get(
    "/stats",
    response_model=MeetingStats,
    summary="Attendance statistics for the current meeting",
)
async def get_meeting_stats(tracker: AttendanceTracker = Depends(get_tracker)) -> MeetingStats:
    return tracker.ledger.compute_stats()


@router.post(
    "/start",
    response_model=MeetingSnapshot,
    summary="Start tracking a meeting",
    responses={409: {"description": "The previous meeting ended and has not been cleared."}},
)
async def start_meeting(
    payload: MeetingStartRequest,
    tracker: AttendanceTracker = Depends(get_tracker),
) -> MeetingSnapshot:
    try:
        tracker.ledger.start_session(payload.meeting, payload.total_meeting_duration)
    except SessionStateError as exc:
        raise HTTPException(status_code=HTTPStatus.CONFLICT, detail=str(exc)) from exc
    return tracker.ledger.snapshot()


@router.post(
    "/end",
    response_model=MeetingSnapshot,
    summary="End the meeting, freezing every active participant",
    responses={409: {"description": "The meeting already ended."}},
)
async def end_meeting(tracker: AttendanceTracker = Depends(get_tracker)) -> MeetingSnapshot:
    if not tracker.ledger.end_session():
        raise HTTPException(status_code=HTTPStatus.CONFLICT, detail="Meeting already ended.")
    return tracker.ledger.snapshot()


@router.post(
    "/clear",
    response_model=MeetingSnapshot,
    summary="Discard all meeting data and return to idle",
)
async def clear_meeting(tracker: AttendanceTracker = Depends(get_tracker)) -> MeetingSnapshot:
    tracker.clear_session()
    return tracker.ledger.snapshot()


@router.post(
    "/participants",
    response_model=ParticipantRecord,
    status_code=HTTPStatus.OK,
    summary="Register a participant join (idempotent per id)",
    responses={409: {"description": "The meeting has ended and has not been cleared."}},
)
async def add_participant(
    payload: ParticipantInfo,
    tracker: AttendanceTracker = Depends(get_tracker),
) -> ParticipantRecord:
    try:
        return tracker.ledger.add_or_update_participant(payload)
    except SessionStateError as exc:
        raise HTTPException(status_code=HTTPStatus.CONFLICT, detail=str(exc)) from exc


@router.patch(
    "/participants/{participant_id}",
    response_model=ParticipantRecord,
    summary="Update a participant's descriptive fields",
    responses={404: {"description": "Unknown participant."}},
)
async def update_participant(
    payload: ParticipantPatch,
    participant_id: str = Path(..., description="Participant identifier within the meeting."),
    tracker: AttendanceTracker = Depends(get_tracker),
) -> ParticipantRecord:
    record = tracker.ledger.update_participant(participant_id, payload)
    if record is None:
        raise HTTPException(
            status_code=HTTPStatus.NOT_FOUND,
            detail=f"Participant '{participant_id}' not found.",
        )
    return record


@router.delete(
    "/participants/{participant_id}",
    response_model=ParticipantRecord,
    summary="Register a participant leave",
    description="Leaving twice is harmless: the second call returns the frozen record unchanged.",
    responses={404: {"description": "Unknown participant."}},
)
async def remove_participant(
    participant_id: str = Path(..., description="Participant identifier within the meeting."),
    tracker: AttendanceTracker = Depends(get_tracker),
) -> ParticipantRecord:
    record = tracker.ledger.remove_participant(participant_id) or tracker.ledger.get_participant(participant_id)
    if record is None:
        raise HTTPException(
            status_code=HTTPStatus.NOT_FOUND,
            detail=f"Participant '{participant_id}' not found.",
        )
    return record
