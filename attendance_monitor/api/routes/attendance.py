# attendance_monitor/api/routes/attendance.py
from http import HTTPStatus
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Path, Query

from attendance_monitor.api.dependencies.tracker import get_recorder
from attendance_monitor.schemas.attendance import (
    AttendanceStoreSummary,
    ParticipantInfoUpdate,
    ParticipantProfile,
    StoredAttendanceRecord,
)
from attendance_monitor.services.attendance_recorder import AttendanceRecorder

router = APIRouter(prefix="/attendance", tags=["Attendance"])


@router.get(
    "/records",
    response_model=list[StoredAttendanceRecord],
    summary="Stored attendance records",
    description=(
        "Records kept in the local store (newest 100 by default). "
        "Optionally filter by participant or meeting."
    ),
)
async def list_records(
    participant_id: str | None = Query(default=None, description="Filter by participantId."),
    meeting_id: str | None = Query(default=None, description="Filter by meetingId."),
    recorder: AttendanceRecorder = Depends(get_recorder),
) -> list[StoredAttendanceRecord]:
    if participant_id is not None:
        records = await recorder.get_participant_attendance(participant_id)
    else:
        records = await recorder.get_attendance_records()
    if meeting_id is not None:
        records = [r for r in records if r.meeting_id == meeting_id]
    return records


@router.get(
    "/profiles",
    response_model=dict[str, ParticipantProfile],
    summary="Per-participant attendance profiles",
)
async def list_profiles(
    recorder: AttendanceRecorder = Depends(get_recorder),
) -> dict[str, ParticipantProfile]:
    return await recorder.get_participant_profiles()


@router.get(
    "/summary",
    response_model=AttendanceStoreSummary,
    summary="Aggregate view over the stored attendance records",
)
async def summary(recorder: AttendanceRecorder = Depends(get_recorder)) -> AttendanceStoreSummary:
    return await recorder.generate_summary()


@router.put(
    "/participants/{participant_id}",
    summary="Edit a participant's name or email in stored data",
    responses={404: {"description": "No stored data for this participant."}},
)
async def update_participant_info(
    payload: ParticipantInfoUpdate,
    participant_id: str = Path(..., description="participantId used in stored records."),
    recorder: AttendanceRecorder = Depends(get_recorder),
) -> dict[str, Any]:
    if not await recorder.update_participant_info(participant_id, payload):
        raise HTTPException(
            status_code=HTTPStatus.NOT_FOUND,
            detail=f"No stored attendance for participant '{participant_id}'.",
        )
    return {"success": True, "participant_id": participant_id}


@router.post(
    "/sync",
    summary="Push all local records to the remote attendance API",
)
async def sync(recorder: AttendanceRecorder = Depends(get_recorder)) -> dict[str, Any]:
    result = await recorder.sync_with_backend()
    return {"synced": result is not None, "response": result}
