# attendance_monitor/api/dependencies/tracker.py
from http import HTTPStatus

from fastapi import HTTPException, Request

from attendance_monitor.services.attendance_recorder import AttendanceRecorder
from attendance_monitor.services.attendance_tracker import AttendanceTracker


def get_tracker(request: Request) -> AttendanceTracker:
    """
    FastAPI dependency returning the tracker created at application startup.
    """
    tracker = getattr(request.app.state, "tracker", None)
    if tracker is None:
        raise HTTPException(
            status_code=HTTPStatus.SERVICE_UNAVAILABLE,
            detail="Attendance tracker is not running.",
        )
    return tracker


def get_recorder(request: Request) -> AttendanceRecorder:
    tracker = get_tracker(request)
    if tracker.recorder is None:
        raise HTTPException(
            status_code=HTTPStatus.SERVICE_UNAVAILABLE,
            detail="Attendance store is not configured.",
        )
    return tracker.recorder
