# attendance_monitor/api/routes/notifications.py
from http import HTTPStatus

from fastapi import APIRouter, Depends, HTTPException, Response

from attendance_monitor.api.dependencies.tracker import get_tracker
from attendance_monitor.schemas.notification import NotificationEntry
from attendance_monitor.services.attendance_tracker import AttendanceTracker

router = APIRouter(prefix="/notifications", tags=["Notifications"])


@router.get(
    "",
    response_model=list[NotificationEntry],
    summary="Notifications currently visible to the user",
)
async def list_notifications(tracker: AttendanceTracker = Depends(get_tracker)) -> list[NotificationEntry]:
    return tracker.notifications.active()


@router.delete(
    "/{notification_id}",
    status_code=HTTPStatus.NO_CONTENT,
    summary="Dismiss a notification",
    responses={404: {"description": "Unknown or already dismissed notification."}},
)
async def dismiss_notification(
    notification_id: int,
    tracker: AttendanceTracker = Depends(get_tracker),
) -> Response:
    if not tracker.notifications.dismiss(notification_id):
        raise HTTPException(
            status_code=HTTPStatus.NOT_FOUND,
            detail=f"Notification {notification_id} not found.",
        )
    return Response(status_code=HTTPStatus.NO_CONTENT)
