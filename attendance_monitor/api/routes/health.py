# attendance_monitor/api/routes/health.py
from datetime import datetime, timezone

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from attendance_monitor.core.config import get_settings
from attendance_monitor.schemas.realtime import RealtimeStatus

router = APIRouter(tags=["Health"])


class HealthResponse(BaseModel):
    status: str = Field(..., examples=["ok"])
    app_name: str = Field(..., examples=["Attendance Monitor"])
    environment: str = Field(..., description="local/dev/stage/prod", examples=["local"])
    timestamp_utc: datetime
    tracker_running: bool = Field(
        False,
        description="Whether the attendance tracker was started by the application.",
    )
    realtime_status: RealtimeStatus | None = Field(None, examples=["connected"])
    active_participants: int = Field(0, examples=[12])
    remote_api_configured: bool = False


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Liveness of the Attendance Monitor service",
    description=(
        "Always answers 200 while the process is up; the body reports whether the "
        "tracker is running and the realtime connection state.\n\n"
        "Also serves as the handshake target of `HttpHealthTransport`."
    ),
)
async def health_check(request: Request) -> HealthResponse:
    settings = get_settings()
    tracker = getattr(request.app.state, "tracker", None)

    return HealthResponse(
        status="ok",
        app_name=settings.APP_NAME,
        environment=settings.APP_ENV,
        timestamp_utc=datetime.now(tz=timezone.utc),
        tracker_running=tracker is not None,
        realtime_status=tracker.channel.status if tracker is not None else None,
        active_participants=tracker.ledger.active_count if tracker is not None else 0,
        remote_api_configured=bool(settings.ATTENDANCE_API_BASE_URL),
    )
