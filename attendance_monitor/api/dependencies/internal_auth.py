# attendance_monitor/api/dependencies/internal_auth.py
import secrets
from typing import Optional

from fastapi import Header, HTTPException, status

from attendance_monitor.core.config import get_settings

INTERNAL_API_KEY_HEADER = "X-Internal-Api-Key"
OPEN_ENVIRONMENTS = ("local", "test")


async def verify_internal_api_key(
    internal_api_key: Optional[str] = Header(
        default=None,
        alias=INTERNAL_API_KEY_HEADER,
        description="Shared secret of the meeting provider bridge pushing realtime events.",
    ),
) -> None:
    """
    Guard for `POST /realtime/events`.

    A configured INTERNAL_API_KEY is always enforced. Without one, only
    local/test environments stay open; anywhere else the service refuses
    with 500 rather than accept unauthenticated participant events.
    """
    settings = get_settings()
    expected = getattr(settings, "INTERNAL_API_KEY", None)

    if not expected:
        if (settings.APP_ENV or "local").lower() in OPEN_ENVIRONMENTS:
            return
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="INTERNAL_API_KEY not configured for this environment.",
        )

    if internal_api_key is None or not secrets.compare_digest(
        internal_api_key.encode(), expected.encode()
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing internal API key.",
        )
