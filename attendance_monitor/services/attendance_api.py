# attendance_monitor/services/attendance_api.py
from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx

from attendance_monitor.core.config import Settings


class AttendanceApiError(RuntimeError):
    """
    Raised when the remote attendance API is unreachable or answers with a
    non-2xx / unsuccessful response.
    """


class AttendanceApiClient:
    """
    Minimal client for the optional remote attendance backend.

    Endpoints
    ---------
    - GET  /health
    - POST /attendance/store
    - POST /attendance/sync
    - PUT  /participants/{id}

    Notes
    -----
    - Every call opens a short-lived httpx.AsyncClient.
    - Callers treat the backend as best-effort; this class only reports
      failures through AttendanceApiError.
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 10.0,
        health_timeout_seconds: float = 3.0,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._health_timeout_seconds = health_timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional["AttendanceApiClient"]:
        """
        Build a client from settings, or None when no backend is configured.
        """
        if not settings.ATTENDANCE_API_BASE_URL:
            return None
        return cls(
            base_url=settings.ATTENDANCE_API_BASE_URL,
            timeout_seconds=settings.ATTENDANCE_API_TIMEOUT_SECONDS,
            health_timeout_seconds=settings.ATTENDANCE_API_HEALTH_TIMEOUT_SECONDS,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    def _url(self, path: str) -> str:
        return f"{self._base_url}/{path.lstrip('/')}"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        """
        Issue a request and translate transport failures into AttendanceApiError.
        """
        try:
            async with httpx.AsyncClient(timeout=timeout or self._timeout_seconds) as client:
                return await client.request(
                    method=method.upper(),
                    url=self._url(path),
                    headers={"Content-Type": "application/json", "Accept": "application/json"},
                    json=json,
                )
        except httpx.HTTPError as exc:
            raise AttendanceApiError(f"Attendance API {method.upper()} {path} failed: {exc}") from exc

    async def _send_json(self, method: str, path: str, payload: Any) -> Dict[str, Any]:
        resp = await self._request(method, path, json=payload)
        if resp.status_code // 100 != 2:
            raise AttendanceApiError(
                f"Attendance API {method.upper()} {path} failed (status={resp.status_code}): {resp.text}"
            )
        try:
            body = resp.json()
        except ValueError as exc:
            raise AttendanceApiError(f"Attendance API {path} returned invalid JSON") from exc

        if isinstance(body, dict) and body.get("success") is False:
            raise AttendanceApiError(f"Attendance API {path} reported failure: {body}")
        return body if isinstance(body, dict) else {"data": body}

    async def health(self) -> bool:
        """
        True when GET /health answers 2xx within the health timeout.
        """
        try:
            resp = await self._request("GET", "/health", timeout=self._health_timeout_seconds)
        except AttendanceApiError:
            return False
        return resp.status_code // 100 == 2

    async def store_attendance(self, record: Dict[str, Any]) -> Dict[str, Any]:
        return await self._send_json("POST", "/attendance/store", record)

    async def sync_attendance(self, records: List[Dict[str, Any]]) -> Dict[str, Any]:
        return await self._send_json("POST", "/attendance/sync", {"records": records})

    async def update_participant(self, participant_id: str, info: Dict[str, Any]) -> Dict[str, Any]:
        return await self._send_json("PUT", f"/participants/{participant_id}", info)
