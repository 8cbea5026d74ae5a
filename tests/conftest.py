# tests/conftest.py
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from attendance_monitor.main import create_app
from attendance_monitor.services.kv_store import InMemoryKeyValueStore


class FakeClock:
    """
    Manually advanced stand-in for `utc_now`.
    """

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 10, 10, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def client():
    """
    TestClient over a fresh application per test.

    Uses an in-memory store so tests never touch the SQL database, and the
    default no-op realtime transport (no ATTENDANCE_API_BASE_URL).
    """
    app = create_app(store=InMemoryKeyValueStore())
    with TestClient(app) as test_client:
        yield test_client
