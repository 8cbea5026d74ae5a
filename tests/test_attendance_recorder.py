# tests/test_attendance_recorder.py
from datetime import timedelta
from typing import Any, Dict, List

import pytest

from attendance_monitor.schemas.participant import AttendanceStatus, ConnectionStatus, ParticipantRecord
from attendance_monitor.services.attendance_api import AttendanceApiError
from attendance_monitor.services.attendance_recorder import AttendanceRecorder
from attendance_monitor.services.kv_store import InMemoryKeyValueStore


class _FakeApi:
    """
    In-process stand-in for AttendanceApiClient.
    """

    def __init__(self, healthy: bool = True, fail: bool = False) -> None:
        self.healthy = healthy
        self.fail = fail
        self.stored: List[Dict[str, Any]] = []
        self.synced: List[List[Dict[str, Any]]] = []
        self.updates: List[tuple] = []

    async def health(self) -> bool:
        return self.healthy

    async def store_attendance(self, record: Dict[str, Any]) -> Dict[str, Any]:
        if self.fail:
            raise AttendanceApiError("Attendance API POST /attendance/store failed (status=500)")
        self.stored.append(record)
        return {"success": True}

    async def sync_attendance(self, records: List[Dict[str, Any]]) -> Dict[str, Any]:
        if self.fail:
            raise AttendanceApiError("sync failed")
        self.synced.append(records)
        return {"success": True, "synced": len(records)}

    async def update_participant(self, participant_id: str, info: Dict[str, Any]) -> Dict[str, Any]:
        self.updates.append((participant_id, info))
        return {"success": True}


def _left(clock, pid: str, name: str = "Ada", minutes: int = 10, percentage: int = 0, **kwargs) -> ParticipantRecord:
    leave = clock()
    return ParticipantRecord(
        id=pid,
        name=name,
        email=f"{name.lower()}@example.edu",
        join_time=leave - timedelta(minutes=minutes),
        leave_time=leave,
        duration=minutes,
        is_active=False,
        attendance_status=kwargs.pop("status", AttendanceStatus.COMPLETED),
        attendance_percentage=percentage,
        connection_status=ConnectionStatus.DISCONNECTED,
        last_activity=leave,
        **kwargs,
    )


@pytest.fixture
def store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.mark.asyncio
async def test_store_participant_data_writes_record_and_profile(store, clock):
    recorder = AttendanceRecorder(store, clock=clock)

    record = await recorder.store_participant_data(
        _left(clock, "p-1", percentage=80),
        {"meetingId": 555, "topic": "Physics"},
    )

    assert record.participant_id == "p-1"
    assert record.meeting_id == "555"
    assert record.meeting_topic == "Physics"
    assert record.timestamp == clock.now

    raw = await store.get(AttendanceRecorder.RECORDS_KEY)
    assert raw[0]["participantId"] == "p-1"
    assert raw[0]["attendanceStatus"] == "Completed"

    profiles = await recorder.get_participant_profiles()
    profile = profiles["p-1"]
    assert profile.total_meetings == 1
    assert profile.total_duration == 10
    assert profile.average_attendance == 80
    assert profile.attendance_history[0].meeting_id == "555"


@pytest.mark.asyncio
async def test_same_participant_and_meeting_is_upserted(store, clock):
    recorder = AttendanceRecorder(store, clock=clock)
    meeting = {"id": "m-1", "meetingTopic": "Biology"}

    await recorder.store_participant_data(_left(clock, "p-1", minutes=3), meeting)
    clock.advance(minutes=20)
    await recorder.store_participant_data(_left(clock, "p-1", minutes=23), meeting)

    records = await recorder.get_attendance_records()
    assert len(records) == 1
    assert records[0].duration == 23
    assert records[0].meeting_topic == "Biology"

    profile = (await recorder.get_participant_profiles())["p-1"]
    assert profile.total_meetings == 2
    assert profile.total_duration == 26


@pytest.mark.asyncio
async def test_oldest_records_are_evicted_beyond_cap(store, clock):
    recorder = AttendanceRecorder(store, clock=clock, max_records=3)

    for i in range(5):
        await recorder.store_participant_data(_left(clock, f"p-{i}"), {"meetingId": "m-1"})
        clock.advance(seconds=1)

    records = await recorder.get_attendance_records()
    assert [r.participant_id for r in records] == ["p-2", "p-3", "p-4"]


@pytest.mark.asyncio
async def test_profile_history_is_capped_and_average_ignores_zero(store, clock):
    recorder = AttendanceRecorder(store, clock=clock, history_limit=2)

    await recorder.store_participant_data(_left(clock, "p-1", percentage=90), {"meetingId": "m-1"})
    await recorder.store_participant_data(_left(clock, "p-1", percentage=0), {"meetingId": "m-2"})
    await recorder.store_participant_data(_left(clock, "p-1", percentage=61), {"meetingId": "m-3"})

    profile = (await recorder.get_participant_profiles())["p-1"]
    assert profile.total_meetings == 3
    assert [h.meeting_id for h in profile.attendance_history] == ["m-2", "m-3"]
    # (90 + 61) / 2 = 75.5 rounds up
    assert profile.average_attendance == 76


@pytest.mark.asyncio
async def test_participant_id_prefers_provider_identifier(store, clock):
    recorder = AttendanceRecorder(store, clock=clock)

    record = await recorder.store_participant_data(_left(clock, "participant_1", participant_id="16778240"))

    assert record.id == "participant_1"
    assert record.participant_id == "16778240"
    assert record.meeting_id is None


@pytest.mark.asyncio
async def test_healthy_backend_receives_record(store, clock):
    api = _FakeApi()
    recorder = AttendanceRecorder(store, api=api, clock=clock)

    await recorder.store_participant_data(_left(clock, "p-1"), {"meetingId": "m-1"})

    assert len(api.stored) == 1
    assert api.stored[0]["participantId"] == "p-1"
    assert api.stored[0]["meetingId"] == "m-1"


@pytest.mark.asyncio
async def test_backend_failures_keep_local_copy(store, clock, caplog):
    unhealthy = AttendanceRecorder(store, api=_FakeApi(healthy=False), clock=clock)
    failing = AttendanceRecorder(store, api=_FakeApi(fail=True), clock=clock)

    await unhealthy.store_participant_data(_left(clock, "p-1"), {"meetingId": "m-1"})
    await failing.store_participant_data(_left(clock, "p-2"), {"meetingId": "m-1"})

    records = await failing.get_attendance_records()
    assert {r.participant_id for r in records} == {"p-1", "p-2"}
    assert "Backend storage failed" in caplog.text


@pytest.mark.asyncio
async def test_update_participant_info_touches_records_and_profile(store, clock):
    api = _FakeApi()
    recorder = AttendanceRecorder(store, api=api, clock=clock)
    await recorder.store_participant_data(_left(clock, "p-1"), {"meetingId": "m-1"})
    await recorder.store_participant_data(_left(clock, "p-1"), {"meetingId": "m-2"})
    clock.advance(minutes=1)

    assert await recorder.update_participant_info("p-1", {"name": "Ada Lovelace"}) is True

    records = await recorder.get_participant_attendance("p-1")
    assert {r.name for r in records} == {"Ada Lovelace"}
    assert all(r.updated_at == clock.now for r in records)
    assert (await recorder.get_participant_profiles())["p-1"].name == "Ada Lovelace"
    assert api.updates == [("p-1", {"name": "Ada Lovelace"})]


@pytest.mark.asyncio
async def test_update_participant_info_unknown_or_empty(store, clock):
    recorder = AttendanceRecorder(store, clock=clock)

    assert await recorder.update_participant_info("ghost", {"name": "Casper"}) is False
    assert await recorder.update_participant_info("ghost", {}) is False


@pytest.mark.asyncio
async def test_sync_with_backend(store, clock):
    recorder = AttendanceRecorder(store, clock=clock)
    assert await recorder.sync_with_backend() is None

    api = _FakeApi()
    recorder = AttendanceRecorder(store, api=api, clock=clock)
    await recorder.store_participant_data(_left(clock, "p-1"), {"meetingId": "m-1"})

    assert await recorder.sync_with_backend() == {"success": True, "synced": 1}
    assert api.synced[0][0]["participantId"] == "p-1"

    api.fail = True
    assert await recorder.sync_with_backend() is None


@pytest.mark.asyncio
async def test_queries_and_summary(store, clock):
    recorder = AttendanceRecorder(store, clock=clock)
    await recorder.store_participant_data(
        _left(clock, "p-1", percentage=100, status=AttendanceStatus.PRESENT), {"meetingId": "m-1"}
    )
    await recorder.store_participant_data(
        _left(clock, "p-2", name="Bob", percentage=45, status=AttendanceStatus.LATE), {"meetingId": "m-1"}
    )
    await recorder.store_participant_data(
        _left(clock, "p-1", percentage=90, status=AttendanceStatus.PRESENT), {"meetingId": "m-2"}
    )

    assert len(await recorder.get_participant_attendance("p-1")) == 2
    assert {r.participant_id for r in await recorder.get_meeting_attendance("m-1")} == {"p-1", "p-2"}

    summary = await recorder.generate_summary()
    assert summary.total_participants == 2
    assert summary.total_meetings == 2
    assert summary.total_records == 3
    assert summary.present_count == 2
    # (100 + 45 + 90) / 3 = 78.33
    assert summary.average_attendance == 78
    assert summary.generated_at == clock.now


@pytest.mark.asyncio
async def test_malformed_stored_entries_are_skipped(store, clock):
    recorder = AttendanceRecorder(store, clock=clock)
    await store.set(AttendanceRecorder.RECORDS_KEY, [{"participantId": "broken"}, "junk"])
    await store.set(AttendanceRecorder.PROFILES_KEY, "junk")

    assert await recorder.get_attendance_records() == []
    assert await recorder.get_participant_profiles() == {}

    summary = await recorder.generate_summary()
    assert summary.total_records == 0
    assert summary.average_attendance == 0


@pytest.mark.asyncio
async def test_clear_all_data(store, clock):
    recorder = AttendanceRecorder(store, clock=clock)
    await recorder.store_participant_data(_left(clock, "p-1"))

    await recorder.clear_all_data()

    assert await recorder.get_attendance_records() == []
    assert await recorder.get_participant_profiles() == {}
