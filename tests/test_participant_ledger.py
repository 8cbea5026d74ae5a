# tests/test_participant_ledger.py
import asyncio
import random

import pytest
from pydantic import ValidationError

from attendance_monitor.core.events import EventBus, EventName
from attendance_monitor.schemas.participant import (
    AttendanceStatus,
    ConnectionStatus,
    MeetingStatus,
)
from attendance_monitor.services.participant_ledger import ParticipantLedger, SessionStateError


@pytest.fixture
def ledger(clock) -> ParticipantLedger:
    return ParticipantLedger(clock=clock)


def _assert_active_invariant(ledger: ParticipantLedger) -> None:
    for record in ledger.participants:
        assert record.is_active == (record.leave_time is None)
        if record.is_active:
            assert record.connection_status == ConnectionStatus.CONNECTED
        else:
            assert record.connection_status == ConnectionStatus.DISCONNECTED


def test_new_participant_starts_in_progress(ledger, clock):
    record = ledger.add_or_update_participant({"id": "p-1", "name": "Ada", "email": "ada@example.edu"})

    assert record.id == "p-1"
    assert record.is_active is True
    assert record.leave_time is None
    assert record.join_time == clock.now
    assert record.attendance_status == AttendanceStatus.IN_PROGRESS
    assert record.connection_status == ConnectionStatus.CONNECTED


def test_missing_id_generates_sequential_ids(ledger):
    first = ledger.add_or_update_participant({"name": "Ada"})
    second = ledger.add_or_update_participant({"name": "Grace"})

    assert first.id == "participant_1"
    assert second.id == "participant_2"


def test_participant_id_used_as_key_when_id_missing(ledger):
    record = ledger.add_or_update_participant({"participantId": 16778240, "name": "Ada"})
    assert record.id == "16778240"
    assert record.participant_id == "16778240"


def test_payload_without_identity_is_rejected(ledger):
    with pytest.raises(ValidationError):
        ledger.add_or_update_participant({"email": "nobody@example.edu"})
    assert ledger.participants == []


def test_duplicate_join_is_idempotent_and_keeps_join_time(ledger, clock):
    first = ledger.add_or_update_participant({"id": "p-1", "name": "Ada"})
    clock.advance(minutes=2)
    second = ledger.add_or_update_participant({"id": "p-1", "name": "Ada L."})

    assert len(ledger.participants) == 1
    assert second.join_time == first.join_time
    assert second.name == "Ada L."
    assert second.is_active is True


def test_leave_after_four_minutes_is_left_early(ledger, clock):
    ledger.add_or_update_participant({"id": "p-1", "name": "Ada"})
    clock.advance(minutes=4)
    record = ledger.remove_participant("p-1")

    assert record.duration == 4
    assert record.attendance_status == AttendanceStatus.LEFT_EARLY


def test_leave_after_five_minutes_is_completed(ledger, clock):
    ledger.add_or_update_participant({"id": "p-1", "name": "Ada"})
    clock.advance(minutes=5)
    record = ledger.remove_participant("p-1")

    assert record.duration == 5
    assert record.attendance_status == AttendanceStatus.COMPLETED


def test_remove_is_idempotent(ledger, clock):
    ledger.add_or_update_participant({"id": "p-1", "name": "Ada"})
    clock.advance(minutes=7)
    first = ledger.remove_participant("p-1")

    clock.advance(minutes=30)
    assert ledger.remove_participant("p-1") is None

    after = ledger.get_participant("p-1")
    assert after.duration == first.duration == 7
    assert after.attendance_status == first.attendance_status
    assert after.leave_time == first.leave_time


def test_unknown_ids_are_silent_noops(ledger):
    assert ledger.remove_participant("ghost") is None
    assert ledger.update_participant("ghost", {"name": "Casper"}) is None
    assert ledger.set_participant_activity("ghost", False) is None
    assert ledger.participants == []


def test_rejoin_reactivates_record(ledger, clock):
    ledger.add_or_update_participant({"id": "p-1", "name": "Ada"})
    clock.advance(minutes=3)
    ledger.remove_participant("p-1")
    clock.advance(minutes=3)

    record = ledger.add_or_update_participant({"id": "p-1"})

    assert record.is_active is True
    assert record.leave_time is None
    assert record.attendance_status == AttendanceStatus.IN_PROGRESS
    assert record.duration == 6
    _assert_active_invariant(ledger)


def test_update_participant_applies_allowed_fields(ledger, clock):
    ledger.add_or_update_participant({"id": "p-1", "name": "Ada"})
    clock.advance(minutes=1)

    record = ledger.update_participant("p-1", {"handRaised": True, "name": "Ada Lovelace"})

    assert record.hand_raised is True
    assert record.name == "Ada Lovelace"
    assert record.last_activity == clock.now
    assert record.is_active is True


@pytest.mark.parametrize("field", ["attendanceStatus", "isActive", "leaveTime", "duration", "bogus"])
def test_update_participant_rejects_lifecycle_and_unknown_fields(ledger, field):
    ledger.add_or_update_participant({"id": "p-1", "name": "Ada"})

    with pytest.raises(ValidationError):
        ledger.update_participant("p-1", {field: "x"})

    assert ledger.get_participant("p-1").attendance_status == AttendanceStatus.IN_PROGRESS


def test_set_participant_activity_routes_through_leave_and_join(ledger, clock):
    ledger.add_or_update_participant({"id": "p-1", "name": "Ada"})
    clock.advance(minutes=10)

    left = ledger.set_participant_activity("p-1", False)
    assert left.is_active is False
    assert left.attendance_status == AttendanceStatus.COMPLETED

    back = ledger.set_participant_activity("p-1", True)
    assert back.is_active is True
    _assert_active_invariant(ledger)


def test_bulk_update_skips_unknown_ids(ledger):
    ledger.add_or_update_participant({"id": "p-1", "name": "Ada"})
    ledger.add_or_update_participant({"id": "p-2", "name": "Grace"})

    result = ledger.bulk_update(
        [
            {"id": "p-1", "audioStatus": True},
            {"id": "ghost", "audioStatus": True},
            {"id": "p-2", "videoStatus": True},
            {"audioStatus": True},
        ]
    )

    assert [r.id for r in result.updated] == ["p-1", "p-2"]
    assert result.rejected == 1
    assert ledger.get_participant("p-1").audio_status is True
    assert ledger.get_participant("p-2").video_status is True


def test_bulk_update_skips_invalid_item_and_applies_the_rest(ledger):
    for pid in ("a", "b", "c"):
        ledger.add_or_update_participant({"id": pid, "name": pid})

    result = ledger.bulk_update(
        [
            {"id": "a", "name": "A2"},
            {"id": "b", "bogus": 1},
            {"id": "c", "name": "C2"},
        ]
    )

    assert [r.id for r in result.updated] == ["a", "c"]
    assert result.rejected == 1
    assert {r.id: r.name for r in ledger.participants} == {"a": "A2", "b": "b", "c": "C2"}


def test_explicit_null_in_patch_does_not_blank_fields(ledger):
    ledger.add_or_update_participant({"id": "p-1", "name": "Ada", "email": "ada@example.edu"})

    record = ledger.update_participant("p-1", {"name": None, "email": None, "handRaised": True})

    assert record.name == "Ada"
    assert record.email == "ada@example.edu"
    assert record.hand_raised is True


def test_compute_stats_on_empty_ledger_is_all_zero(ledger):
    stats = ledger.compute_stats()

    assert stats.total == 0
    assert stats.present_percentage == 0
    assert stats.completion_rate == 0
    assert stats.average_duration == 0


def test_compute_stats_counts_and_percentages(ledger, clock):
    for pid in ("a", "b", "c"):
        ledger.add_or_update_participant({"id": pid, "name": pid})
    clock.advance(minutes=2)
    ledger.remove_participant("a")  # left early, 2 min
    clock.advance(minutes=8)
    ledger.remove_participant("b")  # completed, 10 min

    stats = ledger.compute_stats()

    assert stats.total == 3
    assert stats.active == 1
    assert stats.completed == 1
    assert stats.left_early == 1
    assert stats.in_progress == 1
    assert stats.present_percentage == 33
    assert stats.completion_rate == 33
    # c is still active with duration 0 until refreshed
    assert stats.average_duration == 4


def test_refresh_durations_updates_only_active_records(ledger, clock):
    ledger.add_or_update_participant({"id": "a", "name": "A"})
    ledger.add_or_update_participant({"id": "b", "name": "B"})
    clock.advance(minutes=6)
    ledger.remove_participant("b")
    clock.advance(minutes=14)

    assert ledger.refresh_durations() == 1
    assert ledger.get_participant("a").duration == 20
    assert ledger.get_participant("b").duration == 6


def test_session_lifecycle_end_to_end(ledger, clock):
    bus_events = []
    ledger.bus.subscribe(EventName.MEETING_ENDED, bus_events.append)

    assert ledger.status == MeetingStatus.IDLE
    ledger.start_session({"meetingId": "m-1", "topic": "Physics"})
    assert ledger.status == MeetingStatus.ACTIVE

    joined = ledger.add_or_update_participant({"id": "A", "name": "Ada"})
    assert joined.is_active is True
    assert joined.attendance_status == AttendanceStatus.IN_PROGRESS

    clock.advance(minutes=10)
    left = ledger.remove_participant("A")
    assert left.duration == 10
    assert left.attendance_status == AttendanceStatus.COMPLETED

    clock.advance(minutes=5)
    assert ledger.end_session() is True

    after = ledger.get_participant("A")
    assert after.duration == 10
    assert after.leave_time == left.leave_time
    assert ledger.status == MeetingStatus.ENDED
    assert len(bus_events) == 1
    assert bus_events[0].detail["meeting"] == {"meetingId": "m-1", "topic": "Physics"}


def test_end_session_freezes_active_participants(ledger, clock):
    ledger.start_session()
    ledger.add_or_update_participant({"id": "A", "name": "Ada"})
    ledger.add_or_update_participant({"id": "B", "name": "Bob"})
    clock.advance(minutes=3)
    ledger.remove_participant("B")
    clock.advance(minutes=12)

    ledger.end_session()

    a = ledger.get_participant("A")
    assert a.is_active is False
    assert a.leave_time == clock.now
    assert a.duration == 15
    assert a.attendance_status == AttendanceStatus.COMPLETED
    assert ledger.get_participant("B").duration == 3
    _assert_active_invariant(ledger)


def test_end_session_uses_percentage_rules_when_meeting_length_known(ledger, clock):
    ledger.start_session({"topic": "Chemistry"}, total_meeting_duration=60)
    ledger.add_or_update_participant({"id": "A", "name": "Ada"})
    clock.advance(minutes=20)
    ledger.add_or_update_participant({"id": "B", "name": "Bob"})
    clock.advance(minutes=40)

    ledger.end_session()

    assert ledger.get_participant("A").attendance_status == AttendanceStatus.PRESENT
    assert ledger.get_participant("A").attendance_percentage == 100
    assert ledger.get_participant("B").attendance_status == AttendanceStatus.LATE


def test_end_session_only_once(ledger):
    ledger.start_session()
    assert ledger.end_session() is True
    assert ledger.end_session() is False
    assert ledger.status == MeetingStatus.ENDED


def test_end_session_freezes_participants_who_joined_before_start(ledger, clock):
    ledger.add_or_update_participant({"id": "a", "name": "Ada"})
    clock.advance(minutes=10)

    assert ledger.status == MeetingStatus.IDLE
    assert ledger.end_session() is True

    record = ledger.get_participant("a")
    assert ledger.status == MeetingStatus.ENDED
    assert record.is_active is False
    assert record.duration == 10
    assert record.attendance_status == AttendanceStatus.COMPLETED
    _assert_active_invariant(ledger)


def test_join_after_end_is_rejected(ledger, clock):
    ledger.start_session()
    ledger.add_or_update_participant({"id": "a", "name": "Ada"})
    ledger.end_session()

    with pytest.raises(SessionStateError):
        ledger.add_or_update_participant({"id": "b", "name": "Bob"})
    with pytest.raises(SessionStateError):
        ledger.add_or_update_participant({"id": "a"})

    assert ledger.get_participant("b") is None
    assert ledger.get_participant("a").is_active is False
    assert ledger.active_count == 0


def test_restart_after_end_requires_clear(ledger):
    ledger.start_session()
    ledger.add_or_update_participant({"name": "Ada"})
    ledger.end_session()

    with pytest.raises(SessionStateError):
        ledger.start_session()

    ledger.clear_session()
    assert ledger.status == MeetingStatus.IDLE
    assert ledger.participants == []
    assert ledger.meeting is None

    ledger.start_session()
    assert ledger.add_or_update_participant({"name": "Grace"}).id == "participant_1"


def test_ledger_publishes_participant_events(clock):
    bus = EventBus()
    names = []
    for name in (EventName.PARTICIPANT_JOINED, EventName.PARTICIPANT_UPDATED, EventName.PARTICIPANT_REMOVED):
        bus.subscribe(name, lambda e: names.append(e.name))
    ledger = ParticipantLedger(bus=bus, clock=clock)

    ledger.add_or_update_participant({"id": "p-1", "name": "Ada"})
    ledger.add_or_update_participant({"id": "p-1"})
    ledger.update_participant("p-1", {"videoStatus": True})
    ledger.remove_participant("p-1")
    ledger.remove_participant("p-1")

    assert names == [
        EventName.PARTICIPANT_JOINED,
        EventName.PARTICIPANT_UPDATED,
        EventName.PARTICIPANT_UPDATED,
        EventName.PARTICIPANT_REMOVED,
    ]


def test_returned_records_are_copies(ledger):
    record = ledger.add_or_update_participant({"id": "p-1", "name": "Ada"})
    record.is_active = False
    record.name = "Mallory"

    stored = ledger.get_participant("p-1")
    assert stored.is_active is True
    assert stored.name == "Ada"


@pytest.mark.parametrize("seed", range(10))
def test_active_invariant_holds_for_random_join_leave_sequences(clock, seed):
    rng = random.Random(seed)
    ledger = ParticipantLedger(clock=clock)
    ids = [f"p-{i}" for i in range(5)]

    for _ in range(60):
        pid = rng.choice(ids)
        if rng.random() < 0.5:
            ledger.add_or_update_participant({"id": pid, "name": pid})
        else:
            ledger.remove_participant(pid)
        clock.advance(seconds=rng.randint(0, 300))
        _assert_active_invariant(ledger)


@pytest.mark.asyncio
async def test_background_refresh_task_starts_and_stops(clock):
    ledger = ParticipantLedger(clock=clock, refresh_interval_seconds=0.01)
    ledger.add_or_update_participant({"id": "p-1", "name": "Ada"})
    clock.advance(minutes=9)

    ledger.start()
    await asyncio.sleep(0.05)
    await ledger.stop()

    assert ledger.get_participant("p-1").duration == 9
