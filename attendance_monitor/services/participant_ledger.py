# attendance_monitor/services/participant_ledger.py
from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from attendance_monitor.core.clock import Clock, utc_now
from attendance_monitor.core.config import Settings
from attendance_monitor.core.events import EventBus, EventName
from attendance_monitor.schemas.participant import (
    AttendanceStatus,
    ConnectionStatus,
    MeetingSnapshot,
    MeetingStats,
    MeetingStatus,
    ParticipantInfo,
    ParticipantPatch,
    ParticipantRecord,
)
from attendance_monitor.services.attendance_classifier import (
    AttendanceClassifier,
    elapsed_minutes,
    round_half_up,
)

logger = logging.getLogger(__name__)


class SessionStateError(RuntimeError):
    """
    Raised when a meeting lifecycle transition is not allowed
    (e.g. starting a meeting that already ended without clearing it).
    """


@dataclass
class BulkUpdateResult:
    updated: List[ParticipantRecord] = field(default_factory=list)
    rejected: int = 0
    errors: List[str] = field(default_factory=list)


class ParticipantLedger:
    """
    Authoritative set of participant records for the current meeting.

    Responsibilities
    ----------------
    - Apply join / leave / update signals to participant records.
    - Recompute derived fields (duration, attendance status and percentage)
      on every mutation.
    - Drive the meeting lifecycle: idle -> active -> ended, and back to idle
      only through `clear_session()`.
    - Publish participant and meeting events on the shared EventBus.

    Notes
    -----
    - Update / remove / activity changes for unknown ids are silent no-ops, so
      duplicate or out-of-order realtime signals are harmless.
    - Records handed out are copies; the ledger is the only mutator.
    """

    def __init__(
        self,
        bus: EventBus | None = None,
        classifier: AttendanceClassifier | None = None,
        clock: Clock = utc_now,
        refresh_interval_seconds: float = 3600.0,
    ) -> None:
        self.bus = bus or EventBus()
        self.classifier = classifier or AttendanceClassifier()
        self._clock = clock
        self._refresh_interval = refresh_interval_seconds

        self._records: Dict[str, ParticipantRecord] = {}
        self._status = MeetingStatus.IDLE
        self._meeting: Optional[Dict[str, Any]] = None
        self._total_meeting_duration: Optional[int] = None
        self._id_counter = itertools.count(1)
        self._refresh_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        bus: EventBus | None = None,
        clock: Clock = utc_now,
    ) -> "ParticipantLedger":
        return cls(
            bus=bus,
            classifier=AttendanceClassifier.from_settings(settings),
            clock=clock,
            refresh_interval_seconds=settings.DURATION_REFRESH_SECONDS,
        )

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------
    @property
    def status(self) -> MeetingStatus:
        return self._status

    @property
    def meeting(self) -> Optional[Dict[str, Any]]:
        return dict(self._meeting) if self._meeting is not None else None

    @property
    def total_meeting_duration(self) -> Optional[int]:
        return self._total_meeting_duration

    @property
    def participants(self) -> List[ParticipantRecord]:
        return [r.model_copy(deep=True) for r in self._records.values()]

    @property
    def active_count(self) -> int:
        return sum(1 for r in self._records.values() if r.is_active)

    def get_participant(self, participant_id: str) -> Optional[ParticipantRecord]:
        record = self._records.get(participant_id)
        return record.model_copy(deep=True) if record is not None else None

    def compute_stats(self) -> MeetingStats:
        """
        Aggregate counts and percentages over all records.

        An empty ledger yields zeros everywhere.
        """
        records = list(self._records.values())
        total = len(records)
        if total == 0:
            return MeetingStats()

        active = sum(1 for r in records if r.is_active)
        completed = sum(1 for r in records if r.attendance_status == AttendanceStatus.COMPLETED)
        left_early = sum(1 for r in records if r.attendance_status == AttendanceStatus.LEFT_EARLY)
        in_progress = sum(1 for r in records if r.attendance_status == AttendanceStatus.IN_PROGRESS)
        average_duration = sum(r.duration for r in records) / total

        return MeetingStats(
            total=total,
            active=active,
            completed=completed,
            left_early=left_early,
            in_progress=in_progress,
            present_percentage=round_half_up(active / total * 100),
            completion_rate=round_half_up(completed / total * 100),
            average_duration=round_half_up(average_duration),
        )

    def snapshot(self) -> MeetingSnapshot:
        return MeetingSnapshot(
            status=self._status,
            meeting=self.meeting,
            total_meeting_duration=self._total_meeting_duration,
            participants=self.participants,
            stats=self.compute_stats(),
        )

    # ------------------------------------------------------------------
    # Meeting lifecycle
    # ------------------------------------------------------------------
    def start_session(
        self,
        meeting: Optional[Dict[str, Any]] = None,
        total_meeting_duration: Optional[int] = None,
    ) -> None:
        """
        Set the meeting data and move the session to ACTIVE.

        Calling this on an already active session only replaces the meeting
        data. An ended session must be cleared first.
        """
        if self._status == MeetingStatus.ENDED:
            raise SessionStateError("Meeting has ended; clear it before starting a new one.")

        self._meeting = dict(meeting or {})
        if total_meeting_duration is not None:
            if total_meeting_duration < 0:
                raise ValueError("total_meeting_duration must be >= 0")
            self._total_meeting_duration = total_meeting_duration
            for record in self._records.values():
                self._derive(record)

        self._status = MeetingStatus.ACTIVE
        logger.info("Meeting started: %s", self._meeting)
        self.bus.publish(EventName.MEETING_STARTED, meeting=self.meeting)

    def end_session(self) -> bool:
        """
        Freeze every still-active participant and mark the meeting ENDED.

        Works from IDLE as well, so participants who joined before
        `start_session()` are frozen too. Returns False (and changes nothing)
        when the meeting already ended.
        """
        if self._status == MeetingStatus.ENDED:
            logger.info("end_session ignored; meeting already ended")
            return False

        now = self._clock()
        for record in self._records.values():
            if record.is_active:
                self._apply_leave(record, now)

        self._status = MeetingStatus.ENDED
        logger.info("Meeting ended with %d participant(s)", len(self._records))
        self.bus.publish(
            EventName.MEETING_ENDED,
            meeting=self.meeting,
            participants=self.participants,
        )
        return True

    def clear_session(self) -> None:
        self._records.clear()
        self._meeting = None
        self._total_meeting_duration = None
        self._status = MeetingStatus.IDLE
        self._id_counter = itertools.count(1)
        logger.info("Meeting data cleared")

    # ------------------------------------------------------------------
    # Participant mutations
    # ------------------------------------------------------------------
    def add_or_update_participant(self, info: ParticipantInfo | Dict[str, Any]) -> ParticipantRecord:
        """
        Register a join signal.

        A known id is merged and forced active (duplicate joins are
        idempotent); an unknown id creates a new IN_PROGRESS record.

        Raises
        ------
        pydantic.ValidationError
            If ``info`` carries no id, participantId or name.
        SessionStateError
            If the meeting has ended; nothing could ever freeze the record.
        """
        if not isinstance(info, ParticipantInfo):
            info = ParticipantInfo.model_validate(info)
        if self._status == MeetingStatus.ENDED:
            raise SessionStateError("Meeting has ended; participants can no longer join.")

        now = self._clock()
        participant_id = info.id or info.participant_id or f"participant_{next(self._id_counter)}"
        changes = info.model_dump(exclude_unset=True, exclude_none=True, exclude={"id"})

        record = self._records.get(participant_id)
        if record is not None:
            for key, value in changes.items():
                setattr(record, key, value)
            if not record.is_active:
                record.leave_time = None
                record.leave_reason = None
                record.is_active = True
            record.connection_status = ConnectionStatus.CONNECTED
            record.duration = max(record.duration, elapsed_minutes(record.join_time, now))
            record.last_activity = now
            self._derive(record)
            logger.info("Participant updated on rejoin: %s", participant_id)
            copy = record.model_copy(deep=True)
            self.bus.publish(EventName.PARTICIPANT_UPDATED, participant=copy)
            return copy

        record = ParticipantRecord(id=participant_id, join_time=now, last_activity=now, **changes)
        self._derive(record)
        self._records[participant_id] = record
        logger.info("Participant added: %s (%s)", participant_id, record.name)
        copy = record.model_copy(deep=True)
        self.bus.publish(EventName.PARTICIPANT_JOINED, participant=copy)
        return copy

    def remove_participant(self, participant_id: str) -> Optional[ParticipantRecord]:
        """
        Register a leave signal.

        Returns the frozen record, or None when the id is unknown or the
        participant already left (repeated leave signals change nothing).
        """
        record = self._records.get(participant_id)
        if record is None or not record.is_active:
            return None

        self._apply_leave(record, self._clock())
        logger.info(
            "Participant removed: %s after %d min (%s)",
            participant_id,
            record.duration,
            record.attendance_status.value,
        )
        copy = record.model_copy(deep=True)
        self.bus.publish(EventName.PARTICIPANT_REMOVED, participant=copy)
        return copy

    def update_participant(
        self,
        participant_id: str,
        patch: ParticipantPatch | Dict[str, Any],
    ) -> Optional[ParticipantRecord]:
        """
        Apply an explicit field patch to a known participant.

        Raises
        ------
        pydantic.ValidationError
            If ``patch`` contains keys outside ParticipantPatch.
        """
        if not isinstance(patch, ParticipantPatch):
            patch = ParticipantPatch.model_validate(patch)

        record = self._records.get(participant_id)
        if record is None:
            return None

        for key, value in patch.changes().items():
            setattr(record, key, value)
        record.last_activity = self._clock()

        copy = record.model_copy(deep=True)
        self.bus.publish(EventName.PARTICIPANT_UPDATED, participant=copy)
        return copy

    def set_participant_activity(self, participant_id: str, is_active: bool = True) -> Optional[ParticipantRecord]:
        """
        Flip a participant's activity. Deactivation goes through the leave
        path and reactivation through the join path so the
        active/leave-time invariant always holds.
        """
        record = self._records.get(participant_id)
        if record is None:
            return None
        if is_active:
            return self.add_or_update_participant(ParticipantInfo(id=participant_id))
        if record.is_active:
            return self.remove_participant(participant_id)
        return record.model_copy(deep=True)

    def bulk_update(self, updates: Iterable[Dict[str, Any]]) -> BulkUpdateResult:
        """
        Apply ``{"id": ..., **patch}`` items one by one.

        Unknown ids are skipped. Items without an id or with keys outside
        ParticipantPatch are rejected individually; the remaining items are
        still applied.
        """
        result = BulkUpdateResult()
        for item in updates:
            data = dict(item)
            participant_id = data.pop("id", None)
            if participant_id is None:
                result.rejected += 1
                continue
            try:
                patch = ParticipantPatch.model_validate(data)
            except ValidationError as exc:
                result.rejected += 1
                result.errors.append(f"{participant_id}: {exc.error_count()} error(s)")
                continue
            record = self.update_participant(str(participant_id), patch)
            if record is not None:
                result.updated.append(record)

        if result.rejected:
            logger.warning(
                "Bulk update rejected %d item(s): %s",
                result.rejected,
                "; ".join(result.errors) or "missing id",
            )
        return result

    # ------------------------------------------------------------------
    # Passive duration refresh
    # ------------------------------------------------------------------
    def refresh_durations(self) -> int:
        """
        Recompute the duration of every active participant from wall-clock
        time. Returns how many records were refreshed.
        """
        now = self._clock()
        refreshed = 0
        for record in self._records.values():
            if record.is_active:
                record.duration = max(record.duration, elapsed_minutes(record.join_time, now))
                self._derive(record)
                refreshed += 1
        return refreshed

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self._refresh_interval)
            count = self.refresh_durations()
            logger.debug("Refreshed durations of %d active participant(s)", count)

    def start(self) -> None:
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.get_running_loop().create_task(self._refresh_loop())

    async def stop(self) -> None:
        task, self._refresh_task = self._refresh_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _apply_leave(self, record: ParticipantRecord, now: datetime) -> None:
        record.leave_time = now
        record.duration = elapsed_minutes(record.join_time, now)
        record.is_active = False
        record.connection_status = ConnectionStatus.DISCONNECTED
        record.last_activity = now
        self._derive(record)

    def _derive(self, record: ParticipantRecord) -> None:
        record.attendance_status = self.classifier.classify(
            record.is_active,
            record.duration,
            self._total_meeting_duration,
        )
        record.attendance_percentage = self.classifier.percentage(
            record.duration,
            self._total_meeting_duration,
            is_active=record.is_active,
        )
