# attendance_monitor/services/attendance_recorder.py
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from attendance_monitor.core.clock import Clock, utc_now
from attendance_monitor.core.config import Settings
from attendance_monitor.schemas.attendance import (
    AttendanceHistoryEntry,
    AttendanceStoreSummary,
    ParticipantInfoUpdate,
    ParticipantProfile,
    StoredAttendanceRecord,
)
from attendance_monitor.schemas.participant import AttendanceStatus, ParticipantRecord
from attendance_monitor.services.attendance_api import AttendanceApiClient, AttendanceApiError
from attendance_monitor.services.attendance_classifier import round_half_up
from attendance_monitor.services.kv_store import KeyValueStore

logger = logging.getLogger(__name__)


class AttendanceRecorder:
    """
    Local-first persistence of participant attendance.

    Flow for `store_participant_data`
    ---------------------------------
    1) Upsert the record into the local list (keyed by participant + meeting),
       keeping only the newest ``max_records`` entries.
    2) Fold the record into the participant's profile.
    3) If a remote API is configured and healthy, push the record there.

    Remote failures are logged and swallowed; the local store stays the
    source of truth.
    """

    RECORDS_KEY = "attendanceData"
    PROFILES_KEY = "participantProfiles"

    def __init__(
        self,
        store: KeyValueStore,
        api: AttendanceApiClient | None = None,
        clock: Clock = utc_now,
        max_records: int = 100,
        history_limit: int = 20,
    ) -> None:
        self.store = store
        self.api = api
        self._clock = clock
        self._max_records = max_records
        self._history_limit = history_limit
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: KeyValueStore,
        clock: Clock = utc_now,
    ) -> "AttendanceRecorder":
        return cls(
            store=store,
            api=AttendanceApiClient.from_settings(settings),
            clock=clock,
            max_records=settings.STORE_MAX_RECORDS,
            history_limit=settings.PROFILE_HISTORY_LIMIT,
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    async def store_participant_data(
        self,
        participant: ParticipantRecord,
        meeting: Optional[Dict[str, Any]] = None,
    ) -> StoredAttendanceRecord:
        meeting = meeting or {}
        record = StoredAttendanceRecord(
            id=participant.id,
            name=participant.name,
            email=participant.email,
            participant_id=participant.participant_id or participant.id,
            join_time=participant.join_time,
            leave_time=participant.leave_time,
            duration=participant.duration,
            attendance_status=participant.attendance_status.value,
            attendance_percentage=participant.attendance_percentage,
            meeting_id=_as_optional_str(meeting.get("meetingId") or meeting.get("id")),
            meeting_topic=meeting.get("topic") or meeting.get("meetingTopic"),
            timestamp=self._clock(),
        )

        async with self._lock:
            await self._save_record(record)
            await self._update_profile(record)

        await self._send_to_backend(record)
        logger.info("Stored attendance for %s (%s)", record.participant_id, record.attendance_status)
        return record

    async def _save_record(self, record: StoredAttendanceRecord) -> None:
        existing = await self._load_raw_records()
        payload = _dump(record)

        for index, item in enumerate(existing):
            if item.get("participantId") == record.participant_id and item.get("meetingId") == record.meeting_id:
                existing[index] = {**item, **payload}
                break
        else:
            existing.append(payload)

        if len(existing) > self._max_records:
            del existing[: len(existing) - self._max_records]

        await self.store.set(self.RECORDS_KEY, existing)

    async def _update_profile(self, record: StoredAttendanceRecord) -> None:
        profiles = await self.get_participant_profiles()
        key = record.participant_id

        profile = profiles.get(key)
        if profile is None:
            profile = ParticipantProfile(
                name=record.name,
                email=record.email,
                participant_id=key,
                created_at=self._clock(),
            )

        profile.name = record.name
        profile.email = record.email
        profile.last_seen = record.timestamp
        profile.total_meetings += 1
        profile.total_duration += record.duration or 0
        profile.attendance_history.append(
            AttendanceHistoryEntry(
                meeting_id=record.meeting_id,
                meeting_topic=record.meeting_topic,
                date=record.timestamp,
                duration=record.duration,
                percentage=record.attendance_percentage,
                status=record.attendance_status,
            )
        )

        counted = [h.percentage for h in profile.attendance_history if h.percentage > 0]
        profile.average_attendance = round_half_up(sum(counted) / len(counted)) if counted else 0
        profile.attendance_history = profile.attendance_history[-self._history_limit:]

        profiles[key] = profile
        await self._save_profiles(profiles)

    async def _send_to_backend(self, record: StoredAttendanceRecord) -> None:
        if self.api is None:
            return
        if not await self.api.health():
            logger.info("Attendance backend not available; keeping %s local only", record.participant_id)
            return
        try:
            await self.api.store_attendance(_dump(record))
        except AttendanceApiError as exc:
            logger.warning("Backend storage failed, using local store only: %s", exc)

    async def update_participant_info(
        self,
        participant_id: str,
        update: ParticipantInfoUpdate | Dict[str, Any],
    ) -> bool:
        """
        Apply a dashboard edit to the participant's local records and profile,
        then forward it to the backend. Returns False when nothing matched.
        """
        if not isinstance(update, ParticipantInfoUpdate):
            update = ParticipantInfoUpdate.model_validate(update)
        changes = update.model_dump(exclude_unset=True, exclude_none=True, by_alias=True)
        if not changes:
            return False

        now = self._clock()
        matched = False
        async with self._lock:
            records = await self._load_raw_records()
            for item in records:
                if item.get("participantId") == participant_id:
                    item.update(changes)
                    item["updatedAt"] = now.isoformat()
                    matched = True
            await self.store.set(self.RECORDS_KEY, records)

            profiles = await self.get_participant_profiles()
            profile = profiles.get(participant_id)
            if profile is not None:
                profiles[participant_id] = profile.model_copy(update=update.model_dump(exclude_unset=True, exclude_none=True))
                await self._save_profiles(profiles)
                matched = True

        if self.api is not None and await self.api.health():
            try:
                await self.api.update_participant(participant_id, changes)
            except AttendanceApiError as exc:
                logger.warning("Backend participant update failed for %s: %s", participant_id, exc)

        return matched

    async def sync_with_backend(self) -> Optional[Dict[str, Any]]:
        if self.api is None or not await self.api.health():
            logger.info("Backend not available, skipping sync")
            return None
        try:
            return await self.api.sync_attendance(await self._load_raw_records())
        except AttendanceApiError as exc:
            logger.warning("Sync with backend failed: %s", exc)
            return None

    async def clear_all_data(self) -> None:
        async with self._lock:
            await self.store.delete(self.RECORDS_KEY)
            await self.store.delete(self.PROFILES_KEY)
        logger.info("All attendance data cleared")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def get_attendance_records(self) -> List[StoredAttendanceRecord]:
        records: List[StoredAttendanceRecord] = []
        for item in await self._load_raw_records():
            try:
                records.append(StoredAttendanceRecord.model_validate(item))
            except ValidationError as exc:
                logger.warning("Skipping malformed stored attendance record: %s", exc)
        return records

    async def get_participant_profiles(self) -> Dict[str, ParticipantProfile]:
        raw = await self.store.get(self.PROFILES_KEY)
        if not isinstance(raw, dict):
            return {}
        profiles: Dict[str, ParticipantProfile] = {}
        for key, value in raw.items():
            try:
                profiles[key] = ParticipantProfile.model_validate(value)
            except ValidationError as exc:
                logger.warning("Skipping malformed profile %r: %s", key, exc)
        return profiles

    async def get_participant_attendance(self, participant_id: str) -> List[StoredAttendanceRecord]:
        return [r for r in await self.get_attendance_records() if r.participant_id == participant_id]

    async def get_meeting_attendance(self, meeting_id: str) -> List[StoredAttendanceRecord]:
        return [r for r in await self.get_attendance_records() if r.meeting_id == meeting_id]

    async def generate_summary(self) -> AttendanceStoreSummary:
        records = await self.get_attendance_records()
        average = 0
        if records:
            average = round_half_up(sum(r.attendance_percentage for r in records) / len(records))
        return AttendanceStoreSummary(
            total_participants=len({r.participant_id for r in records}),
            total_meetings=len({r.meeting_id for r in records}),
            total_records=len(records),
            present_count=sum(1 for r in records if r.attendance_status == AttendanceStatus.PRESENT.value),
            average_attendance=average,
            generated_at=self._clock(),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _load_raw_records(self) -> List[Dict[str, Any]]:
        raw = await self.store.get(self.RECORDS_KEY)
        if not isinstance(raw, list):
            return []
        return [item for item in raw if isinstance(item, dict)]

    async def _save_profiles(self, profiles: Dict[str, ParticipantProfile]) -> None:
        await self.store.set(self.PROFILES_KEY, {key: _dump(p) for key, p in profiles.items()})


def _dump(model) -> Dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


def _as_optional_str(value: Any) -> Optional[str]:
    return str(value) if value is not None else None
