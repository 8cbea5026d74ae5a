# attendance_monitor/services/attendance_tracker.py
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from attendance_monitor.core.clock import Clock, utc_now
from attendance_monitor.core.config import Settings
from attendance_monitor.core.events import Event, EventBus, EventName
from attendance_monitor.schemas.participant import ParticipantRecord
from attendance_monitor.schemas.realtime import RealtimeEventType
from attendance_monitor.services.attendance_recorder import AttendanceRecorder
from attendance_monitor.services.kv_store import KeyValueStore
from attendance_monitor.services.notification_queue import NotificationQueue
from attendance_monitor.services.participant_ledger import ParticipantLedger, SessionStateError
from attendance_monitor.services.realtime_channel import RealtimeChannel, RealtimeTransport

logger = logging.getLogger(__name__)


class AttendanceTracker:
    """
    Wires the ledger, realtime channel, notification queue and recorder
    together over one EventBus.

    - ``realtimeUpdate`` events are applied to the ledger in delivery order.
    - Ledger and connection events become user notifications.
    - Departed participants are persisted in the background; a failing
      write never touches the ledger.
    """

    def __init__(
        self,
        ledger: ParticipantLedger,
        channel: RealtimeChannel,
        notifications: NotificationQueue,
        recorder: AttendanceRecorder | None = None,
    ) -> None:
        if ledger.bus is not channel.bus:
            raise ValueError("ledger and channel must share one EventBus")

        self.bus: EventBus = ledger.bus
        self.ledger = ledger
        self.channel = channel
        self.notifications = notifications
        self.recorder = recorder

        self._pending: Set[asyncio.Task] = set()
        self._persisted: Dict[str, Optional[datetime]] = {}
        self._unsubscribers: List[Callable[[], None]] = [
            self.bus.subscribe(EventName.REALTIME_UPDATE, self._on_realtime_update),
            self.bus.subscribe(EventName.PARTICIPANT_JOINED, self._on_participant_joined),
            self.bus.subscribe(EventName.PARTICIPANT_REMOVED, self._on_participant_removed),
            self.bus.subscribe(EventName.MEETING_STARTED, self._on_meeting_started),
            self.bus.subscribe(EventName.MEETING_ENDED, self._on_meeting_ended),
            self.bus.subscribe(EventName.CONNECTION_STATUS, self._on_connection_status),
        ]

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: KeyValueStore | None = None,
        transport: RealtimeTransport | None = None,
        clock: Clock = utc_now,
    ) -> "AttendanceTracker":
        bus = EventBus()
        return cls(
            ledger=ParticipantLedger.from_settings(settings, bus=bus, clock=clock),
            channel=RealtimeChannel.from_settings(settings, bus=bus, transport=transport, clock=clock),
            notifications=NotificationQueue.from_settings(settings, clock=clock),
            recorder=AttendanceRecorder.from_settings(settings, store, clock=clock) if store is not None else None,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        self.ledger.start()
        self.notifications.start()
        await self.channel.connect()

    async def close(self) -> None:
        await self.channel.disconnect()
        await self.ledger.stop()
        await self.notifications.close()
        await self.drain()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    async def __aenter__(self) -> "AttendanceTracker":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def drain(self) -> None:
        """Wait for every scheduled background write to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def clear_session(self) -> None:
        self.ledger.clear_session()
        self._persisted.clear()

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------
    def _on_realtime_update(self, event: Event) -> None:
        kind = event.detail.get("type")
        data = event.detail.get("data")
        try:
            if kind == RealtimeEventType.PARTICIPANT_JOINED:
                self.ledger.add_or_update_participant(data)
            elif kind == RealtimeEventType.PARTICIPANT_LEFT:
                self.ledger.remove_participant(str(data["id"]))
            elif kind == RealtimeEventType.PARTICIPANT_UPDATE:
                patch = dict(data)
                participant_id = str(patch.pop("id"))
                self.ledger.update_participant(participant_id, patch)
            elif kind == RealtimeEventType.BULK_PARTICIPANT_UPDATE:
                rejected = self.ledger.bulk_update(data).rejected
                if rejected:
                    self._warn_invalid(rejected)
        except ValidationError as exc:
            logger.warning("Rejected %s payload: %s", getattr(kind, "value", kind), exc)
            self._warn_invalid(exc.error_count())
        except SessionStateError as exc:
            logger.warning("Ignored %s: %s", getattr(kind, "value", kind), exc)

    def _warn_invalid(self, count: int) -> None:
        self.notifications.warning(
            f"Ignored invalid participant data ({count} error(s))",
            category="validation",
        )

    def _on_participant_joined(self, event: Event) -> None:
        participant: ParticipantRecord = event.detail["participant"]
        self.notifications.info(f"{participant.name} joined the meeting", category="participants")

    def _on_participant_removed(self, event: Event) -> None:
        participant: ParticipantRecord = event.detail["participant"]
        self.notifications.info(
            f"{participant.name} left the meeting after {participant.duration} min",
            category="participants",
        )
        self._schedule_persist(participant)

    def _on_meeting_started(self, event: Event) -> None:
        meeting = event.detail.get("meeting") or {}
        topic = meeting.get("topic") or "Meeting"
        self.notifications.success(f"{topic} started", category="meeting")

    def _on_meeting_ended(self, event: Event) -> None:
        self.notifications.success("Meeting ended", category="meeting")
        for participant in event.detail.get("participants", []):
            if self._persisted.get(participant.id, False) != participant.leave_time:
                self._schedule_persist(participant)

    def _on_connection_status(self, event: Event) -> None:
        self.notifications.notify_connection(
            event.detail["status"],
            attempts=event.detail.get("attempts", 0),
            initial=event.detail.get("initial", False),
            error=event.detail.get("error"),
        )

    # ------------------------------------------------------------------
    # Background persistence
    # ------------------------------------------------------------------
    def _schedule_persist(self, participant: ParticipantRecord) -> None:
        if self.recorder is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; skipping persistence of %s", participant.id)
            return

        self._persisted[participant.id] = participant.leave_time
        task = loop.create_task(self._persist(participant, self.ledger.meeting))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _persist(self, participant: ParticipantRecord, meeting: Optional[dict]) -> None:
        try:
            await self.recorder.store_participant_data(participant, meeting)
        except (SQLAlchemyError, ValueError) as exc:
            logger.warning("Could not persist attendance for %s: %s", participant.id, exc)
