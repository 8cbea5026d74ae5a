# attendance_monitor/services/realtime_channel.py
from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

import httpx
from pydantic import ValidationError

from attendance_monitor.core.clock import Clock, utc_now
from attendance_monitor.core.config import Settings
from attendance_monitor.core.events import EventBus, EventName
from attendance_monitor.schemas.realtime import (
    ConnectionState,
    RealtimeEvent,
    RealtimeEventType,
    RealtimeStatus,
)

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class ChannelError(RuntimeError):
    """
    Raised by a transport when the realtime handshake cannot be completed.
    """


class RealtimeTransport(Protocol):
    async def open(self) -> None:
        ...

    async def close(self) -> None:
        ...


class NullTransport:
    """
    Transport used when no backend is configured: the handshake always
    succeeds and events are pushed in through `RealtimeChannel.receive`.
    """

    async def open(self) -> None:
        return None

    async def close(self) -> None:
        return None


class HttpHealthTransport:
    """
    Treats a successful ``GET {base_url}/health`` as the handshake.
    """

    def __init__(self, base_url: str, timeout_seconds: float = 3.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds

    @property
    def health_url(self) -> str:
        return f"{self._base_url}/health"

    async def open(self) -> None:
        try:
            async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
                resp = await client.get(self.health_url)
        except httpx.HTTPError as exc:
            raise ChannelError(f"Backend server unreachable: {exc}") from exc

        if resp.status_code // 100 != 2:
            raise ChannelError(f"Backend server health check failed (status={resp.status_code})")

    async def close(self) -> None:
        return None


class RealtimeChannel:
    """
    Connection state machine for the realtime feed.

    States
    ------
    disconnected -> connecting -> connected
                             \\-> error -> (linear backoff) -> connecting ...

    - A failed handshake schedules a retry after
      ``reconnect_base_delay * attempt`` seconds, up to
      ``max_reconnect_attempts`` automatic retries. After that the channel
      stays in ``error`` until `connect()` is called again.
    - While connected a heartbeat fires every ``heartbeat_interval`` seconds,
      refreshing ``last_heartbeat`` and publishing ``realtimeHeartbeat``.
      Heartbeats do not detect a silently dead peer.
    - Inbound messages are validated and republished as ``realtimeUpdate``;
      malformed ones are dropped with a warning.
    """

    def __init__(
        self,
        transport: RealtimeTransport | None = None,
        bus: EventBus | None = None,
        clock: Clock = utc_now,
        heartbeat_interval: float = 30.0,
        reconnect_base_delay: float = 3.0,
        max_reconnect_attempts: int = 5,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.transport = transport or NullTransport()
        self.bus = bus or EventBus()
        self._clock = clock
        self._heartbeat_interval = heartbeat_interval
        self._reconnect_base_delay = reconnect_base_delay
        self._max_reconnect_attempts = max_reconnect_attempts
        self._sleep = sleep

        self._status = RealtimeStatus.DISCONNECTED
        self._error: Optional[str] = None
        self._last_heartbeat: Optional[datetime] = None
        self._connected_since: Optional[datetime] = None
        self._reconnect_attempts = 0
        self._failures = 0
        self._exhausted = False
        self._ever_connected = False
        self._generation = 0

        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        bus: EventBus | None = None,
        transport: RealtimeTransport | None = None,
        clock: Clock = utc_now,
    ) -> "RealtimeChannel":
        if transport is None and settings.ATTENDANCE_API_BASE_URL:
            transport = HttpHealthTransport(
                settings.ATTENDANCE_API_BASE_URL,
                timeout_seconds=settings.ATTENDANCE_API_HEALTH_TIMEOUT_SECONDS,
            )
        return cls(
            transport=transport,
            bus=bus,
            clock=clock,
            heartbeat_interval=settings.HEARTBEAT_INTERVAL_SECONDS,
            reconnect_base_delay=settings.RECONNECT_BASE_DELAY_SECONDS,
            max_reconnect_attempts=settings.MAX_RECONNECT_ATTEMPTS,
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def status(self) -> RealtimeStatus:
        return self._status

    @property
    def connected(self) -> bool:
        return self._status == RealtimeStatus.CONNECTED

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def last_heartbeat(self) -> Optional[datetime]:
        return self._last_heartbeat

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def connection_stats(self) -> ConnectionState:
        uptime = 0.0
        if self.connected and self._connected_since is not None:
            uptime = max((self._clock() - self._connected_since).total_seconds(), 0.0)
        return ConnectionState(
            status=self._status,
            last_heartbeat=self._last_heartbeat,
            reconnect_attempts=self._reconnect_attempts,
            error=self._error,
            uptime_seconds=uptime,
        )

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------
    async def connect(self) -> bool:
        """
        Start a handshake now.

        A manual call after retries were exhausted re-arms automatic retries.
        Returns True when the channel ends up connected.
        """
        if self._status in (RealtimeStatus.CONNECTED, RealtimeStatus.CONNECTING):
            return self.connected

        if self._exhausted:
            self._exhausted = False
            self._reconnect_attempts = 0

        await self._cancel_reconnect()
        return await self._attempt()

    async def disconnect(self) -> None:
        """
        Cancel heartbeat and pending retries, close the transport and reset
        the attempt counter. Safe to call repeatedly.
        """
        self._generation += 1
        await self._cancel_reconnect()
        await self._stop_heartbeat()

        if self._status != RealtimeStatus.DISCONNECTED:
            try:
                await self.transport.close()
            except ChannelError as exc:
                logger.warning("Error while closing realtime transport: %s", exc)

        self._reconnect_attempts = 0
        self._failures = 0
        self._exhausted = False
        self._last_heartbeat = None
        self._connected_since = None
        if self._status != RealtimeStatus.DISCONNECTED:
            logger.info("Disconnected from realtime service")
            self._set_status(RealtimeStatus.DISCONNECTED)

    async def _attempt(self) -> bool:
        generation = self._generation
        self._set_status(RealtimeStatus.CONNECTING)
        try:
            await self.transport.open()
        except ChannelError as exc:
            if generation != self._generation:
                logger.debug("Discarding failed handshake superseded by a disconnect")
                return False
            self._failures += 1
            logger.warning("Realtime handshake failed: %s", exc)
            self._set_status(RealtimeStatus.ERROR, error=str(exc))
            self._schedule_reconnect()
            return False

        if generation != self._generation:
            # disconnect() or offline arrived while the handshake was in flight
            logger.debug("Discarding handshake superseded by a disconnect")
            with contextlib.suppress(ChannelError):
                await self.transport.close()
            return False

        after_failure = self._failures
        first = not self._ever_connected
        now = self._clock()
        self._failures = 0
        self._reconnect_attempts = 0
        self._ever_connected = True
        self._last_heartbeat = now
        self._connected_since = now
        logger.info("Realtime connection established")
        self._set_status(RealtimeStatus.CONNECTED, attempts=after_failure, initial=first)
        self._start_heartbeat()
        return True

    def _schedule_reconnect(self) -> None:
        if self._reconnect_attempts >= self._max_reconnect_attempts:
            self._exhausted = True
            logger.error(
                "Max reconnection attempts (%d) reached; waiting for a manual connect",
                self._max_reconnect_attempts,
            )
            self._set_status(
                RealtimeStatus.ERROR,
                error="Connection failed after maximum retry attempts",
            )
            return

        self._reconnect_attempts += 1
        delay = self._reconnect_base_delay * self._reconnect_attempts
        logger.info(
            "Scheduling reconnection attempt %d/%d in %.1fs",
            self._reconnect_attempts,
            self._max_reconnect_attempts,
            delay,
        )
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        # Stays referenced as _reconnect_task through the handshake so that
        # disconnect() can cancel it; a failed attempt replaces it.
        try:
            await self._sleep(delay)
            await self._attempt()
        finally:
            if self._reconnect_task is asyncio.current_task():
                self._reconnect_task = None

    async def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------
    def beat(self) -> None:
        """Record liveness and publish a heartbeat; ignored unless connected."""
        if not self.connected:
            return
        self._last_heartbeat = self._clock()
        logger.debug("Heartbeat sent")
        self.bus.publish(
            EventName.REALTIME_HEARTBEAT,
            timestamp=self._last_heartbeat,
            status=self._status.value,
        )

    async def _heartbeat_loop(self) -> None:
        while True:
            await self._sleep(self._heartbeat_interval)
            self.beat()

    def _start_heartbeat(self) -> None:
        if self._heartbeat_task is not None and not self._heartbeat_task.done():
            self._heartbeat_task.cancel()
        self._heartbeat_task = asyncio.get_running_loop().create_task(self._heartbeat_loop())

    async def _stop_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    # ------------------------------------------------------------------
    # Environment triggers
    # ------------------------------------------------------------------
    async def on_visibility_change(self, visible: bool) -> None:
        if visible and not self.connected:
            logger.info("Host became visible, attempting to reconnect")
            await self.connect()

    async def on_network_online(self) -> None:
        if not self.connected:
            logger.info("Network came online, attempting to reconnect")
            await self.connect()

    async def on_network_offline(self) -> None:
        logger.info("Network went offline")
        self._generation += 1
        await self._cancel_reconnect()
        await self._stop_heartbeat()
        self._connected_since = None
        self._failures += 1
        self._set_status(RealtimeStatus.ERROR, error="Network offline")

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------
    def receive(self, message: RealtimeEvent | Dict[str, Any]) -> Optional[RealtimeEvent]:
        """
        Validate an inbound message and republish it as ``realtimeUpdate``.

        Returns the normalized event, or None when the message was dropped.
        """
        try:
            event = message if isinstance(message, RealtimeEvent) else RealtimeEvent.model_validate(message)
            self._check_payload(event)
        except (ValidationError, ValueError) as exc:
            logger.warning("Dropping malformed realtime message %r: %s", message, exc)
            return None

        if event.timestamp is None:
            event = event.model_copy(update={"timestamp": self._clock()})

        self.bus.publish(
            EventName.REALTIME_UPDATE,
            type=event.type,
            data=event.data,
            timestamp=event.timestamp,
        )
        return event

    @staticmethod
    def _check_payload(event: RealtimeEvent) -> None:
        if event.type == RealtimeEventType.BULK_PARTICIPANT_UPDATE:
            if not isinstance(event.data, list):
                raise ValueError("bulk_participant_update expects a list of participant patches")
            return

        if not isinstance(event.data, dict):
            raise ValueError(f"{event.type.value} expects a participant object")
        if event.type == RealtimeEventType.PARTICIPANT_JOINED:
            if not (event.data.get("id") or event.data.get("participantId") or event.data.get("name")):
                raise ValueError("participant_joined payload has no id, participantId or name")
        elif not event.data.get("id"):
            raise ValueError(f"{event.type.value} payload has no id")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _set_status(self, status: RealtimeStatus, error: Optional[str] = None, **extra: Any) -> None:
        self._status = status
        self._error = error
        extra.setdefault("attempts", self._failures)
        extra.setdefault("initial", False)
        self.bus.publish(
            EventName.CONNECTION_STATUS,
            status=status,
            error=error,
            **extra,
        )
