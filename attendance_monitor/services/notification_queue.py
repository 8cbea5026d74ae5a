# attendance_monitor/services/notification_queue.py
from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from attendance_monitor.core.clock import Clock, utc_now
from attendance_monitor.core.config import Settings
from attendance_monitor.schemas.notification import NotificationEntry, Severity
from attendance_monitor.schemas.realtime import RealtimeStatus

logger = logging.getLogger(__name__)


class NotificationFilter:
    """
    Decides whether a candidate notification is worth showing.

    Rules
    -----
    1) Error messages containing ``critical_pattern`` always pass.
    2) The exact ``(category, severity, message)`` already shown within
       ``suppress_seconds`` is suppressed.
    3) At most ``rate_limit`` notifications per ``(category, severity)``
       within a rolling ``rate_window_seconds``; extra ones are dropped.
    """

    def __init__(
        self,
        clock: Clock = utc_now,
        suppress_seconds: float = 30.0,
        rate_limit: int = 5,
        rate_window_seconds: float = 60.0,
        critical_pattern: str = "Backend server",
    ) -> None:
        self._clock = clock
        self.suppress_seconds = suppress_seconds
        self.rate_limit = rate_limit
        self.rate_window_seconds = rate_window_seconds
        self.critical_pattern = critical_pattern

        self._recent: Dict[Tuple[str, str, str], datetime] = {}
        self._counts: Dict[Tuple[str, str], List[datetime]] = {}

    @classmethod
    def from_settings(cls, settings: Settings, clock: Clock = utc_now) -> "NotificationFilter":
        return cls(
            clock=clock,
            suppress_seconds=settings.NOTIFICATION_SUPPRESS_SECONDS,
            rate_limit=settings.NOTIFICATION_RATE_LIMIT,
            rate_window_seconds=settings.NOTIFICATION_RATE_WINDOW_SECONDS,
            critical_pattern=settings.NOTIFICATION_CRITICAL_PATTERN,
        )

    def should_show(
        self,
        message: str,
        severity: Severity | str = Severity.INFO,
        category: str = "general",
    ) -> bool:
        severity = Severity(severity)
        now = self._clock()

        if severity == Severity.ERROR and self.critical_pattern and self.critical_pattern in message:
            return True

        message_key = (category, severity.value, message)
        last_shown = self._recent.get(message_key)
        if last_shown is not None and (now - last_shown).total_seconds() < self.suppress_seconds:
            return False

        rate_key = (category, severity.value)
        recent = [
            ts for ts in self._counts.get(rate_key, [])
            if (now - ts).total_seconds() < self.rate_window_seconds
        ]
        self._counts[rate_key] = recent
        if len(recent) >= self.rate_limit:
            return False

        self._recent[message_key] = now
        recent.append(now)
        return True

    @staticmethod
    def should_show_connection_notification(
        status: RealtimeStatus | str,
        attempts: int = 0,
        is_initial: bool = False,
    ) -> bool:
        """
        - connected:    only the first-ever connection or one that follows
                        failed attempts.
        - disconnected: never.
        - error:        only for the first two failed attempts.
        """
        status = RealtimeStatus(status)
        if status == RealtimeStatus.CONNECTED:
            return is_initial or attempts > 0
        if status == RealtimeStatus.DISCONNECTED:
            return False
        if status == RealtimeStatus.ERROR:
            return attempts <= 2
        return True

    def cleanup(self) -> None:
        """Drop bookkeeping older than twice the suppression window."""
        now = self._clock()
        horizon = self.suppress_seconds * 2

        for key, ts in list(self._recent.items()):
            if (now - ts).total_seconds() > horizon:
                del self._recent[key]

        for key, timestamps in list(self._counts.items()):
            recent = [ts for ts in timestamps if (now - ts).total_seconds() <= horizon]
            if recent:
                self._counts[key] = recent
            else:
                del self._counts[key]

    def reset(self) -> None:
        self._recent.clear()
        self._counts.clear()

    @property
    def tracked_keys(self) -> int:
        return len(self._recent) + len(self._counts)


class NotificationQueue:
    """
    Holds the notifications currently visible to the user.

    Accepted entries expire after ``duration_ms`` unless ``auto_hide`` is
    false (the default for errors), in which case they stay until dismissed.
    Expiry is scheduled on the running event loop when there is one and is
    also enforced lazily by `active()`.
    """

    def __init__(
        self,
        notification_filter: NotificationFilter | None = None,
        clock: Clock = utc_now,
        default_duration_ms: int = 4000,
        cleanup_interval_seconds: float = 60.0,
    ) -> None:
        self.filter = notification_filter or NotificationFilter(clock=clock)
        self._clock = clock
        self._default_duration_ms = default_duration_ms
        self._cleanup_interval = cleanup_interval_seconds

        self._entries: Dict[int, NotificationEntry] = {}
        self._timers: Dict[int, asyncio.TimerHandle] = {}
        self._ids = itertools.count(1)
        self._cleanup_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings: Settings, clock: Clock = utc_now) -> "NotificationQueue":
        return cls(
            notification_filter=NotificationFilter.from_settings(settings, clock=clock),
            clock=clock,
            default_duration_ms=settings.NOTIFICATION_DEFAULT_DURATION_MS,
            cleanup_interval_seconds=settings.NOTIFICATION_CLEANUP_SECONDS,
        )

    # ------------------------------------------------------------------
    # Showing
    # ------------------------------------------------------------------
    def notify(
        self,
        message: str,
        severity: Severity | str = Severity.INFO,
        category: str = "general",
        auto_hide: Optional[bool] = None,
        duration_ms: Optional[int] = None,
    ) -> Optional[NotificationEntry]:
        """
        Show ``message`` if the filter lets it through.

        Returns the accepted entry, or None when it was suppressed.
        """
        severity = Severity(severity)
        if not self.filter.should_show(message, severity, category):
            logger.debug("Suppressed %s notification in %s: %s", severity.value, category, message)
            return None
        return self._push(message, severity, category, auto_hide, duration_ms)

    def success(self, message: str, category: str = "general", **options) -> Optional[NotificationEntry]:
        return self.notify(message, Severity.SUCCESS, category, **options)

    def info(self, message: str, category: str = "general", **options) -> Optional[NotificationEntry]:
        return self.notify(message, Severity.INFO, category, **options)

    def warning(self, message: str, category: str = "general", **options) -> Optional[NotificationEntry]:
        return self.notify(message, Severity.WARNING, category, **options)

    def error(self, message: str, category: str = "general", **options) -> Optional[NotificationEntry]:
        return self.notify(message, Severity.ERROR, category, **options)

    def notify_connection(
        self,
        status: RealtimeStatus | str,
        attempts: int = 0,
        initial: bool = False,
        error: Optional[str] = None,
    ) -> Optional[NotificationEntry]:
        status = RealtimeStatus(status)
        if status == RealtimeStatus.CONNECTING:
            return None
        if not self.filter.should_show_connection_notification(status, attempts, initial):
            return None

        if status == RealtimeStatus.CONNECTED:
            return self.success("Real-time connection established", category="connection")
        return self.error(
            f"Real-time connection error: {error or 'unknown error'}",
            category="connection",
        )

    def _push(
        self,
        message: str,
        severity: Severity,
        category: str,
        auto_hide: Optional[bool],
        duration_ms: Optional[int],
    ) -> NotificationEntry:
        if auto_hide is None:
            auto_hide = severity != Severity.ERROR

        entry = NotificationEntry(
            id=next(self._ids),
            message=message,
            severity=severity,
            category=category,
            created_at=self._clock(),
            auto_hide=auto_hide,
            duration_ms=self._default_duration_ms if duration_ms is None else duration_ms,
        )
        self._entries[entry.id] = entry

        if entry.auto_hide:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
            if loop is not None:
                self._timers[entry.id] = loop.call_later(
                    entry.duration_ms / 1000.0, self.dismiss, entry.id
                )
        return entry

    # ------------------------------------------------------------------
    # Reading / dismissing
    # ------------------------------------------------------------------
    def active(self) -> List[NotificationEntry]:
        now = self._clock()
        for entry_id, entry in list(self._entries.items()):
            expires_at = entry.expires_at
            if expires_at is not None and expires_at <= now:
                self.dismiss(entry_id)
        return list(self._entries.values())

    def get(self, entry_id: int) -> Optional[NotificationEntry]:
        return self._entries.get(entry_id)

    def dismiss(self, entry_id: int) -> bool:
        timer = self._timers.pop(entry_id, None)
        if timer is not None:
            timer.cancel()
        return self._entries.pop(entry_id, None) is not None

    def clear(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._cleanup_interval)
            self.filter.cleanup()

    def start(self) -> None:
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())

    async def close(self) -> None:
        task, self._cleanup_task = self._cleanup_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
