# attendance_monitor/core/events.py
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List

from attendance_monitor.core.clock import utc_now

logger = logging.getLogger(__name__)


class EventName(str, Enum):
    """
    Named events exchanged between the core services and their consumers.
    """

    PARTICIPANT_JOINED = "participantJoined"
    PARTICIPANT_REMOVED = "participantRemoved"
    PARTICIPANT_UPDATED = "participantUpdated"
    MEETING_STARTED = "meetingStarted"
    MEETING_ENDED = "meetingEnded"
    REALTIME_UPDATE = "realtimeUpdate"
    REALTIME_HEARTBEAT = "realtimeHeartbeat"
    CONNECTION_STATUS = "connectionStatus"


@dataclass(frozen=True)
class Event:
    name: EventName
    detail: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)


Listener = Callable[[Event], None]


class EventBus:
    """
    Small in-process subject/observer registry.

    Listeners are plain callables invoked synchronously in subscription
    order. A failing listener is logged and does not stop delivery to the
    remaining listeners.
    """

    def __init__(self) -> None:
        self._listeners: Dict[EventName, List[Listener]] = defaultdict(list)

    def subscribe(self, name: EventName, listener: Listener) -> Callable[[], None]:
        """
        Register ``listener`` for ``name``.

        Returns a callable that removes the subscription again.
        """
        self._listeners[name].append(listener)

        def _unsubscribe() -> None:
            self.unsubscribe(name, listener)

        return _unsubscribe

    def unsubscribe(self, name: EventName, listener: Listener) -> None:
        listeners = self._listeners.get(name)
        if listeners and listener in listeners:
            listeners.remove(listener)

    def publish(self, name: EventName, **detail: Any) -> Event:
        event = Event(name=name, detail=detail)
        for listener in list(self._listeners.get(name, ())):
            try:
                listener(event)
            except Exception:
                logger.exception("Listener %r failed while handling %s", listener, name.value)
        return event

    def listener_count(self, name: EventName) -> int:
        return len(self._listeners.get(name, ()))

    def clear(self) -> None:
        self._listeners.clear()
