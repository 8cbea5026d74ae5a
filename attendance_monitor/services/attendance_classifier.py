# attendance_monitor/services/attendance_classifier.py
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime

from attendance_monitor.core.config import Settings
from attendance_monitor.schemas.participant import AttendanceStatus


def round_half_up(value: float) -> int:
    """Round with halves going up (2.5 -> 3), unlike the builtin round()."""
    return int(math.floor(value + 0.5))


def elapsed_minutes(start: datetime, end: datetime) -> int:
    """
    Whole minutes between two timestamps, rounded half-up and never negative.
    """
    seconds = (end - start).total_seconds()
    return max(round_half_up(seconds / 60.0), 0)


@dataclass(frozen=True)
class AttendanceClassifier:
    """
    Applies the attendance rules to a participant's activity and duration.

    Rules
    -----
    1) Active participant                         => IN_PROGRESS
    2) No known meeting length:
         duration < left_early_minutes            => LEFT_EARLY
         otherwise                                => COMPLETED
    3) Known meeting length (percentage based):
         duration <= 0                            => ABSENT
         percentage >= threshold                  => PRESENT
         percentage >= partial_threshold          => PARTIAL
         percentage >= late_threshold             => LATE
         otherwise                                => ABSENT
    """

    left_early_minutes: int = 5
    threshold: int = 85
    partial_threshold: int = 70
    late_threshold: int = 30

    @classmethod
    def from_settings(cls, settings: Settings) -> "AttendanceClassifier":
        return cls(
            left_early_minutes=settings.LEFT_EARLY_MINUTES,
            threshold=settings.ATTENDANCE_THRESHOLD_PERCENT,
            partial_threshold=settings.PARTIAL_THRESHOLD_PERCENT,
            late_threshold=settings.LATE_THRESHOLD_PERCENT,
        )

    @staticmethod
    def percentage(
        duration: int,
        total_meeting_duration: int | None,
        is_active: bool = False,
    ) -> int:
        """
        Attendance percentage (0-100) of ``duration`` against the meeting length.
        """
        if not duration and not is_active:
            return 0
        if not total_meeting_duration or total_meeting_duration <= 0:
            return 100 if is_active else 0
        if is_active and duration <= 0:
            return 100

        value = min(round_half_up(duration / total_meeting_duration * 100), 100)
        return max(value, 0)

    def classify(
        self,
        is_active: bool,
        duration: int,
        total_meeting_duration: int | None = None,
    ) -> AttendanceStatus:
        """
        Determine the AttendanceStatus for the given activity and duration.
        """
        if is_active:
            return AttendanceStatus.IN_PROGRESS

        if total_meeting_duration is None:
            if duration < self.left_early_minutes:
                return AttendanceStatus.LEFT_EARLY
            return AttendanceStatus.COMPLETED

        if duration <= 0:
            return AttendanceStatus.ABSENT

        pct = self.percentage(duration, total_meeting_duration, is_active=False)
        if pct >= self.threshold:
            return AttendanceStatus.PRESENT
        if pct >= self.partial_threshold:
            return AttendanceStatus.PARTIAL
        if pct >= self.late_threshold:
            return AttendanceStatus.LATE
        return AttendanceStatus.ABSENT
