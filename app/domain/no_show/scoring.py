"""No-show score and risk for a new booking, as pure functions over attendance history"""

import math
from dataclasses import dataclass, field
from typing import Optional

from ..appointments.constants import RISK_HIGH, RISK_LOW, RISK_MEDIUM

BASE_SCORE = 75
COMPLETED_POINTS = 5
COMPLETED_CAP = 25
NO_SHOW_PENALTY = -15
LATE_CANCEL_PENALTY = -5
ON_TIME_CANCEL_PENALTY = -2

LAST_30_DAYS_MULTIPLIER = 1.5
DAYS_31_TO_90_MULTIPLIER = 1
DAYS_91_TO_180_MULTIPLIER = 0.5

SHORT_LEAD_TIME_HOURS = 24
SHORT_LEAD_TIME_PENALTY = -10
EARLY_MORNING_START_HOUR = 6
EARLY_MORNING_END_HOUR = 9
EARLY_MORNING_PENALTY = -5
NO_PAYMENT_PENALTY = -5

MIN_SCORE = 0
MAX_SCORE = 100

# First-time customers
DEFAULT_SCORE = 50
DEFAULT_RISK = RISK_MEDIUM

LOW_MIN_SCORE = 70
LOW_MAX_NO_SHOWS_IN_90_DAYS = 0
HIGH_MAX_SCORE = 39
HIGH_MIN_NO_SHOWS_IN_90_DAYS = 2


@dataclass
class AttendanceCounts:
    completed: int = 0
    no_shows: int = 0
    late_cancels: int = 0
    on_time_cancels: int = 0

    @property
    def total(self) -> int:
        return self.completed + self.no_shows + self.late_cancels + self.on_time_cancels


@dataclass
class AttendanceHistory:
    last_30_days: AttendanceCounts = field(default_factory=AttendanceCounts)
    days_31_to_90: AttendanceCounts = field(default_factory=AttendanceCounts)
    days_91_to_180: AttendanceCounts = field(default_factory=AttendanceCounts)

    def buckets(self):
        return (
            (self.last_30_days, LAST_30_DAYS_MULTIPLIER),
            (self.days_31_to_90, DAYS_31_TO_90_MULTIPLIER),
            (self.days_91_to_180, DAYS_91_TO_180_MULTIPLIER),
        )

    def totals(self) -> AttendanceCounts:
        total = AttendanceCounts()
        for counts, _ in self.buckets():
            total.completed += counts.completed
            total.no_shows += counts.no_shows
            total.late_cancels += counts.late_cancels
            total.on_time_cancels += counts.on_time_cancels
        return total

    def no_shows_last_90_days(self) -> int:
        return self.last_30_days.no_shows + self.days_31_to_90.no_shows


@dataclass(frozen=True)
class BookingContext:
    lead_time_hours: float
    appointment_hour: int
    payment_required: bool


def calculate_no_show_score(history: AttendanceHistory, context: Optional[BookingContext] = None) -> int:
    score = BASE_SCORE
    completed_points = 0

    for counts, multiplier in history.buckets():
        completed_points += counts.completed * COMPLETED_POINTS * multiplier
        score += counts.no_shows * NO_SHOW_PENALTY * multiplier
        score += counts.late_cancels * LATE_CANCEL_PENALTY * multiplier
        score += counts.on_time_cancels * ON_TIME_CANCEL_PENALTY * multiplier

    score += min(completed_points, COMPLETED_CAP)

    if context is not None:
        if context.lead_time_hours < SHORT_LEAD_TIME_HOURS:
            score += SHORT_LEAD_TIME_PENALTY
        if EARLY_MORNING_START_HOUR <= context.appointment_hour < EARLY_MORNING_END_HOUR:
            score += EARLY_MORNING_PENALTY
        if not context.payment_required:
            score += NO_PAYMENT_PENALTY

    # Halves round up
    return max(MIN_SCORE, min(MAX_SCORE, math.floor(score + 0.5)))


def assign_no_show_risk(score: int, no_shows_last_90_days: int) -> str:
    if score >= LOW_MIN_SCORE and no_shows_last_90_days <= LOW_MAX_NO_SHOWS_IN_90_DAYS:
        return RISK_LOW
    if score <= HIGH_MAX_SCORE or no_shows_last_90_days >= HIGH_MIN_NO_SHOWS_IN_90_DAYS:
        return RISK_HIGH
    return RISK_MEDIUM
