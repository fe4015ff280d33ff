"""Reliability score and tier, as pure functions over appointment counts"""

import math
from dataclasses import dataclass, field

BASE_SCORE = 50
SETTLED_POINTS = 10
SETTLED_CAP = 50
VOIDED_PENALTY = -20
REFUNDED_PENALTY = -5
LATE_CANCEL_PENALTY = -10
MIN_SCORE = 0
MAX_SCORE = 100

LAST_30_DAYS_MULTIPLIER = 2
DAYS_31_TO_90_MULTIPLIER = 1
OVER_90_DAYS_MULTIPLIER = 0.5

TOP_MIN_SCORE = 80
TOP_MAX_VOIDS_IN_90_DAYS = 0
RISK_MAX_SCORE = 39
RISK_MIN_VOIDS_IN_90_DAYS = 2


@dataclass
class AppointmentCounts:
    settled: int = 0
    voided: int = 0
    refunded: int = 0
    late_cancels: int = 0


@dataclass
class RecencyData:
    last_30_days: AppointmentCounts = field(default_factory=AppointmentCounts)
    days_31_to_90: AppointmentCounts = field(default_factory=AppointmentCounts)
    over_90_days: AppointmentCounts = field(default_factory=AppointmentCounts)

    def buckets(self):
        return (
            (self.last_30_days, LAST_30_DAYS_MULTIPLIER),
            (self.days_31_to_90, DAYS_31_TO_90_MULTIPLIER),
            (self.over_90_days, OVER_90_DAYS_MULTIPLIER),
        )

    def totals(self) -> AppointmentCounts:
        total = AppointmentCounts()
        for counts, _ in self.buckets():
            total.settled += counts.settled
            total.voided += counts.voided
            total.refunded += counts.refunded
            total.late_cancels += counts.late_cancels
        return total


def calculate_score(recency: RecencyData) -> int:
    score = BASE_SCORE
    settled_contribution = 0

    for counts, multiplier in recency.buckets():
        settled_contribution += counts.settled * SETTLED_POINTS * multiplier
        score += counts.voided * VOIDED_PENALTY * multiplier
        score += counts.refunded * REFUNDED_PENALTY * multiplier
        score += counts.late_cancels * LATE_CANCEL_PENALTY * multiplier

    score += min(settled_contribution, SETTLED_CAP)
    # Halves round up
    return max(MIN_SCORE, min(MAX_SCORE, math.floor(score + 0.5)))


def assign_tier(score: int, voided_last_90_days: int) -> str:
    if score >= TOP_MIN_SCORE and voided_last_90_days <= TOP_MAX_VOIDS_IN_90_DAYS:
        return "top"
    if score <= RISK_MAX_SCORE or voided_last_90_days >= RISK_MIN_VOIDS_IN_90_DAYS:
        return "risk"
    return "neutral"
