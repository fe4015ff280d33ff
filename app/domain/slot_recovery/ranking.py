"""
Candidate ranking for slot offers.

Order: tier priority (top, then neutral or unscored, then risk), higher score
first (unscored counts as 50), most recently computed score first, then
customer id. The same input always yields the same order.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

TIER_TOP = "top"
TIER_NEUTRAL = "neutral"
TIER_RISK = "risk"

TIER_PRIORITY = {TIER_TOP: 1, TIER_RISK: 3}
DEFAULT_TIER_PRIORITY = 2
DEFAULT_SCORE = 50

_EPOCH = datetime(1970, 1, 1)


@dataclass(frozen=True)
class OfferCandidate:
    customer_id: int
    phone: str
    full_name: str = ""
    tier: Optional[str] = None
    score: Optional[int] = None
    computed_at: Optional[datetime] = None


def tier_priority(tier: Optional[str]) -> int:
    return TIER_PRIORITY.get(tier, DEFAULT_TIER_PRIORITY)


def effective_score(score: Optional[int]) -> int:
    return DEFAULT_SCORE if score is None else score


def ranking_key(candidate: OfferCandidate) -> tuple:
    if candidate.computed_at is None:
        computed = (1, 0.0)
    else:
        # Newest first, unscored last
        computed = (0, -(candidate.computed_at - _EPOCH).total_seconds())
    return (
        tier_priority(candidate.tier),
        -effective_score(candidate.score),
        computed,
        candidate.customer_id,
    )


def rank_candidates(
    candidates: Iterable[OfferCandidate], exclude_risk: bool = False
) -> list[OfferCandidate]:
    pool = [c for c in candidates if not (exclude_risk and c.tier == TIER_RISK)]
    return sorted(pool, key=ranking_key)
