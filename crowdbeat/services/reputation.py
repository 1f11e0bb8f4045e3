"""
Reputation → vote weight.

Established contributors get proportionally more influence through a
continuous weight derived from their reputation score, instead of hard
multipliers that low-weight sock-puppet accounts could game:

    weight = 1 + score / 1000     rounded half-up to 2 decimals, within [1, 5]

The weight is snapshotted onto each vote row when the vote is cast and never
recomputed when the voter's reputation changes later.
"""

import math

MIN_VOTE_WEIGHT = 1.0
MAX_VOTE_WEIGHT = 5.0

# score thresholds, highest first
REPUTATION_LEVELS = (
    (10000, "diamond"),
    (5000, "platinum"),
    (2000, "gold"),
    (500, "silver"),
    (0, "bronze"),
)


def _round_half_up(value: float, digits: int = 2) -> float:
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def vote_weight(score) -> float:
    """Return the vote weight for a reputation *score* (None counts as 0)."""
    raw = 1 + (score or 0) / 1000
    return min(max(_round_half_up(raw), MIN_VOTE_WEIGHT), MAX_VOTE_WEIGHT)


def reputation_level(score) -> str:
    score = score or 0
    for threshold, level in REPUTATION_LEVELS:
        if score >= threshold:
            return level
    return "bronze"


def weight_breakdown(score) -> dict:
    """Explain a weight for UI display: base, reputation bonus, total, level."""
    score = score or 0
    bonus = min(max(score / 1000, 0), MAX_VOTE_WEIGHT - MIN_VOTE_WEIGHT)
    return {
        "base_weight": MIN_VOTE_WEIGHT,
        "reputation_bonus": _round_half_up(bonus),
        "total_weight": vote_weight(score),
        "level": reputation_level(score),
    }
