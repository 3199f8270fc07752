"""Deterministic 0-10 lead score.

Contact details and preferences are worth a point each.  Budget and
urgency are worth two points when they signal a high-value or immediate
lead, one point otherwise.
"""

from __future__ import annotations

from leadchat.models.lead import LeadRecord, Urgency

MAX_SCORE = 10

HIGH_VALUE_BUDGET_MARKERS = ("500k", "750k", "1m", "500,000", "750,000", "1,000,000")

IMMEDIATE_URGENCIES = frozenset({Urgency.ASAP, Urgency.IMMEDIATE, Urgency.URGENT, Urgency.SOON})

HIGH_TIER_MIN = 7
MEDIUM_TIER_MIN = 4


def score(record: LeadRecord) -> int:
    points = 0

    for field in ("name", "email", "phone", "rent_or_buy", "area", "amenities"):
        if record.is_set(field):
            points += 1

    if record.budget_range:
        budget = record.budget_range.lower()
        if any(marker in budget for marker in HIGH_VALUE_BUDGET_MARKERS):
            points += 2
        else:
            points += 1

    if record.urgency is not None:
        points += 2 if record.urgency in IMMEDIATE_URGENCIES else 1

    return min(points, MAX_SCORE)


def score_tier(value: int) -> str:
    """Bucket a score the way the admin lead list filters it."""
    if value >= HIGH_TIER_MIN:
        return "high"
    if value >= MEDIUM_TIER_MIN:
        return "medium"
    return "low"
