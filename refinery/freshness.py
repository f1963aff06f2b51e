"""Freshness decay for opportunity briefs.

- under 12h: fresh, 1.00 -> 0.75
- 12h to 48h: warm, 0.75 -> 0.40
- 48h to 7d: cold, 0.40 -> 0.10 (floored)
- 7d and older: archived, 0
"""
from __future__ import annotations

from datetime import datetime
from typing import NamedTuple

from refinery.schemas import BriefStatus
from refinery.utils import as_utc, round2, utcnow


class Freshness(NamedTuple):
    score: float
    status: BriefStatus


def freshness_for_age(age_hours: float) -> Freshness:
    if age_hours < 12:
        return Freshness(round2(1.0 - (age_hours / 12) * 0.25), "fresh")
    if age_hours < 48:
        return Freshness(round2(0.75 - ((age_hours - 12) / 36) * 0.35), "warm")
    if age_hours < 168:
        return Freshness(round2(max(0.4 - ((age_hours - 48) / 120) * 0.3, 0.1)), "cold")
    return Freshness(0.0, "archived")


def compute_freshness(created_at: datetime, now: datetime | None = None) -> Freshness:
    now = now or utcnow()
    age_hours = (now - as_utc(created_at)).total_seconds() / 3600
    return freshness_for_age(max(age_hours, 0.0))
