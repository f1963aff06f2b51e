"""Baseline tracker: rolling per-entity history used by the delta engine.

Each entity keeps at most :data:`WINDOW_DAYS` daily snapshots, newest first,
one per date. The three rolling averages are plain means over whatever
snapshots are retained. Entities absent from today's outputs are not
touched, so a quiet day does not decay anything.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from statistics import fmean

from refinery.models import EntityBaselineRecord
from refinery.schemas import DailySnapshot, EntityBaseline, ScrubberOutput
from refinery.store import DocumentStore
from refinery.utils import as_utc, json_dump, json_parse, round2, utcnow

log = logging.getLogger(__name__)

WINDOW_DAYS = 7
MATURITY_DAYS = 3
LOAD_BATCH_SIZE = 100

SENTIMENT_VALUES = {"positive": 1.0, "neutral": 0.5, "negative": 0.0}


@dataclass
class EntityStats:
    """Today's aggregate for one entity across one or more scrubber outputs."""
    mentions: int = 0
    sentiment_sum: float = 0.0
    sentiment_weight: int = 0
    friction_count: int = 0
    total_count: int = 0
    category: str = ""

    @property
    def sentiment(self) -> float:
        if self.sentiment_weight == 0:
            return 0.5
        return self.sentiment_sum / self.sentiment_weight

    @property
    def friction_rate(self) -> float:
        if self.total_count == 0:
            return 0.0
        return self.friction_count / self.total_count


def aggregate(outputs: Iterable[ScrubberOutput]) -> dict[str, EntityStats]:
    """Per-entity stats keyed by case-folded name, in first-seen order.

    Sentiment is mention-weighted; friction rate is the share of
    observations flagged as friction.
    """
    stats: dict[str, EntityStats] = {}
    for output in outputs:
        for entity in output.entities:
            key = entity.name.casefold()
            s = stats.get(key)
            if s is None:
                s = stats[key] = EntityStats(category=entity.category)
            s.mentions += entity.mentions
            s.sentiment_sum += SENTIMENT_VALUES.get(entity.sentiment, 0.5) * entity.mentions
            s.sentiment_weight += entity.mentions
            s.friction_count += 1 if entity.friction_signal else 0
            s.total_count += 1
    return stats


def is_mature(baseline: EntityBaseline | None) -> bool:
    """Enough history for deviation-based detection."""
    return baseline is not None and len(baseline.snapshots) >= MATURITY_DAYS


def merge_snapshot(baseline: EntityBaseline, snapshot: DailySnapshot) -> list[DailySnapshot]:
    """Replace any snapshot for the same date, newest first, capped to the window."""
    snapshots = [s for s in baseline.snapshots if s.date != snapshot.date]
    snapshots.append(snapshot)
    snapshots.sort(key=lambda s: s.date, reverse=True)
    return snapshots[:WINDOW_DAYS]


# ---------------------------------------------------------------------------
# Record conversion
# ---------------------------------------------------------------------------


def baseline_from_record(rec: EntityBaselineRecord) -> EntityBaseline:
    return EntityBaseline(
        entity_name=rec.id,
        category=rec.category,
        mentions_per_day=rec.mentions_per_day,
        sentiment=rec.sentiment,
        friction_rate=rec.friction_rate,
        last_updated=as_utc(rec.last_updated),
        snapshots=json_parse(rec.snapshots_json, []),
    )


def baseline_to_record(baseline: EntityBaseline) -> EntityBaselineRecord:
    return EntityBaselineRecord(
        id=baseline.entity_name,
        category=baseline.category,
        mentions_per_day=baseline.mentions_per_day,
        sentiment=baseline.sentiment,
        friction_rate=baseline.friction_rate,
        last_updated=baseline.last_updated,
        snapshots_json=json_dump([s.model_dump() for s in baseline.snapshots]),
    )


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------


class BaselineTracker:
    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    async def load(self, keys: list[str]) -> dict[str, EntityBaseline]:
        records = await self.store.get_many(EntityBaselineRecord, keys, batch_size=LOAD_BATCH_SIZE)
        return {key: baseline_from_record(rec) for key, rec in records.items()}

    async def update(self, outputs: Iterable[ScrubberOutput]) -> tuple[int, dict[str, EntityBaseline]]:
        """Fold today's outputs into the stored baselines.

        Returns the number of baselines written and the full map of
        baselines for today's entities after the update.
        """
        today_stats = aggregate(outputs)
        baselines = await self.load(list(today_stats))
        now = self.clock()
        today = now.date().isoformat()

        updated = 0
        for key, stats in today_stats.items():
            snapshot = DailySnapshot(
                date=today,
                mentions=stats.mentions,
                sentiment=round2(stats.sentiment),
                friction_rate=round2(stats.friction_rate),
            )
            existing = baselines.get(key)
            if existing is None:
                baseline = EntityBaseline(
                    entity_name=key,
                    category=stats.category,
                    mentions_per_day=stats.mentions,
                    sentiment=snapshot.sentiment,
                    friction_rate=snapshot.friction_rate,
                    last_updated=now,
                    snapshots=[snapshot],
                )
            else:
                snapshots = merge_snapshot(existing, snapshot)
                baseline = EntityBaseline(
                    entity_name=existing.entity_name,
                    category=stats.category or existing.category,
                    mentions_per_day=round2(fmean(s.mentions for s in snapshots)),
                    sentiment=round2(fmean(s.sentiment for s in snapshots)),
                    friction_rate=round2(fmean(s.friction_rate for s in snapshots)),
                    last_updated=now,
                    snapshots=snapshots,
                )
            await self.store.put(baseline_to_record(baseline))
            baselines[key] = baseline
            updated += 1

        log.info("Updated %d entity baselines", updated)
        return updated, baselines
