"""Baseline tracker: aggregation, rolling window, maturity."""
from __future__ import annotations

from datetime import timedelta

import pytest

from refinery.baselines import BaselineTracker, aggregate, baseline_to_record, is_mature
from refinery.models import EntityBaselineRecord
from refinery.schemas import DailySnapshot, EntityBaseline
from refinery.tests.factories import NOW, entity, scrubber_output


def _baseline(days: int, mentions: int = 4) -> EntityBaseline:
    snaps = [
        DailySnapshot(date=(NOW.date() - timedelta(days=d)).isoformat(),
                      mentions=mentions, sentiment=0.5, friction_rate=0.0)
        for d in range(1, days + 1)
    ]
    return EntityBaseline(entity_name="vite", category="tool", mentions_per_day=mentions,
                          sentiment=0.5, friction_rate=0.0, snapshots=snaps)


@pytest.mark.parametrize("days,mature", [(0, False), (1, False), (2, False), (3, True), (7, True)])
def test_is_mature(days, mature):
    assert is_mature(_baseline(days)) is mature


def test_no_baseline_is_not_mature():
    assert not is_mature(None)


class TestAggregate:
    def test_mention_weighted_sentiment_and_friction_rate(self):
        stats = aggregate([
            scrubber_output([entity("Vite", 3, sentiment="positive", friction=True)]),
            scrubber_output([entity("vite", 1, sentiment="negative")]),
        ])
        s = stats["vite"]
        assert s.mentions == 4
        assert s.sentiment == pytest.approx(0.75)
        assert s.friction_rate == pytest.approx(0.5)
        assert s.category == "framework"

    def test_zero_mentions_defaults_to_neutral(self):
        stats = aggregate([scrubber_output([entity("Vite", 0, sentiment="negative")])])
        assert stats["vite"].sentiment == 0.5

    def test_empty(self):
        assert aggregate([]) == {}


class TestUpdate:
    @pytest.mark.asyncio
    async def test_creates_new_baseline(self, store, clock):
        tracker = BaselineTracker(store, clock=clock)
        updated, baselines = await tracker.update([
            scrubber_output([entity("Vite", 6, sentiment="positive", friction=True)]),
        ])
        assert updated == 1
        b = baselines["vite"]
        assert b.mentions_per_day == 6
        assert b.sentiment == 1.0
        assert b.friction_rate == 1.0
        assert [s.date for s in b.snapshots] == ["2025-03-10"]
        assert await store.get(EntityBaselineRecord, "vite") is not None

    @pytest.mark.asyncio
    async def test_rolls_window_and_recomputes_means(self, store, clock):
        await store.put(baseline_to_record(_baseline(7, mentions=2)))
        tracker = BaselineTracker(store, clock=clock)
        _, baselines = await tracker.update([scrubber_output([entity("vite", 9)])])
        b = baselines["vite"]
        assert len(b.snapshots) == 7
        assert b.snapshots[0].date == "2025-03-10"
        assert b.snapshots[-1].date == "2025-03-04"
        assert b.mentions_per_day == 3.0  # (9 + 6*2) / 7

    @pytest.mark.asyncio
    async def test_same_day_replaces_snapshot(self, store, clock):
        tracker = BaselineTracker(store, clock=clock)
        await tracker.update([scrubber_output([entity("vite", 3)])])
        _, baselines = await tracker.update([scrubber_output([entity("vite", 5)])])
        b = baselines["vite"]
        assert len(b.snapshots) == 1
        assert b.snapshots[0].mentions == 5
        assert b.mentions_per_day == 5

    @pytest.mark.asyncio
    async def test_absent_entities_untouched(self, store, clock):
        await store.put(baseline_to_record(_baseline(3)))
        tracker = BaselineTracker(store, clock=clock)
        updated, baselines = await tracker.update([scrubber_output([entity("bun", 2)])])
        assert updated == 1
        assert "vite" not in baselines
        rec = await store.get(EntityBaselineRecord, "vite")
        assert rec.mentions_per_day == 4
