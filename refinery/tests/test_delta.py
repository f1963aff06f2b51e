"""Delta engine: detection strategies, clustering, scoring, classification."""
from __future__ import annotations

from datetime import timedelta

import pytest

from refinery.delta import (
    ColdStartDetector,
    DeltaEngine,
    MatureBaselineDetector,
    cluster_friction,
    collect_evidence,
    friction_theme,
    persist_signals,
    recency_decay,
    select_detector,
    signal_strength,
)
from refinery.models import SignalRecord
from refinery.schemas import DailySnapshot, EntityBaseline, Signal
from refinery.tests.factories import NOW, entity, friction_point, notable, scrubber_output


def _mature(name: str, mentions_per_day: float, sentiment: float = 0.5, friction_rate: float = 0.0):
    snaps = [DailySnapshot(date=f"2025-03-0{d}", mentions=int(mentions_per_day),
                           sentiment=sentiment, friction_rate=friction_rate) for d in (7, 8, 9)]
    return EntityBaseline(entity_name=name, category="tool", mentions_per_day=mentions_per_day,
                          sentiment=sentiment, friction_rate=friction_rate, snapshots=snaps)


def _prior(name: str, velocity: float, age: timedelta = timedelta(days=1)) -> Signal:
    return Signal(type="velocity_spike", entities=[name], strength=0.5, mention_velocity=velocity,
                  sentiment_delta=0, friction_spike=0, direction="new", first_detected=NOW - age)


@pytest.fixture()
def engine(clock):
    return DeltaEngine(clock=clock)


class TestScoring:
    @pytest.mark.parametrize("hours,decay", [(0, 1.0), (5.9, 1.0), (6, 0.8), (23, 0.8), (24, 0.5), (47, 0.5), (48, 0.2)])
    def test_recency_decay(self, hours, decay):
        assert recency_decay(hours) == decay

    def test_strength_caps_terms_and_rounds(self):
        assert signal_strength(5, 5, 5, 5) == 1.0
        assert signal_strength(0.5, 0.6, 0.1, 0) == 0.4  # 0.2 + 0.18 + 0.02
        assert signal_strength(1, 1, 1, 1, hours_old=30) == 0.5

    def test_strength_never_negative(self):
        assert signal_strength(-2, 0, 0, 0) == 0.0


class TestDetection:
    def test_strategy_selected_by_maturity(self):
        assert isinstance(select_detector(None), ColdStartDetector)
        assert isinstance(select_detector(_mature("vite", 5)), MatureBaselineDetector)

    def test_evidence_from_friction_and_whole_word_notables(self):
        outputs = [scrubber_output(
            [entity("Go", 3)],
            friction=[friction_point("go", ids=["a", "b"])],
            notables=[notable("b", "Go generics help"), notable("c", "Google cloud"),
                      notable("d", "why GO modules break")],
        )]
        assert collect_evidence("go", outputs) == ["a", "b", "d"]

    def test_evidence_matches_names_with_symbols(self):
        outputs = [scrubber_output(notables=[
            notable("n1", "C++ compile times are brutal"),
            notable("n2", "Migrating to .NET 8 broke our CI"),
            notable("n3", "the .network tab is empty"),
            notable("n4", "asp.netcore rewrite"),
        ])]
        assert collect_evidence("c++", outputs) == ["n1"]
        assert collect_evidence(".net", outputs) == ["n2"]

    def test_empty_input_yields_nothing(self, engine):
        result = engine.run([], {}, [])
        assert result.signals == []
        assert result.qualifying == []
        assert result.total_found == 0


class TestColdStart:
    def test_ten_mentions_is_new_emergence(self, engine):
        result = engine.run([scrubber_output([entity("Bun", 10, sentiment="positive")])], {}, [])
        [signal] = result.signals
        assert signal.type == "new_emergence"
        assert signal.direction == "new"
        assert signal.mention_velocity == 10
        assert signal.sentiment_delta == 0

    def test_friction_alone_signals(self, engine):
        result = engine.run([scrubber_output([entity("Bun", 1, friction=True)])], {}, [])
        [signal] = result.signals
        assert signal.type == "new_emergence"
        assert signal.friction_spike == 1.0

    def test_quiet_entity_ignored(self, engine):
        assert engine.run([scrubber_output([entity("Bun", 9)])], {}, []).signals == []


class TestMature:
    def test_tenfold_velocity_with_slower_prior_is_accelerating_spike(self, engine):
        baselines = {"vite": _mature("vite", 5)}
        outputs = [scrubber_output([entity("Vite", 50)])]
        [signal] = engine.run(outputs, baselines, [_prior("vite", 3.0)]).signals
        assert signal.type == "velocity_spike"
        assert signal.direction == "accelerating"
        assert signal.mention_velocity == 10.0
        assert signal.strength == 0.4
        assert signal.first_detected == NOW

    def test_direction_uses_most_recent_prior(self, engine):
        baselines = {"vite": _mature("vite", 5)}
        outputs = [scrubber_output([entity("Vite", 50)])]
        prior = [_prior("vite", 20.0, timedelta(hours=2)), _prior("vite", 3.0, timedelta(days=2))]
        [signal] = engine.run(outputs, baselines, prior).signals
        assert signal.direction == "decelerating"

    def test_sentiment_flip_takes_precedence(self, engine):
        baselines = {"vite": _mature("vite", 5, sentiment=0.9)}
        outputs = [scrubber_output([entity("Vite", 50, sentiment="negative")])]
        [signal] = engine.run(outputs, baselines, [_prior("vite", 3.0)]).signals
        assert signal.type == "sentiment_flip"
        assert signal.sentiment_delta == -0.9

    def test_within_thresholds_not_signaling(self, engine):
        baselines = {"vite": _mature("vite", 5)}
        assert engine.run([scrubber_output([entity("Vite", 9)])], baselines, []).signals == []

    def test_zero_baseline_uses_raw_mentions(self, engine):
        baselines = {"vite": _mature("vite", 0)}
        [signal] = engine.run([scrubber_output([entity("Vite", 3)])], baselines, []).signals
        assert signal.mention_velocity == 3.0


class TestClustering:
    def test_single_entity_never_clusters(self):
        outputs = [scrubber_output([entity("vite", 2, friction=True)],
                                   friction=[friction_point("vite", "slow build time")])]
        assert cluster_friction(outputs, {"vite"}) == []

    def test_shared_context_clusters(self):
        outputs = [scrubber_output(
            [entity("Vite", 2, friction=True, context="migration"),
             entity("Webpack", 3, friction=True, context="migration")],
            friction=[friction_point("webpack", ids=["w1"]), friction_point("vite", ids=["v1"])],
        )]
        [cluster] = cluster_friction(outputs, {"vite", "webpack"})
        assert cluster.entities == ["vite", "webpack"]
        assert cluster.theme == "migration"
        assert cluster.evidence_item_ids == ["w1", "v1"]

    def test_keyword_pass_excludes_context_clustered(self):
        outputs = [scrubber_output(
            [entity("a", 1, friction=True, context="complaint"),
             entity("b", 1, friction=True, context="complaint"),
             entity("c", 1, friction=True, context="question"),
             entity("d", 1, friction=True, context="praise")],
            friction=[friction_point("a", "Performance regressions"),
                      friction_point("c", "performance on arm"),
                      friction_point("d", "performance cliffs")],
        )]
        clusters = cluster_friction(outputs, {"a", "b", "c", "d"})
        assert [(c.theme, c.entities) for c in clusters] == [
            ("complaint", ["a", "b"]),
            ("performance", ["c", "d"]),
        ]

    def test_theme_falls_back_to_first_three_words(self):
        assert friction_theme("Type safety is lacking") == "type safety"
        assert friction_theme("Flaky  hot reload on windows") == "flaky hot reload"

    def test_cluster_signal_fields(self, engine):
        outputs = [scrubber_output(
            [entity("Vite", 12, friction=True, context="complaint"),
             entity("Webpack", 20, friction=True, context="complaint")],
        )]
        result = engine.run(outputs, {}, [])
        clusters = [s for s in result.signals if s.type == "friction_cluster"]
        [cluster] = clusters
        assert cluster.entities == ["vite", "webpack"]
        assert cluster.friction_theme == "complaint"
        assert cluster.mention_velocity == 20
        assert cluster.direction == "new"
        # deviation 1.0*0.4 + 0.7*0.3 + 0 + 0.5*0.1
        assert cluster.strength == 0.66
        assert cluster in result.qualifying

    def test_cluster_direction_decelerating_when_members_slowed(self, engine):
        outputs = [scrubber_output(
            [entity("Vite", 12, friction=True), entity("Webpack", 12, friction=True)],
        )]
        prior = [_prior("vite", 30.0), _prior("webpack", 40.0)]
        [cluster] = [s for s in engine.run(outputs, {}, prior).signals if s.type == "friction_cluster"]
        assert cluster.direction == "decelerating"


class TestQualification:
    def test_threshold_is_inclusive(self):
        engine = DeltaEngine(clock=lambda: NOW)
        baselines = {"vite": _mature("vite", 5)}
        result = engine.run([scrubber_output([entity("Vite", 50)])], baselines, [_prior("vite", 3)])
        assert result.signals[0].strength == 0.4
        assert result.qualifying == result.signals

    def test_weak_signal_does_not_qualify(self, engine):
        result = engine.run([scrubber_output([entity("Bun", 1, friction=True)])], {}, [])
        assert result.total_found == 1
        assert result.qualifying == []

    @pytest.mark.asyncio
    async def test_persist_signals(self, store, engine):
        result = engine.run([scrubber_output([entity("Bun", 13)])], {}, [])
        await persist_signals(store, result.signals)
        rec = await store.get(SignalRecord, result.signals[0].id)
        assert Signal.from_record(rec).entities == ["bun"]
