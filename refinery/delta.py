"""Stage 2: anomaly detection, friction clustering and signal scoring.

Detection
---------
Each entity in today's aggregate is checked by one of two detectors, chosen
by :func:`refinery.baselines.is_mature`:

- **Mature baseline**: deviation thresholds: velocity (today's mentions
  over the baseline's mentions/day) above 2.0, sentiment delta below -0.3,
  or friction spike above 0.2.
- **Cold start**: absolute thresholds: at least 10 mentions, or any
  friction observation.

Clustering
----------
Signaling entities flagged with friction are grouped by the mention
context the scrubber recorded. Entities left out of every context cluster
get a second pass grouped by a keyword theme pulled from their friction
point text. Either way a cluster needs two or more distinct entities.

Scoring
-------
``strength = (0.4·deviation + 0.3·severity + 0.2·|Δsentiment| + 0.1·breadth)
· recency_decay``, each term capped at 1, clamped to [0, 1] and rounded to
two decimals. Signals with strength >= 0.4 qualify for synthesis.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from refinery.baselines import EntityStats, aggregate, is_mature
from refinery.schemas import (
    Direction,
    EntityBaseline,
    ScrubberOutput,
    Signal,
    SignalType,
)
from refinery.store import DocumentStore
from refinery.utils import check_bulk_failures, clamp01, gather_bounded, round2, unique, utcnow

log = logging.getLogger(__name__)

# Deviation thresholds (mature baselines)
VELOCITY_THRESHOLD = 2.0
SENTIMENT_DELTA_THRESHOLD = -0.3
FRICTION_SPIKE_THRESHOLD = 0.2

# Absolute thresholds (cold start)
COLD_START_MENTION_THRESHOLD = 10

STRENGTH_THRESHOLD = 0.4
WINDOW_HOURS = 48
CLUSTER_MIN_ENTITIES = 2
CLUSTER_FRICTION_SEVERITY = 0.7

WEIGHTS = {
    "mention_deviation": 0.4,
    "friction_severity": 0.3,
    "sentiment_shift": 0.2,
    "cluster_breadth": 0.1,
}

SEVERITY_WEIGHTS = {"high": 1.0, "medium": 0.6, "low": 0.3}

FRICTION_THEMES = (
    "migration", "performance", "complexity", "compatibility",
    "breaking change", "type safety", "bundle size", "build time",
    "developer experience", "documentation", "security", "cost",
    "scalability", "deployment", "configuration", "testing",
)


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


def recency_decay(hours_old: float) -> float:
    if hours_old < 6:
        return 1.0
    if hours_old < 24:
        return 0.8
    if hours_old < 48:
        return 0.5
    return 0.2


def signal_strength(
    mention_deviation: float,
    friction_severity: float,
    sentiment_shift: float,
    cluster_breadth: float,
    hours_old: float = 0,
) -> float:
    raw = (
        min(mention_deviation, 1) * WEIGHTS["mention_deviation"]
        + min(friction_severity, 1) * WEIGHTS["friction_severity"]
        + min(sentiment_shift, 1) * WEIGHTS["sentiment_shift"]
        + min(cluster_breadth, 1) * WEIGHTS["cluster_breadth"]
    )
    return round2(clamp01(raw * recency_decay(hours_old)))


def mention_deviation(velocity: float) -> float:
    """2x baseline -> 0.33, 4x -> 1.0."""
    return min(1.0, (velocity - 1) / 3)


def friction_theme(text: str) -> str:
    """First vocabulary theme found in ``text``, else its first three words."""
    lower = text.lower()
    for theme in FRICTION_THEMES:
        if theme in lower:
            return theme
    return " ".join(lower.split()[:3])


# ---------------------------------------------------------------------------
# Anomaly detection
# ---------------------------------------------------------------------------


@dataclass
class Anomaly:
    entity: str
    category: str
    velocity: float
    sentiment_delta: float
    friction_spike: float
    signaling: bool
    mentions: int
    sentiment: float
    friction_rate: float
    evidence_item_ids: list[str] = field(default_factory=list)


class MatureBaselineDetector:
    def detect(self, key: str, stats: EntityStats, baseline: EntityBaseline) -> Anomaly:
        velocity = (stats.mentions / baseline.mentions_per_day
                    if baseline.mentions_per_day > 0 else float(stats.mentions))
        delta = stats.sentiment - baseline.sentiment
        spike = stats.friction_rate - baseline.friction_rate
        return Anomaly(
            entity=key,
            category=stats.category,
            velocity=round2(velocity),
            sentiment_delta=round2(delta),
            friction_spike=round2(spike),
            signaling=(velocity > VELOCITY_THRESHOLD
                       or delta < SENTIMENT_DELTA_THRESHOLD
                       or spike > FRICTION_SPIKE_THRESHOLD),
            mentions=stats.mentions,
            sentiment=round2(stats.sentiment),
            friction_rate=round2(stats.friction_rate),
        )


class ColdStartDetector:
    def detect(self, key: str, stats: EntityStats, baseline: EntityBaseline | None) -> Anomaly:
        # No history: velocity is the raw count and there is no sentiment shift.
        return Anomaly(
            entity=key,
            category=stats.category,
            velocity=float(stats.mentions),
            sentiment_delta=0.0,
            friction_spike=round2(stats.friction_rate),
            signaling=stats.mentions >= COLD_START_MENTION_THRESHOLD or stats.friction_count > 0,
            mentions=stats.mentions,
            sentiment=round2(stats.sentiment),
            friction_rate=round2(stats.friction_rate),
        )


MATURE_DETECTOR = MatureBaselineDetector()
COLD_START_DETECTOR = ColdStartDetector()


def select_detector(baseline: EntityBaseline | None) -> MatureBaselineDetector | ColdStartDetector:
    return MATURE_DETECTOR if is_mature(baseline) else COLD_START_DETECTOR


def collect_evidence(key: str, outputs: Sequence[ScrubberOutput]) -> list[str]:
    """Item ids from friction points naming the entity and notable items mentioning it."""
    pattern = re.compile(r"(?<!\w)" + re.escape(key) + r"(?!\w)", re.IGNORECASE)
    ids: list[str] = []
    for output in outputs:
        for fp in output.friction_points:
            if fp.entity.casefold() == key:
                ids.extend(fp.source_item_ids)
        for notable in output.notable_items:
            if pattern.search(notable.extracted_insight):
                ids.append(notable.item_id)
    return unique(ids)


def detect_anomalies(
    outputs: Sequence[ScrubberOutput],
    baselines: dict[str, EntityBaseline],
) -> list[Anomaly]:
    anomalies = []
    for key, stats in aggregate(outputs).items():
        baseline = baselines.get(key)
        anomaly = select_detector(baseline).detect(key, stats, baseline)
        anomaly.evidence_item_ids = collect_evidence(key, outputs)
        anomalies.append(anomaly)
    return anomalies


def average_severity(key: str, outputs: Sequence[ScrubberOutput]) -> float:
    weights = [
        SEVERITY_WEIGHTS.get(fp.severity, 0.3)
        for output in outputs for fp in output.friction_points
        if fp.entity.casefold() == key
    ]
    return sum(weights) / len(weights) if weights else 0.0


# ---------------------------------------------------------------------------
# Friction clustering
# ---------------------------------------------------------------------------


@dataclass
class FrictionCluster:
    entities: list[str]
    theme: str
    evidence_item_ids: list[str]


def _groups_to_clusters(groups: dict[str, tuple[dict[str, None], dict[str, None]]]) -> list[FrictionCluster]:
    return [
        FrictionCluster(entities=list(entities), theme=theme, evidence_item_ids=list(evidence))
        for theme, (entities, evidence) in groups.items()
        if len(entities) >= CLUSTER_MIN_ENTITIES
    ]


def cluster_friction(outputs: Sequence[ScrubberOutput], signaling: set[str]) -> list[FrictionCluster]:
    """Two-pass clustering: shared mention context, then shared keyword theme.

    Entity order within a cluster is first-seen order. An entity placed in a
    context cluster is not considered by the keyword pass.
    """
    # Ordered sets: dict keys keep insertion order.
    by_context: dict[str, tuple[dict[str, None], dict[str, None]]] = {}
    for output in outputs:
        for entity in output.entities:
            key = entity.name.casefold()
            if key in signaling and entity.friction_signal:
                by_context.setdefault(entity.mention_context, ({}, {}))[0][key] = None
    for output in outputs:
        for fp in output.friction_points:
            key = fp.entity.casefold()
            for members, evidence in by_context.values():
                if key in members:
                    evidence.update(dict.fromkeys(fp.source_item_ids))

    clusters = _groups_to_clusters(by_context)
    clustered = {e for c in clusters for e in c.entities}

    by_theme: dict[str, tuple[dict[str, None], dict[str, None]]] = {}
    for output in outputs:
        for fp in output.friction_points:
            key = fp.entity.casefold()
            if key not in signaling or key in clustered:
                continue
            members, evidence = by_theme.setdefault(friction_theme(fp.signal), ({}, {}))
            members[key] = None
            evidence.update(dict.fromkeys(fp.source_item_ids))

    clusters.extend(_groups_to_clusters(by_theme))
    return clusters


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def _latest_prior(entity: str, prior_signals: Sequence[Signal]) -> Signal | None:
    """Most recent prior signal naming ``entity``; ``prior_signals`` is newest first."""
    return next((s for s in prior_signals if entity in s.entities), None)


def classify_type(anomaly: Anomaly, prior_signals: Sequence[Signal]) -> SignalType:
    if _latest_prior(anomaly.entity, prior_signals) is None:
        return "new_emergence"
    if anomaly.sentiment_delta < SENTIMENT_DELTA_THRESHOLD:
        return "sentiment_flip"
    if anomaly.velocity > VELOCITY_THRESHOLD:
        return "velocity_spike"
    return "friction_cluster"


def classify_direction(anomaly: Anomaly, prior_signals: Sequence[Signal]) -> Direction:
    latest = _latest_prior(anomaly.entity, prior_signals)
    if latest is None:
        return "new"
    return "accelerating" if anomaly.velocity > latest.mention_velocity else "decelerating"


def cluster_direction(members: Sequence[Anomaly], prior_signals: Sequence[Signal]) -> Direction:
    directions = [classify_direction(a, prior_signals) for a in members]
    if "accelerating" in directions:
        return "accelerating"
    if all(d == "new" for d in directions):
        return "new"
    return "decelerating"


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


@dataclass
class DeltaResult:
    signals: list[Signal]
    qualifying: list[Signal]

    @property
    def total_found(self) -> int:
        return len(self.signals)


class DeltaEngine:
    def __init__(
        self,
        clock: Callable[[], datetime] = utcnow,
        strength_threshold: float = STRENGTH_THRESHOLD,
    ):
        self.clock = clock
        self.strength_threshold = strength_threshold

    def run(
        self,
        outputs: Sequence[ScrubberOutput],
        baselines: dict[str, EntityBaseline],
        prior_signals: Sequence[Signal] = (),
    ) -> DeltaResult:
        """Detect, cluster, score and classify.

        ``prior_signals`` must be ordered newest first. Signals are scored
        as fresh (age 0h) since they are detected in the current run.
        """
        now = self.clock()
        anomalies = [a for a in detect_anomalies(outputs, baselines) if a.signaling]
        by_entity = {a.entity: a for a in anomalies}
        signals: list[Signal] = []

        for anomaly in anomalies:
            strength = signal_strength(
                mention_deviation(anomaly.velocity),
                average_severity(anomaly.entity, outputs),
                abs(anomaly.sentiment_delta),
                0,
            )
            signals.append(Signal(
                type=classify_type(anomaly, prior_signals),
                entities=[anomaly.entity],
                strength=strength,
                mention_velocity=anomaly.velocity,
                sentiment_delta=anomaly.sentiment_delta,
                friction_spike=anomaly.friction_spike,
                direction=classify_direction(anomaly, prior_signals),
                evidence_item_ids=anomaly.evidence_item_ids,
                first_detected=now,
                window_hours=WINDOW_HOURS,
            ))

        for cluster in cluster_friction(outputs, set(by_entity)):
            members = [by_entity[e] for e in cluster.entities if e in by_entity]
            if not members:
                continue
            max_velocity = max(a.velocity for a in members)
            strength = signal_strength(
                mention_deviation(max_velocity),
                CLUSTER_FRICTION_SEVERITY,
                max(abs(a.sentiment_delta) for a in members),
                min(1.0, len(cluster.entities) / 4),
            )
            signals.append(Signal(
                type="friction_cluster",
                entities=cluster.entities,
                strength=strength,
                friction_theme=cluster.theme,
                mention_velocity=max_velocity,
                sentiment_delta=min(a.sentiment_delta for a in members),
                friction_spike=max(a.friction_spike for a in members),
                direction=cluster_direction(members, prior_signals),
                evidence_item_ids=cluster.evidence_item_ids,
                first_detected=now,
                window_hours=WINDOW_HOURS,
            ))

        qualifying = [s for s in signals if s.strength >= self.strength_threshold]
        log.info("Delta engine: %d anomalies, %d signals, %d qualifying",
                 len(anomalies), len(signals), len(qualifying))
        return DeltaResult(signals=signals, qualifying=qualifying)


async def persist_signals(store: DocumentStore, signals: Sequence[Signal]) -> None:
    """Write signals, failing loudly if most of the batch is lost."""
    if not signals:
        return
    results = await gather_bounded(signals, lambda s: store.create(s.to_record()), limit=len(signals))
    check_bulk_failures("persist_signals", results)
