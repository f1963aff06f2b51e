from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Float, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from refinery.utils import utcnow


class Base(DeclarativeBase):
    pass


class IngestNonce(Base):
    __tablename__ = "ingest_nonces"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)  # the nonce itself
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)


class Capture(Base):
    __tablename__ = "captures"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)  # capture_id
    source_feed: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    source_type: Mapped[str] = mapped_column(String(30), default="twitter")
    captured_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    agent_version: Mapped[str] = mapped_column(String(50), default="")
    payload_json: Mapped[str] = mapped_column(Text, default="{}")
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)  # pending | processing | processed | failed
    error_message: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)


class ProcessedItem(Base):
    __tablename__ = "processed_items"

    id: Mapped[str] = mapped_column(String(300), primary_key=True)  # signal item id
    capture_id: Mapped[str] = mapped_column(String(64), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class ScrubberOutputRecord(Base):
    __tablename__ = "scrubber_outputs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    capture_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    processed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    total_input: Mapped[int] = mapped_column(Integer, default=0)
    total_passed: Mapped[int] = mapped_column(Integer, default=0)
    entities_json: Mapped[str] = mapped_column(Text, default="[]")
    friction_points_json: Mapped[str] = mapped_column(Text, default="[]")
    notable_items_json: Mapped[str] = mapped_column(Text, default="[]")


class EntityBaselineRecord(Base):
    __tablename__ = "entity_baselines"

    id: Mapped[str] = mapped_column(String(300), primary_key=True)  # case-folded entity name
    category: Mapped[str] = mapped_column(String(50), default="")
    mentions_per_day: Mapped[float] = mapped_column(Float, default=0.0)
    sentiment: Mapped[float] = mapped_column(Float, default=0.5)
    friction_rate: Mapped[float] = mapped_column(Float, default=0.0)
    snapshots_json: Mapped[str] = mapped_column(Text, default="[]")
    last_updated: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class SignalRecord(Base):
    __tablename__ = "signals"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    type: Mapped[str] = mapped_column(String(30), nullable=False)  # velocity_spike | sentiment_flip | friction_cluster | new_emergence
    entities_json: Mapped[str] = mapped_column(Text, default="[]")
    strength: Mapped[float] = mapped_column(Float, default=0.0)
    friction_theme: Mapped[str | None] = mapped_column(String(200), nullable=True)
    mention_velocity: Mapped[float] = mapped_column(Float, default=0.0)
    sentiment_delta: Mapped[float] = mapped_column(Float, default=0.0)
    friction_spike: Mapped[float] = mapped_column(Float, default=0.0)
    direction: Mapped[str] = mapped_column(String(20), default="new")
    evidence_json: Mapped[str] = mapped_column(Text, default="[]")
    first_detected: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    window_hours: Mapped[int] = mapped_column(Integer, default=48)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)


class OpportunityBriefRecord(Base):
    __tablename__ = "opportunity_briefs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), default="fresh", index=True)  # fresh | warm | cold | archived
    freshness_score: Mapped[float] = mapped_column(Float, default=1.0)
    cluster_id: Mapped[str] = mapped_column(String(64), default="")

    title: Mapped[str] = mapped_column(String(500), nullable=False)
    category: Mapped[str] = mapped_column(String(30), nullable=False)
    entities_json: Mapped[str] = mapped_column(Text, default="[]")
    strength: Mapped[float] = mapped_column(Float, default=0.0)
    direction: Mapped[str] = mapped_column(String(20), default="new")
    signal_count: Mapped[int] = mapped_column(Integer, default=0)
    thesis: Mapped[str] = mapped_column(Text, default="")

    friction_detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    gap_analysis: Mapped[str | None] = mapped_column(Text, nullable=True)
    timing_signal: Mapped[str | None] = mapped_column(Text, nullable=True)
    risk_factors_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    evidence_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    competitive_landscape: Mapped[str | None] = mapped_column(Text, nullable=True)
    opportunity_type: Mapped[str | None] = mapped_column(String(30), nullable=True)
    mvp_scope: Mapped[str | None] = mapped_column(Text, nullable=True)
    monetization_angle: Mapped[str | None] = mapped_column(Text, nullable=True)
    target_buyer: Mapped[str | None] = mapped_column(Text, nullable=True)
    distribution_channels: Mapped[str | None] = mapped_column(Text, nullable=True)


class PipelineRunRecord(Base):
    __tablename__ = "pipeline_runs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="running")  # running | completed | failed
    captures_processed: Mapped[int] = mapped_column(Integer, default=0)
    scrubber_stats_json: Mapped[str] = mapped_column(Text, default="{}")
    delta_stats_json: Mapped[str] = mapped_column(Text, default="{}")
    strategist_stats_json: Mapped[str] = mapped_column(Text, default="{}")
    total_tokens_used: Mapped[int] = mapped_column(Integer, default=0)
    errors_json: Mapped[str] = mapped_column(Text, default="[]")


class PipelineLock(Base):
    __tablename__ = "pipeline_locks"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
