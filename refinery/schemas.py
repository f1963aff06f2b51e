"""Pydantic wire and domain models for the refinery pipeline."""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Annotated, Literal

from pydantic import BaseModel, Field, NonNegativeInt

from refinery.models import (
    OpportunityBriefRecord,
    PipelineRunRecord,
    ScrubberOutputRecord,
    SignalRecord,
)
from refinery.utils import as_utc, json_dump, json_parse, utcnow

SourceType = Literal["twitter", "github", "hackernews", "reddit"]
Score = Annotated[float, Field(ge=0, le=1)]


def new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Signal items (tagged union on source_type)
# ---------------------------------------------------------------------------


class _SignalItemBase(BaseModel):
    content: str = Field(max_length=10_000)
    timestamp: datetime

    @property
    def item_id(self) -> str:
        raise NotImplementedError

    @property
    def author_label(self) -> str:
        """How the item's author is named in evidence."""
        return f"[{self.source_type}]"  # type: ignore[attr-defined]

    def prompt_line(self) -> str:
        raise NotImplementedError


class TwitterItem(_SignalItemBase):
    source_type: Literal["twitter"]
    tweet_id: str
    author_handle: str
    author_name: str
    author_followers: NonNegativeInt
    author_verified: bool
    likes: NonNegativeInt
    retweets: NonNegativeInt
    replies: NonNegativeInt
    quotes: NonNegativeInt
    media_urls: list[str] = []
    is_thread: bool
    thread_position: int | None = None
    parent_tweet_id: str | None = None
    urls: list[str] = []
    hashtags: list[str] = []

    @property
    def item_id(self) -> str:
        return self.tweet_id

    @property
    def author_label(self) -> str:
        return f"@{self.author_handle}"

    def prompt_line(self) -> str:
        return (f"[{self.item_id}] @{self.author_handle} ({self.author_followers} followers): "
                f"{self.content[:500]}")


class GitHubItem(_SignalItemBase):
    source_type: Literal["github"]
    repo: str
    stars_delta: int
    issues_delta: int
    event_type: str

    @property
    def item_id(self) -> str:
        return f"gh:{self.repo}:{self.event_type}"

    def prompt_line(self) -> str:
        return (f"[{self.item_id}] {self.event_type}: {self.content[:500]} "
                f"(stars Δ{self.stars_delta}, issues Δ{self.issues_delta})")


class HackerNewsItem(_SignalItemBase):
    source_type: Literal["hackernews"]
    post_id: str
    points: NonNegativeInt
    comment_count: NonNegativeInt

    @property
    def item_id(self) -> str:
        return f"hn:{self.post_id}"

    def prompt_line(self) -> str:
        return f"[{self.item_id}] {self.content[:500]} ({self.points} points, {self.comment_count} comments)"


class RedditItem(_SignalItemBase):
    source_type: Literal["reddit"]
    subreddit: str
    post_id: str
    upvotes: int

    @property
    def item_id(self) -> str:
        return f"rd:{self.post_id}"

    def prompt_line(self) -> str:
        return f"[{self.item_id}] r/{self.subreddit}: {self.content[:500]} ({self.upvotes} upvotes)"


SignalItem = Annotated[
    TwitterItem | GitHubItem | HackerNewsItem | RedditItem,
    Field(discriminator="source_type"),
]


class CaptureMetadata(BaseModel):
    scroll_depth: float
    capture_duration_ms: float
    total_extracted: int


class CaptureRequest(BaseModel):
    capture_id: uuid.UUID
    source_feed: str
    source_type: SourceType = "twitter"
    captured_at: datetime
    agent_version: str
    signals: list[SignalItem] = Field(max_length=500)
    metadata: CaptureMetadata
    signature: str
    timestamp: int
    nonce: uuid.UUID


class CapturePayload(BaseModel):
    """The part of a stored capture the pipeline reads back."""
    signals: list[SignalItem] = []


# ---------------------------------------------------------------------------
# Stage 1: extraction
# ---------------------------------------------------------------------------

EntityCategory = Literal["framework", "language", "tool", "platform", "protocol", "concept"]
Sentiment = Literal["positive", "negative", "neutral"]
MentionContext = Literal["announcement", "complaint", "migration", "comparison", "praise", "question"]
Severity = Literal["low", "medium", "high"]


class TechEntity(BaseModel):
    name: str
    category: EntityCategory
    sentiment: Sentiment
    mention_context: MentionContext
    friction_signal: bool
    mentions: NonNegativeInt


class FrictionPoint(BaseModel):
    entity: str
    signal: str
    source_item_ids: list[str]
    severity: Severity


class NotableItem(BaseModel):
    item_id: str
    relevance_score: Score
    extracted_insight: str


class BatchExtraction(BaseModel):
    entities: list[TechEntity]
    friction_points: list[FrictionPoint]
    notable_items: list[NotableItem]


class ScrubberOutput(BaseModel):
    id: str = Field(default_factory=new_id)
    capture_id: str
    processed_at: datetime = Field(default_factory=utcnow)
    total_input: NonNegativeInt = 0
    total_passed: NonNegativeInt = 0
    entities: list[TechEntity] = []
    friction_points: list[FrictionPoint] = []
    notable_items: list[NotableItem] = []

    def to_record(self) -> ScrubberOutputRecord:
        return ScrubberOutputRecord(
            id=self.id, capture_id=self.capture_id, processed_at=self.processed_at,
            total_input=self.total_input, total_passed=self.total_passed,
            entities_json=json_dump([e.model_dump() for e in self.entities]),
            friction_points_json=json_dump([f.model_dump() for f in self.friction_points]),
            notable_items_json=json_dump([n.model_dump() for n in self.notable_items]),
        )

    @classmethod
    def from_record(cls, rec: ScrubberOutputRecord) -> ScrubberOutput:
        return cls(
            id=rec.id, capture_id=rec.capture_id, processed_at=as_utc(rec.processed_at),
            total_input=rec.total_input, total_passed=rec.total_passed,
            entities=json_parse(rec.entities_json, []),
            friction_points=json_parse(rec.friction_points_json, []),
            notable_items=json_parse(rec.notable_items_json, []),
        )


# ---------------------------------------------------------------------------
# Baselines
# ---------------------------------------------------------------------------


class DailySnapshot(BaseModel):
    date: str  # YYYY-MM-DD
    mentions: NonNegativeInt
    sentiment: Score
    friction_rate: Score


class EntityBaseline(BaseModel):
    entity_name: str
    category: str = ""
    mentions_per_day: float = Field(ge=0)
    sentiment: Score
    friction_rate: Score
    last_updated: datetime = Field(default_factory=utcnow)
    snapshots: list[DailySnapshot] = Field(default=[], max_length=7)


# ---------------------------------------------------------------------------
# Stage 2: signals
# ---------------------------------------------------------------------------

SignalType = Literal["velocity_spike", "sentiment_flip", "friction_cluster", "new_emergence"]
Direction = Literal["new", "accelerating", "decelerating"]


class Signal(BaseModel):
    id: str = Field(default_factory=new_id)
    type: SignalType
    entities: list[str]
    strength: Score
    friction_theme: str | None = None
    mention_velocity: float
    sentiment_delta: float
    friction_spike: float
    direction: Direction
    evidence_item_ids: list[str] = []
    first_detected: datetime = Field(default_factory=utcnow)
    window_hours: int = 48

    def to_record(self) -> SignalRecord:
        return SignalRecord(
            id=self.id, type=self.type, entities_json=json_dump(self.entities),
            strength=self.strength, friction_theme=self.friction_theme,
            mention_velocity=self.mention_velocity, sentiment_delta=self.sentiment_delta,
            friction_spike=self.friction_spike, direction=self.direction,
            evidence_json=json_dump(self.evidence_item_ids),
            first_detected=self.first_detected, window_hours=self.window_hours,
        )

    @classmethod
    def from_record(cls, rec: SignalRecord) -> Signal:
        return cls(
            id=rec.id, type=rec.type, entities=json_parse(rec.entities_json, []),
            strength=rec.strength, friction_theme=rec.friction_theme,
            mention_velocity=rec.mention_velocity, sentiment_delta=rec.sentiment_delta,
            friction_spike=rec.friction_spike, direction=rec.direction,
            evidence_item_ids=json_parse(rec.evidence_json, []),
            first_detected=as_utc(rec.first_detected), window_hours=rec.window_hours,
        )


# ---------------------------------------------------------------------------
# Stage 3: opportunity briefs
# ---------------------------------------------------------------------------

BriefStatus = Literal["fresh", "warm", "cold", "archived"]
OpportunityType = Literal["tooling_gap", "migration_aid", "dx_improvement", "integration"]


class Evidence(BaseModel):
    item_id: str
    author: str
    snippet: str
    relevance: Score


class BriefDraft(BaseModel):
    """Fields the synthesis model fills in."""

    # Free tier
    title: str
    category: SignalType
    entities: list[str]
    strength: Score
    direction: Direction
    signal_count: int
    thesis: str

    # Pro tier
    friction_detail: str | None = None
    gap_analysis: str | None = None
    timing_signal: str | None = None
    risk_factors: list[str] | None = None
    evidence: list[Evidence] | None = None
    competitive_landscape: str | None = None
    opportunity_type: OpportunityType | None = None

    # Pro tier blueprint
    mvp_scope: str | None = None
    monetization_angle: str | None = None
    target_buyer: str | None = None
    distribution_channels: str | None = None


class OpportunityBrief(BriefDraft):
    id: str = Field(default_factory=new_id)
    created_at: datetime = Field(default_factory=utcnow)
    status: BriefStatus = "fresh"
    freshness_score: Score = 1.0
    cluster_id: str

    def to_record(self) -> OpportunityBriefRecord:
        data = self.model_dump(exclude={"entities", "risk_factors", "evidence"})
        return OpportunityBriefRecord(
            **data,
            entities_json=json_dump(self.entities),
            risk_factors_json=json_dump(self.risk_factors) if self.risk_factors is not None else None,
            evidence_json=(json_dump([e.model_dump() for e in self.evidence])
                           if self.evidence is not None else None),
        )

    @classmethod
    def from_record(cls, rec: OpportunityBriefRecord) -> OpportunityBrief:
        return cls(
            id=rec.id, created_at=as_utc(rec.created_at), status=rec.status,
            freshness_score=rec.freshness_score, cluster_id=rec.cluster_id,
            title=rec.title, category=rec.category, entities=json_parse(rec.entities_json, []),
            strength=rec.strength, direction=rec.direction, signal_count=rec.signal_count,
            thesis=rec.thesis, friction_detail=rec.friction_detail,
            gap_analysis=rec.gap_analysis, timing_signal=rec.timing_signal,
            risk_factors=json_parse(rec.risk_factors_json, None),
            evidence=json_parse(rec.evidence_json, None),
            competitive_landscape=rec.competitive_landscape,
            opportunity_type=rec.opportunity_type, mvp_scope=rec.mvp_scope,
            monetization_angle=rec.monetization_angle, target_buyer=rec.target_buyer,
            distribution_channels=rec.distribution_channels,
        )


# ---------------------------------------------------------------------------
# Pipeline runs
# ---------------------------------------------------------------------------


class ScrubberStats(BaseModel):
    input: int = 0
    passed: int = 0
    failed: int = 0


class DeltaStats(BaseModel):
    signals_found: int = 0
    signals_qualifying: int = 0
    baselines_updated: int = 0


class StrategistStats(BaseModel):
    briefs_generated: int = 0
    failed: int = 0


class PipelineRun(BaseModel):
    id: str = Field(default_factory=new_id)
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    status: Literal["running", "completed", "failed"] = "running"
    captures_processed: int = 0
    scrubber: ScrubberStats = Field(default_factory=ScrubberStats)
    delta: DeltaStats = Field(default_factory=DeltaStats)
    strategist: StrategistStats = Field(default_factory=StrategistStats)
    total_tokens_used: int = 0
    errors: list[str] = []

    def to_record(self) -> PipelineRunRecord:
        return PipelineRunRecord(id=self.id, started_at=self.started_at, **self.record_fields())

    def record_fields(self) -> dict:
        """Mutable columns, for finalizing an existing run record."""
        return {
            "completed_at": self.completed_at, "status": self.status,
            "captures_processed": self.captures_processed,
            "scrubber_stats_json": self.scrubber.model_dump_json(),
            "delta_stats_json": self.delta.model_dump_json(),
            "strategist_stats_json": self.strategist.model_dump_json(),
            "total_tokens_used": self.total_tokens_used,
            "errors_json": json_dump(self.errors),
        }

    @classmethod
    def from_record(cls, rec: PipelineRunRecord) -> PipelineRun:
        return cls(
            id=rec.id, started_at=as_utc(rec.started_at),
            completed_at=as_utc(rec.completed_at) if rec.completed_at else None,
            status=rec.status, captures_processed=rec.captures_processed,
            scrubber=json_parse(rec.scrubber_stats_json), delta=json_parse(rec.delta_stats_json),
            strategist=json_parse(rec.strategist_stats_json),
            total_tokens_used=rec.total_tokens_used, errors=json_parse(rec.errors_json, []),
        )
