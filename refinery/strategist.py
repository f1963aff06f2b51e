"""Stage 3: synthesize opportunity briefs from qualifying signals."""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime

from refinery.llm import LLMClient
from refinery.schemas import (
    BriefDraft,
    EntityBaseline,
    OpportunityBrief,
    ScrubberOutput,
    Signal,
    SignalItem,
)
from refinery.store import DocumentStore
from refinery.utils import utcnow

log = logging.getLogger(__name__)

SNIPPET_CHARS = 280

SYSTEM_PROMPT = """\
You are a developer intelligence analyst. You transform technical signal data into \
evidence-grounded opportunity briefs for developers, indie hackers, and technical builders.

CRITICAL RULES:
1. Only make claims supported by evidence from the pipeline data provided
2. Quote or paraphrase actual developer statements from the evidence
3. Name specific tools, libraries, and versions when discussing gaps
4. Quantify: reference actual mention counts, velocity ratios, and baseline comparisons
5. NEVER invent product names, TAM numbers, pricing strategies, or speculative market sizes
6. Blueprint fields (mvp_scope, monetization_angle, target_buyer, distribution_channels) \
give STRATEGIC DIRECTION, not tactical implementation plans. Ground them in the evidence.

Categories:
- velocity_spike: Significant increase in developer discussion volume vs baseline
- sentiment_flip: Notable shift in developer sentiment
- friction_cluster: Multiple technologies sharing similar pain points
- new_emergence: Previously unseen or very low-baseline entity suddenly gaining traction

Opportunity types:
- tooling_gap: Developers need a tool that doesn't exist yet
- migration_aid: Developers are migrating between technologies and need help
- dx_improvement: Existing tools work but have poor developer experience
- integration: Developers need better connections between existing tools"""

BRIEF_PROMPT = """\
Based on this signal data, generate an opportunity brief.

{context}

Generate a structured brief with:
1. A specific title that names the key entities
2. A category matching the signal type
3. A thesis (2-3 sentences) explaining WHY this signal matters, referencing the data
4. Friction detail: specific pain points in developers' own words from the evidence
5. Gap analysis: what exists vs what's missing, derived from the evidence
6. Timing signal: why now, referencing velocity, baselines and acceleration
7. Risk factors: counterarguments derived from the data
8. Evidence: the most relevant items (up to 15) with author, snippet and relevance
9. Competitive landscape: existing tools mentioned in the evidence
10. Opportunity type
11. MVP scope: the smallest product that captures this opportunity
12. Monetization angle, target buyer and distribution channels"""


def build_context(
    signal: Signal,
    outputs: Sequence[ScrubberOutput],
    baselines: Mapping[str, EntityBaseline],
    originals: Mapping[str, SignalItem] | None = None,
) -> str:
    """Plain-text evidence package for one signal."""
    originals = originals or {}
    keys = {e.casefold() for e in signal.entities}
    evidence_ids = set(signal.evidence_item_ids)

    friction_lines: list[str] = []
    insight_lines: list[str] = []
    for output in outputs:
        for fp in output.friction_points:
            if fp.entity.casefold() in keys:
                friction_lines.append(f"- [{fp.severity}] {fp.entity}: {fp.signal}")
        for notable in output.notable_items:
            if notable.item_id not in evidence_ids:
                continue
            source = originals.get(notable.item_id)
            if source is not None:
                insight_lines.append(
                    f'- {source.author_label}: "{source.content[:SNIPPET_CHARS]}" '
                    f"(relevance: {notable.relevance_score})"
                )
            else:
                insight_lines.append(
                    f"- {notable.item_id} (relevance: {notable.relevance_score}): "
                    f"{notable.extracted_insight}"
                )

    baseline_lines = []
    for name in signal.entities:
        b = baselines.get(name.casefold())
        if b is not None:
            baseline_lines.append(
                f"- {name}: {b.mentions_per_day} mentions/day avg, sentiment {b.sentiment}, "
                f"friction rate {b.friction_rate} ({len(b.snapshots)} days of history)"
            )

    lines = [
        "## Signal Analysis",
        f"Type: {signal.type}",
        f"Entities: {', '.join(signal.entities)}",
        f"Signal Strength: {signal.strength} (0-1)",
        f"Direction: {signal.direction}",
        f"Mention Velocity: {signal.mention_velocity}x (vs baseline)",
        f"Sentiment Delta: {signal.sentiment_delta}",
        f"Friction Spike: {signal.friction_spike}",
        f"Evidence Sources: {len(signal.evidence_item_ids)}",
    ]
    if signal.friction_theme:
        lines.append(f"Friction Theme: {signal.friction_theme}")
    lines += [
        f"Window: {signal.window_hours}h",
        "",
        "## Entity Baselines",
        "\n".join(baseline_lines) or "No baseline history yet (cold start)",
        "",
        "## Friction Points",
        "\n".join(friction_lines) or "None identified",
        "",
        "## Key Insights from Evidence",
        "\n".join(insight_lines) or "No specific insights extracted",
    ]
    return "\n".join(lines)


@dataclass
class StrategistResult:
    brief: OpportunityBrief | None
    tokens_used: int = 0
    error: str | None = None


class Strategist:
    def __init__(self, llm: LLMClient, store: DocumentStore, clock: Callable[[], datetime] = utcnow):
        self.llm = llm
        self.store = store
        self.clock = clock

    async def synthesize(
        self,
        signal: Signal,
        outputs: Sequence[ScrubberOutput],
        baselines: Mapping[str, EntityBaseline],
        originals: Mapping[str, SignalItem] | None = None,
    ) -> StrategistResult:
        context = build_context(signal, outputs, baselines, originals)
        result = await self.llm.extract(
            SYSTEM_PROMPT, BRIEF_PROMPT.format(context=context), BriefDraft,
            model=self.llm.synthesis_model,
        )
        if result.error or result.data is None:
            return StrategistResult(brief=None, tokens_used=result.tokens_used,
                                    error=result.error or "No brief generated")
        brief = OpportunityBrief(
            **result.data.model_dump(),
            created_at=self.clock(),
            status="fresh",
            freshness_score=1.0,
            cluster_id=signal.id,
        )
        return StrategistResult(brief=brief, tokens_used=result.tokens_used)

    async def persist(self, brief: OpportunityBrief) -> None:
        await self.store.create(brief.to_record())
