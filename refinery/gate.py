"""Tier gate applied to briefs on the serving path."""
from __future__ import annotations

from typing import Literal

from refinery.schemas import OpportunityBrief

Tier = Literal["free", "pro"]

PRO_FIELDS = (
    "friction_detail",
    "gap_analysis",
    "timing_signal",
    "risk_factors",
    "competitive_landscape",
    "opportunity_type",
    "mvp_scope",
    "monetization_angle",
    "target_buyer",
    "distribution_channels",
)
FREE_EVIDENCE_LIMIT = 2


def gate_brief(brief: OpportunityBrief, tier: Tier) -> OpportunityBrief:
    """Return a copy of ``brief`` trimmed to what ``tier`` may see.

    Free tier loses every pro field and keeps at most two evidence items,
    enough to validate the signal. The input is never mutated.
    """
    if tier == "pro":
        return brief.model_copy(deep=True)
    update: dict = dict.fromkeys(PRO_FIELDS)
    if brief.evidence is not None:
        update["evidence"] = [e.model_copy() for e in brief.evidence[:FREE_EVIDENCE_LIMIT]]
    return brief.model_copy(update=update, deep=True)
