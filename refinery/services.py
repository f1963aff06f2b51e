"""Shared operations for the HTTP API, MCP server and CLI."""
from __future__ import annotations

import logging
from typing import Any

from refinery.config import get_settings
from refinery.gate import Tier, gate_brief
from refinery.ingest import IngestGuard, IngestResult
from refinery.llm import LLMClient
from refinery.maintenance import MaintenanceResult, run_maintenance
from refinery.models import OpportunityBriefRecord, PipelineRunRecord
from refinery.pipeline import PipelineOrchestrator
from refinery.schemas import OpportunityBrief, PipelineRun
from refinery.store import DocumentStore, decode_cursor, encode_cursor

log = logging.getLogger(__name__)

DEFAULT_BRIEF_STATUSES = ("fresh", "warm")
BRIEF_STATUSES = ("fresh", "warm", "cold", "archived")
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 50


def _csv(value: str | None) -> list[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


def brief_out(rec: OpportunityBriefRecord, tier: Tier) -> dict[str, Any]:
    return gate_brief(OpportunityBrief.from_record(rec), tier).model_dump(mode="json")


# ---------------------------------------------------------------------------
# Ingest / pipeline / maintenance
# ---------------------------------------------------------------------------


async def ingest_capture(store: DocumentStore, payload: dict[str, Any]) -> IngestResult:
    guard = IngestGuard(store, get_settings().ingest_hmac_secret)
    return await guard.ingest(payload)


async def run_pipeline(store: DocumentStore, llm: LLMClient | None = None) -> PipelineRun:
    return await PipelineOrchestrator(store, llm or LLMClient()).run()


async def run_cleanup(store: DocumentStore) -> MaintenanceResult:
    return await run_maintenance(store)


# ---------------------------------------------------------------------------
# Serving
# ---------------------------------------------------------------------------


async def list_briefs(
    store: DocumentStore,
    tier: Tier = "free",
    status: str | None = None,
    category: str | None = None,
    direction: str | None = None,
    cursor: str | None = None,
    limit: int = DEFAULT_PAGE_SIZE,
) -> dict[str, Any]:
    """Newest briefs first, gated for ``tier``.

    ``status`` is comma-separated and defaults to fresh + warm. Raises
    ``ValueError`` for an unknown status or a malformed cursor.
    """
    statuses = _csv(status) or list(DEFAULT_BRIEF_STATUSES)
    unknown = [s for s in statuses if s not in BRIEF_STATUSES]
    if unknown:
        raise ValueError(f"Unknown status: {', '.join(unknown)}")

    where = [OpportunityBriefRecord.status.in_(statuses)]
    if category:
        where.append(OpportunityBriefRecord.category == category)
    if direction:
        where.append(OpportunityBriefRecord.direction == direction)

    page = await store.list(
        OpportunityBriefRecord, *where,
        order_by="created_at", descending=True,
        limit=max(1, min(limit, MAX_PAGE_SIZE)),
        after=decode_cursor(cursor) if cursor else None,
    )
    return {
        "items": [brief_out(rec, tier) for rec in page.items],
        "next_cursor": encode_cursor(page.cursor),
    }


async def get_brief(store: DocumentStore, brief_id: str, tier: Tier = "free") -> dict[str, Any] | None:
    rec = await store.get(OpportunityBriefRecord, brief_id)
    return brief_out(rec, tier) if rec else None


async def list_runs(store: DocumentStore, limit: int = 20) -> list[dict[str, Any]]:
    page = await store.list(
        PipelineRunRecord, order_by="started_at", descending=True, limit=max(1, min(limit, 100)),
    )
    return [PipelineRun.from_record(rec).model_dump(mode="json") for rec in page.items]
