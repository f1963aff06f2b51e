"""Scheduled maintenance: purge expired nonces and decay brief freshness."""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta

from refinery.freshness import compute_freshness
from refinery.ingest import MAX_TIMESTAMP_SKEW
from refinery.models import IngestNonce, OpportunityBriefRecord
from refinery.store import DocumentStore
from refinery.utils import best_effort, utcnow

log = logging.getLogger(__name__)

PAGE_SIZE = 500
SCORE_EPSILON = 0.01


@dataclass
class MaintenanceResult:
    nonces_deleted: int = 0
    briefs_updated: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


async def purge_nonces(store: DocumentStore, now: datetime) -> int:
    """Delete nonces older than the ingest timestamp window.

    A nonce that old can no longer be replayed because its request would
    fail the timestamp check first.
    """
    cutoff = now - MAX_TIMESTAMP_SKEW
    deleted = 0

    async def _delete(nonce_id: str) -> bool:
        await store.delete(IngestNonce, nonce_id)
        return True

    async for page in store.iterate(
        IngestNonce, IngestNonce.created_at < cutoff, order_by="created_at", page_size=PAGE_SIZE,
    ):
        for nonce in page:
            if await best_effort(_delete(nonce.id), f"nonce {nonce.id} delete"):
                deleted += 1
    return deleted


async def refresh_freshness(store: DocumentStore, now: datetime) -> int:
    """Recompute status and score for every non-archived brief.

    Only writes when the status changed or the score moved by more than
    ``SCORE_EPSILON``.
    """
    updated = 0
    async for page in store.iterate(
        OpportunityBriefRecord, OpportunityBriefRecord.status != "archived",
        order_by="created_at", page_size=PAGE_SIZE,
    ):
        for brief in page:
            fresh = compute_freshness(brief.created_at, now)
            if brief.status == fresh.status and abs(brief.freshness_score - fresh.score) <= SCORE_EPSILON:
                continue
            await store.update(OpportunityBriefRecord, brief.id,
                               status=fresh.status, freshness_score=fresh.score)
            updated += 1
    return updated


async def run_maintenance(store: DocumentStore, clock: Callable[[], datetime] = utcnow) -> MaintenanceResult:
    now = clock()
    result = MaintenanceResult(
        nonces_deleted=await purge_nonces(store, now),
        briefs_updated=await refresh_freshness(store, now),
    )
    log.info("Maintenance: %d nonces deleted, %d briefs updated",
             result.nonces_deleted, result.briefs_updated)
    return result
