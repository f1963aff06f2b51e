from __future__ import annotations

from datetime import timedelta

import pytest

from refinery.maintenance import purge_nonces, refresh_freshness, run_maintenance
from refinery.models import IngestNonce, OpportunityBriefRecord
from refinery.schemas import OpportunityBrief
from refinery.tests.factories import NOW, brief_draft


async def _add_brief(store, brief_id: str, age: timedelta, status: str = "fresh", score: float = 1.0):
    brief = OpportunityBrief(**brief_draft().model_dump(), id=brief_id, cluster_id="sig",
                             created_at=NOW - age, status=status, freshness_score=score)
    await store.create(brief.to_record())


class TestPurgeNonces:
    @pytest.mark.asyncio
    async def test_deletes_only_expired(self, store):
        await store.create(IngestNonce(id="old", created_at=NOW - timedelta(minutes=10)))
        await store.create(IngestNonce(id="edge", created_at=NOW - timedelta(minutes=5)))
        await store.create(IngestNonce(id="recent", created_at=NOW - timedelta(minutes=1)))

        assert await purge_nonces(store, NOW) == 1
        assert not await store.exists(IngestNonce, "old")
        assert await store.exists(IngestNonce, "edge")
        assert await store.exists(IngestNonce, "recent")

    @pytest.mark.asyncio
    async def test_empty_store(self, store):
        assert await purge_nonces(store, NOW) == 0


class TestRefreshFreshness:
    @pytest.mark.asyncio
    async def test_writes_status_changes(self, store):
        await _add_brief(store, "aging", timedelta(hours=24))
        await _add_brief(store, "expired", timedelta(hours=200), status="cold", score=0.1)

        assert await refresh_freshness(store, NOW) == 2

        aging = await store.get(OpportunityBriefRecord, "aging")
        assert (aging.status, aging.freshness_score) == ("warm", 0.63)
        expired = await store.get(OpportunityBriefRecord, "expired")
        assert (expired.status, expired.freshness_score) == ("archived", 0.0)

    @pytest.mark.asyncio
    async def test_skips_small_score_moves(self, store):
        await _add_brief(store, "steady", timedelta(hours=1), score=0.98)
        await _add_brief(store, "drifted", timedelta(hours=1), score=0.9)

        assert await refresh_freshness(store, NOW) == 1
        assert (await store.get(OpportunityBriefRecord, "steady")).freshness_score == 0.98
        assert (await store.get(OpportunityBriefRecord, "drifted")).freshness_score == 0.98

    @pytest.mark.asyncio
    async def test_archived_briefs_left_alone(self, store):
        await _add_brief(store, "gone", timedelta(days=30), status="archived", score=0.0)
        assert await refresh_freshness(store, NOW) == 0


@pytest.mark.asyncio
async def test_run_maintenance_reports_counts(store, clock):
    await store.create(IngestNonce(id="old", created_at=NOW - timedelta(hours=1)))
    await _add_brief(store, "aging", timedelta(hours=13))

    result = await run_maintenance(store, clock)

    assert result.to_dict() == {"nonces_deleted": 1, "briefs_updated": 1}
