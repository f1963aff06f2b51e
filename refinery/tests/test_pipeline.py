"""End-to-end runs through the orchestrator with a scripted model."""
from __future__ import annotations

import asyncio

import pytest

from refinery.models import (
    Capture,
    OpportunityBriefRecord,
    PipelineLock,
    PipelineRunRecord,
    ProcessedItem,
    SignalRecord,
)
from refinery.pipeline import LOCK_ID, ConcurrentRunError, PipelineOrchestrator
from refinery.schemas import BatchExtraction, BriefDraft, OpportunityBrief, PipelineRun
from refinery.tests.factories import (
    NOW,
    FakeLLM,
    brief_draft,
    capture_payload,
    entity,
    notable,
    tweet,
)
from refinery.utils import BulkWriteError, json_dump


def _extraction() -> BatchExtraction:
    return BatchExtraction(
        entities=[entity("Bun", 12, sentiment="positive", category="tool")],
        friction_points=[],
        notable_items=[notable("1001", "Bun installs are fast")],
    )


async def _add_capture(store, capture_id: str, signals=None, payload_json: str | None = None):
    payload = capture_payload(capture_id, f"nonce-{capture_id}", signals)
    await store.create(Capture(
        id=capture_id, source_feed="feed-a", source_type="twitter", captured_at=NOW,
        agent_version="1.4.0", payload_json=payload_json or json_dump(payload),
        status="pending", created_at=NOW,
    ))


def _llm(**kwargs) -> FakeLLM:
    return FakeLLM({BatchExtraction: _extraction(), BriefDraft: brief_draft()}, **kwargs)


class TestRun:
    @pytest.mark.asyncio
    async def test_nothing_pending(self, store, clock):
        run = await PipelineOrchestrator(store, FakeLLM(), clock).run()

        assert run.status == "completed"
        assert run.errors == ["No pending captures to process"]
        assert run.completed_at == NOW
        assert not await store.exists(PipelineLock, LOCK_ID)
        stored = PipelineRun.from_record(await store.get(PipelineRunRecord, run.id))
        assert stored.status == "completed"

    @pytest.mark.asyncio
    async def test_capture_to_brief(self, store, clock):
        await _add_capture(store, "cap-1", [tweet("1001", "Bun installs are fast"),
                                            tweet("1002", "giveaway! follow and retweet")])
        llm = _llm()

        run = await PipelineOrchestrator(store, llm, clock).run()

        assert run.status == "completed", run.errors
        assert run.errors == []
        assert run.captures_processed == 1
        assert (run.scrubber.input, run.scrubber.passed, run.scrubber.failed) == (2, 1, 0)
        assert run.delta.baselines_updated == 1
        assert run.delta.signals_found == 1
        assert run.delta.signals_qualifying == 1
        assert run.strategist.briefs_generated == 1
        assert run.total_tokens_used == 20

        capture = await store.get(Capture, "cap-1")
        assert capture.status == "processed"
        assert await store.exists(ProcessedItem, "1001")
        assert await store.exists(ProcessedItem, "1002")

        [signal] = (await store.list(SignalRecord)).items
        [brief_rec] = (await store.list(OpportunityBriefRecord)).items
        brief = OpportunityBrief.from_record(brief_rec)
        assert brief.cluster_id == signal.id
        assert brief.status == "fresh"

        # The strategist prompt quotes the original tweet.
        brief_prompt = next(p for schema, p, _ in llm.calls if schema is BriefDraft)
        assert '@dev: "Bun installs are fast"' in brief_prompt

    @pytest.mark.asyncio
    async def test_items_seen_before_are_not_reextracted(self, store, clock):
        await store.create(ProcessedItem(id="1001", capture_id="older"))
        await _add_capture(store, "cap-1", [tweet("1001")])
        llm = _llm()

        run = await PipelineOrchestrator(store, llm, clock).run()

        assert run.scrubber.passed == 0
        assert llm.calls == []
        assert (await store.get(Capture, "cap-1")).status == "processed"

    @pytest.mark.asyncio
    async def test_bad_capture_marked_failed_and_run_continues(self, store, clock):
        await _add_capture(store, "cap-bad", payload_json='{"signals": "oops"}')
        await _add_capture(store, "cap-good", [tweet("1001", "Bun installs are fast")])

        run = await PipelineOrchestrator(store, _llm(), clock).run()

        assert run.status == "completed"
        assert run.captures_processed == 1
        assert any(e.startswith("Scrubber capture cap-bad:") for e in run.errors)
        bad = await store.get(Capture, "cap-bad")
        assert bad.status == "failed"
        assert bad.error_message

    @pytest.mark.asyncio
    async def test_batch_errors_recorded(self, store, clock):
        await _add_capture(store, "cap-1")
        llm = FakeLLM({BatchExtraction: RuntimeError("rate limited")})

        run = await PipelineOrchestrator(store, llm, clock).run()

        assert run.status == "completed"
        assert run.scrubber.failed == 1
        assert "Scrubber capture cap-1 batch 0: rate limited" in run.errors
        assert run.delta.signals_found == 0

    @pytest.mark.asyncio
    async def test_synthesis_failure_recorded(self, store, clock):
        await _add_capture(store, "cap-1", [tweet("1001", "Bun installs are fast")])
        llm = FakeLLM({BatchExtraction: _extraction()})

        run = await PipelineOrchestrator(store, llm, clock).run()

        assert run.status == "completed"
        assert run.strategist.failed == 1
        assert run.strategist.briefs_generated == 0
        [signal] = (await store.list(SignalRecord)).items
        assert f"Strategist signal {signal.id}: no scripted response" in run.errors

    @pytest.mark.asyncio
    async def test_at_most_three_syntheses_in_flight(self, store, clock):
        await _add_capture(store, "cap-1", [tweet("1001", "new runtimes everywhere")])
        extraction = BatchExtraction(
            entities=[entity(name, 12) for name in ("Bun", "Deno", "Zig", "Gleam", "Mojo")],
            friction_points=[], notable_items=[],
        )
        llm = FakeLLM({BatchExtraction: extraction, BriefDraft: brief_draft()}, delay=0.01)

        run = await PipelineOrchestrator(store, llm, clock).run()

        assert run.delta.signals_qualifying == 5
        assert run.strategist.briefs_generated == 5
        assert llm.peak_in_flight == 3


class TestLocking:
    @pytest.mark.asyncio
    async def test_concurrent_runs_exclusive(self, store, clock):
        await _add_capture(store, "cap-1", [tweet("1001", "Bun installs are fast")])
        llm = _llm(delay=0.05)

        results = await asyncio.gather(
            PipelineOrchestrator(store, llm, clock).run(),
            PipelineOrchestrator(store, llm, clock).run(),
            return_exceptions=True,
        )

        rejected = [r for r in results if isinstance(r, ConcurrentRunError)]
        finished = [r for r in results if isinstance(r, PipelineRun)]
        assert len(rejected) == 1
        assert len(finished) == 1
        assert str(rejected[0]) == "Pipeline already running: concurrent execution prevented"
        assert not await store.exists(PipelineLock, LOCK_ID)
        assert len((await store.list(PipelineRunRecord)).items) == 1

    @pytest.mark.asyncio
    async def test_lock_released_after_failure(self, store, clock, monkeypatch):
        orchestrator = PipelineOrchestrator(store, FakeLLM(), clock)

        async def boom(run):
            raise RuntimeError("boom")

        monkeypatch.setattr(orchestrator, "_execute", boom)
        run = await orchestrator.run()

        assert run.status == "failed"
        assert run.errors == ["boom"]
        assert not await store.exists(PipelineLock, LOCK_ID)
        assert (await store.get(PipelineRunRecord, run.id)).status == "failed"

    @pytest.mark.asyncio
    async def test_bulk_write_failure_fails_run(self, store, clock, monkeypatch):
        await _add_capture(store, "cap-1")
        orchestrator = PipelineOrchestrator(store, _llm(), clock)

        async def failing_persist(output, item_ids):
            raise BulkWriteError("persist_scrubber_output", 2, 3)

        monkeypatch.setattr(orchestrator.scrubber, "persist", failing_persist)
        run = await orchestrator.run()

        assert run.status == "failed"
        assert "persist_scrubber_output: 2/3 writes failed (>50%)" in run.errors
        assert (await store.get(Capture, "cap-1")).status == "failed"
        assert not await store.exists(PipelineLock, LOCK_ID)

    @pytest.mark.asyncio
    async def test_held_lock_rejects_without_side_effects(self, store, clock):
        await store.create(PipelineLock(id=LOCK_ID, created_at=NOW))

        with pytest.raises(ConcurrentRunError):
            await PipelineOrchestrator(store, FakeLLM(), clock).run()

        assert (await store.list(PipelineRunRecord)).items == []
        assert await store.exists(PipelineLock, LOCK_ID)
