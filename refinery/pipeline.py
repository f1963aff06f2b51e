"""Pipeline orchestrator: one locked run through all three stages.

A run moves idle -> locked -> stage 1 -> stage 2 -> stage 3 -> finalized.
The lock is a fixed-id document created with create-if-absent semantics, so
mutual exclusion holds across processes sharing the store. It is released
on every path once acquired.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from refinery.baselines import BaselineTracker
from refinery.delta import WINDOW_HOURS, DeltaEngine, persist_signals
from refinery.llm import LLMClient
from refinery.models import Capture, PipelineLock, ProcessedItem, ScrubberOutputRecord, SignalRecord
from refinery.schemas import CapturePayload, PipelineRun, ScrubberOutput, Signal, SignalItem
from refinery.scrubber import Scrubber
from refinery.store import AlreadyExistsError, DocumentStore
from refinery.strategist import Strategist
from refinery.utils import BulkWriteError, best_effort, gather_bounded, unique, utcnow

log = logging.getLogger(__name__)

LOCK_ID = "pipeline_lock"
PENDING_PAGE_SIZE = 10
PROCESSED_PAGE_SIZE = 5000
OUTPUT_PAGE_SIZE = 500
PRIOR_SIGNAL_LIMIT = 100
SYNTHESIS_CONCURRENCY = 3


class ConcurrentRunError(Exception):
    """Another pipeline run holds the lock."""


class PipelineOrchestrator:
    def __init__(
        self,
        store: DocumentStore,
        llm: LLMClient,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.clock = clock
        self.scrubber = Scrubber(llm, store, clock=clock)
        self.tracker = BaselineTracker(store, clock=clock)
        self.engine = DeltaEngine(clock=clock)
        self.strategist = Strategist(llm, store, clock=clock)

    async def run(self) -> PipelineRun:
        """Execute one run and return its finalized record.

        Raises :class:`ConcurrentRunError` without side effects if another
        run is active. Any other failure is recorded on the run, which is
        marked ``failed``.
        """
        try:
            await self.store.create(PipelineLock(id=LOCK_ID, created_at=self.clock()))
        except AlreadyExistsError:
            raise ConcurrentRunError("Pipeline already running: concurrent execution prevented") from None

        run = PipelineRun(started_at=self.clock())
        log.info("Pipeline run %s started", run.id)
        try:
            await self.store.create(run.to_record())
            await self._execute(run)
            run.status = "completed"
        except Exception as exc:
            log.exception("Pipeline run %s failed", run.id)
            run.errors.append(str(exc))
            run.status = "failed"
        finally:
            await best_effort(self.store.delete(PipelineLock, LOCK_ID), "pipeline lock release")

        run.completed_at = self.clock()
        await self.store.put(run.to_record())
        log.info("Pipeline run %s %s: %d captures, %d briefs, %d tokens, %d errors",
                 run.id, run.status, run.captures_processed, run.strategist.briefs_generated,
                 run.total_tokens_used, len(run.errors))
        return run

    async def _execute(self, run: PipelineRun) -> None:
        pending = await self.store.list(
            Capture, Capture.status == "pending",
            order_by="created_at", limit=PENDING_PAGE_SIZE,
        )
        if not pending.items:
            run.errors.append("No pending captures to process")
            return

        # ---- Stage 1: scrubber ----
        processed_ids: set[str] = set()
        async for page in self.store.iterate(ProcessedItem, page_size=PROCESSED_PAGE_SIZE):
            processed_ids.update(p.id for p in page)

        originals: dict[str, SignalItem] = {}
        for capture in pending.items:
            await self._process_capture(run, capture, processed_ids, originals)

        # ---- Stage 2: baselines + delta engine ----
        window_start = self.clock() - timedelta(hours=WINDOW_HOURS)
        outputs: list[ScrubberOutput] = []
        async for page in self.store.iterate(
            ScrubberOutputRecord, ScrubberOutputRecord.processed_at >= window_start,
            order_by="processed_at", page_size=OUTPUT_PAGE_SIZE,
        ):
            outputs.extend(ScrubberOutput.from_record(rec) for rec in page)

        run.delta.baselines_updated, baselines = await self.tracker.update(outputs)

        prior_page = await self.store.list(
            SignalRecord, order_by="created_at", descending=True, limit=PRIOR_SIGNAL_LIMIT,
        )
        prior = [Signal.from_record(rec) for rec in prior_page.items]

        result = self.engine.run(outputs, baselines, prior)
        run.delta.signals_found = result.total_found
        run.delta.signals_qualifying = len(result.qualifying)
        await persist_signals(self.store, result.qualifying)

        # ---- Stage 3: strategist ----
        async def _synthesize(signal: Signal) -> None:
            outcome = await self.strategist.synthesize(signal, outputs, baselines, originals)
            run.total_tokens_used += outcome.tokens_used
            if outcome.brief is None:
                run.strategist.failed += 1
                run.errors.append(f"Strategist signal {signal.id}: {outcome.error}")
                return
            await self.strategist.persist(outcome.brief)
            run.strategist.briefs_generated += 1

        settled = await gather_bounded(result.qualifying, _synthesize, SYNTHESIS_CONCURRENCY)
        for signal, res in zip(result.qualifying, settled):
            if isinstance(res, BaseException):
                log.warning("Synthesis for signal %s raised: %s", signal.id, res)
                run.strategist.failed += 1
                run.errors.append(f"Strategist signal {signal.id}: {res}")

    async def _process_capture(
        self,
        run: PipelineRun,
        capture: Capture,
        processed_ids: set[str],
        originals: dict[str, SignalItem],
    ) -> None:
        await self.store.update(Capture, capture.id, status="processing")
        try:
            items = CapturePayload.model_validate_json(capture.payload_json).signals
            run.scrubber.input += len(items)
            for item in items:
                originals[item.item_id] = item

            result = await self.scrubber.scrub(capture.id, items, processed_ids)
            run.total_tokens_used += result.tokens_used
            run.scrubber.passed += result.output.total_passed
            run.scrubber.failed += len(result.errors)

            item_ids = unique(item.item_id for item in items)
            await self.scrubber.persist(result.output, item_ids)
            processed_ids.update(item_ids)

            await self.store.update(Capture, capture.id, status="processed")
            run.captures_processed += 1
            run.errors.extend(f"Scrubber capture {capture.id} {err}" for err in result.errors)
        except BulkWriteError as exc:
            await self.store.update(Capture, capture.id, status="failed", error_message=str(exc))
            raise
        except Exception as exc:
            log.warning("Capture %s failed: %s", capture.id, exc)
            run.errors.append(f"Scrubber capture {capture.id}: {exc}")
            await self.store.update(Capture, capture.id, status="failed", error_message=str(exc))
