"""Stage 1: turn raw signal items into entities, friction points and notable items."""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from refinery.filters import FilterChain, default_chain
from refinery.llm import ExtractionResult, LLMClient
from refinery.models import ProcessedItem
from refinery.schemas import (
    BatchExtraction,
    FrictionPoint,
    NotableItem,
    ScrubberOutput,
    SignalItem,
    TechEntity,
)
from refinery.store import AlreadyExistsError, DocumentStore
from refinery.utils import check_bulk_failures, chunked, gather_bounded, utcnow

log = logging.getLogger(__name__)

BATCH_SIZE = 25
CONCURRENCY = 5

SOURCE_LABELS = {
    "twitter": "developer tweets",
    "github": "GitHub events",
    "hackernews": "Hacker News posts",
    "reddit": "Reddit posts",
}
MIXED_SOURCE_LABEL = "developer posts from several platforms"

SYSTEM_PROMPT = """\
You are a tech-market intelligence analyst. Extract structured signals from {source_label}.
Focus on: technology shifts, developer friction points, emerging tools, sentiment changes.
Be precise with entity categorization and friction severity assessment.

For each entity, include a mention_context classifying WHY it was mentioned:
- announcement: new release, launch, or official update
- complaint: expressing frustration, reporting bugs, or criticism
- migration: switching from/to this technology
- comparison: comparing with alternatives
- praise: positive experience or endorsement
- question: asking about or seeking help with"""

EXTRACTION_PROMPT = """\
Analyze these developer signals and extract:
1. Tech entities mentioned (frameworks, languages, tools, platforms, protocols, concepts) \
with sentiment, mention_context, and friction signals
2. Friction points (pain points, bugs, migration issues) with severity
3. Notable items with relevance scores (0-1) and extracted insights; use the bracketed \
id of each signal as its item_id

Signals:
{signals}"""


@dataclass
class BatchError:
    batch_index: int
    error: str

    def __str__(self) -> str:
        return f"batch {self.batch_index}: {self.error}"


@dataclass
class ScrubberResult:
    output: ScrubberOutput
    tokens_used: int = 0
    errors: list[BatchError] = field(default_factory=list)


def merge_entities(entities: Iterable[TechEntity]) -> list[TechEntity]:
    """Merge entity observations by case-folded name.

    Mentions are summed and the friction flag is OR-ed. The merged
    ``mention_context`` comes from the single observation with the highest
    mention count; on a tie the earliest observation keeps it.
    """
    merged: dict[str, TechEntity] = {}
    best: dict[str, int] = {}
    for entity in entities:
        key = entity.name.casefold()
        existing = merged.get(key)
        if existing is None:
            merged[key] = entity.model_copy()
            best[key] = entity.mentions
            continue
        existing.mentions += entity.mentions
        existing.friction_signal = existing.friction_signal or entity.friction_signal
        if entity.mentions > best[key]:
            best[key] = entity.mentions
            existing.mention_context = entity.mention_context
    return list(merged.values())


class Scrubber:
    def __init__(
        self,
        llm: LLMClient,
        store: DocumentStore,
        noise_filter: FilterChain | None = None,
        batch_size: int = BATCH_SIZE,
        concurrency: int = CONCURRENCY,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.llm = llm
        self.store = store
        self.noise_filter = noise_filter or default_chain()
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.clock = clock

    async def _extract_batch(self, batch: Sequence[SignalItem]) -> ExtractionResult[BatchExtraction]:
        sources = {item.source_type for item in batch}
        label = SOURCE_LABELS[sources.pop()] if len(sources) == 1 else MIXED_SOURCE_LABEL
        system = SYSTEM_PROMPT.format(source_label=label)
        prompt = EXTRACTION_PROMPT.format(signals="\n\n".join(item.prompt_line() for item in batch))
        return await self.llm.extract(system, prompt, BatchExtraction, model=self.llm.extraction_model)

    async def scrub(
        self,
        capture_id: str,
        items: Sequence[SignalItem],
        processed_ids: set[str],
    ) -> ScrubberResult:
        """Extract one capture's unseen, non-spam items in bounded-concurrency batches.

        A failed batch is recorded in ``errors`` and contributes nothing; the
        other batches still land in the output.
        """
        fresh = [item for item in items if item.item_id not in processed_ids]
        clean = self.noise_filter.apply(fresh)
        batches = chunked(clean, self.batch_size)
        log.info("Scrubbing capture %s: %d items, %d unseen, %d clean, %d batches",
                 capture_id, len(items), len(fresh), len(clean), len(batches))

        results = await gather_bounded(batches, self._extract_batch, self.concurrency)

        tokens = 0
        errors: list[BatchError] = []
        entities: list[TechEntity] = []
        friction: list[FrictionPoint] = []
        notable: list[NotableItem] = []
        for idx, result in enumerate(results):
            if isinstance(result, BaseException):
                errors.append(BatchError(idx, str(result)))
                continue
            tokens += result.tokens_used
            if result.error or result.data is None:
                errors.append(BatchError(idx, result.error or "No data returned"))
                continue
            entities.extend(result.data.entities)
            friction.extend(result.data.friction_points)
            notable.extend(result.data.notable_items)

        for err in errors:
            log.warning("Capture %s extraction %s", capture_id, err)

        output = ScrubberOutput(
            capture_id=capture_id,
            processed_at=self.clock(),
            total_input=len(items),
            total_passed=len(clean),
            entities=merge_entities(entities),
            friction_points=friction,
            notable_items=notable,
        )
        return ScrubberResult(output=output, tokens_used=tokens, errors=errors)

    async def persist(self, output: ScrubberOutput, item_ids: Sequence[str]) -> None:
        """Record the output and mark its source items processed.

        Items already marked are skipped silently. If more than half of the
        marks fail for any other reason, :class:`BulkWriteError` is raised.
        """
        await self.store.create(output.to_record())
        if not item_ids:
            return

        async def _mark(item_id: str) -> None:
            try:
                await self.store.create(ProcessedItem(id=item_id, capture_id=output.capture_id))
            except AlreadyExistsError:
                pass

        results = await gather_bounded(item_ids, _mark, limit=len(item_ids))
        check_bulk_failures("persist_scrubber_output", results)
