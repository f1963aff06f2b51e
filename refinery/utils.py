"""Shared utility functions used across refinery modules."""
from __future__ import annotations

import asyncio
import json
import logging
import math
from collections.abc import Awaitable, Callable, Iterable, Sequence
from datetime import UTC, datetime
from typing import Any, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def json_dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


# ---------------------------------------------------------------------------
# Numbers and time
# ---------------------------------------------------------------------------


def round2(value: float) -> float:
    """Round half up to two decimals (``0.125 -> 0.13``, ``-0.345 -> -0.34``)."""
    return math.floor(value * 100 + 0.5) / 100


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def chunked(items: Sequence[T], size: int) -> list[list[T]]:
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def unique(items: Iterable[T]) -> list[T]:
    """Deduplicate while keeping first-seen order."""
    return list(dict.fromkeys(items))


# ---------------------------------------------------------------------------
# Concurrency helpers
# ---------------------------------------------------------------------------


async def gather_bounded(
    items: Iterable[T],
    fn: Callable[[T], Awaitable[R]],
    limit: int,
) -> list[R | BaseException]:
    """Run ``fn`` over ``items`` with at most ``limit`` in flight.

    Settles every call: results come back in input order, with the raised
    exception in place of a result for calls that failed.
    """
    sem = asyncio.Semaphore(limit)

    async def _run(item: T) -> R:
        async with sem:
            return await fn(item)

    return await asyncio.gather(*(_run(i) for i in items), return_exceptions=True)


async def best_effort(awaitable: Awaitable[Any], what: str) -> Any:
    """Await a cleanup operation, logging and swallowing any failure."""
    try:
        return await awaitable
    except Exception as exc:
        log.warning("Best-effort %s failed: %s", what, exc)
        return None


class BulkWriteError(Exception):
    """More than half of a batch of writes failed."""

    def __init__(self, label: str, failed: int, total: int):
        super().__init__(f"{label}: {failed}/{total} writes failed (>50%)")
        self.failed = failed
        self.total = total


def check_bulk_failures(label: str, results: Sequence[Any]) -> int:
    """Log failed writes in a settled batch; raise if more than half failed.

    Returns the number of failures.
    """
    failures = [r for r in results if isinstance(r, BaseException)]
    for exc in failures:
        log.error("%s write failed: %s", label, exc)
    if failures and len(failures) > len(results) / 2:
        raise BulkWriteError(label, len(failures), len(results))
    return len(failures)
