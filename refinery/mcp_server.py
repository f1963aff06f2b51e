from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP

from refinery import services
from refinery.db import init_db
from refinery.pipeline import ConcurrentRunError
from refinery.store import DocumentStore

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def refinery_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "Refinery",
    instructions=(
        "Refinery turns developer chatter into opportunity briefs. "
        "Use list_briefs() to browse current briefs, get_brief(id) for details, "
        "run_pipeline() to process pending captures and list_runs() to inspect past runs."
    ),
    lifespan=refinery_lifespan,
    json_response=True,
)


def _store() -> DocumentStore:
    return DocumentStore()


# ---------------------------------------------------------------------------
# Tools: Briefs
# ---------------------------------------------------------------------------


@mcp.tool()
async def list_briefs(
    tier: str = "free", status: str | None = None, category: str | None = None,
    direction: str | None = None, cursor: str | None = None, limit: int = 20,
) -> dict:
    """List opportunity briefs, newest first.

    Args:
        tier: "free" hides pro fields and trims evidence; "pro" shows everything.
        status: Comma-separated from fresh, warm, cold, archived. Default fresh,warm.
        category: velocity_spike, sentiment_flip, friction_cluster or new_emergence.
        direction: new, accelerating or decelerating.
        cursor: next_cursor from a previous call.
        limit: Max results (default 20, max 50).
    """
    if tier not in ("free", "pro"):
        return {"error": f"Unknown tier {tier!r}"}
    try:
        return await services.list_briefs(
            _store(), tier=tier, status=status, category=category,
            direction=direction, cursor=cursor, limit=limit,
        )
    except ValueError as exc:
        return {"error": str(exc)}


@mcp.tool()
async def get_brief(brief_id: str, tier: str = "free") -> dict:
    """Get one opportunity brief by id."""
    if tier not in ("free", "pro"):
        return {"error": f"Unknown tier {tier!r}"}
    brief = await services.get_brief(_store(), brief_id, tier)
    return brief if brief is not None else {"error": f"Brief {brief_id} not found"}


# ---------------------------------------------------------------------------
# Tools: Pipeline
# ---------------------------------------------------------------------------


@mcp.tool()
async def run_pipeline() -> dict:
    """Process pending captures through all stages. Requires an LLM API key."""
    try:
        run = await services.run_pipeline(_store())
    except ConcurrentRunError as exc:
        return {"error": str(exc)}
    return run.model_dump(mode="json")


@mcp.tool()
async def run_maintenance() -> dict:
    """Purge expired ingest nonces and recompute brief freshness."""
    result = await services.run_cleanup(_store())
    return result.to_dict()


@mcp.tool()
async def list_runs(limit: int = 20) -> list[dict]:
    """Recent pipeline runs with per-stage counters and errors."""
    return await services.list_runs(_store(), limit=limit)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Refinery MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
