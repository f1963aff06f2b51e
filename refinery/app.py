from __future__ import annotations

import hmac
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Literal

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from pydantic import ValidationError

from refinery import services
from refinery.config import get_settings
from refinery.db import init_db
from refinery.ingest import IngestRejected
from refinery.llm import LLMClient
from refinery.pipeline import ConcurrentRunError
from refinery.store import DocumentStore

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Refinery",
    version="0.1.0",
    description=(
        "Signal intelligence pipeline. Ingests signed capture batches, extracts "
        "technical entities and friction, detects deviations from rolling baselines "
        "and synthesizes opportunity briefs."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Ingest", "description": "Signed capture submission from collection agents."},
        {"name": "Pipeline", "description": "Pipeline runs and maintenance. Bearer token required."},
        {"name": "Briefs", "description": "Opportunity briefs, gated by tier."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_store() -> DocumentStore:
    return DocumentStore()


def get_llm() -> LLMClient:
    return LLMClient()


def require_bearer(authorization: str | None = Header(default=None)) -> None:
    expected = get_settings().pipeline_bearer_token
    token = (authorization or "").removeprefix("Bearer ").strip()
    if not expected or not hmac.compare_digest(token.encode(), expected.encode()):
        raise HTTPException(401, "Unauthorized")


# ---------------------------------------------------------------------------
# Routes: Ingest
# ---------------------------------------------------------------------------


@app.post("/api/ingest", tags=["Ingest"], summary="Submit a signed capture batch")
async def ingest(request: Request, store: DocumentStore = Depends(get_store)) -> dict[str, Any]:
    raw = await request.body()
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(400, "Invalid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(400, "Invalid JSON")
    try:
        result = await services.ingest_capture(store, payload)
    except ValidationError as exc:
        raise HTTPException(400, {"error": "Validation failed", "details": json.loads(exc.json())})
    except IngestRejected as exc:
        raise HTTPException(exc.status_code, exc.message)
    return {"message": result.message, "capture_id": result.capture_id}


# ---------------------------------------------------------------------------
# Routes: Pipeline
# ---------------------------------------------------------------------------


@app.post("/api/pipeline/run", tags=["Pipeline"], summary="Run the pipeline once",
          dependencies=[Depends(require_bearer)])
async def run_pipeline(
    store: DocumentStore = Depends(get_store),
    llm: LLMClient = Depends(get_llm),
) -> dict[str, Any]:
    try:
        run = await services.run_pipeline(store, llm)
    except ConcurrentRunError as exc:
        raise HTTPException(409, str(exc))
    return run.model_dump(mode="json")


@app.post("/api/cron/cleanup", tags=["Pipeline"], summary="Purge nonces and decay brief freshness",
          dependencies=[Depends(require_bearer)])
async def cleanup(store: DocumentStore = Depends(get_store)) -> dict[str, Any]:
    result = await services.run_cleanup(store)
    return {"message": "Cleanup completed", **result.to_dict()}


@app.get("/api/runs", tags=["Pipeline"], summary="Recent pipeline runs",
         dependencies=[Depends(require_bearer)])
async def list_runs(
    limit: int = Query(20, ge=1, le=100),
    store: DocumentStore = Depends(get_store),
) -> list[dict[str, Any]]:
    return await services.list_runs(store, limit=limit)


# ---------------------------------------------------------------------------
# Routes: Briefs
# ---------------------------------------------------------------------------


@app.get("/api/briefs", tags=["Briefs"], summary="List briefs, newest first")
async def list_briefs(
    tier: Literal["free", "pro"] = "free",
    status: str | None = Query(None, description="Comma-separated: fresh, warm, cold, archived"),
    category: str | None = None,
    direction: str | None = None,
    cursor: str | None = None,
    limit: int = Query(services.DEFAULT_PAGE_SIZE, ge=1, le=services.MAX_PAGE_SIZE),
    store: DocumentStore = Depends(get_store),
) -> dict[str, Any]:
    try:
        return await services.list_briefs(
            store, tier=tier, status=status, category=category,
            direction=direction, cursor=cursor, limit=limit,
        )
    except ValueError as exc:
        raise HTTPException(400, str(exc))


@app.get("/api/briefs/{brief_id}", tags=["Briefs"], summary="Get one brief")
async def get_brief(
    brief_id: str,
    tier: Literal["free", "pro"] = "free",
    store: DocumentStore = Depends(get_store),
) -> dict[str, Any]:
    brief = await services.get_brief(store, brief_id, tier)
    if brief is None:
        raise HTTPException(404, "Brief not found")
    return brief
