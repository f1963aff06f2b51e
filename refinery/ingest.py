"""Ingest guard: authenticate, deduplicate and persist capture batches.

Checks run in order and the first failure rejects the request:

1. HMAC-SHA256 signature (constant-time compare)
2. timestamp within five minutes of now, either direction
3. nonce unseen (create-if-absent on the nonce collection)
4. capture id already stored -> success without reprocessing
5. at least 60 seconds since the source feed's last stored capture

The signature covers the canonical JSON of the request body with the
``signature`` key removed: keys sorted, no whitespace, UTF-8. Agents sign
with :func:`sign_capture`.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from refinery.models import Capture, IngestNonce
from refinery.schemas import CaptureRequest
from refinery.store import AlreadyExistsError, DocumentStore
from refinery.utils import as_utc, json_dump, utcnow

log = logging.getLogger(__name__)

MAX_TIMESTAMP_SKEW = timedelta(minutes=5)
MIN_INGEST_INTERVAL = timedelta(seconds=60)


class IngestRejected(Exception):
    """Request refused at the boundary; ``status_code`` is the HTTP status."""
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthenticityError(IngestRejected):
    status_code = 401


class StaleRequestError(IngestRejected):
    status_code = 401


class ReplayError(IngestRejected):
    status_code = 401


class RateLimitedError(IngestRejected):
    status_code = 429


@dataclass
class IngestResult:
    capture_id: str
    created: bool

    @property
    def message(self) -> str:
        return "Capture ingested" if self.created else "Capture already ingested"


# ---------------------------------------------------------------------------
# Signing
# ---------------------------------------------------------------------------


def canonical_body(payload: dict[str, Any]) -> bytes:
    unsigned = {k: v for k, v in payload.items() if k != "signature"}
    return json.dumps(unsigned, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode()


def compute_signature(payload: dict[str, Any], secret: str) -> str:
    return hmac.new(secret.encode(), canonical_body(payload), hashlib.sha256).hexdigest()


def sign_capture(payload: dict[str, Any], secret: str) -> dict[str, Any]:
    """Return a copy of ``payload`` with its ``signature`` filled in."""
    return {**payload, "signature": compute_signature(payload, secret)}


def verify_signature(payload: dict[str, Any], signature: str, secret: str) -> bool:
    expected = compute_signature(payload, secret)
    return hmac.compare_digest(expected.encode(), signature.lower().encode())


# ---------------------------------------------------------------------------
# Guard
# ---------------------------------------------------------------------------


class IngestGuard:
    def __init__(
        self,
        store: DocumentStore,
        secret: str,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.secret = secret
        self.clock = clock

    async def ingest(self, payload: dict[str, Any]) -> IngestResult:
        """Validate and store one capture.

        ``payload`` is the decoded JSON body. Schema failures raise pydantic's
        ``ValidationError``; every other refusal is an :class:`IngestRejected`.
        """
        capture = CaptureRequest.model_validate(payload)
        capture_id = str(capture.capture_id)

        if not self.secret:
            raise AuthenticityError("HMAC secret not configured")
        if not verify_signature(payload, capture.signature, self.secret):
            raise AuthenticityError("Invalid signature")

        now = self.clock()
        skew_ms = abs(now.timestamp() * 1000 - capture.timestamp)
        if skew_ms > MAX_TIMESTAMP_SKEW.total_seconds() * 1000:
            raise StaleRequestError("Timestamp too old or too far in the future")

        try:
            await self.store.create(IngestNonce(id=str(capture.nonce), created_at=now))
        except AlreadyExistsError:
            log.warning("Replayed nonce %s from %s", capture.nonce, capture.source_feed)
            raise ReplayError("Duplicate nonce: possible replay attack") from None

        if await self.store.exists(Capture, capture_id):
            log.info("Capture %s already ingested", capture_id)
            return IngestResult(capture_id=capture_id, created=False)

        latest = await self.store.list(
            Capture, Capture.source_feed == capture.source_feed,
            order_by="created_at", descending=True, limit=1,
        )
        if latest.items and now - as_utc(latest.items[0].created_at) < MIN_INGEST_INTERVAL:
            raise RateLimitedError("Rate limit exceeded: wait at least 60s between ingests")

        record = Capture(
            id=capture_id,
            source_feed=capture.source_feed,
            source_type=capture.source_type,
            captured_at=capture.captured_at,
            agent_version=capture.agent_version,
            payload_json=json_dump(payload),
            status="pending",
            created_at=now,
        )
        try:
            await self.store.create(record)
        except AlreadyExistsError:
            # Lost a race with a concurrent retry of the same capture.
            return IngestResult(capture_id=capture_id, created=False)
        log.info("Ingested capture %s from %s (%d signals)",
                 capture_id, capture.source_feed, len(capture.signals))
        return IngestResult(capture_id=capture_id, created=True)
