"""Document store over the ORM tables.

Each table is a collection keyed by a string ``id``. Creation is
create-if-absent: a primary-key conflict surfaces as
:class:`AlreadyExistsError`, which is how nonces, captures, processed items
and the pipeline lock get their idempotency.

Methods are coroutines so callers can be swapped onto a remote document
database without touching pipeline code. Each call opens and closes its own
short session and never awaits while holding it.
"""
from __future__ import annotations

import base64
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Generic, TypeVar

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from refinery.db import session_scope
from refinery.models import Base

log = logging.getLogger(__name__)

M = TypeVar("M", bound=Base)


class StoreError(Exception):
    """Base class for document store failures."""


class AlreadyExistsError(StoreError):
    """A document with this id already exists."""


class NotFoundError(StoreError):
    """No document with this id."""


@dataclass
class Page(Generic[M]):
    items: list[M]
    cursor: tuple[Any, str] | None = None  # (order value, id) of the last item when more may follow


# ---------------------------------------------------------------------------
# Cursor tokens
# ---------------------------------------------------------------------------


def encode_cursor(cursor: tuple[Any, str] | None) -> str | None:
    """Opaque, URL-safe form of a page cursor."""
    if cursor is None:
        return None
    value, last_id = cursor
    if isinstance(value, datetime):
        value = {"dt": value.isoformat()}
    raw = json.dumps([value, last_id]).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def decode_cursor(token: str) -> tuple[Any, str]:
    """Inverse of :func:`encode_cursor`. Raises ``ValueError`` on garbage."""
    try:
        padded = token + "=" * (-len(token) % 4)
        value, last_id = json.loads(base64.urlsafe_b64decode(padded.encode()))
    except (ValueError, TypeError) as exc:
        raise ValueError(f"Invalid cursor: {token!r}") from exc
    if isinstance(value, dict) and "dt" in value:
        value = datetime.fromisoformat(value["dt"])
    return value, str(last_id)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class DocumentStore:
    def __init__(self, session_factory: sessionmaker[Session] | None = None):
        self._factory = session_factory

    def _scope(self):
        return session_scope(self._factory)

    async def create(self, obj: M) -> M:
        """Insert ``obj``; raise :class:`AlreadyExistsError` if its id is taken."""
        with self._scope() as session:
            session.add(obj)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                if obj.id is not None and session.get(type(obj), obj.id) is not None:
                    raise AlreadyExistsError(f"{type(obj).__name__} {obj.id!r} already exists") from exc
                raise StoreError(f"{type(obj).__name__} {obj.id!r} rejected: {exc.orig}") from exc
        return obj

    async def put(self, obj: M) -> M:
        """Insert or replace ``obj`` by id."""
        with self._scope() as session:
            merged = session.merge(obj)
            session.commit()
            return merged

    async def get(self, model: type[M], doc_id: str) -> M | None:
        with self._scope() as session:
            return session.get(model, doc_id)

    async def exists(self, model: type[M], doc_id: str) -> bool:
        return await self.get(model, doc_id) is not None

    async def update(self, model: type[M], doc_id: str, **fields: Any) -> M:
        with self._scope() as session:
            obj = session.get(model, doc_id)
            if obj is None:
                raise NotFoundError(f"{model.__name__} {doc_id!r} not found")
            for key, value in fields.items():
                setattr(obj, key, value)
            session.commit()
            return obj

    async def delete(self, model: type[M], doc_id: str) -> None:
        with self._scope() as session:
            obj = session.get(model, doc_id)
            if obj is None:
                raise NotFoundError(f"{model.__name__} {doc_id!r} not found")
            session.delete(obj)
            session.commit()

    async def list(
        self,
        model: type[M],
        *where: Any,
        order_by: str = "id",
        descending: bool = False,
        limit: int = 100,
        after: tuple[Any, str] | None = None,
    ) -> Page[M]:
        """One page of ``model`` rows matching ``where``.

        Ordering is ``(order_by, id)`` so ties are stable, and ``after`` is a
        keyset cursor rather than an offset: deleting rows from earlier pages
        does not make later pages skip anything.
        """
        col = getattr(model, order_by)
        pk = model.id
        stmt = select(model).where(*where)
        if after is not None:
            value, last_id = after
            if order_by == "id":
                stmt = stmt.where(pk < last_id if descending else pk > last_id)
            elif descending:
                stmt = stmt.where(or_(col < value, and_(col == value, pk < last_id)))
            else:
                stmt = stmt.where(or_(col > value, and_(col == value, pk > last_id)))
        if order_by == "id":
            stmt = stmt.order_by(pk.desc() if descending else pk.asc())
        elif descending:
            stmt = stmt.order_by(col.desc(), pk.desc())
        else:
            stmt = stmt.order_by(col.asc(), pk.asc())
        stmt = stmt.limit(limit)

        with self._scope() as session:
            items = [*session.execute(stmt).scalars()]

        cursor = None
        if items and len(items) == limit:
            last = items[-1]
            cursor = (getattr(last, order_by), last.id)
        return Page(items=items, cursor=cursor)

    async def iterate(
        self,
        model: type[M],
        *where: Any,
        order_by: str = "id",
        descending: bool = False,
        page_size: int = 500,
    ) -> AsyncIterator[list[M]]:
        """Yield successive pages until a short page signals the end."""
        after = None
        while True:
            page = await self.list(
                model, *where, order_by=order_by, descending=descending,
                limit=page_size, after=after,
            )
            if page.items:
                yield page.items
            if page.cursor is None:
                return
            after = page.cursor

    async def get_many(self, model: type[M], ids: list[str], batch_size: int = 100) -> dict[str, M]:
        """Fetch documents by id in batches; missing ids are simply absent."""
        found: dict[str, M] = {}
        for start in range(0, len(ids), batch_size):
            chunk = ids[start:start + batch_size]
            page = await self.list(model, model.id.in_(chunk), limit=len(chunk))
            found.update((obj.id, obj) for obj in page.items)
        return found
