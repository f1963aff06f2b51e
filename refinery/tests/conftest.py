from __future__ import annotations

import pytest

from refinery.config import get_settings
from refinery.db import make_engine, make_session_factory
from refinery.store import DocumentStore
from refinery.tests.factories import NOW, SECRET


@pytest.fixture()
def session_factory():
    engine = make_engine("sqlite://")
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture()
def store(session_factory) -> DocumentStore:
    return DocumentStore(session_factory)


@pytest.fixture()
def clock():
    return lambda: NOW


@pytest.fixture()
def settings_env(monkeypatch, tmp_path):
    """Point settings at a temp database with known secrets."""
    monkeypatch.setenv("REFINERY_DB_PATH", str(tmp_path / "refinery.db"))
    monkeypatch.setenv("INGEST_HMAC_SECRET", SECRET)
    monkeypatch.setenv("PIPELINE_BEARER_TOKEN", "run-token")
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()
