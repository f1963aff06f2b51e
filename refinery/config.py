from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field

DATA_DIR = Path(__file__).parent / "data"


def _env(name: str, default: str = "") -> str:
    return os.environ.get(name, default).strip()


def _default_db_path() -> Path:
    override = _env("REFINERY_DB_PATH")
    if override:
        return Path(override).expanduser().resolve()
    return DATA_DIR / "refinery.db"


class Settings(BaseModel):
    database_path: Path = Field(default_factory=_default_db_path)

    ingest_hmac_secret: str = Field(default_factory=lambda: _env("INGEST_HMAC_SECRET"))
    pipeline_bearer_token: str = Field(default_factory=lambda: _env("PIPELINE_BEARER_TOKEN"))

    llm_provider: str = Field(default_factory=lambda: _env("LLM_PROVIDER", "anthropic"))
    extraction_model: str = Field(default_factory=lambda: _env("EXTRACTION_MODEL"))
    synthesis_model: str = Field(default_factory=lambda: _env("SYNTHESIS_MODEL"))

    @property
    def database_url(self) -> str:
        return f"sqlite:///{self.database_path}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
