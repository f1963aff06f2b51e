"""Generative model client with schema-validated structured output.

Both stages talk to the model through :meth:`LLMClient.extract`, which never
raises for model-side failures: transport errors, unparseable JSON and schema
violations all come back as an :class:`ExtractionResult` with ``error`` set
and ``data`` empty. No retries; the pipeline reprocesses on the next run.
"""
from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ValidationError

from refinery.config import get_settings

log = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

_DEFAULT_MODELS = {
    # provider: (extraction, synthesis)
    "anthropic": ("claude-haiku-4-5-20251001", "claude-sonnet-4-5-20250929"),
    "openai": ("gpt-4o-mini", "gpt-4o"),
    "openai_compatible": ("gpt-4o-mini", "gpt-4o"),
}

_FENCE_RE = re.compile(r"```(?:json)?\s*(\{.*\})\s*```", re.DOTALL)


class LLMCallError(Exception):
    """LLM call failed or returned unparseable output."""


@dataclass
class ExtractionResult(Generic[T]):
    data: T | None
    tokens_used: int = 0
    error: str | None = None


class LLMClient:
    """Unified async LLM client supporting Anthropic and OpenAI."""

    def __init__(
        self,
        provider: str | None = None,
        extraction_model: str | None = None,
        synthesis_model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_tokens: int = 4096,
    ):
        settings = get_settings()
        self.provider = provider or settings.llm_provider
        if self.provider not in _DEFAULT_MODELS:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")
        small, large = _DEFAULT_MODELS[self.provider]
        self.extraction_model = extraction_model or settings.extraction_model or small
        self.synthesis_model = synthesis_model or settings.synthesis_model or large
        self.max_tokens = max_tokens
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key or os.environ.get("ANTHROPIC_API_KEY")
            )
        else:
            import openai
            kwargs: dict[str, Any] = {}
            key = self._api_key or os.environ.get("OPENAI_API_KEY")
            if key:
                kwargs["api_key"] = key
            url = self._base_url or os.environ.get("OPENAI_BASE_URL")
            if url:
                kwargs["base_url"] = url
            self._client = openai.AsyncOpenAI(**kwargs)

    async def _complete(self, model: str, system: str, user: str) -> tuple[str, int]:
        """Send system+user messages, return (raw text, tokens used)."""
        try:
            if self.provider == "anthropic":
                response = await self._client.messages.create(
                    model=model,
                    max_tokens=self.max_tokens,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
                text = response.content[0].text.strip()
                usage = response.usage
                tokens = (usage.input_tokens + usage.output_tokens) if usage else 0
            else:
                response = await self._client.chat.completions.create(
                    model=model,
                    max_tokens=self.max_tokens,
                    response_format={"type": "json_object"},
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                )
                text = response.choices[0].message.content or "{}"
                tokens = response.usage.total_tokens if response.usage else 0
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}") from exc
        return text, tokens

    async def extract(
        self,
        system: str,
        prompt: str,
        schema: type[T],
        model: str | None = None,
    ) -> ExtractionResult[T]:
        """Ask the model for a JSON object matching ``schema``."""
        model = model or self.extraction_model
        system = (
            f"{system}\n\nRespond with ONLY a JSON object matching this JSON schema:\n"
            f"{json.dumps(schema.model_json_schema())}"
        )
        try:
            text, tokens = await self._complete(model, system, prompt)
        except LLMCallError as exc:
            log.warning("%s", exc)
            return ExtractionResult(data=None, error=str(exc))

        m = _FENCE_RE.search(text)
        if m:
            text = m.group(1)
        try:
            data = schema.model_validate_json(text)
        except ValidationError as exc:
            log.warning("LLM output failed %s validation: %s", schema.__name__, text[:200])
            return ExtractionResult(data=None, tokens_used=tokens,
                                    error=f"Invalid {schema.__name__} output: {exc.error_count()} errors")
        return ExtractionResult(data=data, tokens_used=tokens)
