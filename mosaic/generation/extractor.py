"""
Structured Extractor
---------------------
Two extractor implementations with an identical interface:

  OpenAIExtractor    -- OpenAI chat models (gpt-4o-mini default), JSON mode
  AnthropicExtractor -- Anthropic Claude models

Both expose:
  extract_summary(text)  -> SummaryExtraction   summary, tags, language, tasks, events
  extract_entities(text) -> ExtractionResult    entities + relationships
  generate_title(text)   -> str

Failure policy:
  - Transport failure in extract_summary raises ExternalServiceError (the
    orchestrator treats it as a top-level failure).
  - Malformed / non-JSON output never raises: defaults are substituted.
  - extract_entities and generate_title are fully fail-soft.
"""
from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any

from anthropic import Anthropic, AnthropicError
from langsmith import traceable
from loguru import logger
from openai import OpenAI, OpenAIError
from pydantic import ValidationError as PydanticValidationError

from mosaic.config import require_api_key
from mosaic.errors import ConfigurationError, ExternalServiceError, MalformedResponseError, MosaicError
from mosaic.generation.prompts import (
    DEFAULT_TITLE,
    ENTITY_EXTRACTION_PROMPT,
    SUMMARY_SYSTEM_PROMPT,
    TITLE_PROMPT,
)
from mosaic.schemas import (
    ExtractedEntity,
    ExtractedEvent,
    ExtractedRelationship,
    ExtractedTask,
    ExtractionResult,
    SummaryExtraction,
)

SUMMARY_INPUT_CHARS = 4000
ENTITY_INPUT_CHARS = 8000
TITLE_INPUT_CHARS = 2000
MAX_TITLE_CHARS = 100


# ---------------------------------------------------------------------------
# JSON parsing helpers
# ---------------------------------------------------------------------------

def clean_json_response(response: str) -> str:
    """Strip ```json fences that some models wrap around JSON output."""
    response = response.strip()
    if response.startswith("```json"):
        response = response[7:]
    elif response.startswith("```"):
        response = response[3:]
    if response.endswith("```"):
        response = response[:-3]
    return response.strip()


def parse_json_object(raw: str | None) -> dict[str, Any]:
    """Parse a structured-generation response. Raises MalformedResponseError."""
    if not raw or not raw.strip():
        raise MalformedResponseError("Empty response from model", raw or "")
    try:
        parsed = json.loads(clean_json_response(raw))
    except json.JSONDecodeError as exc:
        raise MalformedResponseError(f"Invalid JSON: {exc}", raw) from exc
    if not isinstance(parsed, dict):
        raise MalformedResponseError(f"Unexpected JSON shape: {type(parsed).__name__}", raw)
    return parsed


def _validated(model, items: Any, label: str) -> list:
    """Validate each element against `model`, dropping the ones that don't fit."""
    if not isinstance(items, list):
        return []
    valid = []
    for item in items:
        try:
            valid.append(model.model_validate(item))
        except PydanticValidationError as exc:
            logger.debug(f"[Extractor] Dropping invalid {label}: {exc.errors()[0]['msg']}")
    return valid


def summary_from_payload(payload: dict[str, Any]) -> SummaryExtraction:
    tags = payload.get("tags")
    return SummaryExtraction(
        summary=str(payload.get("summary") or "No summary available"),
        tags=[str(t) for t in tags if str(t).strip()] if isinstance(tags, list) else [],
        language=str(payload.get("language") or "unknown"),
        tasks=_validated(ExtractedTask, payload.get("tasks"), "task"),
        calendar_events=_validated(ExtractedEvent, payload.get("calendar_events"), "event"),
    )


def fallback_summary(raw: str | None) -> SummaryExtraction:
    """Default result when the model answered but not with usable JSON."""
    text = (raw or "").strip()
    return SummaryExtraction(
        summary=(text[:200] + "...") if text else "No summary available",
        tags=["ai-generated"],
        language="unknown",
    )


def entities_from_payload(payload: dict[str, Any]) -> ExtractionResult:
    return ExtractionResult(
        entities=_validated(ExtractedEntity, payload.get("entities"), "entity"),
        relationships=_validated(
            ExtractedRelationship, payload.get("relationships"), "relationship"
        ),
    )


# ---------------------------------------------------------------------------
# Shared extraction flow
# ---------------------------------------------------------------------------

class BaseExtractor(ABC):
    """Provider-agnostic extraction flow; subclasses implement _complete()."""

    provider = "base"
    model: str

    @abstractmethod
    def _complete(
        self,
        system: str,
        user: str,
        *,
        max_tokens: int,
        temperature: float,
        json_mode: bool,
    ) -> str:
        """Single completion call. Transport failures raise ExternalServiceError."""

    def extract_summary(self, text: str) -> SummaryExtraction:
        raw = self._complete(
            SUMMARY_SYSTEM_PROMPT,
            text[:SUMMARY_INPUT_CHARS],
            max_tokens=1000,
            temperature=0.3,
            json_mode=True,
        )
        try:
            result = summary_from_payload(parse_json_object(raw))
        except MalformedResponseError as exc:
            logger.warning(f"[Extractor] Summary response unusable, using defaults: {exc}")
            return fallback_summary(raw)

        logger.info(
            f"[Extractor] {self.provider}/{self.model} | summary ok | "
            f"{len(result.tags)} tags, {len(result.tasks)} tasks, "
            f"{len(result.calendar_events)} events"
        )
        return result

    def extract_entities(self, text: str) -> ExtractionResult:
        try:
            raw = self._complete(
                ENTITY_EXTRACTION_PROMPT,
                text[:ENTITY_INPUT_CHARS],
                max_tokens=2000,
                temperature=0.1,
                json_mode=True,
            )
            result = entities_from_payload(parse_json_object(raw))
        except MosaicError as exc:
            logger.warning(f"[Extractor] Entity extraction failed, returning empty result: {exc}")
            return ExtractionResult()

        logger.info(
            f"[Extractor] {len(result.entities)} entities, "
            f"{len(result.relationships)} relationships"
        )
        return result

    def generate_title(self, text: str) -> str:
        try:
            raw = self._complete(
                TITLE_PROMPT,
                text[:TITLE_INPUT_CHARS],
                max_tokens=20,
                temperature=0.3,
                json_mode=False,
            )
        except ExternalServiceError as exc:
            logger.warning(f"[Extractor] Title generation failed: {exc}")
            return DEFAULT_TITLE

        title = (raw or "").strip().strip('"')
        if len(title) < 2:
            return DEFAULT_TITLE
        return title if len(title) <= MAX_TITLE_CHARS else title[: MAX_TITLE_CHARS - 3] + "..."


# ---------------------------------------------------------------------------
# OpenAI Extractor
# ---------------------------------------------------------------------------

class OpenAIExtractor(BaseExtractor):
    """Structured extraction using OpenAI chat models in JSON mode."""

    provider = "openai"

    def __init__(self, model: str = "gpt-4o-mini", client: OpenAI | None = None) -> None:
        self.model = model
        self._client = client or OpenAI(api_key=require_api_key("OPENAI_API_KEY"))

    @traceable(name="extract_openai", run_type="llm")
    def _complete(
        self,
        system: str,
        user: str,
        *,
        max_tokens: int,
        temperature: float,
        json_mode: bool,
    ) -> str:
        kwargs: dict[str, Any] = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            response = self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                max_tokens=max_tokens,
                temperature=temperature,
                **kwargs,
            )
        except OpenAIError as exc:
            raise ExternalServiceError("extraction", str(exc)) from exc
        return response.choices[0].message.content or ""


# ---------------------------------------------------------------------------
# Anthropic Extractor
# ---------------------------------------------------------------------------

class AnthropicExtractor(BaseExtractor):
    """
    Structured extraction using Anthropic Claude models.

    The Anthropic SDK has no JSON mode; the prompts already demand a bare
    JSON object and clean_json_response() strips any code fences.
    """

    provider = "anthropic"

    def __init__(
        self,
        model: str = "claude-haiku-4-5-20251001",
        client: Anthropic | None = None,
    ) -> None:
        self.model = model
        self._client = client or Anthropic(api_key=require_api_key("ANTHROPIC_API_KEY"))

    @traceable(name="extract_anthropic", run_type="llm")
    def _complete(
        self,
        system: str,
        user: str,
        *,
        max_tokens: int,
        temperature: float,
        json_mode: bool,
    ) -> str:
        try:
            response = self._client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                temperature=temperature,
                system=system,
                messages=[{"role": "user", "content": user}],
            )
        except AnthropicError as exc:
            raise ExternalServiceError("extraction", str(exc)) from exc
        return response.content[0].text if response.content else ""


def make_extractor(config: dict) -> BaseExtractor:
    """Instantiate the extractor for the configured provider."""
    provider = config.get("extraction", {}).get("provider", "openai")
    if provider == "anthropic":
        return AnthropicExtractor(model=config.get("anthropic", {}).get("model", "claude-haiku-4-5-20251001"))
    if provider == "openai":
        return OpenAIExtractor(model=config.get("openai", {}).get("chat_model", "gpt-4o-mini"))
    raise ConfigurationError(f"Unknown extraction provider '{provider}'")
