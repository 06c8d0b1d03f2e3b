"""Normalizes the applicant's free-text answers into an Application.

The LLM is asked for one JSON object; its output is cleaned of the usual
quirks (markdown fences, trailing commas) and validated with Pydantic.
One retry with a stricter instruction, then ExtractionError.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import date

import httpx
from pydantic import BaseModel, ValidationError

from src.errors import ExtractionError
from src.llm.client import OllamaClient, llm_client
from src.schemas.application import Application

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You convert a temporary entry application into JSON.
Today is __TODAY__. Resolve relative dates ("tomorrow", "next Friday") against today.

Return ONE JSON object with exactly these keys:
- "identity": the applicant's game handle, verbatim including any "BE_" prefix
- "nationality": the applicant's country, as written
- "purpose": purpose of the visit, one short sentence
- "start": ISO 8601 datetime of arrival (YYYY-MM-DDTHH:MM:SS)
- "end": ISO 8601 datetime of departure (YYYY-MM-DDTHH:MM:SS)
- "companions": list of {"handle": ..., "nationality": ...}; nationality null if not stated
- "sponsors": list of names of residents the applicant will meet

Use null for anything not stated and [] for empty lists. Never invent values.
Output JSON only, no commentary."""

RETRY_PROMPT = (
    "Your previous answer was not valid JSON. Reply ONLY with one JSON object "
    "using the keys identity, nationality, purpose, start, end, companions, sponsors. "
    "Use null for unknown values."
)


def parse_llm_json[T: BaseModel](raw: str, schema: type[T]) -> T:
    """Parse LLM text output into a Pydantic model.

    Raises:
        ValueError: If JSON parsing or Pydantic validation fails.
    """
    cleaned = _strip_markdown_fences(raw.strip())
    cleaned = re.sub(r",\s*([}\]])", r"\1", cleaned)

    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        msg = f"Invalid JSON from LLM: {exc}"
        raise ValueError(msg) from exc

    if not isinstance(data, dict):
        msg = f"Expected a JSON object, got {type(data).__name__}"
        raise ValueError(msg)

    try:
        return schema.model_validate(data)
    except ValidationError as exc:
        msg = f"Schema validation failed: {exc}"
        raise ValueError(msg) from exc


def _strip_markdown_fences(text: str) -> str:
    match = re.search(r"```(?:json)?\s*\n?(.*?)\n?\s*```", text, re.DOTALL)
    if match:
        return match.group(1).strip()
    return text


class TextExtractor:
    """TextExtractor collaborator backed by the Ollama client."""

    def __init__(self, client: OllamaClient | None = None) -> None:
        self._client = client or llm_client

    def system_prompt(self, today: date | None = None) -> str:
        return SYSTEM_PROMPT.replace("__TODAY__", (today or date.today()).isoformat())

    async def extract(self, raw_text: str) -> Application:
        """Return the structured application, or raise ExtractionError."""
        messages = [{"role": "user", "content": raw_text}]
        system_prompt = self.system_prompt()
        try:
            raw = await self._client.chat(system_prompt, messages, json_mode=True)
            return parse_llm_json(raw, Application)
        except ValueError:
            logger.warning("Application extraction parse failed, retrying")
        except httpx.HTTPError as exc:
            raise ExtractionError(f"LLM unavailable: {exc}") from exc

        try:
            raw = await self._client.chat(
                system_prompt,
                [*messages, {"role": "user", "content": RETRY_PROMPT}],
                json_mode=True,
            )
            return parse_llm_json(raw, Application)
        except ValueError as exc:
            raise ExtractionError(str(exc)) from exc
        except httpx.HTTPError as exc:
            raise ExtractionError(f"LLM unavailable: {exc}") from exc


# Module-level singleton
text_extractor = TextExtractor()
