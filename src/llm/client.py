"""Ollama LLM client used to normalize applicant answers.

Uses Ollama's native /api/chat endpoint (not OpenAI-compat) so we can
disable Qwen3's thinking mode via think=false and ask for a JSON-only
reply via format=json.
"""

from __future__ import annotations

import hashlib
import logging
import time
from typing import Any

import httpx

from src.admin.events import emit
from src.config import settings
from src.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)


class OllamaClient:
    """Async client for Ollama's native /api/chat endpoint."""

    def __init__(self, base_url: str | None = None) -> None:
        self._base_url = base_url or settings.llm.ollama_base_url
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(90.0, connect=10.0),
        )

    async def chat(
        self,
        system_prompt: str,
        messages: list[dict[str, str]],
        model: str | None = None,
        temperature: float = 0.0,
        max_tokens: int | None = None,
        json_mode: bool = False,
    ) -> str:
        """Send a chat request to Ollama's native API (non-streaming, no thinking).

        Args:
            system_prompt: System-level instructions for the LLM.
            messages: List of {"role": "user"|"assistant", "content": "..."}.
            model: Model name override. Defaults to the extraction model.
            temperature: Sampling temperature. Extraction wants 0.
            max_tokens: Max response tokens. Defaults to config value.
            json_mode: Constrain the reply to a single JSON object.

        Returns:
            The LLM's text response.
        """
        model = model or settings.llm.extraction_model
        if max_tokens is None:
            max_tokens = settings.llm.extraction_max_tokens

        api_messages: list[dict[str, str]] = [
            {"role": "system", "content": system_prompt},
            *messages,
        ]
        body: dict[str, Any] = {
            "model": model,
            "messages": api_messages,
            "stream": False,
            "think": False,
            "keep_alive": settings.llm.keep_alive,
            "options": {
                "temperature": temperature,
                "num_predict": max_tokens,
            },
        }
        if json_mode:
            body["format"] = "json"

        prompt_hash = hashlib.md5(system_prompt.encode()).hexdigest()[:8]

        await emit(SystemEvent(
            event_type=EventType.LLM_REQUEST,
            data={
                "model": model,
                "prompt_hash": prompt_hash,
                "message_count": len(messages),
                "json_mode": json_mode,
            },
            source_module="llm.client",
        ))

        start = time.monotonic()
        try:
            response = await self._client.post(
                "/api/chat",
                json=body,
                timeout=float(settings.llm.extraction_timeout),
            )
            response.raise_for_status()
            data: dict[str, Any] = response.json()
            elapsed_ms = int((time.monotonic() - start) * 1000)

            content: str = data["message"]["content"]
            prompt_tokens = data.get("prompt_eval_count", 0)
            completion_tokens = data.get("eval_count", 0)

            await emit(SystemEvent(
                event_type=EventType.LLM_RESPONSE,
                data={
                    "model": model,
                    "latency_ms": elapsed_ms,
                    "prompt_tokens": prompt_tokens,
                    "completion_tokens": completion_tokens,
                },
                source_module="llm.client",
            ))

            logger.info(
                "LLM response: model=%s latency=%dms tokens=%d",
                model,
                elapsed_ms,
                completion_tokens,
            )
            return content

        except httpx.TimeoutException:
            elapsed_ms = int((time.monotonic() - start) * 1000)
            await emit(SystemEvent(
                event_type=EventType.LLM_ERROR,
                data={"model": model, "error": "timeout", "latency_ms": elapsed_ms},
                source_module="llm.client",
            ))
            logger.error("LLM timeout after %dms for model %s", elapsed_ms, model)
            raise

        except httpx.HTTPError as exc:
            await emit(SystemEvent(
                event_type=EventType.LLM_ERROR,
                data={"model": model, "error": str(exc)},
                source_module="llm.client",
            ))
            logger.exception("LLM HTTP error for model %s", model)
            raise

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()


# Module-level singleton
llm_client = OllamaClient()
