"""Async Ollama client used by the email classifier.

Only two endpoints are needed: ``/api/chat`` with a JSON schema in
``format`` (so the model must answer with a ClassificationReply-shaped
object) and ``/api/tags`` for picking a model when none is configured.
"""

import json
import logging
from typing import TypeVar

import httpx
from pydantic import BaseModel

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


class ChatMessage(BaseModel):
    role: str = "assistant"
    # Some models return null content when they produce no tokens.
    content: str | None = None


class ChatResponse(BaseModel):
    """Non-streaming /api/chat reply; unknown fields are ignored."""

    model: str
    message: ChatMessage
    done: bool
    total_duration: int = 0  # nanoseconds
    eval_count: int = 0


class OllamaClient:
    """Async HTTP client for a local Ollama server.

    Usage::

        async with OllamaClient(base_url) as ollama:
            reply, raw = await ollama.generate_structured(
                model="qwen2.5",
                schema_class=ClassificationReply,
                system=SYSTEM_PROMPT,
                prompt=build_user_prompt(subject, body, sender),
            )
    """

    def __init__(
        self,
        base_url: str,
        *,
        default_keep_alive: str = "5m",
        timeout: float = 120.0,
    ) -> None:
        self._default_keep_alive = default_keep_alive
        self._client = httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)

    async def __aenter__(self) -> "OllamaClient":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def generate_structured(
        self,
        model: str,
        schema_class: type[T],
        system: str,
        prompt: str,
        *,
        temperature: float = 0.2,
        keep_alive: str | None = None,
    ) -> tuple[T, ChatResponse]:
        """Run one chat turn whose answer must validate as ``schema_class``.

        Returns:
            Tuple of (parsed reply, raw ChatResponse).

        Raises:
            httpx.HTTPError: On transport failure or non-2xx response.
            json.JSONDecodeError: If the reply content is empty or not JSON.
            pydantic.ValidationError: If the reply doesn't match the schema.
        """
        response = await self._client.post(
            "/api/chat",
            json={
                "model": model,
                "messages": [
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
                "format": schema_class.model_json_schema(),
                "stream": False,
                "keep_alive": keep_alive or self._default_keep_alive,
                "options": {"temperature": temperature},
            },
        )
        response.raise_for_status()

        raw = ChatResponse.model_validate(response.json())
        parsed = schema_class.model_validate(json.loads(raw.message.content or ""))

        logger.debug(
            "Ollama %s answered in %.1fs (%d tokens)",
            model,
            raw.total_duration / 1e9,
            raw.eval_count,
        )
        return parsed, raw

    async def list_models(self) -> list[dict]:
        response = await self._client.get("/api/tags")
        response.raise_for_status()
        return response.json().get("models", [])

    async def pick_instruct_model(self) -> str | None:
        """Model to classify with when none is configured."""
        return pick_instruct_model(await self.list_models())


def pick_instruct_model(models: list[dict]) -> str | None:
    """First model whose name suggests an instruction-tuned chat model.

    Falls back to the first listed model; None when the server has none.
    """
    hints = ("instruct", "chat", "qwen", "gemma")
    for m in models:
        if any(hint in m["name"].lower() for hint in hints):
            return m["name"]
    return models[0]["name"] if models else None
