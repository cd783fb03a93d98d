"""Email classifier executor: assigns one taxonomy category via LLM.

Stateless apart from the resolved model name. Any failure of the AI
service (transport, non-2xx, unparseable or off-taxonomy reply) yields
the deterministic fallback result instead of an exception, so one bad
classification never aborts a batch run.
"""

import json
import logging

import httpx
from pydantic import ValidationError

from magpie.integrations.ollama import OllamaClient
from magpie.schemas.email import ClassificationReply, ClassificationResult, Priority
from magpie.schemas.taxonomy import (
    CATEGORY_DESCRIPTIONS,
    FALLBACK_CATEGORY,
    Category,
    parse_category,
)

logger = logging.getLogger(__name__)

# Truncate email body sent to the LLM to stay within context limits.
MAX_BODY_CHARS = 2000

FALLBACK_CONFIDENCE = 0.3
FALLBACK_RATIONALE = "classification unavailable"

SYSTEM_PROMPT = """\
You are an expert business email analyst for a project-management team.
Classify each email into EXACTLY ONE business category and always respond
with valid JSON only.

## Categories

{categories}

## Rules

1. Be conservative with confidence scores (0.0-1.0). Use lower scores when uncertain.
2. priority is one of "low", "medium", "high".
3. sentiment ranges from -1.0 (negative) to 1.0 (positive).
4. rationale is a short list of reasons for the decision.
5. Use "administrative" only for newsletters, notifications and general admin.
"""

USER_PROMPT = """\
Classify this email.

**From:** {sender}
**Subject:** {subject}

**Body:**
{body}

Respond as JSON: {{"category": "...", "confidence": 0.0, "priority": "...", \
"sentiment": 0.0, "rationale": ["..."]}}
"""


def _format_categories() -> str:
    return "\n".join(
        f"- **{category.value}**: {CATEGORY_DESCRIPTIONS[category]}" for category in Category
    )


def fallback_result() -> ClassificationResult:
    """The designated result when the AI reply cannot be used."""
    return ClassificationResult(
        category=FALLBACK_CATEGORY,
        confidence=FALLBACK_CONFIDENCE,
        priority=Priority.MEDIUM,
        sentiment=0.0,
        rationale=[FALLBACK_RATIONALE],
        is_fallback=True,
    )


def build_user_prompt(subject: str, body: str, sender: str) -> str:
    body = body or "(no body)"
    if len(body) > MAX_BODY_CHARS:
        body = body[:MAX_BODY_CHARS] + "\n\n[... content truncated ...]"
    return USER_PROMPT.format(
        sender=sender or "(unknown)",
        subject=subject or "(no subject)",
        body=body,
    )


def to_result(reply: ClassificationReply) -> ClassificationResult:
    """Map a validated AI reply onto the taxonomy, or fall back."""
    category = parse_category(reply.category)
    if category is None:
        logger.warning("AI returned off-taxonomy category %r, using fallback", reply.category)
        return fallback_result()
    return ClassificationResult(
        category=category,
        confidence=reply.confidence,
        priority=reply.priority,
        sentiment=reply.sentiment,
        rationale=reply.rationale,
    )


class EmailClassifier:
    """Classifies one email at a time against the fixed taxonomy.

    Usage::

        async with OllamaClient(OLLAMA_BASE_URL) as ollama:
            classifier = EmailClassifier(ollama, model="qwen2.5")
            result = await classifier.classify(subject, body, sender)
    """

    def __init__(
        self,
        ollama: OllamaClient,
        *,
        model: str | None = None,
        keep_alive: str | None = None,
    ) -> None:
        self._ollama = ollama
        self._model = model or None
        self._keep_alive = keep_alive
        self._system_prompt = SYSTEM_PROMPT.format(categories=_format_categories())

    async def _resolve_model(self) -> str | None:
        if self._model is None:
            self._model = await self._ollama.pick_instruct_model()
            if self._model:
                logger.info("Auto-selected classification model: %s", self._model)
        return self._model

    async def classify(self, subject: str, body: str, sender: str) -> ClassificationResult:
        """Classify one email. Never raises for AI-service failures."""
        try:
            model = await self._resolve_model()
            if model is None:
                logger.warning("No classification model available, using fallback")
                return fallback_result()

            reply, _raw = await self._ollama.generate_structured(
                model=model,
                schema_class=ClassificationReply,
                system=self._system_prompt,
                prompt=build_user_prompt(subject, body, sender),
                keep_alive=self._keep_alive,
            )
        except (httpx.HTTPError, json.JSONDecodeError, ValidationError, KeyError) as exc:
            logger.warning("Classification failed for %r: %s", subject, exc)
            return fallback_result()

        result = to_result(reply)
        logger.info(
            "Classified %r: category=%s confidence=%.2f priority=%s",
            subject,
            result.category.value,
            result.confidence,
            result.priority.value,
        )
        return result
