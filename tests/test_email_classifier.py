"""Tests for magpie.executors.email_classifier: prompt building and fallback."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from pydantic import ValidationError

from magpie.executors.email_classifier import (
    FALLBACK_CONFIDENCE,
    FALLBACK_RATIONALE,
    MAX_BODY_CHARS,
    EmailClassifier,
    build_user_prompt,
    fallback_result,
    to_result,
)
from magpie.integrations.ollama import OllamaClient
from magpie.schemas.email import ClassificationReply, Priority
from magpie.schemas.taxonomy import Category

# --- Helpers ---


def _make_reply(category: str = "vendor-supplier", **overrides) -> ClassificationReply:
    defaults = dict(
        category=category,
        confidence=0.82,
        priority=Priority.HIGH,
        sentiment=0.1,
        rationale=["invoice attached"],
    )
    defaults.update(overrides)
    return ClassificationReply(**defaults)


def _make_mock_ollama(reply: ClassificationReply | None = None, *, error=None) -> AsyncMock:
    mock_ollama = AsyncMock()
    if error is not None:
        mock_ollama.generate_structured = AsyncMock(side_effect=error)
    else:
        mock_ollama.generate_structured = AsyncMock(return_value=(reply, MagicMock()))
    mock_ollama.pick_instruct_model = AsyncMock(return_value="qwen2.5:7b-instruct")
    return mock_ollama


def _validation_error() -> ValidationError:
    try:
        ClassificationReply.model_validate({"confidence": 3})
    except ValidationError as exc:
        return exc
    raise AssertionError("expected a validation error")


# --- Fallback ---


class TestFallback:
    def test_fields(self):
        result = fallback_result()
        assert result.category is Category.ADMINISTRATIVE
        assert result.confidence == FALLBACK_CONFIDENCE == 0.3
        assert result.priority is Priority.MEDIUM
        assert result.rationale == [FALLBACK_RATIONALE]
        assert result.is_fallback is True
        assert result.matched is False

    def test_deterministic(self):
        assert fallback_result() == fallback_result()


class TestToResult:
    def test_known_category(self):
        result = to_result(_make_reply("Legal_Compliance"))
        assert result.category is Category.LEGAL_COMPLIANCE
        assert result.confidence == 0.82
        assert result.priority is Priority.HIGH
        assert result.matched is True

    def test_off_taxonomy_category_falls_back(self):
        assert to_result(_make_reply("spam")) == fallback_result()


class TestBuildUserPrompt:
    def test_includes_fields(self):
        prompt = build_user_prompt("Invoice #12", "Please pay", "billing@vendor.test")
        assert "Invoice #12" in prompt
        assert "Please pay" in prompt
        assert "billing@vendor.test" in prompt

    def test_truncates_long_body(self):
        prompt = build_user_prompt("s", "x" * (MAX_BODY_CHARS + 500), "a@b.test")
        assert "x" * MAX_BODY_CHARS in prompt
        assert "x" * (MAX_BODY_CHARS + 1) not in prompt
        assert "[... content truncated ...]" in prompt

    def test_placeholders_for_missing(self):
        prompt = build_user_prompt("", "", "")
        assert "(no subject)" in prompt
        assert "(no body)" in prompt


# --- EmailClassifier ---


class TestEmailClassifier:
    async def test_success(self):
        ollama = _make_mock_ollama(_make_reply())
        classifier = EmailClassifier(ollama, model="test-model")

        result = await classifier.classify("Invoice", "Amount due", "billing@vendor.test")

        assert result.category is Category.VENDOR_SUPPLIER
        assert result.is_fallback is False
        kwargs = ollama.generate_structured.call_args.kwargs
        assert kwargs["model"] == "test-model"
        assert kwargs["schema_class"] is ClassificationReply
        assert "vendor-supplier" in kwargs["system"]
        assert "Amount due" in kwargs["prompt"]

    async def test_auto_selects_model_once(self):
        ollama = _make_mock_ollama(_make_reply())
        classifier = EmailClassifier(ollama)

        await classifier.classify("a", "b", "c")
        await classifier.classify("d", "e", "f")

        ollama.pick_instruct_model.assert_awaited_once()
        assert ollama.generate_structured.call_args.kwargs["model"] == "qwen2.5:7b-instruct"

    async def test_no_model_available(self):
        ollama = _make_mock_ollama(_make_reply())
        ollama.pick_instruct_model = AsyncMock(return_value=None)
        result = await EmailClassifier(ollama).classify("a", "b", "c")
        assert result == fallback_result()
        ollama.generate_structured.assert_not_awaited()

    @pytest.mark.parametrize(
        "error",
        [
            httpx.ConnectError("refused"),
            httpx.HTTPStatusError(
                "500", request=httpx.Request("POST", "http://x"), response=httpx.Response(500)
            ),
            json.JSONDecodeError("bad", "doc", 0),
            _validation_error(),
        ],
        ids=["transport", "status", "json", "schema"],
    )
    async def test_service_failures_fall_back(self, error):
        ollama = _make_mock_ollama(error=error)
        result = await EmailClassifier(ollama, model="m").classify("a", "b", "c")
        assert result == fallback_result()

    async def test_off_taxonomy_reply_falls_back(self):
        ollama = _make_mock_ollama(_make_reply("sales"))
        result = await EmailClassifier(ollama, model="m").classify("a", "b", "c")
        assert result.is_fallback is True
        assert result.category is Category.ADMINISTRATIVE

    async def test_empty_model_reply_falls_back(self):
        ollama = OllamaClient("http://localhost:11434")
        response = MagicMock()
        response.raise_for_status = MagicMock()
        response.json.return_value = {
            "model": "m",
            "message": {"role": "assistant", "content": None},
            "done": True,
        }
        with patch.object(ollama._client, "post", new_callable=AsyncMock, return_value=response):
            result = await EmailClassifier(ollama, model="m").classify("a", "b", "c")
        await ollama.close()

        assert result == fallback_result()
