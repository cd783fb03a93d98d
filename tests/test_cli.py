"""Tests for the Magpie CLI entry point."""

from unittest.mock import AsyncMock, MagicMock, patch

import click.testing
import pytest

from conftest import FakeGateway, make_email
from magpie.audit.label_logger import LabelAuditLog
from magpie.cli import cli
from magpie.history.operations import OperationHistory
from magpie.schemas.email import ClassificationResult, Priority
from magpie.schemas.history import AffectedItem, OperationType
from magpie.schemas.taxonomy import Category

# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


@pytest.fixture()
def runner():
    return click.testing.CliRunner()


@pytest.fixture()
def paths(tmp_path, monkeypatch):
    monkeypatch.setattr("magpie.cli.GMAIL_ACCESS_TOKEN", "test-token")
    monkeypatch.setattr("magpie.cli.HISTORY_DB_PATH", str(tmp_path / "history.db"))
    monkeypatch.setattr("magpie.cli.LABEL_AUDIT_LOG_PATH", str(tmp_path / "audit.jsonl"))
    return tmp_path


class StubClassifier:
    def __init__(self, *args, **kwargs) -> None:
        pass

    async def classify(self, subject, body, sender):
        return ClassificationResult(
            category=Category.PROSPECT_LEAD, confidence=0.9, priority=Priority.HIGH
        )


def _mock_ollama(model_name: str | None = "qwen2.5:7b-instruct") -> AsyncMock:
    mock = AsyncMock()
    mock.pick_instruct_model.return_value = model_name
    return mock


def _patch_async_context(target, mock_instance):
    """Create a patch that makes a class act as an async context manager returning mock_instance."""
    mock_cls = MagicMock()
    mock_cls.return_value.__aenter__ = AsyncMock(return_value=mock_instance)
    mock_cls.return_value.__aexit__ = AsyncMock(return_value=False)
    return patch(target, mock_cls)


def _seed_operation(db_path, user_id="me") -> str:
    with OperationHistory(db_path) as history:
        entry = history.record(
            OperationType.LABEL_APPLY,
            user_id=user_id,
            session_id="s1",
            description="Applied 1 AI label(s) (batch 1)",
            affected=[AffectedItem(message_id="m1", label_id="L1", label_name="AI/Media-Pr")],
        )
    return entry.id


# ------------------------------------------------------------------
# Config validation
# ------------------------------------------------------------------


def test_classify_rejects_missing_token(runner, monkeypatch):
    monkeypatch.setattr("magpie.cli.GMAIL_ACCESS_TOKEN", "")
    result = runner.invoke(cli, ["classify"])
    assert result.exit_code != 0
    assert "Missing required config" in result.output


def test_classify_rejects_limit_over_cap(runner, paths):
    result = runner.invoke(cli, ["classify", "-n", "5000"])
    assert result.exit_code != 0
    assert "--limit must be between" in result.output


def test_classify_rejects_batch_size_over_cap(runner, paths):
    result = runner.invoke(cli, ["classify", "--batch-size", "80"])
    assert result.exit_code == 2
    assert "--batch-size" in result.output
    assert "Traceback" not in result.output


# ------------------------------------------------------------------
# magpie classify
# ------------------------------------------------------------------


def test_classify_labels_and_records(runner, paths):
    gateway = FakeGateway([make_email("m1", subject="Demo request")])

    with (
        _patch_async_context("magpie.integrations.gmail.GmailClient", gateway),
        _patch_async_context("magpie.integrations.ollama.OllamaClient", _mock_ollama()),
        patch("magpie.executors.email_classifier.EmailClassifier", StubClassifier),
    ):
        result = runner.invoke(cli, ["classify", "-n", "1"])

    assert result.exit_code == 0, result.output
    assert "Auto-selected model: qwen2.5:7b-instruct" in result.output
    assert "Processed: 1" in result.output
    assert "Labeled: 1" in result.output
    assert "prospect-lead" in result.output
    assert gateway.labels["AI/Prospect-Lead"] in gateway.messages["m1"].label_ids

    with OperationHistory(paths / "history.db") as history:
        assert len(history.list_rollbackable("me")) == 1


def test_classify_no_apply(runner, paths):
    gateway = FakeGateway([make_email("m1")])

    with (
        _patch_async_context("magpie.integrations.gmail.GmailClient", gateway),
        _patch_async_context("magpie.integrations.ollama.OllamaClient", _mock_ollama()),
        patch("magpie.executors.email_classifier.EmailClassifier", StubClassifier),
    ):
        result = runner.invoke(cli, ["classify", "-n", "1", "--no-apply", "-m", "llama3"])

    assert result.exit_code == 0, result.output
    assert "Auto-selected" not in result.output
    assert gateway.count("apply_label") == 0


def test_classify_no_models(runner, paths):
    with (
        _patch_async_context("magpie.integrations.gmail.GmailClient", FakeGateway()),
        _patch_async_context("magpie.integrations.ollama.OllamaClient", _mock_ollama(None)),
    ):
        result = runner.invoke(cli, ["classify"])

    assert result.exit_code == 1
    assert "No models available" in result.output


# ------------------------------------------------------------------
# magpie labels
# ------------------------------------------------------------------


def test_labels_creates_taxonomy(runner, paths):
    gateway = FakeGateway()
    with _patch_async_context("magpie.integrations.gmail.GmailClient", gateway):
        result = runner.invoke(cli, ["labels"])

    assert result.exit_code == 0, result.output
    assert "AI/Legal-Compliance" in result.output
    assert gateway.count("create_label") == 8


# ------------------------------------------------------------------
# magpie stats
# ------------------------------------------------------------------


def test_stats_shows_coverage(runner, paths):
    gateway = FakeGateway(
        [
            make_email("m1", label_ids=["INBOX", "L_M"]),
            make_email("m2", label_ids=["INBOX"]),
        ],
        labels={"AI/Media-Pr": "L_M"},
    )
    with _patch_async_context("magpie.integrations.gmail.GmailClient", gateway):
        result = runner.invoke(cli, ["stats"])

    assert result.exit_code == 0, result.output
    assert "Classified: 1  Unlabeled: 1  Coverage: 50.0%" in result.output
    assert "media-pr" in result.output
    assert gateway.count("create_label") == 0


def test_stats_reports_provider_error(runner, paths):
    from magpie.errors import AuthenticationError

    gateway = FakeGateway()
    gateway.labels_error = AuthenticationError("expired", status_code=401)
    with _patch_async_context("magpie.integrations.gmail.GmailClient", gateway):
        result = runner.invoke(cli, ["stats"])

    assert result.exit_code == 1
    assert "expired" in result.output


# ------------------------------------------------------------------
# magpie operations / rollback
# ------------------------------------------------------------------


def test_operations_lists_entries(runner, paths):
    op_id = _seed_operation(paths / "history.db", user_id="alice")
    result = runner.invoke(cli, ["operations", "--user", "alice"])

    assert result.exit_code == 0, result.output
    assert op_id in result.output
    assert "Rollbackable: 1" in result.output


def test_operations_empty(runner, paths):
    result = runner.invoke(cli, ["operations", "--user", "nobody"])
    assert "No rollbackable operations." in result.output


def test_rollback(runner, paths):
    op_id = _seed_operation(paths / "history.db", user_id="alice")
    gateway = FakeGateway([make_email("m1", label_ids=["L1"])])

    with _patch_async_context("magpie.integrations.gmail.GmailClient", gateway):
        result = runner.invoke(cli, ["rollback", op_id, "--user", "alice", "-y"])

    assert result.exit_code == 0, result.output
    assert "Rollback: Applied 1 AI label(s)" in result.output
    assert gateway.messages["m1"].label_ids == []
    with OperationHistory(paths / "history.db") as history:
        assert history.get(op_id).is_rolled_back is True


def test_rollback_unknown(runner, paths):
    with _patch_async_context("magpie.integrations.gmail.GmailClient", FakeGateway()):
        result = runner.invoke(cli, ["rollback", "op_missing", "-y"])
    assert result.exit_code == 1
    assert "not found" in result.output


def test_rollback_requires_confirmation(runner, paths):
    op_id = _seed_operation(paths / "history.db")
    result = runner.invoke(cli, ["rollback", op_id], input="n\n")
    assert result.exit_code != 0
    with OperationHistory(paths / "history.db") as history:
        assert history.get(op_id).is_rolled_back is False


# ------------------------------------------------------------------
# magpie audit
# ------------------------------------------------------------------


def test_audit_shows_entries(runner, paths):
    LabelAuditLog(paths / "audit.jsonl").record(
        "applied",
        session_id="s1",
        message_id="m42",
        label_id="L1",
        label_name="AI/Vendor-Supplier",
        subject="Invoice 7",
    )
    result = runner.invoke(cli, ["audit"])
    assert result.exit_code == 0
    assert "m42" in result.output
    assert "AI/Vendor-Supplier" in result.output


def test_audit_empty(runner, paths):
    result = runner.invoke(cli, ["audit"])
    assert "No label activity." in result.output


# ------------------------------------------------------------------
# magpie operations --all / prune
# ------------------------------------------------------------------


def test_operations_all_includes_rolled_back(runner, paths):
    op_id = _seed_operation(paths / "history.db", user_id="alice")
    with OperationHistory(paths / "history.db") as history:
        history.mark_rolled_back(op_id)

    result = runner.invoke(cli, ["operations", "--user", "alice"])
    assert op_id not in result.output

    result = runner.invoke(cli, ["operations", "--user", "alice", "--all"])
    assert f"{op_id}" in result.output
    assert "(rolled back)" in result.output


def test_prune(runner, paths):
    _seed_operation(paths / "history.db")
    result = runner.invoke(cli, ["prune", "--days", "30"])
    assert result.exit_code == 0
    assert "Pruned 0 operation(s)" in result.output
