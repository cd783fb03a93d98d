"""CLI entry point for the Magpie inbox classification pipeline.

Commands:
    magpie classify    classify (and optionally label) a batch of emails
    magpie labels      ensure the AI/* taxonomy labels exist
    magpie stats       show classification coverage per category
    magpie operations  list rollbackable operations
    magpie rollback    undo one operation
    magpie prune       delete old history entries
    magpie audit       show recent label audit entries
    magpie serve       run the HTTP API
"""

import asyncio
import logging
import sys
import uuid

import click

from magpie.config import (
    GMAIL_ACCESS_TOKEN,
    GMAIL_API_BASE_URL,
    GMAIL_USER_ID,
    HISTORY_DB_PATH,
    HISTORY_VISIBLE_LIMIT,
    LABEL_AUDIT_LOG_PATH,
    MAX_EMAILS_CAP,
    OLLAMA_BASE_URL,
    OLLAMA_MODEL,
    PROVIDER_PAGE_SIZE,
    REQUEST_TIMEOUT_SECONDS,
)
from magpie.schemas.email import MAX_BATCH_SIZE

logger = logging.getLogger("magpie")


def _validate_config() -> None:
    """Fail loudly if required config is missing."""
    if not GMAIL_ACCESS_TOKEN:
        click.echo("Error: Missing required config: GMAIL_ACCESS_TOKEN", err=True)
        click.echo("Set it in secrets/internal.env or via SOPS.", err=True)
        sys.exit(1)


def _gmail():
    from magpie.integrations.gmail import GmailClient

    return GmailClient(
        GMAIL_API_BASE_URL,
        GMAIL_ACCESS_TOKEN,
        user_id=GMAIL_USER_ID,
        timeout=REQUEST_TIMEOUT_SECONDS,
    )


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Magpie: bulk inbox classification and labeling."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


# ------------------------------------------------------------------
# magpie classify
# ------------------------------------------------------------------


@cli.command()
@click.option("--limit", "-n", default=100, show_default=True, help="Max emails to process.")
@click.option("--query", "-q", default="", help="Provider search query.")
@click.option("--apply/--no-apply", "apply_labels", default=True, show_default=True,
              help="Apply AI/* labels to matched emails.")
@click.option("--include-classified", is_flag=True, help="Re-classify emails that already carry an AI/* label.")
@click.option("--batch-size", default=10, show_default=True,
              type=click.IntRange(1, MAX_BATCH_SIZE), help="Emails per progress chunk.")
@click.option("--page-token", default=None, help="Resume from a provider page token.")
@click.option("--model", "-m", default=None, help="Ollama model name (auto-detected if omitted).")
@click.option("--keep-alive", default="5m", show_default=True, help="Ollama keep_alive duration.")
def classify(
    limit: int,
    query: str,
    apply_labels: bool,
    include_classified: bool,
    batch_size: int,
    page_token: str | None,
    model: str | None,
    keep_alive: str,
) -> None:
    """Classify a batch of emails via LLM and label the matches."""
    _validate_config()
    if not 1 <= limit <= MAX_EMAILS_CAP:
        click.echo(f"Error: --limit must be between 1 and {MAX_EMAILS_CAP}.", err=True)
        sys.exit(1)
    asyncio.run(
        _classify_async(
            limit, query, apply_labels, include_classified, batch_size, page_token, model, keep_alive
        )
    )


async def _classify_async(
    limit: int,
    query: str,
    apply_labels: bool,
    include_classified: bool,
    batch_size: int,
    page_token: str | None,
    model: str | None,
    keep_alive: str,
) -> None:
    from magpie.audit.label_logger import LabelAuditLog
    from magpie.errors import AuthenticationError, LabelSetupError
    from magpie.executors.email_classifier import EmailClassifier
    from magpie.history.operations import OperationHistory
    from magpie.integrations.ollama import OllamaClient
    from magpie.orchestrator.bulk_pipeline import run_bulk_classification
    from magpie.progress.tracker import ProgressTracker
    from magpie.schemas.email import RunRequest

    request = RunRequest(
        max_emails=limit,
        apply_labels=apply_labels,
        skip_classified=not include_classified,
        batch_size=batch_size,
        query=query,
        page_token=page_token,
    )
    session_id = f"cli_{uuid.uuid4().hex[:12]}"

    async with (
        _gmail() as gateway,
        OllamaClient(OLLAMA_BASE_URL, default_keep_alive=keep_alive) as ollama,
    ):
        model = model or OLLAMA_MODEL or None
        if model is None:
            model = await ollama.pick_instruct_model()
            if model is None:
                click.echo("Error: No models available on Ollama server.", err=True)
                sys.exit(1)
            click.echo(f"Auto-selected model: {model}")

        with OperationHistory(HISTORY_DB_PATH) as history:
            try:
                summary = await run_bulk_classification(
                    request,
                    session_id=session_id,
                    user_id=GMAIL_USER_ID,
                    gateway=gateway,
                    classifier=EmailClassifier(ollama, model=model, keep_alive=keep_alive),
                    tracker=ProgressTracker(),
                    history=history,
                    audit_log=LabelAuditLog(LABEL_AUDIT_LOG_PATH),
                    page_size=PROVIDER_PAGE_SIZE,
                    on_progress=click.echo,
                )
            except AuthenticationError as exc:
                click.echo(f"Error: Provider rejected credentials: {exc}", err=True)
                sys.exit(1)
            except LabelSetupError as exc:
                click.echo(f"Error: Could not prepare labels: {exc}", err=True)
                sys.exit(1)

    if summary.categories:
        click.echo("\nCategories:")
        for category, count in sorted(summary.categories.items(), key=lambda kv: -kv[1]):
            click.echo(f"  {category:<28} {count}")
    if summary.operation_ids:
        click.echo(f"\nOperations: {', '.join(summary.operation_ids)}")
    if summary.next_page_token:
        click.echo(f"Next page token: {summary.next_page_token}")


# ------------------------------------------------------------------
# magpie labels
# ------------------------------------------------------------------


@cli.command()
def labels() -> None:
    """Create any missing AI/* labels and print the mapping."""
    _validate_config()
    asyncio.run(_labels_async())


async def _labels_async() -> None:
    from magpie.errors import AuthenticationError, LabelSetupError
    from magpie.router.labels import LabelReconciler
    from magpie.schemas.taxonomy import label_name

    async with _gmail() as gateway:
        try:
            mapping = await LabelReconciler(gateway, account=GMAIL_USER_ID).ensure_labels()
        except (AuthenticationError, LabelSetupError) as exc:
            click.echo(f"Error: {exc}", err=True)
            sys.exit(1)

    for category, label_id in mapping.items():
        click.echo(f"  {label_name(category):<32} {label_id}")


# ------------------------------------------------------------------
# magpie stats
# ------------------------------------------------------------------


@cli.command()
def stats() -> None:
    """Show how much of the inbox already carries an AI/* label."""
    _validate_config()
    asyncio.run(_stats_async())


async def _stats_async() -> None:
    from magpie.errors import AuthenticationError, ProviderError
    from magpie.router.labels import LabelReconciler

    async with _gmail() as gateway:
        try:
            coverage = await LabelReconciler(gateway, account=GMAIL_USER_ID).coverage()
        except (AuthenticationError, ProviderError) as exc:
            click.echo(f"Error: {exc}", err=True)
            sys.exit(1)

    click.echo(f"Total: {coverage.total}  Inbox: {coverage.inbox}  Unread: {coverage.unread}")
    click.echo(
        f"Classified: {coverage.already_classified}  Unlabeled: {coverage.unlabeled}  "
        f"Coverage: {coverage.coverage:.1f}%"
    )
    click.echo(f"\nCategories ({coverage.taxonomy_labels} label(s) present):")
    for category, count in sorted(coverage.categories.items(), key=lambda kv: -kv[1]):
        click.echo(f"  {category:<28} {count}")


# ------------------------------------------------------------------
# magpie operations
# ------------------------------------------------------------------


@cli.command()
@click.option("--user", "user_id", default=GMAIL_USER_ID, show_default=True, help="History owner.")
@click.option("--limit", "-n", default=HISTORY_VISIBLE_LIMIT, show_default=True, help="Max entries.")
@click.option("--all", "show_all", is_flag=True, help="Include rolled-back and non-reversible entries.")
def operations(user_id: str, limit: int, show_all: bool) -> None:
    """List operations that can still be rolled back."""
    from magpie.history.operations import OperationHistory

    with OperationHistory(HISTORY_DB_PATH) as history:
        if show_all:
            entries = history.list_for_user(user_id, limit)
        else:
            entries = history.list_rollbackable(user_id, limit)
        rollbacks = history.rollback_history(user_id, 5)
        stats = history.stats(user_id)

    if not entries:
        click.echo("No rollbackable operations.")
    for entry in entries:
        marker = " (rolled back)" if entry.is_rolled_back else ""
        click.echo(
            f"{entry.id}  {entry.timestamp:%Y-%m-%d %H:%M}  {entry.type.value:<13} "
            f"{entry.affected_count:>4} msg  {entry.description}{marker}"
        )
    if rollbacks:
        click.echo("\nRecent rollbacks:")
        for rb in rollbacks:
            suffix = f" ({len(rb.errors)} error(s))" if rb.errors else ""
            click.echo(f"  {rb.timestamp:%Y-%m-%d %H:%M}  {rb.description}{suffix}")
    click.echo(
        f"\nTotal: {stats.total_operations}  Rollbackable: {stats.rollbackable_operations}  "
        f"Rolled back: {stats.rolled_back_operations}"
    )


# ------------------------------------------------------------------
# magpie rollback
# ------------------------------------------------------------------


@cli.command()
@click.argument("operation_id")
@click.option("--user", "user_id", default=GMAIL_USER_ID, show_default=True, help="History owner.")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation.")
def rollback(operation_id: str, user_id: str, yes: bool) -> None:
    """Undo the label changes of OPERATION_ID."""
    _validate_config()
    if not yes:
        click.confirm(f"Roll back {operation_id}?", abort=True)
    asyncio.run(_rollback_async(operation_id, user_id))


async def _rollback_async(operation_id: str, user_id: str) -> None:
    from magpie.audit.label_logger import LabelAuditLog
    from magpie.errors import OperationNotFoundError, RollbackConflictError
    from magpie.history.operations import OperationHistory
    from magpie.history.rollback import rollback_operation

    with OperationHistory(HISTORY_DB_PATH) as history:
        async with _gmail() as gateway:
            try:
                result = await rollback_operation(
                    operation_id,
                    gateway,
                    user_id,
                    history=history,
                    audit_log=LabelAuditLog(LABEL_AUDIT_LOG_PATH),
                )
            except (OperationNotFoundError, RollbackConflictError) as exc:
                click.echo(f"Error: {exc}", err=True)
                sys.exit(1)

    click.echo(result.description)
    for err in result.errors:
        click.echo(f"  ERROR: {err}", err=True)


# ------------------------------------------------------------------
# magpie prune
# ------------------------------------------------------------------


@cli.command()
@click.option("--days", default=30, show_default=True, help="Delete entries older than this.")
def prune(days: int) -> None:
    """Delete old operation history entries."""
    from magpie.history.operations import OperationHistory

    with OperationHistory(HISTORY_DB_PATH) as history:
        removed = history.prune(days_old=days)
    click.echo(f"Pruned {removed} operation(s) older than {days} day(s).")


# ------------------------------------------------------------------
# magpie audit
# ------------------------------------------------------------------


@cli.command()
@click.option("--hours", default=24, show_default=True, help="Lookback period in hours.")
@click.option("--limit", "-n", default=50, show_default=True, help="Max entries.")
def audit(hours: int, limit: int) -> None:
    """Show recent label audit entries."""
    from datetime import UTC, datetime, timedelta

    from magpie.audit.label_logger import LabelAuditLog

    since = datetime.now(UTC) - timedelta(hours=hours)
    entries = LabelAuditLog(LABEL_AUDIT_LOG_PATH).read_entries(since=since, limit=limit)
    if not entries:
        click.echo("No label activity.")
        return
    for e in entries:
        click.echo(
            f"{e.timestamp:%Y-%m-%d %H:%M:%S}  {e.action:<13} {e.label_name:<32} "
            f"{e.message_id}  {e.subject[:60]}"
        )


# ------------------------------------------------------------------
# magpie serve
# ------------------------------------------------------------------


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True)
def serve(host: str, port: int) -> None:
    """Run the HTTP API."""
    import uvicorn

    from magpie.api.app import create_app

    uvicorn.run(create_app(), host=host, port=port)


if __name__ == "__main__":
    cli()
