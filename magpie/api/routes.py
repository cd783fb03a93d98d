"""
FastAPI routes for bulk classification, progress polling and rollback.

Provides endpoints for:
- Running a bulk classification (inline or as a background task)
- Polling / updating / clearing session progress
- Listing rollbackable operations and rolling one back
- Reporting classification coverage per taxonomy label
"""

import asyncio
import logging
import uuid
from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field, ValidationError

from magpie.config import HISTORY_VISIBLE_LIMIT, PROVIDER_PAGE_SIZE
from magpie.errors import (
    AuthenticationError,
    LabelSetupError,
    OperationNotFoundError,
    ProviderError,
    RollbackConflictError,
)
from magpie.history.rollback import rollback_operation
from magpie.orchestrator.bulk_pipeline import run_bulk_classification
from magpie.router.labels import LabelReconciler
from magpie.schemas.email import RunRequest, RunState, RunSummary
from magpie.schemas.history import OperationSummary

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/email", tags=["Bulk Classification"])


# =============================================================================
# Pydantic Models
# =============================================================================


class BulkAnalyzeRequest(RunRequest):
    """Request body for a bulk classification run."""

    access_token: str = ""
    user_id: str = "default"
    session_id: str | None = None
    background: bool = Field(False, description="Return immediately; poll progress")


class ProgressRequest(BaseModel):
    session_id: str = ""
    action: str
    progress_data: dict[str, Any] | None = None


# =============================================================================
# Runs
# =============================================================================


async def _execute_run(
    request: Request, body: BulkAnalyzeRequest, session_id: str, cancel: asyncio.Event
) -> RunSummary:
    state = request.app.state
    run_request = RunRequest.model_validate(body.model_dump(include=set(RunRequest.model_fields)))

    async with (
        state.gateway_factory(body.access_token) as gateway,
        state.classifier_factory() as classifier,
    ):
        reconciler = LabelReconciler(gateway, account=body.user_id, cache=state.label_cache)
        return await run_bulk_classification(
            run_request,
            session_id=session_id,
            user_id=body.user_id,
            gateway=gateway,
            classifier=classifier,
            tracker=state.tracker,
            history=state.history,
            reconciler=reconciler,
            audit_log=state.audit_log,
            page_size=PROVIDER_PAGE_SIZE,
            cancel_event=cancel,
        )


async def _background_run(
    request: Request, body: BulkAnalyzeRequest, session_id: str, cancel: asyncio.Event
) -> None:
    tracker = request.app.state.tracker
    try:
        await _execute_run(request, body, session_id, cancel)
    except (AuthenticationError, LabelSetupError) as exc:
        logger.error("Background run %s failed: %s", session_id, exc)
        _mark_failed(tracker, session_id)
    except Exception:
        logger.exception("Background run %s crashed", session_id)
        _mark_failed(tracker, session_id)
    finally:
        request.app.state.runs.pop(session_id, None)


def _mark_failed(tracker, session_id: str) -> None:
    """Publish a terminal record so pollers stop waiting on a dead run."""
    last = tracker.get(session_id)
    tracker.update(
        session_id, last.model_copy(update={"state": RunState.FAILED, "is_complete": True})
    )


@router.post("/bulk-analyze")
async def bulk_analyze(body: BulkAnalyzeRequest, request: Request):
    """Classify up to ``max_emails`` messages, optionally applying labels."""
    if not body.access_token:
        raise HTTPException(status_code=400, detail="Access token required")

    session_id = body.session_id or f"session_{uuid.uuid4().hex}"
    runs = request.app.state.runs
    if session_id in runs:
        raise HTTPException(status_code=409, detail=f"Session {session_id} is already running")

    cancel = asyncio.Event()

    if body.background:
        task = asyncio.create_task(_background_run(request, body, session_id, cancel))
        runs[session_id] = (task, cancel)
        return {"success": True, "message": "Run started", "session_id": session_id}

    runs[session_id] = (None, cancel)
    try:
        summary = await _execute_run(request, body, session_id, cancel)
    except AuthenticationError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    except LabelSetupError as exc:
        raise HTTPException(status_code=502, detail=f"Failed to prepare labels: {exc}") from exc
    finally:
        runs.pop(session_id, None)

    message = f"Processed {summary.processed} emails"
    if body.apply_labels:
        message += f" and applied {summary.labels_applied} labels"
    return {
        "success": True,
        "message": message,
        "session_id": session_id,
        "summary": summary.model_dump(mode="json"),
        "next_page_token": summary.next_page_token,
    }


@router.post("/bulk-analyze/{session_id}/cancel")
async def cancel_run(session_id: str, request: Request):
    """Ask a running session to stop before its next message."""
    entry = request.app.state.runs.get(session_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"No running session {session_id}")
    entry[1].set()
    return {"success": True, "message": "Cancellation requested"}


# =============================================================================
# Progress
# =============================================================================


@router.post("/progress")
async def progress_action(body: ProgressRequest, request: Request):
    if not body.session_id:
        raise HTTPException(status_code=400, detail="Session ID required")
    tracker = request.app.state.tracker

    if body.action == "update":
        try:
            tracker.update(body.session_id, body.progress_data or {})
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=f"Invalid progress data: {exc}") from exc
        return {"success": True, "message": "Progress updated"}
    if body.action == "clear":
        tracker.clear(body.session_id)
        return {"success": True, "message": "Progress cleared"}
    if body.action == "get":
        return {"success": True, "progress": tracker.get(body.session_id).model_dump(mode="json")}
    raise HTTPException(status_code=400, detail=f"Invalid action: {body.action}")


@router.get("/progress/sessions")
async def list_sessions(request: Request):
    return {"success": True, "sessions": request.app.state.tracker.sessions()}


@router.get("/progress")
async def get_progress(request: Request, session_id: str = Query("")):
    if not session_id:
        raise HTTPException(status_code=400, detail="Session ID required")
    record = request.app.state.tracker.get(session_id)
    return {"success": True, "progress": record.model_dump(mode="json")}


# =============================================================================
# Operations / rollback
# =============================================================================


@router.get("/operations")
async def list_operations(
    request: Request, user_id: str = Query(""), session_id: str = Query("")
):
    """Rollbackable operations for a user, or every operation of one of their sessions."""
    if not user_id:
        raise HTTPException(status_code=400, detail="User ID is required")

    history = request.app.state.history
    if session_id:
        operations = [
            op for op in history.list_for_session(session_id) if op.user_id == user_id
        ]
    else:
        operations = history.list_rollbackable(user_id, HISTORY_VISIBLE_LIMIT)
    return {
        "success": True,
        "operations": [
            OperationSummary.from_entry(op).model_dump(mode="json") for op in operations
        ],
        "stats": history.stats(user_id).model_dump(),
    }


@router.delete("/operations")
async def rollback(
    request: Request,
    operation_id: str = Query(""),
    user_id: str = Query(""),
    access_token: str = Query(""),
):
    if not operation_id or not user_id:
        raise HTTPException(status_code=400, detail="Operation ID and User ID are required")
    if not access_token:
        raise HTTPException(status_code=400, detail="Access token required")

    state = request.app.state
    try:
        async with state.gateway_factory(access_token) as gateway:
            result = await rollback_operation(
                operation_id,
                gateway,
                user_id,
                history=state.history,
                audit_log=state.audit_log,
            )
    except OperationNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except RollbackConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc

    return {
        "success": result.success,
        "description": result.description,
        "rollback_id": result.id,
        "timestamp": result.timestamp.isoformat(),
        "errors": result.errors,
    }


# =============================================================================
# Classification coverage
# =============================================================================


@router.get("/stats")
async def classification_stats(
    request: Request, access_token: str = Query(""), user_id: str = Query("default")
):
    """Per-category label counts and how much of the inbox is already classified."""
    if not access_token:
        raise HTTPException(status_code=400, detail="Access token required")

    state = request.app.state
    try:
        async with state.gateway_factory(access_token) as gateway:
            reconciler = LabelReconciler(gateway, account=user_id, cache=state.label_cache)
            stats = await reconciler.coverage()
    except AuthenticationError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    except ProviderError as exc:
        raise HTTPException(status_code=502, detail=f"Failed to fetch stats: {exc}") from exc

    return {"success": True, "stats": stats.model_dump()}
