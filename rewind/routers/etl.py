"""Ingest trigger + status API, with a live progress stream."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator

from fastapi import APIRouter, HTTPException, Query, Request
from sse_starlette.sse import EventSourceResponse

from rewind.models import SyncOutcome

logger = logging.getLogger("rewind.api")

etl_router = APIRouter(prefix="/api/etl", tags=["etl"])

_OUTCOME_STATUS = {
    SyncOutcome.COMPLETED: 200,
    SyncOutcome.FAILED: 500,
    SyncOutcome.LOCK_TIMEOUT: 409,
    SyncOutcome.UNAVAILABLE: 503,
}


def _get_orchestrator(request: Request):
    orchestrator = getattr(request.app.state, "sync_orchestrator", None)
    if not orchestrator:
        raise HTTPException(status_code=503, detail="Sync service not initialized")
    return orchestrator


@etl_router.post("/run")
async def run_sync(request: Request):
    """Run a manual sync, waiting for any in-flight run to finish first."""
    orchestrator = _get_orchestrator(request)
    outcome = await orchestrator.manual_sync()
    stats = orchestrator.get_stats()
    if outcome != SyncOutcome.COMPLETED:
        status_code = _OUTCOME_STATUS.get(outcome, 500)
        logger.warning("Manual sync via API did not complete: %s", outcome.value)
        raise HTTPException(
            status_code=status_code,
            detail={"outcome": outcome.value, "error": stats.lastError},
        )
    return {"message": "ETL process completed", "outcome": outcome.value, "stats": stats.model_dump(mode="json")}


@etl_router.get("/status")
async def get_status(request: Request):
    orchestrator = _get_orchestrator(request)
    lock_info = await orchestrator.lock.get_info()
    return {
        "isRunning": orchestrator.is_running,
        "stats": orchestrator.get_stats().model_dump(mode="json"),
        "lock": lock_info.model_dump() if lock_info else None,
    }


@etl_router.get("/events")
async def get_events(request: Request, limit: int = Query(50, ge=1, le=200)):
    orchestrator = _get_orchestrator(request)
    events = orchestrator.engine.recent_events(limit)
    return [event.model_dump() for event in events]


async def progress_events(request: Request, engine: Any, poll_seconds: float = 1.0) -> AsyncIterator[dict]:
    """Relay live ingest progress as SSE frames until the client disconnects."""
    queue: asyncio.Queue = asyncio.Queue()
    unsubscribe = engine.subscribe(queue.put_nowait)
    try:
        while not await request.is_disconnected():
            try:
                event = await asyncio.wait_for(queue.get(), timeout=poll_seconds)
            except asyncio.TimeoutError:
                continue
            yield {"event": event.type, "data": event.model_dump_json()}
    finally:
        unsubscribe()


@etl_router.get("/stream")
async def stream_progress(request: Request):
    orchestrator = _get_orchestrator(request)
    return EventSourceResponse(progress_events(request, orchestrator.engine), sep="\n")
