"""Incremental transcript → DB ingest engine.

Scans the data root for project directories, detects changed transcript
files (mtime-based), parses them and replaces each conversation's derived
rows inside one transaction per file.
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
from collections import deque
from pathlib import Path
from typing import Any, Callable, Optional

from rewind.db.change_detection import needs_processing
from rewind.db.connection import ping, transaction
from rewind.db.factory import (
    get_conversation_repository,
    get_processed_file_repository,
    get_project_repository,
)
from rewind.exceptions import DataRootNotConfigured
from rewind.models import IngestStats, ProgressEvent
from rewind.parsers.transcripts import count_lines, parse_transcript, summarize_conversation
from rewind.timeouts import FILE_READ_TIMEOUT, run_with_timeout

logger = logging.getLogger("rewind.ingest")

TRANSCRIPT_SUFFIX = ".jsonl"
MAX_RECENT_EVENTS = 200

ProgressCallback = Callable[[ProgressEvent], Any]


def resolve_data_root(data_root: str | Path | None) -> Path:
    raw = str(data_root or "").strip()
    if not raw:
        raise DataRootNotConfigured()
    root = Path(raw).expanduser()
    if not root.is_dir():
        raise DataRootNotConfigured(str(root))
    return root


def read_transcript(path: Path) -> str:
    """Read a transcript; undecodable bytes become U+FFFD so one bad line cannot sink the file."""
    return path.read_bytes().decode("utf-8", errors="replace")


def _list_project_dirs(root: Path) -> list[Path]:
    with os.scandir(root) as entries:
        return [Path(entry.path) for entry in entries if entry.is_dir()]


def _list_transcripts(project_dir: Path) -> list[Path]:
    with os.scandir(project_dir) as entries:
        return [
            Path(entry.path)
            for entry in entries
            if entry.name.endswith(TRANSCRIPT_SUFFIX) and entry.is_file()
        ]


class IngestEngine:
    """Idempotent, mtime-driven ingest of transcript files.

    Re-running against an unchanged tree processes zero files. A file that
    fails (timeout, unreadable, DB error) is rolled back and left out of the
    ledger so the next run retries it; the rest of the run continues.
    """

    def __init__(
        self,
        db: Any,  # Union[aiosqlite.Connection, asyncpg.Pool]
        data_root: str | Path | None,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        self.db = db
        self.data_root = data_root
        self._callbacks: list[ProgressCallback] = []
        if progress_callback:
            self._callbacks.append(progress_callback)
        self._recent_events: deque[ProgressEvent] = deque(maxlen=MAX_RECENT_EVENTS)

    # ── progress side channel ──────────────────────────────────────

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        """Register a progress observer; returns an unsubscribe function."""
        self._callbacks.append(callback)

        def _unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _unsubscribe

    def recent_events(self, limit: int = 50) -> list[ProgressEvent]:
        events = list(self._recent_events)
        return events[-max(1, limit):]

    def emit(self, event_type: str, message: str, **data: Any) -> ProgressEvent:
        event = ProgressEvent(type=event_type, message=message, data=data or None)
        self._recent_events.append(event)
        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception as e:
                logger.error("Progress observer failed on %s event: %s", event.type, e)
        return event

    async def ping(self) -> bool:
        return await ping(self.db)

    # ── run ─────────────────────────────────────────────────────────

    async def run(self) -> IngestStats:
        """Scan every project directory and ingest changed transcripts."""
        stats = IngestStats()
        t0 = time.monotonic()
        logger.info("Starting ingest run")
        self.emit("start", "Starting ETL process...")

        try:
            root = resolve_data_root(self.data_root)
            self.emit("info", f"Scanning directory: {root}")

            project_dirs = await self._list(_list_project_dirs, root)
            stats.projects = len(project_dirs)
            logger.info("Found %d projects under %s", len(project_dirs), root)
            self.emit("info", f"Found {len(project_dirs)} projects to process", totalProjects=len(project_dirs))

            for project_dir in project_dirs:
                await self._process_project(project_dir, stats)
        except Exception as exc:
            stats.duration_ms = int((time.monotonic() - t0) * 1000)
            logger.error("Ingest run failed: %s", exc)
            self.emit("error", f"ETL process failed: {exc}", error=str(exc))
            raise

        stats.duration_ms = int((time.monotonic() - t0) * 1000)
        logger.info(
            "Ingest complete: %d processed, %d skipped, %d empty, %d failed in %dms",
            stats.files_processed, stats.files_skipped, stats.files_empty,
            stats.files_failed, stats.duration_ms,
        )
        self.emit("complete", "ETL process completed successfully", **stats.model_dump())
        return stats

    async def _list(self, lister: Callable[[Path], list[Path]], path: Path) -> list[Path]:
        try:
            return await asyncio.to_thread(lister, path)
        except OSError as e:
            logger.error("Error reading directory %s: %s", path, e)
            return []

    async def _process_project(self, project_dir: Path, stats: IngestStats) -> None:
        project_name = project_dir.name
        logger.info("Processing project: %s", project_name)
        self.emit("project", f"Processing project: {project_name}", projectName=project_name)

        async with transaction(self.db) as tx:
            project_id = await get_project_repository(tx).upsert(project_name, str(project_dir))

        files = await self._list(_list_transcripts, project_dir)
        self.emit(
            "info",
            f"Found {len(files)} conversations in {project_name}",
            projectName=project_name,
            totalConversations=len(files),
        )
        for path in files:
            stats.files_seen += 1
            try:
                await self._process_file(project_id, path, stats)
            except Exception as e:
                stats.files_failed += 1
                logger.error("Failed to process %s: %s", path, e)
                self.emit("error", f"Failed to process {path.name}", fileName=path.name, error=str(e))

    async def _process_file(self, project_id: str, path: Path, stats: IngestStats) -> None:
        decision = await needs_processing(path, get_processed_file_repository(self.db))
        if not decision.process:
            stats.files_skipped += 1
            return

        text = await run_with_timeout(
            lambda: read_transcript(path),
            FILE_READ_TIMEOUT,
            f"File read operation for {path}",
        )
        messages = parse_transcript(text, source=str(path))
        if not messages:
            stats.files_empty += 1
            logger.warning("No valid messages in %s", path)
            self.emit("info", f"No valid messages in {path.name}", fileName=path.name)
            return

        summary = summarize_conversation(messages)
        async with transaction(self.db) as tx:
            conversations = get_conversation_repository(tx)
            conversation_pk = await conversations.upsert(summary, project_id)
            written = await conversations.replace_messages(conversation_pk, messages)
            await get_processed_file_repository(tx).upsert(str(path), decision.mtime, count_lines(text))

        stats.files_processed += 1
        stats.messages_written += written
        logger.info("Processed %s (%d messages, %s)", path.name, written, decision.reason)
        self.emit(
            "conversation",
            f"Processed: {path.name} ({written} messages)",
            fileName=path.name,
            messageCount=written,
        )
