"""File watcher service using watchfiles.

Monitors the transcript data root and reports added, modified and deleted
``.jsonl`` files to a callback.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, Optional

from watchfiles import Change, awatch

logger = logging.getLogger("rewind.watcher")

ChangeCallback = Callable[[str, Path], None]

_CHANGE_NAMES = {
    Change.added: "added",
    Change.modified: "modified",
    Change.deleted: "deleted",
}


def classify_changes(changes: set[tuple[Change, str]], suffix: str = ".jsonl") -> list[tuple[str, Path]]:
    """Classify raw watchfiles changes into (change_type, path) pairs.

    Only returns files with the transcript suffix.
    """
    result = []
    for change_type, path_str in changes:
        path = Path(path_str)
        if path.suffix != suffix:
            continue
        name = _CHANGE_NAMES.get(change_type)
        if name:
            result.append((name, path))
    return result


def count_transcripts(root: Path, suffix: str = ".jsonl") -> int:
    return sum(1 for _ in root.rglob(f"*{suffix}"))


class FileWatcher:
    """Background file watcher that forwards transcript changes.

    Uses `watchfiles` (Rust-accelerated) for efficient watching.
    """

    def __init__(self):
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._running = False

    async def start(self, root: Path, on_change: ChangeCallback) -> None:
        """Start watching ``root`` in a background task."""
        if self._running:
            logger.warning("File watcher already running")
            return

        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._watch_loop(root, on_change, self._stop_event))
        logger.info("File watcher started for %s", root)

    async def stop(self) -> None:
        """Stop the file watcher."""
        self._running = False
        if self._stop_event:
            self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._stop_event = None
        logger.info("File watcher stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _watch_loop(self, root: Path, on_change: ChangeCallback, stop_event: asyncio.Event) -> None:
        if not root.exists():
            logger.warning("Watch root %s does not exist, watcher has nothing to monitor", root)
            self._running = False
            return

        try:
            async for changes in awatch(root, stop_event=stop_event):
                for change_type, path in classify_changes(changes):
                    logger.debug("Transcript %s: %s", change_type, path)
                    on_change(change_type, path)
        except asyncio.CancelledError:
            logger.info("File watcher task cancelled")
            raise
        except Exception as e:
            logger.error("File watcher error: %s", e)
        finally:
            self._running = False
