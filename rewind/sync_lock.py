"""Cross-process sync lock backed by a single file.

Acquisition relies on exclusive file creation, so the filesystem decides
races between processes. A holder that stops refreshing the file for longer
than ``stale_after`` seconds is presumed dead and its lock may be reclaimed.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import time
import uuid
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from rewind.models import LockInfo, utc_now_iso

logger = logging.getLogger("rewind.lock")

STALE_THRESHOLD_SECONDS = 5 * 60
HEARTBEAT_INTERVAL_SECONDS = 60
WAIT_POLL_SECONDS = 1.0


class SyncLock:
    """File lock with staleness detection and heartbeat renewal."""

    def __init__(
        self,
        path: Path | str,
        source: str = "cli",
        stale_after: float = STALE_THRESHOLD_SECONDS,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS,
        poll_interval: float = WAIT_POLL_SECONDS,
    ):
        self.path = Path(path)
        self.source = source
        self.stale_after = stale_after
        self.heartbeat_interval = heartbeat_interval
        self.poll_interval = poll_interval
        self.token = uuid.uuid4().hex
        self._held = False
        self._heartbeat_task: Optional[asyncio.Task] = None

    @property
    def is_held(self) -> bool:
        return self._held

    async def acquire(self) -> bool:
        """Try to take the lock. Returns False if an active holder has it."""
        try:
            if await self._try_create():
                self._on_acquired()
                return True

            age = await asyncio.to_thread(self._age_seconds)
            if age is None:
                # Holder released between our create and stat; one more try.
                return await self._retry_once()
            if age <= self.stale_after:
                return False

            info = await self.get_info()
            logger.warning(
                "Reclaiming stale sync lock %s (age=%.0fs holder=%s)",
                self.path, age, info.pid if info else "unknown",
            )
            await asyncio.to_thread(self._unlink_quietly)
            return await self._retry_once()
        except OSError as e:
            logger.error("Failed to acquire lock %s: %s", self.path, e)
            return False

    async def release(self) -> None:
        """Drop the lock if we still own it. Safe to call repeatedly."""
        await self._stop_heartbeat()
        if not self._held:
            return
        self._held = False
        try:
            info = await self.get_info()
            if info is not None and info.token != self.token:
                logger.warning("Lock %s now belongs to pid %s; leaving it in place", self.path, info.pid)
                return
            await asyncio.to_thread(self._unlink_quietly)
        except OSError as e:
            logger.error("Failed to release lock %s: %s", self.path, e)

    async def exists(self) -> bool:
        return await asyncio.to_thread(self.path.exists)

    async def get_info(self) -> LockInfo | None:
        """Read the current lock record, or None when absent or unreadable."""
        try:
            raw = await asyncio.to_thread(self.path.read_text, encoding="utf-8")
            return LockInfo.model_validate(json.loads(raw))
        except (OSError, ValueError, ValidationError):
            return None

    async def wait_for_release(self, timeout: float = 30.0) -> bool:
        """Poll until the lock file disappears. False if ``timeout`` passes first."""
        loop = asyncio.get_running_loop()
        started = loop.time()
        while await self.exists():
            if loop.time() - started >= timeout:
                return False
            await asyncio.sleep(self.poll_interval)
        return True

    # ── internals ──────────────────────────────────────────────────

    async def _retry_once(self) -> bool:
        if await self._try_create():
            self._on_acquired()
            return True
        return False

    async def _try_create(self) -> bool:
        return await asyncio.to_thread(self._create_exclusive)

    def _record(self) -> str:
        info = LockInfo(pid=os.getpid(), timestamp=utc_now_iso(), source=self.source, token=self.token)
        return json.dumps(info.model_dump(), indent=2)

    def _create_exclusive(self) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(self._record())
        return True

    def _age_seconds(self) -> float | None:
        try:
            return time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return None

    def _unlink_quietly(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def _rewrite_timestamp(self) -> bool:
        # O_TRUNC without O_CREAT: never resurrect a lock someone removed.
        try:
            fd = os.open(self.path, os.O_WRONLY | os.O_TRUNC)
        except FileNotFoundError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(self._record())
        return True

    def _on_acquired(self) -> None:
        self._held = True
        self._start_heartbeat()
        logger.debug("Acquired sync lock %s", self.path)

    def _start_heartbeat(self) -> None:
        if self._heartbeat_task and not self._heartbeat_task.done():
            self._heartbeat_task.cancel()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def _stop_heartbeat(self) -> None:
        task = self._heartbeat_task
        self._heartbeat_task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            await self.heartbeat()

    async def heartbeat(self) -> bool:
        """Refresh the lock timestamp if the record is still ours."""
        try:
            info = await self.get_info()
            if info is None or info.pid != os.getpid() or info.token != self.token:
                return False
            return await asyncio.to_thread(self._rewrite_timestamp)
        except OSError as e:
            logger.error("Failed to update lock timestamp %s: %s", self.path, e)
            return False
