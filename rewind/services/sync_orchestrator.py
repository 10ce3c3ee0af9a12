"""Single-flight sync orchestration.

Turns filesystem events (debounced), poll ticks and manual requests into
ingest runs, with at most one run in flight system-wide. The cross-process
guarantee comes from ``SyncLock``; background triggers that lose the lock
are dropped, manual requests wait for the holder and then run.
"""
from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from rewind.config import Settings
from rewind.db.file_watcher import FileWatcher, count_transcripts
from rewind.exceptions import DataRootNotConfigured, IngestUnavailable
from rewind.models import SyncOutcome, SyncState, SyncStats
from rewind.sync_lock import SyncLock

logger = logging.getLogger("rewind.sync")

DEFAULT_INTERVAL_SECONDS = 5 * 60
DEBOUNCE_SECONDS = 3.0
MANUAL_WAIT_SECONDS = 30.0

_INTERVAL_RE = re.compile(r"^(\d+)([mh])$")

HealthCheck = Callable[[], Awaitable[bool]]


def parse_interval(interval: str | None) -> float:
    """Parse '5m' / '1h' style durations into seconds; anything else is 5 minutes."""
    match = _INTERVAL_RE.match((interval or "").strip())
    if not match:
        return DEFAULT_INTERVAL_SECONDS
    value = int(match.group(1))
    if value <= 0:
        return DEFAULT_INTERVAL_SECONDS
    return value * 60 if match.group(2) == "m" else value * 60 * 60


class SyncOrchestrator:
    """Drive ``engine.run()`` from watch, poll and manual triggers."""

    def __init__(
        self,
        engine: Any,
        lock: SyncLock,
        data_root: str | Path | None,
        *,
        watch_mode: bool = True,
        interval: str = "5m",
        debounce_seconds: float = DEBOUNCE_SECONDS,
        manual_wait_seconds: float = MANUAL_WAIT_SECONDS,
        health_check: Optional[HealthCheck] = None,
        watcher: Optional[FileWatcher] = None,
    ):
        self.engine = engine
        self.lock = lock
        self.data_root = data_root
        self.watch_mode = watch_mode
        self.interval = interval
        self.debounce_seconds = debounce_seconds
        self.manual_wait_seconds = manual_wait_seconds
        self._health_check = health_check or engine.ping
        self._watcher = watcher or FileWatcher()
        self._stats = SyncStats()
        self._running = False
        self._debounce_handle: Optional[asyncio.TimerHandle] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._sync_tasks: set[asyncio.Task] = set()
        # Counts every locked run, manual ones included; set when none are active.
        self._in_flight = 0
        self._idle = asyncio.Event()
        self._idle.set()

    # ── lifecycle ───────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._running

    def get_stats(self) -> SyncStats:
        return self._stats.model_copy()

    async def start(self) -> None:
        """Check the ingest backend, then enter watch or poll mode."""
        if self._running:
            logger.warning("Sync service is already running")
            return
        if not str(self.data_root or "").strip():
            raise DataRootNotConfigured()

        self._stats.state = SyncState.STARTING
        if not await self._is_healthy():
            self._stats.state = SyncState.IDLE
            logger.error("Ingest backend is not reachable; refusing to start sync service")
            raise IngestUnavailable("Ingest backend is not reachable")

        self._running = True
        if self.watch_mode:
            await self._start_watching()
        else:
            self._start_polling()
        logger.info(
            "Sync service started (mode=%s dataPath=%s)",
            "watch" if self.watch_mode else "poll", self.data_root,
        )

    async def stop(self) -> None:
        """Cancel triggers, let an in-flight run finish, release the lock."""
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None

        await self._watcher.stop()

        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None

        if self._sync_tasks:
            await asyncio.gather(*list(self._sync_tasks), return_exceptions=True)
        if not self._idle.is_set():
            logger.info("Waiting for in-flight sync to finish...")
            await self._idle.wait()

        await self.lock.release()
        was_running = self._running
        self._running = False
        self._stats.state = SyncState.STOPPED
        if was_running:
            logger.info("Sync service stopped")

    # ── watch mode ──────────────────────────────────────────────────

    async def _start_watching(self) -> None:
        root = Path(str(self.data_root)).expanduser()
        logger.info("Starting file watcher on %s", root)
        try:
            self._stats.filesWatched = await asyncio.to_thread(count_transcripts, root)
        except OSError as e:
            logger.warning("Could not count watched files under %s: %s", root, e)
        await self._watcher.start(root, self._on_file_change)
        self._stats.state = SyncState.WATCHING

    def _on_file_change(self, change_type: str, path: Path) -> None:
        logger.debug("File %s: %s", change_type, path)
        self.schedule_sync()

    def schedule_sync(self) -> None:
        """(Re)start the debounce window; the sync fires once events go quiet."""
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
        loop = asyncio.get_running_loop()
        self._debounce_handle = loop.call_later(self.debounce_seconds, self._fire_debounced_sync)

    def _fire_debounced_sync(self) -> None:
        self._debounce_handle = None
        self._spawn_sync()

    def _spawn_sync(self) -> asyncio.Task:
        task = asyncio.create_task(self.perform_sync())
        self._sync_tasks.add(task)
        task.add_done_callback(self._sync_tasks.discard)
        return task

    # ── poll mode ───────────────────────────────────────────────────

    def _start_polling(self) -> None:
        interval = parse_interval(self.interval)
        logger.info("Starting polling mode (interval=%s, %.0fs)", self.interval, interval)
        self._stats.state = SyncState.POLLING
        self._poll_task = asyncio.create_task(self._poll_loop(interval))

    async def _poll_loop(self, interval: float) -> None:
        while True:
            # Shielded so stop() never interrupts a run halfway through a file.
            await asyncio.shield(self._spawn_sync())
            await asyncio.sleep(interval)

    # ── sync execution ──────────────────────────────────────────────

    async def perform_sync(self) -> SyncOutcome:
        """Background trigger: run if the lock is free, otherwise skip."""
        if not await self.lock.acquire():
            logger.info("Sync already in progress, skipping...")
            return SyncOutcome.SKIPPED
        return await self._run_locked("sync")

    async def manual_sync(self) -> SyncOutcome:
        """Interactive trigger: wait for a running sync to finish, then run."""
        if not await self._is_healthy():
            logger.error("Ingest backend is not reachable")
            return self._record_outcome(SyncOutcome.UNAVAILABLE)

        if not await self.lock.acquire():
            logger.info("Another sync is in progress, waiting...")
            if not await self.lock.wait_for_release(self.manual_wait_seconds):
                logger.error("Timeout waiting for sync lock")
                return self._record_outcome(SyncOutcome.LOCK_TIMEOUT)
            if not await self.lock.acquire():
                logger.error("Failed to acquire sync lock")
                return self._record_outcome(SyncOutcome.LOCK_TIMEOUT)

        return await self._run_locked("manual sync")

    async def _run_locked(self, label: str) -> SyncOutcome:
        """Run the engine while holding the lock; the lock is always released."""
        self._in_flight += 1
        self._idle.clear()
        self._stats.syncInFlight = True
        try:
            logger.info("Starting %s...", label)
            await self.engine.run()
        except Exception as e:
            self._stats.failedSyncs += 1
            self._stats.lastError = str(e)
            logger.error("%s failed: %s", label.capitalize(), e)
            return self._record_outcome(SyncOutcome.FAILED)
        finally:
            self._stats.syncInFlight = False
            try:
                await self.lock.release()
            finally:
                self._in_flight -= 1
                if not self._in_flight:
                    self._idle.set()

        self._stats.lastSyncTime = datetime.now(timezone.utc)
        self._stats.totalSyncs += 1
        self._stats.lastError = ""
        logger.info("%s completed successfully", label.capitalize())
        return self._record_outcome(SyncOutcome.COMPLETED)

    def _record_outcome(self, outcome: SyncOutcome) -> SyncOutcome:
        self._stats.lastOutcome = outcome
        return outcome

    async def _is_healthy(self) -> bool:
        try:
            return bool(await self._health_check())
        except Exception as e:
            logger.error("Health check failed: %s", e)
            return False


def build_orchestrator(engine: Any, settings: Settings, source: str = "cli") -> SyncOrchestrator:
    """Wire an orchestrator and its lock from resolved settings."""
    lock = SyncLock(
        settings.lockPath,
        source=source,
        stale_after=settings.lockStaleSeconds,
        heartbeat_interval=settings.lockHeartbeatSeconds,
    )
    return SyncOrchestrator(
        engine,
        lock,
        settings.dataPath,
        watch_mode=settings.watchMode,
        interval=settings.interval,
        debounce_seconds=settings.debounceSeconds,
        manual_wait_seconds=settings.manualWaitSeconds,
    )
