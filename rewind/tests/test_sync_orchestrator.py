import asyncio
import json
import tempfile
import unittest
from pathlib import Path

from rewind.config import Settings
from rewind.exceptions import DataRootNotConfigured, IngestUnavailable
from rewind.models import SyncOutcome, SyncState
from rewind.services.sync_orchestrator import (
    DEFAULT_INTERVAL_SECONDS,
    SyncOrchestrator,
    build_orchestrator,
    parse_interval,
)
from rewind.sync_lock import SyncLock


class _FakeEngine:
    """Counts runs and the peak number of runs in flight at once."""

    def __init__(self, delay: float = 0.0, error: Exception | None = None, healthy: bool = True) -> None:
        self.delay = delay
        self.error = error
        self.healthy = healthy
        self.runs = 0
        self.active = 0
        self.peak = 0

    async def run(self):
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.delay)
            if self.error:
                raise self.error
            self.runs += 1
        finally:
            self.active -= 1

    async def ping(self) -> bool:
        return self.healthy


class _BlockingEngine:
    """Holds its run open until ``release`` is set."""

    def __init__(self) -> None:
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def run(self):
        self.entered.set()
        await self.release.wait()

    async def ping(self) -> bool:
        return True


class _FakeWatcher:
    def __init__(self) -> None:
        self.started_with = None
        self.stopped = 0
        self.callback = None

    async def start(self, root, on_change) -> None:
        self.started_with = root
        self.callback = on_change

    async def stop(self) -> None:
        self.stopped += 1

    @property
    def is_running(self) -> bool:
        return self.started_with is not None and not self.stopped


class ParseIntervalTests(unittest.TestCase):
    def test_minutes_and_hours(self) -> None:
        self.assertEqual(parse_interval("5m"), 300)
        self.assertEqual(parse_interval("1h"), 3600)
        self.assertEqual(parse_interval("90m"), 5400)

    def test_unparseable_values_fall_back_to_five_minutes(self) -> None:
        for value in ("", None, "5", "5s", "m", "1.5h", "abc", "0m", "-1h"):
            with self.subTest(value=value):
                self.assertEqual(parse_interval(value), DEFAULT_INTERVAL_SECONDS)


class SyncOrchestratorTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name) / "projects"
        (self.root / "proj").mkdir(parents=True)
        (self.root / "proj" / "a.jsonl").write_text("", encoding="utf-8")
        (self.root / "proj" / "b.jsonl").write_text("", encoding="utf-8")
        self.lock_path = Path(self._tmp.name) / "sync.lock"
        self.orchestrators: list[SyncOrchestrator] = []

    async def asyncTearDown(self) -> None:
        for orchestrator in self.orchestrators:
            await orchestrator.stop()
        self._tmp.cleanup()

    def _orchestrator(self, engine: _FakeEngine, **kwargs) -> SyncOrchestrator:
        lock = SyncLock(self.lock_path, poll_interval=0.02)
        kwargs.setdefault("watcher", _FakeWatcher())
        kwargs.setdefault("debounce_seconds", 0.05)
        kwargs.setdefault("manual_wait_seconds", 2.0)
        orchestrator = SyncOrchestrator(engine, lock, str(self.root), **kwargs)
        self.orchestrators.append(orchestrator)
        return orchestrator

    # ── execution ─────────────────────────────────────────────────

    async def test_successful_sync_updates_stats_and_releases_lock(self) -> None:
        engine = _FakeEngine()
        orchestrator = self._orchestrator(engine)

        outcome = await orchestrator.perform_sync()

        self.assertEqual(outcome, SyncOutcome.COMPLETED)
        stats = orchestrator.get_stats()
        self.assertEqual(stats.totalSyncs, 1)
        self.assertIsNotNone(stats.lastSyncTime)
        self.assertEqual(stats.lastOutcome, SyncOutcome.COMPLETED)
        self.assertFalse(stats.syncInFlight)
        self.assertFalse(self.lock_path.exists())

    async def test_concurrent_background_syncs_never_overlap(self) -> None:
        engine = _FakeEngine(delay=0.1)
        first = self._orchestrator(engine)
        second = self._orchestrator(engine)

        outcomes = await asyncio.gather(first.perform_sync(), second.perform_sync())

        self.assertCountEqual(outcomes, [SyncOutcome.COMPLETED, SyncOutcome.SKIPPED])
        self.assertEqual(engine.runs, 1)
        self.assertEqual(engine.peak, 1)

    async def test_manual_sync_waits_for_running_sync(self) -> None:
        engine = _FakeEngine(delay=0.15)
        background = self._orchestrator(engine)
        manual = self._orchestrator(engine)

        background_task = asyncio.create_task(background.perform_sync())
        await asyncio.sleep(0.03)
        outcome = await manual.manual_sync()

        self.assertEqual(await background_task, SyncOutcome.COMPLETED)
        self.assertEqual(outcome, SyncOutcome.COMPLETED)
        self.assertEqual(engine.runs, 2)
        self.assertEqual(engine.peak, 1)

    async def test_manual_sync_times_out_behind_a_live_holder(self) -> None:
        self.lock_path.write_text(
            json.dumps({"pid": 999999, "timestamp": "2026-01-01T00:00:00+00:00", "source": "daemon", "token": "x"}),
            encoding="utf-8",
        )
        engine = _FakeEngine()
        orchestrator = self._orchestrator(engine, manual_wait_seconds=0.1)

        outcome = await orchestrator.manual_sync()

        self.assertEqual(outcome, SyncOutcome.LOCK_TIMEOUT)
        self.assertEqual(orchestrator.get_stats().lastOutcome, SyncOutcome.LOCK_TIMEOUT)
        self.assertEqual(engine.runs, 0)
        self.assertTrue(self.lock_path.exists())

    async def test_manual_sync_reports_unavailable_backend(self) -> None:
        engine = _FakeEngine(healthy=False)
        orchestrator = self._orchestrator(engine)

        self.assertEqual(await orchestrator.manual_sync(), SyncOutcome.UNAVAILABLE)
        self.assertEqual(engine.runs, 0)
        self.assertFalse(self.lock_path.exists())

    async def test_health_check_exception_counts_as_unavailable(self) -> None:
        async def _broken_check():
            raise ConnectionError("db down")

        orchestrator = self._orchestrator(_FakeEngine(), health_check=_broken_check)

        with self.assertLogs("rewind.sync", level="ERROR"):
            self.assertEqual(await orchestrator.manual_sync(), SyncOutcome.UNAVAILABLE)

    async def test_failed_run_is_counted_and_lock_released(self) -> None:
        engine = _FakeEngine(error=RuntimeError("disk on fire"))
        orchestrator = self._orchestrator(engine)

        with self.assertLogs("rewind.sync", level="ERROR"):
            outcome = await orchestrator.perform_sync()

        self.assertEqual(outcome, SyncOutcome.FAILED)
        stats = orchestrator.get_stats()
        self.assertEqual(stats.failedSyncs, 1)
        self.assertEqual(stats.totalSyncs, 0)
        self.assertEqual(stats.lastError, "disk on fire")
        self.assertFalse(self.lock_path.exists())

        engine.error = None
        self.assertEqual(await orchestrator.perform_sync(), SyncOutcome.COMPLETED)
        self.assertEqual(orchestrator.get_stats().lastError, "")

    # ── lifecycle ─────────────────────────────────────────────────

    async def test_start_requires_data_root(self) -> None:
        orchestrator = SyncOrchestrator(_FakeEngine(), SyncLock(self.lock_path), "  ", watcher=_FakeWatcher())
        with self.assertRaises(DataRootNotConfigured):
            await orchestrator.start()
        self.assertFalse(orchestrator.is_running)

    async def test_start_refuses_unhealthy_backend(self) -> None:
        orchestrator = self._orchestrator(_FakeEngine(healthy=False))

        with self.assertLogs("rewind.sync", level="ERROR"):
            with self.assertRaises(IngestUnavailable):
                await orchestrator.start()

        self.assertFalse(orchestrator.is_running)
        self.assertEqual(orchestrator.get_stats().state, SyncState.IDLE)

    async def test_watch_mode_starts_watcher_and_counts_files(self) -> None:
        watcher = _FakeWatcher()
        orchestrator = self._orchestrator(_FakeEngine(), watcher=watcher)

        await orchestrator.start()

        self.assertTrue(orchestrator.is_running)
        self.assertEqual(watcher.started_with, self.root)
        stats = orchestrator.get_stats()
        self.assertEqual(stats.state, SyncState.WATCHING)
        self.assertEqual(stats.filesWatched, 2)

        await orchestrator.stop()
        self.assertEqual(watcher.stopped, 1)
        self.assertEqual(orchestrator.get_stats().state, SyncState.STOPPED)

    async def test_file_events_are_debounced_into_one_sync(self) -> None:
        engine = _FakeEngine()
        watcher = _FakeWatcher()
        orchestrator = self._orchestrator(engine, watcher=watcher, debounce_seconds=0.1)
        await orchestrator.start()

        for _ in range(5):
            watcher.callback("modified", self.root / "proj" / "a.jsonl")
            await asyncio.sleep(0.02)
        self.assertEqual(engine.runs, 0)

        await asyncio.sleep(0.3)
        self.assertEqual(engine.runs, 1)

    async def test_stop_cancels_pending_debounce(self) -> None:
        engine = _FakeEngine()
        watcher = _FakeWatcher()
        orchestrator = self._orchestrator(engine, watcher=watcher, debounce_seconds=0.1)
        await orchestrator.start()

        watcher.callback("added", self.root / "proj" / "c.jsonl")
        await orchestrator.stop()
        await asyncio.sleep(0.2)

        self.assertEqual(engine.runs, 0)

    async def test_stop_waits_for_in_flight_sync(self) -> None:
        engine = _FakeEngine(delay=0.2)
        orchestrator = self._orchestrator(engine, debounce_seconds=0.01)
        await orchestrator.start()

        orchestrator.schedule_sync()
        await asyncio.sleep(0.08)
        self.assertTrue(orchestrator.get_stats().syncInFlight)
        await orchestrator.stop()

        self.assertEqual(engine.runs, 1)
        self.assertFalse(self.lock_path.exists())

    async def test_stop_keeps_lock_until_manual_sync_finishes(self) -> None:
        engine = _BlockingEngine()
        orchestrator = self._orchestrator(engine)
        await orchestrator.start()

        manual = asyncio.create_task(orchestrator.manual_sync())
        await asyncio.wait_for(engine.entered.wait(), timeout=1.0)
        stopping = asyncio.create_task(orchestrator.stop())
        await asyncio.sleep(0.05)

        self.assertFalse(stopping.done())
        self.assertTrue(self.lock_path.exists())
        self.assertFalse(await SyncLock(self.lock_path).acquire())

        engine.release.set()
        self.assertEqual(await manual, SyncOutcome.COMPLETED)
        await stopping

        self.assertEqual(orchestrator.get_stats().state, SyncState.STOPPED)
        self.assertFalse(self.lock_path.exists())

    async def test_poll_mode_syncs_immediately_then_waits(self) -> None:
        engine = _FakeEngine()
        watcher = _FakeWatcher()
        orchestrator = self._orchestrator(engine, watcher=watcher, watch_mode=False, interval="1m")

        await orchestrator.start()
        await asyncio.sleep(0.1)

        self.assertEqual(orchestrator.get_stats().state, SyncState.POLLING)
        self.assertIsNone(watcher.started_with)
        self.assertEqual(engine.runs, 1)

        await orchestrator.stop()
        self.assertEqual(engine.runs, 1)
        self.assertEqual(orchestrator.get_stats().state, SyncState.STOPPED)

    async def test_stop_is_safe_without_start_and_repeatable(self) -> None:
        orchestrator = self._orchestrator(_FakeEngine())

        await orchestrator.stop()
        await orchestrator.stop()

        self.assertFalse(orchestrator.is_running)
        self.assertEqual(orchestrator.get_stats().state, SyncState.STOPPED)

    async def test_second_start_is_ignored(self) -> None:
        watcher = _FakeWatcher()
        orchestrator = self._orchestrator(_FakeEngine(), watcher=watcher)
        await orchestrator.start()

        with self.assertLogs("rewind.sync", level="WARNING"):
            await orchestrator.start()

        self.assertTrue(orchestrator.is_running)

    async def test_build_orchestrator_uses_settings(self) -> None:
        settings = Settings(
            dataPath=str(self.root),
            watchMode=False,
            interval="2h",
            debounceSeconds=1.5,
            manualWaitSeconds=12,
            lockPath=str(self.lock_path),
            lockStaleSeconds=42,
            lockHeartbeatSeconds=7,
        )
        orchestrator = build_orchestrator(_FakeEngine(), settings, source="api")
        self.orchestrators.append(orchestrator)

        self.assertEqual(orchestrator.data_root, str(self.root))
        self.assertFalse(orchestrator.watch_mode)
        self.assertEqual(orchestrator.interval, "2h")
        self.assertEqual(orchestrator.debounce_seconds, 1.5)
        self.assertEqual(orchestrator.manual_wait_seconds, 12)
        self.assertEqual(orchestrator.lock.path, self.lock_path)
        self.assertEqual(orchestrator.lock.source, "api")
        self.assertEqual(orchestrator.lock.stale_after, 42)
        self.assertEqual(orchestrator.lock.heartbeat_interval, 7)


if __name__ == "__main__":
    unittest.main()
