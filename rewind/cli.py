"""Command line entrypoint: run or control the sync daemon, trigger a sync, show status."""
from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

import uvicorn

from rewind import config
from rewind.db import connection, migrations
from rewind.db.factory import (
    get_conversation_repository,
    get_processed_file_repository,
    get_project_repository,
)
from rewind.db.ingest_engine import IngestEngine
from rewind.exceptions import RewindError
from rewind.models import ProgressEvent, SyncOutcome
from rewind.services.daemon import DaemonManager
from rewind.services.sync_orchestrator import build_orchestrator
from rewind.sync_lock import SyncLock

logger = logging.getLogger("rewind.cli")

_SETTABLE_KEYS = {"dataPath", "watchMode", "interval", "logLevel"}


def _print_event(event: ProgressEvent) -> None:
    if event.type in {"project", "conversation", "error", "complete"}:
        print(f"[{event.type}] {event.message}")


async def _open_engine(settings: config.Settings, verbose: bool = False) -> IngestEngine:
    db = await connection.get_connection()
    await migrations.run_migrations(db)
    return IngestEngine(db, settings.dataPath, progress_callback=_print_event if verbose else None)


async def _daemon(settings: config.Settings) -> int:
    engine = await _open_engine(settings)
    orchestrator = build_orchestrator(engine, settings, source="daemon")
    try:
        await orchestrator.start()
    except RewindError as e:
        print(f"Failed to start sync service: {e}", file=sys.stderr)
        await connection.close_connection()
        return 1

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    print(f"Sync service running ({'watch' if settings.watchMode else 'poll'} mode). Press Ctrl+C to stop.")
    await stop_event.wait()
    logger.info("Shutdown signal received")
    await orchestrator.stop()
    await connection.close_connection()
    return 0


async def _sync(settings: config.Settings) -> int:
    engine = await _open_engine(settings, verbose=True)
    orchestrator = build_orchestrator(engine, settings, source="cli")
    try:
        outcome = await orchestrator.manual_sync()
    finally:
        await connection.close_connection()

    if outcome == SyncOutcome.COMPLETED:
        print("Sync completed successfully")
        return 0
    if outcome == SyncOutcome.LOCK_TIMEOUT:
        print("Sync did not run: another sync is still holding the lock", file=sys.stderr)
    elif outcome == SyncOutcome.UNAVAILABLE:
        print("Sync did not run: database is not reachable", file=sys.stderr)
    else:
        print(f"Sync failed: {orchestrator.get_stats().lastError}", file=sys.stderr)
    return 1


async def _status(settings: config.Settings) -> int:
    lock = SyncLock(settings.lockPath)
    info = await lock.get_info()
    print(f"Data path:     {settings.dataPath}")
    print(f"Mode:          {'watch' if settings.watchMode else 'poll (' + settings.interval + ')'}")
    daemon = _daemon_manager().status()
    if daemon.isRunning:
        print(f"Daemon:        running (pid {daemon.pid}, up {_format_uptime(daemon.uptimeSeconds or 0)})")
    else:
        print("Daemon:        stopped")
    if info:
        print(f"Sync lock:     held by pid {info.pid} ({info.source}) since {info.timestamp}")
    else:
        print("Sync lock:     free")

    db = await connection.get_connection()
    try:
        await migrations.run_migrations(db)
        print(f"Projects:      {await get_project_repository(db).count()}")
        print(f"Conversations: {await get_conversation_repository(db).count()}")
        print(f"Files tracked: {await get_processed_file_repository(db).count()}")
    finally:
        await connection.close_connection()
    return 0


def _daemon_manager() -> DaemonManager:
    return DaemonManager(config.PID_PATH, log_path=config.DAEMON_LOG_PATH)


def _format_uptime(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def _control_command(command: str) -> int:
    manager = _daemon_manager()
    if command == "stop":
        if not manager.stop():
            print("Daemon is not running", file=sys.stderr)
            return 1
        print("Daemon stopped")
        return 0

    pid = manager.restart() if command == "restart" else manager.start()
    if pid is None:
        print(f"Daemon is already running (pid {manager.status().pid})", file=sys.stderr)
        return 1
    print(f"Daemon started with PID {pid} (log: {config.DAEMON_LOG_PATH})")
    return 0


def _config_command(args: argparse.Namespace, settings: config.Settings) -> int:
    if args.config_action == "show":
        for key, value in settings.model_dump().items():
            print(f"{key}: {value}")
        print(f"(file: {config.CONFIG_FILE})")
        return 0

    if args.key not in _SETTABLE_KEYS:
        print(f"Unknown setting: {args.key} (choose from {', '.join(sorted(_SETTABLE_KEYS))})", file=sys.stderr)
        return 2
    value: object = args.value
    if args.key == "watchMode":
        value = args.value.strip().lower() in {"1", "true", "yes", "on"}
    updated = settings.model_copy(update={args.key: value})
    path = config.save_settings(updated)
    print(f"Saved {args.key} to {path}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rewind", description="Transcript ingest and sync service")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("daemon", help="Watch or poll the data path and sync continuously")
    sub.add_parser("start", help="Start the daemon in the background")
    sub.add_parser("stop", help="Stop the background daemon")
    sub.add_parser("restart", help="Stop, then start the background daemon")
    sub.add_parser("sync", help="Run one sync now, waiting for any in-flight sync")
    sub.add_parser("status", help="Show daemon and lock state plus ingest counts")
    sub.add_parser("serve", help="Run the HTTP API with the sync service attached")

    config_parser = sub.add_parser("config", help="Show or change persisted settings")
    config_sub = config_parser.add_subparsers(dest="config_action", required=True)
    config_sub.add_parser("show")
    set_parser = config_sub.add_parser("set")
    set_parser.add_argument("key")
    set_parser.add_argument("value")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = config.load_settings()
    logging.basicConfig(level=config.log_level_value(settings.logLevel))

    if args.command == "config":
        return _config_command(args, settings)
    if args.command == "serve":
        uvicorn.run("rewind.main:app", host=config.HOST, port=config.PORT, log_level=config.log_level_value(settings.logLevel))
        return 0
    if args.command in {"start", "stop", "restart"}:
        return _control_command(args.command)
    if args.command == "daemon":
        return asyncio.run(_daemon(settings))
    if args.command == "sync":
        return asyncio.run(_sync(settings))
    return asyncio.run(_status(settings))


if __name__ == "__main__":
    raise SystemExit(main())
