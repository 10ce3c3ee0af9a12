"""Background daemon control.

``start`` spawns ``rewind daemon`` in its own session and records
``{"pid", "startTime"}`` in a PID file. ``status`` treats a PID file whose
process is gone (or that cannot be read) as stale and removes it. ``stop``
sends SIGTERM, waits, and falls back to SIGKILL.
"""
from __future__ import annotations

import json
import logging
import os
import signal
import subprocess
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Sequence

from pydantic import BaseModel

logger = logging.getLogger("rewind.daemon")

STOP_TIMEOUT_SECONDS = 5.0
_EXIT_POLL_SECONDS = 0.1


class DaemonStatus(BaseModel):
    isRunning: bool = False
    pid: Optional[int] = None
    startTime: Optional[datetime] = None
    uptimeSeconds: Optional[float] = None


def is_process_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    # Reap our own exited children first; a zombie still answers signal 0.
    try:
        reaped, _ = os.waitpid(pid, os.WNOHANG)
    except ChildProcessError:
        pass
    else:
        if reaped == pid:
            return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def default_command() -> list[str]:
    return [sys.executable, "-m", "rewind.cli", "daemon"]


class DaemonManager:
    def __init__(
        self,
        pid_path: str | Path,
        log_path: str | Path | None = None,
        command: Optional[Sequence[str]] = None,
        stop_timeout: float = STOP_TIMEOUT_SECONDS,
    ):
        self.pid_path = Path(pid_path)
        self.log_path = Path(log_path) if log_path else None
        self.command = list(command) if command else default_command()
        self.stop_timeout = stop_timeout

    def status(self) -> DaemonStatus:
        try:
            data = json.loads(self.pid_path.read_text(encoding="utf-8"))
            pid = int(data["pid"])
            started = datetime.fromisoformat(data["startTime"])
            if started.tzinfo is None:
                started = started.replace(tzinfo=timezone.utc)
        except FileNotFoundError:
            return DaemonStatus()
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Removing unreadable PID file %s: %s", self.pid_path, e)
            self._remove_pid_file()
            return DaemonStatus()

        if not is_process_alive(pid):
            logger.info("Removing stale PID file %s (pid %d is gone)", self.pid_path, pid)
            self._remove_pid_file()
            return DaemonStatus()

        uptime = (datetime.now(timezone.utc) - started).total_seconds()
        return DaemonStatus(isRunning=True, pid=pid, startTime=started, uptimeSeconds=max(0.0, uptime))

    def start(self) -> Optional[int]:
        """Spawn the daemon; returns its pid, or None if one is already running."""
        current = self.status()
        if current.isRunning:
            logger.info("Daemon is already running (pid %d)", current.pid)
            return None

        self.pid_path.parent.mkdir(parents=True, exist_ok=True)
        with self._open_log() as log:
            process = subprocess.Popen(
                self.command,
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )

        record = {"pid": process.pid, "startTime": datetime.now(timezone.utc).isoformat()}
        self.pid_path.write_text(json.dumps(record, indent=2), encoding="utf-8")
        logger.info("Daemon started with PID %d", process.pid)
        return process.pid

    def stop(self) -> bool:
        """Terminate a running daemon; False when none was running."""
        current = self.status()
        if not current.isRunning or current.pid is None:
            logger.info("Daemon is not running")
            return False

        pid = current.pid
        self._signal(pid, signal.SIGTERM)
        if not self._wait_for_exit(pid, self.stop_timeout):
            logger.warning("Daemon pid %d did not exit after SIGTERM; sending SIGKILL", pid)
            self._signal(pid, signal.SIGKILL)
            self._wait_for_exit(pid, self.stop_timeout)

        self._remove_pid_file()
        logger.info("Daemon stopped")
        return True

    def restart(self) -> Optional[int]:
        self.stop()
        return self.start()

    def _open_log(self):
        if self.log_path is None:
            return open(os.devnull, "wb")
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        return open(self.log_path, "ab")

    @staticmethod
    def _signal(pid: int, sig: int) -> None:
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            pass

    @staticmethod
    def _wait_for_exit(pid: int, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        while is_process_alive(pid):
            if time.monotonic() >= deadline:
                return False
            time.sleep(_EXIT_POLL_SECONDS)
        return True

    def _remove_pid_file(self) -> None:
        try:
            self.pid_path.unlink()
        except FileNotFoundError:
            pass
