import contextlib
import io
import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import aiosqlite
import yaml

from rewind import cli, config
from rewind.db.connection import configure_sqlite


class ConfigCommandTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.config_file = Path(self._tmp.name) / "config.yaml"
        self._patches = [
            patch.object(config, "CONFIG_FILE", self.config_file),
            patch.object(config, "DATA_PATH", ""),
            patch.object(config, "WATCH_MODE", None),
            patch.object(config, "SYNC_INTERVAL", None),
            patch.object(config, "LOG_LEVEL", None),
        ]
        for p in self._patches:
            p.start()

    def tearDown(self) -> None:
        for p in self._patches:
            p.stop()
        self._tmp.cleanup()

    def _run(self, *argv: str) -> tuple[int, str, str]:
        out, err = io.StringIO(), io.StringIO()
        with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
            code = cli.main(list(argv))
        return code, out.getvalue(), err.getvalue()

    def test_config_set_persists_value(self) -> None:
        code, out, _ = self._run("config", "set", "interval", "1h")

        self.assertEqual(code, 0)
        self.assertIn("Saved interval", out)
        self.assertEqual(yaml.safe_load(self.config_file.read_text())["interval"], "1h")

    def test_config_set_parses_watch_mode(self) -> None:
        self._run("config", "set", "watchMode", "off")
        self.assertIs(yaml.safe_load(self.config_file.read_text())["watchMode"], False)

    def test_config_set_rejects_unknown_key(self) -> None:
        code, _, err = self._run("config", "set", "colour", "blue")

        self.assertEqual(code, 2)
        self.assertIn("Unknown setting", err)
        self.assertFalse(self.config_file.exists())

    def test_config_show(self) -> None:
        self.config_file.write_text(yaml.safe_dump({"dataPath": "/data/x"}), encoding="utf-8")

        code, out, _ = self._run("config", "show")

        self.assertEqual(code, 0)
        self.assertIn("dataPath: /data/x", out)

    def test_command_is_required(self) -> None:
        with contextlib.redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit):
                cli.build_parser().parse_args([])


class ControlCommandTests(unittest.TestCase):
    def _run(self, manager: MagicMock, *argv: str) -> tuple[int, str, str]:
        out, err = io.StringIO(), io.StringIO()
        with patch.object(cli, "_daemon_manager", return_value=manager), patch.object(
            config, "CONFIG_FILE", Path("/nonexistent/rewind/config.yaml")
        ), contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
            code = cli.main(list(argv))
        return code, out.getvalue(), err.getvalue()

    def test_start_reports_pid(self) -> None:
        manager = MagicMock()
        manager.start.return_value = 4242

        code, out, _ = self._run(manager, "start")

        self.assertEqual(code, 0)
        self.assertIn("Daemon started with PID 4242", out)

    def test_start_when_already_running(self) -> None:
        manager = MagicMock()
        manager.start.return_value = None
        manager.status.return_value.pid = 99

        code, _, err = self._run(manager, "start")

        self.assertEqual(code, 1)
        self.assertIn("already running (pid 99)", err)

    def test_stop(self) -> None:
        manager = MagicMock()
        manager.stop.return_value = True
        self.assertEqual(self._run(manager, "stop")[0], 0)

        manager.stop.return_value = False
        code, _, err = self._run(manager, "stop")
        self.assertEqual(code, 1)
        self.assertIn("not running", err)

    def test_restart(self) -> None:
        manager = MagicMock()
        manager.restart.return_value = 5151

        code, out, _ = self._run(manager, "restart")

        self.assertEqual(code, 0)
        manager.restart.assert_called_once_with()
        manager.start.assert_not_called()
        self.assertIn("PID 5151", out)

    def test_uptime_formatting(self) -> None:
        self.assertEqual(cli._format_uptime(42), "42s")
        self.assertEqual(cli._format_uptime(125), "2m 5s")
        self.assertEqual(cli._format_uptime(3 * 3600 + 61), "3h 1m")


class StatusCommandTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.db = await configure_sqlite(await aiosqlite.connect(":memory:"))
        self.settings = config.Settings(dataPath="/data/projects", lockPath=str(Path(self._tmp.name) / "sync.lock"))
        self.pid_path = Path(self._tmp.name) / "daemon.pid"
        self._pid_patch = patch.object(config, "PID_PATH", self.pid_path)
        self._pid_patch.start()

    async def asyncTearDown(self) -> None:
        self._pid_patch.stop()
        await self.db.close()
        self._tmp.cleanup()

    async def _status_output(self) -> tuple[int, str]:
        out = io.StringIO()
        with patch.object(cli.connection, "get_connection", AsyncMock(return_value=self.db)), patch.object(
            cli.connection, "close_connection", AsyncMock()
        ), contextlib.redirect_stdout(out):
            code = await cli._status(self.settings)
        return code, out.getvalue()

    async def test_status_prints_counts_and_free_lock(self) -> None:
        code, text = await self._status_output()

        self.assertEqual(code, 0)
        self.assertIn("Data path:     /data/projects", text)
        self.assertIn("Daemon:        stopped", text)
        self.assertIn("Sync lock:     free", text)
        self.assertIn("Conversations: 0", text)
        self.assertIn("Files tracked: 0", text)

    async def test_status_reports_live_daemon(self) -> None:
        self.pid_path.write_text(json.dumps({"pid": os.getpid(), "startTime": "2026-01-01T00:00:00+00:00"}), encoding="utf-8")

        code, text = await self._status_output()

        self.assertEqual(code, 0)
        self.assertIn(f"Daemon:        running (pid {os.getpid()}, up ", text)

    async def test_status_clears_stale_pid_file(self) -> None:
        self.pid_path.write_text(json.dumps({"pid": 2 ** 22 + 7, "startTime": "2026-01-01T00:00:00+00:00"}), encoding="utf-8")

        _, text = await self._status_output()

        self.assertIn("Daemon:        stopped", text)
        self.assertFalse(self.pid_path.exists())


if __name__ == "__main__":
    unittest.main()
