# Copyright (c) Meta Platforms, Inc. and affiliates.

"""Tests for ShellExecutor and BisectLogger (CPU-only)."""

import os
import tempfile
import time
import unittest
import uuid
from pathlib import Path
from unittest.mock import MagicMock, patch


class FormatDurationTest(unittest.TestCase):
    """Tests for format_duration."""

    def test_format_duration(self):
        from sysroot_bisect.bisect.executor import format_duration

        self.assertEqual(format_duration(5.0), "5.0s")
        self.assertEqual(format_duration(125), "2m 5.0s")
        self.assertEqual(format_duration(3725), "1h 2m 5.0s")


class ShellExecutorTest(unittest.TestCase):
    """Tests for ShellExecutor."""

    def setUp(self):
        from sysroot_bisect.bisect.executor import ShellExecutor

        self.logger = MagicMock()
        self.executor = ShellExecutor(self.logger)

    def test_captures_output(self):
        result = self.executor.run_command(["sh", "-c", "echo out; echo err >&2; exit 3"])

        self.assertEqual(result.exit_code, 3)
        self.assertFalse(result.success)
        self.assertTrue(result.completed)
        self.assertEqual(result.stdout, "out\n")
        self.assertEqual(result.stderr, "err\n")
        self.logger.log_command_output.assert_called_once()

    def test_cwd_and_env(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            result = self.executor.run_command(
                ["sh", "-c", 'pwd; echo "$GREETING"'],
                cwd=tmpdir,
                env={"GREETING": "hello"},
            )
        lines = result.stdout.splitlines()
        self.assertEqual(os.path.realpath(lines[0]), os.path.realpath(tmpdir))
        self.assertEqual(lines[1], "hello")

    def test_replace_env(self):
        with patch.dict(os.environ, {"SYSROOT_BISECT_LEAK": "1"}):
            result = self.executor.run_command(
                ["/bin/sh", "-c", 'echo "[$SYSROOT_BISECT_LEAK]"'],
                env={"PATH": os.environ.get("PATH", "")},
                replace_env=True,
            )
        self.assertEqual(result.stdout.strip(), "[]")

    def test_launch_failure(self):
        result = self.executor.run_command(["/nonexistent/binary-" + uuid.uuid4().hex])

        self.assertTrue(result.launch_failed)
        self.assertFalse(result.completed)
        self.assertEqual(result.exit_code, -1)

    def test_timeout_kills_process_group(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            marker = Path(tmpdir) / "marker"
            started = time.time()
            result = self.executor.run_command(
                ["sh", "-c", f"(sleep 2; touch {marker}) & sleep 30"],
                timeout=0.5,
            )
            self.assertTrue(result.timed_out)
            self.assertLess(time.time() - started, 15)
            time.sleep(2.5)
            self.assertFalse(marker.exists())


class BisectLoggerTest(unittest.TestCase):
    """Tests for BisectLogger."""

    def _logger(self, tmpdir):
        from sysroot_bisect.bisect.logger import BisectLogger

        logger = BisectLogger(tmpdir, session_name=f"test_{uuid.uuid4().hex[:8]}")
        self.addCleanup(logger.close)
        return logger

    def test_creates_log_files(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            logger = self._logger(tmpdir)
            logger.debug("debug detail")
            logger.log_command_output("docker rm -f x", "removed\n", 0)
            logger.close()

            module_log = logger.module_log_path.read_text()
            self.assertIn("debug detail", module_log)
            command_log = logger.command_log_path.read_text()
            self.assertIn("Command: docker rm -f x", command_log)
            self.assertIn("Exit code: 0", command_log)
            self.assertIn("removed", command_log)

    def test_configure_for_tui(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            logger = self._logger(tmpdir)
            lines = []
            logger.configure_for_tui(lines.append)
            logger.info("Searching in 12 commits; about 4 steps")
            logger.debug("not shown")

            self.assertEqual(lines, ["Searching in 12 commits; about 4 steps"])


if __name__ == "__main__":
    unittest.main()
