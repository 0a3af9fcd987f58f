# Copyright (c) Meta Platforms, Inc. and affiliates.

"""Tests for BisectReport, ReportManager and the final summary."""

import io
import json
import os
import tempfile
import time
import unittest
from datetime import datetime, timezone


def _commit(index):
    from sysroot_bisect.bisect.types import Commit

    return Commit(
        sha=f"{index:02d}" * 20,
        date=datetime(2017, 6, 1, index, tzinfo=timezone.utc),
        summary=f"Auto merge of #{41000 + index}",
        author="bors",
        index=index,
    )


def _converged_report():
    from sysroot_bisect.bisect.report import BisectReport, RunStatus
    from sysroot_bisect.bisect.types import (
        InconclusiveReason,
        TrailEntry,
        Verdict,
    )

    report = BisectReport(start="start", end="end", commits=11, session_name="s1")
    report.low, report.high = 5, 6
    report.last_good, report.first_bad = _commit(5), _commit(6)
    report.trail = [
        TrailEntry(_commit(5), Verdict.absent(), duration_seconds=12.5),
        TrailEntry(
            _commit(7),
            Verdict.inconclusive(InconclusiveReason.ARTIFACT_UNAVAILABLE, "not_built"),
        ),
        TrailEntry(_commit(6), Verdict.present(), attempt=2),
    ]
    report.finish(RunStatus.CONVERGED)
    return report


class BisectReportTest(unittest.TestCase):
    """Tests for BisectReport."""

    def test_exit_codes(self):
        from sysroot_bisect.bisect.report import BisectReport, RunStatus

        expected = {
            RunStatus.CONVERGED: 0,
            RunStatus.EXHAUSTED: 2,
            RunStatus.FAILED: 3,
            RunStatus.CANCELLED: 130,
            RunStatus.SEARCHING: 1,
        }
        for status, code in expected.items():
            report = BisectReport(start="a", end="b", status=status)
            self.assertEqual(report.exit_code, code, status)

    def test_culprit_only_when_converged(self):
        from sysroot_bisect.bisect.report import BisectReport, RunStatus

        report = BisectReport(start="a", end="b", first_bad=_commit(3))
        self.assertIsNone(report.culprit)
        report.finish(RunStatus.EXHAUSTED, "nothing testable")
        self.assertIsNone(report.culprit)
        self.assertEqual(report.error_message, "nothing testable")
        self.assertIsNotNone(report.finished_at)

    def test_terminal_states(self):
        from sysroot_bisect.bisect.report import RunStatus

        self.assertFalse(RunStatus.INITIALIZING.terminal)
        self.assertFalse(RunStatus.SEARCHING.terminal)
        self.assertTrue(RunStatus.CONVERGED.terminal)
        self.assertTrue(RunStatus.CANCELLED.terminal)

    def test_dict_round_trip_preserves_trail_order(self):
        from sysroot_bisect.bisect.report import BisectReport

        report = _converged_report()
        data = json.loads(json.dumps(report.to_dict()))
        restored = BisectReport.from_dict(data)

        self.assertEqual(restored.status, report.status)
        self.assertEqual(restored.culprit, report.culprit)
        self.assertEqual(
            [e.commit.sha for e in restored.trail], [e.commit.sha for e in report.trail]
        )
        self.assertEqual(restored.trail[1].verdict, report.trail[1].verdict)


class ReportManagerTest(unittest.TestCase):
    """Tests for ReportManager."""

    def test_save_and_load(self):
        from sysroot_bisect.bisect.report import ReportManager

        with tempfile.TemporaryDirectory() as tmpdir:
            report = _converged_report()
            path = ReportManager.save(report, tmpdir)
            self.assertEqual(path.name, "s1_report.json")

            loaded = ReportManager.load(str(path))
            self.assertEqual(loaded.culprit, report.culprit)
            self.assertEqual(len(loaded.trail), 3)

    def test_save_generates_session_name(self):
        from sysroot_bisect.bisect.report import BisectReport, ReportManager

        with tempfile.TemporaryDirectory() as tmpdir:
            report = BisectReport(start="a", end="b")
            path = ReportManager.save(report, os.path.join(tmpdir, "nested"))
            self.assertTrue(path.exists())
            self.assertIsNotNone(report.session_name)

    def test_find_latest(self):
        from sysroot_bisect.bisect.report import BisectReport, ReportManager

        with tempfile.TemporaryDirectory() as tmpdir:
            self.assertIsNone(ReportManager.find_latest(tmpdir))
            old = ReportManager.save(BisectReport(start="a", end="b"), tmpdir, "old")
            new = ReportManager.save(BisectReport(start="c", end="d"), tmpdir, "new")
            past = time.time() - 100
            os.utime(old, (past, past))
            self.assertEqual(ReportManager.find_latest(tmpdir), new)

    def test_load_missing_file(self):
        from sysroot_bisect.bisect.report import ReportManager

        with self.assertRaises(FileNotFoundError):
            ReportManager.load("/nonexistent/report.json")


class FinalSummaryTest(unittest.TestCase):
    """Tests for print_final_summary."""

    def _render(self, report, **kwargs):
        from rich.console import Console
        from sysroot_bisect.bisect.ui import print_final_summary

        buffer = io.StringIO()
        console = Console(file=buffer, width=200, color_system=None)
        print_final_summary(report, console=console, **kwargs)
        return buffer.getvalue()

    def test_converged_summary_names_culprit(self):
        output = self._render(_converged_report(), repo="rust-lang/rust")

        self.assertIn("Regression in", output)
        self.assertIn(_commit(6).sha, output)
        self.assertIn(f"https://github.com/rust-lang/rust/commit/{_commit(6).sha}", output)
        self.assertIn("Trail", output)

    def test_exhausted_summary_has_no_culprit(self):
        from sysroot_bisect.bisect.report import BisectReport, RunStatus

        report = BisectReport(start="a", end="b")
        report.last_good, report.first_bad = _commit(0), _commit(5)
        report.finish(RunStatus.EXHAUSTED, "No artifact available")
        output = self._render(report, command_log="/tmp/x_bisect_commands.log")

        self.assertIn("Bisect Exhausted", output)
        self.assertNotIn("Regression in", output)
        self.assertNotIn(_commit(5).sha, output)
        self.assertIn(_commit(5).short_sha, output)
        self.assertIn("/tmp/x_bisect_commands.log", output)

    def test_untested_commits_are_listed(self):
        report = _converged_report()
        report.untested = [_commit(4)]
        output = self._render(report)

        self.assertIn("had no artifact", output)
        self.assertIn(_commit(4).sha, output)


class BisectUIObserverTest(unittest.TestCase):
    """Tests for BisectUI progress tracking in plain mode."""

    def test_observe_updates_progress(self):
        from sysroot_bisect.bisect.types import TrailEntry, Verdict
        from sysroot_bisect.bisect.ui import BisectUI

        ui = BisectUI(enabled=False)
        self.assertFalse(ui.is_tui_enabled)
        self.assertEqual(ui.disabled_reason, "disabled by --no-tui flag")
        self.assertIn("--no-tui", ui.get_tui_status_message())

        ui.observe("start", {"commits": 11, "steps": 4})
        ui.observe("interval", {"low": 5, "high": 10, "width": 5})
        ui.observe("step", {"step": 2, "commit": _commit(7), "attempt": 1})
        ui.observe("verdict", {"entry": TrailEntry(_commit(7), Verdict.present())})

        p = ui.progress
        self.assertEqual(p.total_commits, 11)
        self.assertEqual((p.low, p.high), (5, 10))
        self.assertEqual(p.steps_remaining, 3)
        self.assertEqual(p.current_commit, _commit(7).sha)
        self.assertEqual(p.commits_tested, 1)
        self.assertIn("present", p.status_message)


if __name__ == "__main__":
    unittest.main()
