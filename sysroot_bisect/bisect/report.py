# Copyright (c) Meta Platforms, Inc. and affiliates.

"""
Bisection run state and final report.

The report holds the current search interval and the ordered trail of
(commit, verdict) pairs. It is saved as JSON next to the log files of the
same session, so a finished (or interrupted) run can be inspected later.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from sysroot_bisect.bisect.types import Commit, TrailEntry

EXIT_CONVERGED = 0
EXIT_ERROR = 1
EXIT_EXHAUSTED = 2
EXIT_FAILED = 3
EXIT_CANCELLED = 130


class RunStatus(Enum):
    """
    Bisection run states.

    INITIALIZING -> SEARCHING -> one of CONVERGED, EXHAUSTED, FAILED.
    CANCELLED marks a report saved after an operator interrupt.
    """

    INITIALIZING = "initializing"
    SEARCHING = "searching"
    CONVERGED = "converged"
    EXHAUSTED = "exhausted"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (RunStatus.INITIALIZING, RunStatus.SEARCHING)


_EXIT_CODES = {
    RunStatus.CONVERGED: EXIT_CONVERGED,
    RunStatus.EXHAUSTED: EXIT_EXHAUSTED,
    RunStatus.FAILED: EXIT_FAILED,
    RunStatus.CANCELLED: EXIT_CANCELLED,
}


@dataclass
class BisectReport:
    """
    State and outcome of one bisection run.

    Attributes:
        start: Start revision as given by the caller.
        end: End revision as given by the caller.
        status: Current run state.
        commits: Number of commits in the search space.
        low: Position of the current known-good bound.
        high: Position of the current known-bad bound.
        last_good: Commit at ``low``.
        first_bad: Commit at ``high``; the culprit once converged.
        untested: Commits between the bounds that had no usable artifact.
            Non-empty only if the run converged without testing them.
        trail: Every (commit, verdict) pair tried, in order.
        error_message: Why the run failed or was exhausted.
        config: The search policy used.
        session_name: Links the report to the log files of the run.
        started_at: ISO timestamp when the run started.
        finished_at: ISO timestamp when the run reached a terminal state.
    """

    start: str
    end: str
    status: RunStatus = RunStatus.INITIALIZING
    commits: int = 0
    low: Optional[int] = None
    high: Optional[int] = None
    last_good: Optional[Commit] = None
    first_bad: Optional[Commit] = None
    untested: List[Commit] = field(default_factory=list)
    trail: List[TrailEntry] = field(default_factory=list)
    error_message: Optional[str] = None
    config: Dict[str, Any] = field(default_factory=dict)
    session_name: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES.get(self.status, EXIT_ERROR)

    @property
    def culprit(self) -> Optional[Commit]:
        """The first bad commit, only once the run has converged."""
        if self.status is RunStatus.CONVERGED:
            return self.first_bad
        return None

    def finish(self, status: RunStatus, error_message: Optional[str] = None) -> None:
        self.status = status
        if error_message is not None:
            self.error_message = error_message
        self.finished_at = datetime.now().isoformat()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serializable dictionary, trail order preserved."""
        return {
            "start": self.start,
            "end": self.end,
            "status": self.status.value,
            "commits": self.commits,
            "low": self.low,
            "high": self.high,
            "last_good": self.last_good.to_dict() if self.last_good else None,
            "first_bad": self.first_bad.to_dict() if self.first_bad else None,
            "untested": [c.to_dict() for c in self.untested],
            "trail": [entry.to_dict() for entry in self.trail],
            "error_message": self.error_message,
            "config": self.config,
            "session_name": self.session_name,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BisectReport":
        """Create a report from a dictionary produced by ``to_dict``."""
        return cls(
            start=data["start"],
            end=data["end"],
            status=RunStatus(data["status"]),
            commits=data.get("commits", 0),
            low=data.get("low"),
            high=data.get("high"),
            last_good=Commit.from_dict(data["last_good"]) if data.get("last_good") else None,
            first_bad=Commit.from_dict(data["first_bad"]) if data.get("first_bad") else None,
            untested=[Commit.from_dict(c) for c in data.get("untested", [])],
            trail=[TrailEntry.from_dict(e) for e in data.get("trail", [])],
            error_message=data.get("error_message"),
            config=data.get("config", {}),
            session_name=data.get("session_name"),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
        )


class ReportManager:
    """
    Saves and loads bisection reports.

    Report files are named after the session so they sit next to the logs
    of the same run:
    - Log files: {session_name}_bisect.log, {session_name}_bisect_commands.log
    - Report file: {session_name}_report.json

    Example:
        >>> path = ReportManager.save(report, "./bisect_logs", "20251212_120643")
        >>> loaded = ReportManager.load(str(path))
    """

    REPORT_SUFFIX = "_report.json"

    @staticmethod
    def get_report_path(log_dir: str, session_name: str) -> Path:
        return Path(log_dir) / f"{session_name}{ReportManager.REPORT_SUFFIX}"

    @staticmethod
    def save(
        report: BisectReport,
        log_dir: str,
        session_name: Optional[str] = None,
    ) -> Path:
        """
        Save a report to JSON.

        Args:
            report: BisectReport to save.
            log_dir: Directory to write into.
            session_name: Session identifier for file naming. Defaults to the
                report's session name, or a fresh timestamp.

        Returns:
            Path where the report was saved.
        """
        if session_name is None:
            session_name = report.session_name
        if session_name is None:
            session_name = datetime.now().strftime("%Y%m%d_%H%M%S")
        report.session_name = session_name

        path = ReportManager.get_report_path(log_dir, session_name)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(report.to_dict(), f, indent=2)
        return path

    @staticmethod
    def load(path: str) -> BisectReport:
        """
        Load a report from JSON.

        Raises:
            FileNotFoundError: If the file doesn't exist.
            json.JSONDecodeError: If the file is not valid JSON.
            KeyError, ValueError: If the report data is invalid.
        """
        with open(path, "r") as f:
            data = json.load(f)
        return BisectReport.from_dict(data)

    @staticmethod
    def find_latest(log_dir: str) -> Optional[Path]:
        """Most recently modified report in ``log_dir``, if any."""
        reports = sorted(
            Path(log_dir).glob(f"*{ReportManager.REPORT_SUFFIX}"),
            key=lambda p: p.stat().st_mtime,
        )
        return reports[-1] if reports else None
