# Copyright (c) Meta Platforms, Inc. and affiliates.

"""
Rich TUI interface for bisect operations.

This module provides a split-screen terminal UI for displaying bisect progress
and real-time log output. It falls back to plain text when running in
non-TTY environments.
"""

import sys
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from sysroot_bisect.bisect.engine import estimated_steps
from sysroot_bisect.bisect.executor import format_duration
from sysroot_bisect.bisect.report import BisectReport, RunStatus
from sysroot_bisect.bisect.types import TrailEntry, VerdictKind

GITHUB_COMMIT_URL = "https://github.com/{repo}/commit/{sha}"

_STATUS_TITLES = {
    RunStatus.CONVERGED: "Bisect Result",
    RunStatus.EXHAUSTED: "Bisect Exhausted",
    RunStatus.FAILED: "Bisect Failed",
    RunStatus.CANCELLED: "Bisect Cancelled",
}

_VERDICT_STYLES = {
    VerdictKind.REGRESSION_PRESENT: "red",
    VerdictKind.REGRESSION_ABSENT: "green",
    VerdictKind.INCONCLUSIVE: "yellow",
}


def commit_url(sha: str, repo: Optional[str]) -> Optional[str]:
    if not repo:
        return None
    return GITHUB_COMMIT_URL.format(repo=repo, sha=sha)


class _LiveContent:
    """
    Wrapper that regenerates layout on each render.

    Implements the Rich renderable protocol (__rich__) so the elapsed time is
    refreshed on every Live cycle without explicit updates.
    """

    def __init__(self, ui: "BisectUI") -> None:
        self._ui = ui

    def __rich__(self) -> Layout:
        if self._ui.start_time:
            self._ui.progress.elapsed_seconds = time.time() - self._ui.start_time
        self._ui._update_layout()
        return self._ui._layout


@dataclass
class BisectProgress:
    """
    Bisect progress state for UI display.

    Attributes:
        total_commits: Size of the search space.
        low: Position of the current known-good bound.
        high: Position of the current known-bad bound.
        current_commit: Commit currently being resolved or tested.
        attempt: Attempt number for the current commit.
        commits_tested: Number of verdicts recorded so far.
        steps_remaining: Estimated steps remaining.
        elapsed_seconds: Time elapsed since start.
        status_message: Last verdict, shown next to the progress line.
        log_dir: Directory containing log files.
        log_file: Main log file name.
        command_log: Command log file name.
    """

    total_commits: int = 0
    low: Optional[int] = None
    high: Optional[int] = None
    current_commit: Optional[str] = None
    attempt: int = 1
    commits_tested: int = 0
    steps_remaining: Optional[int] = None
    elapsed_seconds: float = 0.0
    status_message: Optional[str] = None
    log_dir: Optional[str] = None
    log_file: Optional[str] = None
    command_log: Optional[str] = None


class BisectUI:
    """
    Rich-based TUI for bisect operations.

    Provides a split-screen interface with:
    - Top panel: Progress information (interval, commit, tested, elapsed)
    - Bottom panel: Scrolling log output

    Falls back to plain text output when running in a non-TTY environment
    or when explicitly disabled via enabled=False.

    Example:
        >>> ui = BisectUI()
        >>> engine = BisectionEngine(..., observer=ui.observe)
        >>> with ui:
        ...     report = engine.run(start, end)
    """

    def __init__(self, enabled: bool = True) -> None:
        self._disabled_reason: Optional[str] = None
        if not enabled:
            self._rich_enabled = False
            self._disabled_reason = "disabled by --no-tui flag"
        elif not sys.stdout.isatty() or not sys.stderr.isatty():
            self._rich_enabled = False
            self._disabled_reason = "not running in a TTY (e.g., piped output or CI)"
        else:
            self._rich_enabled = True

        self.progress = BisectProgress()
        self.output_lines: List[str] = []
        self.max_output_lines = 100
        self.start_time: Optional[float] = None

        self._console = Console() if self._rich_enabled else None
        self._layout = self._create_layout() if self._rich_enabled else None
        self._live: Optional[Live] = None

    @property
    def is_tui_enabled(self) -> bool:
        return self._rich_enabled

    @property
    def disabled_reason(self) -> Optional[str]:
        return self._disabled_reason

    def get_tui_status_message(self) -> str:
        if self._rich_enabled:
            return "Rich TUI enabled"
        return f"Rich TUI disabled: {self._disabled_reason}"

    def _create_layout(self) -> Layout:
        layout = Layout()
        layout.split_column(
            Layout(name="progress", size=6),
            Layout(name="output"),
        )
        return layout

    def _render_progress_panel(self) -> Panel:
        p = self.progress
        text = Text()

        text.append("Interval: ", style="bold")
        if p.low is not None and p.high is not None:
            text.append(f"[{p.low}, {p.high}] of {p.total_commits}  ", style="green")
        else:
            text.append("N/A  ", style="dim")

        text.append("Commit: ", style="bold")
        if p.current_commit:
            commit_display = p.current_commit[:9]
            if p.attempt > 1:
                commit_display += f" (attempt {p.attempt})"
            text.append(f"{commit_display}  ", style="cyan")
        else:
            text.append("N/A  ", style="dim")

        text.append("Progress: ", style="bold")
        progress_text = f"{p.commits_tested} tested"
        if p.steps_remaining is not None:
            progress_text += f", ~{p.steps_remaining} steps left"
        text.append(progress_text + "  ", style="yellow")

        text.append("Elapsed: ", style="bold")
        text.append(f"{format_duration(p.elapsed_seconds)}\n", style="magenta")

        if p.log_dir:
            text.append("Logs: ", style="bold")
            text.append(f"{p.log_dir}\n", style="dim")
            log_files = [f for f in (p.log_file, p.command_log) if f]
            if log_files:
                text.append("  ", style="dim")
                text.append(", ".join(log_files) + "\n", style="bright_black")

        if p.status_message:
            text.append(p.status_message, style="bright_black italic")

        return Panel(
            text,
            title="[bold bright_green]Bisect Progress[/bold bright_green]",
            border_style="green",
        )

    def _render_output_panel(self) -> Panel:
        text = Text()
        for line in self.output_lines[-50:]:
            if len(line) > 200:
                line = line[:197] + "..."
            text.append(line + "\n")
        return Panel(
            text,
            title="[bold bright_cyan]Output[/bold bright_cyan]",
            border_style="blue",
        )

    def _update_layout(self) -> None:
        if not self._rich_enabled or not self._layout:
            return
        self._layout["progress"].update(self._render_progress_panel())
        self._layout["output"].update(self._render_output_panel())

    def start(self) -> None:
        """Start the live display."""
        self.start_time = time.time()
        if not self._rich_enabled:
            return
        self._update_layout()
        self._live = Live(
            _LiveContent(self),
            console=self._console,
            refresh_per_second=2,
            screen=True,
        )
        self._live.start()

    def stop(self) -> None:
        """Stop the live display."""
        if self._live:
            self._live.stop()
            self._live = None

    def update_progress(self, **kwargs: Any) -> None:
        """
        Update progress information.

        Args:
            **kwargs: Fields to update on BisectProgress. Unknown names are
                ignored.
        """
        if self.start_time and "elapsed_seconds" not in kwargs:
            kwargs["elapsed_seconds"] = time.time() - self.start_time
        for key, value in kwargs.items():
            if hasattr(self.progress, key):
                setattr(self.progress, key, value)
        if self._rich_enabled and self._live:
            self._update_layout()

    def append_output(self, line: str) -> None:
        """Append a line to the output panel (or print it in plain mode)."""
        line = line.rstrip("\n")
        self.output_lines.append(line)
        if len(self.output_lines) > self.max_output_lines:
            self.output_lines = self.output_lines[-self.max_output_lines :]

        if not self._rich_enabled:
            print(line)
        elif self._live:
            self._update_layout()

    def create_output_callback(self) -> Callable[[str], None]:
        """Callback for BisectLogger.configure_for_tui()."""
        return self.append_output

    def observe(self, event: str, payload: Dict[str, Any]) -> None:
        """
        Engine observer: map engine events onto the progress panel.

        Events:
            start: {commits, steps}
            interval: {low, high, width}
            step: {step, commit, attempt}
            verdict: {entry}
        """
        if event == "start":
            self.update_progress(
                total_commits=payload["commits"], steps_remaining=payload["steps"]
            )
        elif event == "interval":
            self.update_progress(
                low=payload["low"],
                high=payload["high"],
                steps_remaining=estimated_steps(payload["width"] + 1),
            )
        elif event == "step":
            self.update_progress(
                current_commit=payload["commit"].sha, attempt=payload["attempt"]
            )
        elif event == "verdict":
            entry: TrailEntry = payload["entry"]
            self.update_progress(
                commits_tested=self.progress.commits_tested + 1,
                status_message=f"Last: {entry.commit.short_sha} {entry.verdict}",
            )

    def __enter__(self) -> "BisectUI":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.stop()
        return False


def _trail_table(trail: List[TrailEntry]) -> Table:
    table = Table(title="Trail", show_lines=False, expand=False)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Commit", style="cyan")
    table.add_column("Date")
    table.add_column("Verdict")
    table.add_column("Try", justify="right")
    table.add_column("Time", justify="right", style="magenta")
    for i, entry in enumerate(trail, 1):
        verdict = Text(str(entry.verdict), style=_VERDICT_STYLES[entry.verdict.kind])
        table.add_row(
            str(i),
            entry.commit.short_sha,
            entry.commit.date.strftime("%Y-%m-%d"),
            verdict,
            str(entry.attempt),
            format_duration(entry.duration_seconds),
        )
    return table


def print_final_summary(
    report: BisectReport,
    repo: Optional[str] = None,
    log_dir: Optional[str] = None,
    log_file: Optional[str] = None,
    command_log: Optional[str] = None,
    report_path: Optional[str] = None,
    console: Optional[Console] = None,
) -> None:
    """
    Print the final bisect summary.

    A culprit is printed only for a converged run; exhausted and failed runs
    show the remaining interval and the reason instead.

    Args:
        report: Final report of the run.
        repo: GitHub "owner/name" used to build commit links.
        log_dir: Directory containing log files.
        log_file: Main log file path (shown on error).
        command_log: Command log file path (shown on error).
        report_path: Where the JSON report was saved.
        console: Console to print to (a fresh one if omitted).
    """
    console = console or Console()
    success = report.status is RunStatus.CONVERGED
    title = _STATUS_TITLES.get(report.status, "Bisect")
    text = Text()

    culprit = report.culprit
    if culprit is not None:
        text.append("Bisect Completed\n\n", style="bold green")
        text.append("Regression in: ", style="bold")
        text.append(f"{culprit.sha}\n", style="cyan bold")
        if culprit.summary:
            text.append(f"  {culprit.summary}\n", style="dim")
        text.append(f"  {culprit.date.isoformat()}\n", style="dim")
        url = commit_url(culprit.sha, repo)
        if url:
            text.append(f"  {url}\n", style="blue underline")
        if report.last_good is not None:
            text.append("Last good: ", style="bold")
            text.append(f"{report.last_good.sha}\n", style="green")
        if report.untested:
            text.append(
                f"\n{len(report.untested)} commit(s) before it had no artifact; "
                "the regression may be in any of them:\n",
                style="yellow bold",
            )
            for commit in report.untested:
                text.append(f"  {commit.sha}\n", style="yellow")
    else:
        text.append(f"{title}\n\n", style="bold red")
        if report.error_message:
            text.append(f"{report.error_message}\n", style="red")
        if report.last_good is not None and report.first_bad is not None:
            text.append("Remaining interval: ", style="bold")
            text.append(
                f"{report.last_good.short_sha}..{report.first_bad.short_sha}\n",
                style="yellow",
            )
        if command_log:
            text.append("\nCheck command log for details:\n", style="bold")
            text.append(f"  {command_log}\n", style="yellow")
        if log_file:
            text.append("Module log: ", style="bold")
            text.append(f"{log_file}\n", style="dim")

    if log_dir:
        text.append("\nLog directory: ", style="bold")
        text.append(f"{log_dir}", style="dim")
    if report_path:
        text.append("\nReport: ", style="bold")
        text.append(f"{report_path}", style="dim")

    console.print()
    if report.trail:
        console.print(_trail_table(report.trail))
    console.print(
        Panel(
            text,
            title=f"[bold]{title}[/bold]",
            border_style="green" if success else "red",
            padding=(1, 2),
        )
    )
