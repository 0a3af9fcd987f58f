# Copyright (c) Meta Platforms, Inc. and affiliates.

"""
Bisection engine for finding the commit that introduced a regression.

The engine runs a binary search over the ancestry-ordered commit list,
resolving a prebuilt toolchain for each candidate and asking the predicate
whether the regression reproduces with it. Candidates without an artifact
are skipped by probing their neighbours outward from the midpoint;
infrastructure failures are retried a bounded number of times. Every run
ends in one of three states: converged on a commit, exhausted (no testable
commit left in the original range, or the probe limit stopped the search
before every commit in the interval was tried), or failed (retry budget
spent, or the bounds do not bracket the regression).
"""

import threading
import time
from datetime import datetime
from typing import AbstractSet, Any, Callable, Dict, Iterator, List, Optional, Set

from sysroot_bisect.bisect.artifacts import ArtifactResolver
from sysroot_bisect.bisect.config import BisectConfig
from sysroot_bisect.bisect.errors import BisectCancelled, HistoryError
from sysroot_bisect.bisect.history import HistoryProvider
from sysroot_bisect.bisect.logger import BisectLogger
from sysroot_bisect.bisect.report import BisectReport, RunStatus
from sysroot_bisect.bisect.sandbox import Predicate, SandboxedTestRunner
from sysroot_bisect.bisect.types import (
    Commit,
    InconclusiveReason,
    SearchInterval,
    TrailEntry,
    Unavailable,
    Verdict,
    VerdictKind,
)

Observer = Callable[[str, Dict[str, Any]], None]


def estimated_steps(count: int) -> int:
    """Binary search steps needed for ``count`` commits (ceil(log2(count)))."""
    return max(count - 1, 0).bit_length()


def probe_order(
    interval: SearchInterval,
    max_distance: Optional[int] = None,
    skip: AbstractSet[int] = frozenset(),
) -> Iterator[int]:
    """
    Positions to try for one search step.

    The midpoint first, then its neighbours at increasing distance, lower
    side before upper side, never leaving the open interval (low, high).

    Args:
        interval: Current search interval (width > 1).
        max_distance: Stop after probing this far from the midpoint.
        skip: Positions already known to have no artifact.
    """
    mid = interval.midpoint()
    if interval.low < mid < interval.high and mid not in skip:
        yield mid
    distance = 1
    while max_distance is None or distance <= max_distance:
        lower = mid - distance
        upper = mid + distance
        lower_ok = lower > interval.low
        upper_ok = upper < interval.high
        if not lower_ok and not upper_ok:
            return
        if lower_ok and lower not in skip:
            yield lower
        if upper_ok and upper not in skip:
            yield upper
        distance += 1


class _RetryBudgetExhausted(Exception):
    def __init__(self, commit: Commit, verdict: Verdict, attempts: int) -> None:
        super().__init__(
            f"{commit.sha} remained inconclusive after {attempts} attempt(s): "
            f"{verdict.detail or verdict}"
        )


class BisectionEngine:
    """
    Finds the first commit for which the predicate reports the regression.

    Example:
        >>> engine = BisectionEngine(
        ...     history=GitHistoryProvider(Path("rust"), executor, logger),
        ...     resolver=resolver,
        ...     runner=runner,
        ...     predicate=ScriptPredicate(Path("test.sh")),
        ...     logger=logger,
        ... )
        >>> report = engine.run("927c55d8", "master")
        >>> if report.culprit:
        ...     print(f"regression in {report.culprit.sha}")
    """

    def __init__(
        self,
        history: HistoryProvider,
        resolver: ArtifactResolver,
        runner: SandboxedTestRunner,
        predicate: Predicate,
        logger: BisectLogger,
        config: Optional[BisectConfig] = None,
        observer: Optional[Observer] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """
        Initialize the engine.

        Args:
            history: Produces the ordered commit list.
            resolver: Maps a commit to an Artifact or Unavailable.
            runner: Runs the predicate against one artifact.
            predicate: The regression oracle.
            logger: BisectLogger instance for logging.
            config: Search policy. Defaults to BisectConfig().
            observer: Called with (event, payload) for progress display.
            cancel_event: When set, the run stops before the next step.
        """
        self.history = history
        self.resolver = resolver
        self.runner = runner
        self.predicate = predicate
        self.logger = logger
        self.config = config or BisectConfig()
        self.observer = observer
        self.cancel_event = cancel_event or threading.Event()
        self.commits: List[Commit] = []
        self.report: Optional[BisectReport] = None
        # Positions whose artifact is expired or was never built.
        self.unavailable: Set[int] = set()

    def _notify(self, event: str, **payload: Any) -> None:
        if self.observer is not None:
            self.observer(event, payload)

    def run(self, start: str, end: str) -> BisectReport:
        """
        Bisect the range ``start``..``end``.

        ``start`` is assumed to be good (regression absent) and ``end`` bad
        (regression present) unless ``config.verify_bounds`` is set.

        Returns:
            The final report; its status is CONVERGED, EXHAUSTED or FAILED.

        Raises:
            HistoryError: If the range cannot be resolved.
            BisectCancelled: If ``cancel_event`` was set during the run.
        """
        self.report = BisectReport(
            start=start,
            end=end,
            config=self.config.to_dict(),
            session_name=getattr(self.logger, "session_name", None),
            started_at=datetime.now().isoformat(),
        )
        report = self.report
        self.unavailable = set()

        self.logger.info("=" * 60)
        self.logger.info("Toolchain Bisect")
        self.logger.info("=" * 60)
        self.logger.info(f"Start: {start}")
        self.logger.info(f"End: {end}")

        self.commits = self.history.ordered_commits(start, end)
        if len(self.commits) < 2:
            raise HistoryError(f"Range {start}..{end} holds fewer than two commits")

        report.commits = len(self.commits)
        interval = SearchInterval(0, len(self.commits) - 1)
        self._set_interval(interval)
        self.logger.info(
            f"Searching in {len(self.commits)} commits; "
            f"about {estimated_steps(len(self.commits))} steps"
        )
        self._notify(
            "start",
            commits=len(self.commits),
            steps=estimated_steps(len(self.commits)),
        )

        try:
            if self.config.verify_bounds:
                mismatch = self._verify_bounds(interval)
                if mismatch is not None:
                    return self._finish(RunStatus.FAILED, mismatch)
            report.status = RunStatus.SEARCHING
            return self._search(interval)
        except _RetryBudgetExhausted as e:
            return self._finish(RunStatus.FAILED, str(e))

    def _search(self, interval: SearchInterval) -> BisectReport:
        original = interval
        step = 0
        while not interval.converged:
            self._check_cancelled()
            step += 1
            remaining = estimated_steps(interval.width + 1)
            self.logger.info(
                f"Step {step}: interval {self.commits[interval.low].short_sha}"
                f"..{self.commits[interval.high].short_sha} "
                f"({interval.width - 1} untested commits, ~{remaining} steps left)"
            )

            found = None
            for position in probe_order(
                interval, self.config.max_probe_distance, self.unavailable
            ):
                verdict = self._test_commit(self.commits[position], step)
                if verdict.is_conclusive:
                    found = (position, verdict)
                    break

            if found is None:
                return self._no_testable_commit(interval, original)

            position, verdict = found
            if verdict.kind is VerdictKind.REGRESSION_PRESENT:
                interval = interval.narrowed(high=position)
            else:
                interval = interval.narrowed(low=position)
            self._set_interval(interval)

        culprit = self.commits[interval.high]
        self.logger.info(f"Regression in {culprit.sha} ({culprit.summary})")
        return self._finish(RunStatus.CONVERGED)

    def _no_testable_commit(
        self, interval: SearchInterval, original: SearchInterval
    ) -> BisectReport:
        low = self.commits[interval.low]
        high = self.commits[interval.high]
        untested = self.commits[interval.low + 1 : interval.high]
        not_tried = [p for p in interval.interior() if p not in self.unavailable]
        if not_tried:
            return self._finish(
                RunStatus.EXHAUSTED,
                f"Probe limit of {self.config.max_probe_distance} reached between "
                f"{low.short_sha} and {high.short_sha}; {len(not_tried)} of the "
                f"{len(untested)} commits in between were not tried",
            )
        if interval == original:
            return self._finish(
                RunStatus.EXHAUSTED,
                f"No artifact available for any of the {len(untested)} commits "
                f"between {low.short_sha} and {high.short_sha}",
            )

        self.report.untested = list(untested)
        self.logger.warning(
            f"No artifact available for the {len(untested)} commits between "
            f"{low.short_sha} and {high.short_sha}; the regression is in "
            f"{high.short_sha} or one of those"
        )
        return self._finish(RunStatus.CONVERGED)

    def _verify_bounds(self, interval: SearchInterval) -> Optional[str]:
        checks = (
            (interval.low, VerdictKind.REGRESSION_ABSENT),
            (interval.high, VerdictKind.REGRESSION_PRESENT),
        )
        for position, expected in checks:
            self._check_cancelled()
            commit = self.commits[position]
            verdict = self._test_commit(commit, 0)
            if not verdict.is_conclusive:
                self.logger.warning(
                    f"Cannot test bound {commit.short_sha} ({verdict.detail}); "
                    f"assuming regression {expected.value}"
                )
                continue
            if verdict.kind is not expected:
                return (
                    f"Bounds do not bracket the regression: {commit.sha} is "
                    f"{verdict.kind.value}, expected {expected.value}. If the test "
                    f"exits 0 when the regression is absent, use --invert."
                )
        return None

    def _test_commit(self, commit: Commit, step: int) -> Verdict:
        """
        Resolve and test one commit, retrying infrastructure failures.

        Returns:
            A conclusive verdict, or an inconclusive one with reason
            ARTIFACT_UNAVAILABLE.

        Raises:
            _RetryBudgetExhausted: If every attempt hit an infrastructure
                failure.
        """
        attempts = self.config.max_retries + 1
        verdict = None
        for attempt in range(1, attempts + 1):
            if attempt > 1:
                self._wait_before_retry(commit, attempt, attempts)
            self._check_cancelled()
            self._notify("step", step=step, commit=commit, attempt=attempt)
            started = time.time()

            artifact = self.resolver.resolve(commit)
            if isinstance(artifact, Unavailable):
                if artifact.reason.retryable:
                    verdict = Verdict.inconclusive(
                        InconclusiveReason.INFRASTRUCTURE_FAILURE, str(artifact)
                    )
                    self._record(commit, verdict, attempt, started)
                    continue
                self.unavailable.add(commit.index)
                verdict = Verdict.inconclusive(
                    InconclusiveReason.ARTIFACT_UNAVAILABLE, str(artifact)
                )
                self._record(commit, verdict, attempt, started)
                return verdict

            verdict = self.runner.run(artifact, self.predicate)
            self._record(commit, verdict, attempt, started)
            if verdict.is_conclusive:
                return verdict

        raise _RetryBudgetExhausted(commit, verdict, attempts)

    def _wait_before_retry(self, commit: Commit, attempt: int, attempts: int) -> None:
        self.logger.warning(
            f"Retrying {commit.short_sha} (attempt {attempt}/{attempts})"
        )
        if self.config.retry_delay > 0 and self.cancel_event.wait(self.config.retry_delay):
            self._check_cancelled()

    def _record(self, commit: Commit, verdict: Verdict, attempt: int, started: float) -> None:
        entry = TrailEntry(
            commit=commit,
            verdict=verdict,
            attempt=attempt,
            duration_seconds=time.time() - started,
        )
        self.report.trail.append(entry)
        message = f"{commit.short_sha} [{commit.index}]: {verdict}"
        if verdict.detail:
            message += f" - {verdict.detail}"
        if verdict.is_conclusive:
            self.logger.info(message)
        else:
            self.logger.warning(message)
        self._notify("verdict", entry=entry)

    def _set_interval(self, interval: SearchInterval) -> None:
        self.report.low = interval.low
        self.report.high = interval.high
        self.report.last_good = self.commits[interval.low]
        self.report.first_bad = self.commits[interval.high]
        self._notify("interval", low=interval.low, high=interval.high, width=interval.width)

    def _check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            self._finish(RunStatus.CANCELLED, "Cancelled by operator")
            raise BisectCancelled("Bisect cancelled", report=self.report)

    def _finish(self, status: RunStatus, error_message: Optional[str] = None) -> BisectReport:
        self.report.finish(status, error_message)
        if status is not RunStatus.CONVERGED:
            self.logger.error(f"Bisect {status.value}: {error_message}")
        return self.report
