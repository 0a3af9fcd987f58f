# Copyright (c) Meta Platforms, Inc. and affiliates.

"""
Core value types for toolchain bisection.

Commits, search intervals, artifact availability and verdicts are modelled
here as small immutable dataclasses so that every component passes the same
vocabulary around.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class Commit:
    """
    A commit in the ancestry-ordered search space.

    Attributes:
        sha: Full commit hash.
        date: Commit time (timezone-aware, UTC).
        summary: First line of the commit message.
        author: Author name.
        index: Position in the ordered commit list (0-based).
    """

    sha: str
    date: datetime
    summary: str = ""
    author: str = ""
    index: int = 0

    @property
    def short_sha(self) -> str:
        return self.sha[:9]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sha": self.sha,
            "date": self.date.isoformat(),
            "summary": self.summary,
            "author": self.author,
            "index": self.index,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Commit":
        return cls(
            sha=data["sha"],
            date=datetime.fromisoformat(data["date"]),
            summary=data.get("summary", ""),
            author=data.get("author", ""),
            index=data.get("index", 0),
        )


@dataclass(frozen=True)
class SearchInterval:
    """
    Positions of the known-good (low) and known-bad (high) commits.

    The interval may only shrink; ``narrowed`` refuses to produce a wider one.
    """

    low: int
    high: int

    def __post_init__(self) -> None:
        if self.low >= self.high:
            raise ValueError(
                f"Invalid interval: low ({self.low}) must be below high ({self.high})"
            )

    @property
    def width(self) -> int:
        return self.high - self.low

    @property
    def converged(self) -> bool:
        return self.width == 1

    def midpoint(self) -> int:
        return self.low + (self.high - self.low) // 2

    def interior(self) -> range:
        """Positions strictly between low and high."""
        return range(self.low + 1, self.high)

    def narrowed(
        self, low: Optional[int] = None, high: Optional[int] = None
    ) -> "SearchInterval":
        new_low = self.low if low is None else low
        new_high = self.high if high is None else high
        if new_low < self.low or new_high > self.high:
            raise ValueError(
                f"Interval may not grow: ({self.low}, {self.high}) -> "
                f"({new_low}, {new_high})"
            )
        return SearchInterval(new_low, new_high)


class UnavailableReason(Enum):
    """Why no artifact could be produced for a commit."""

    EXPIRED = "expired"
    NOT_BUILT = "not_built"
    NETWORK_ERROR = "network_error"

    @property
    def retryable(self) -> bool:
        return self is UnavailableReason.NETWORK_ERROR


@dataclass(frozen=True)
class Unavailable:
    """Returned by the artifact resolver in place of an artifact."""

    reason: UnavailableReason
    detail: str = ""

    def __str__(self) -> str:
        if self.detail:
            return f"{self.reason.value}: {self.detail}"
        return self.reason.value


class VerdictKind(Enum):
    REGRESSION_PRESENT = "present"
    REGRESSION_ABSENT = "absent"
    INCONCLUSIVE = "inconclusive"


class InconclusiveReason(Enum):
    INFRASTRUCTURE_FAILURE = "infrastructure_failure"
    ARTIFACT_UNAVAILABLE = "artifact_unavailable"


@dataclass(frozen=True)
class Verdict:
    """
    Outcome of testing one commit.

    A tagged variant: ``kind`` selects the case, and ``reason`` is set if and
    only if the verdict is inconclusive. Use the ``present``, ``absent`` and
    ``inconclusive`` constructors rather than building instances directly.
    """

    kind: VerdictKind
    reason: Optional[InconclusiveReason] = None
    detail: str = ""

    def __post_init__(self) -> None:
        if (self.kind is VerdictKind.INCONCLUSIVE) != (self.reason is not None):
            raise ValueError("Only inconclusive verdicts carry a reason")

    @classmethod
    def present(cls, detail: str = "") -> "Verdict":
        return cls(VerdictKind.REGRESSION_PRESENT, detail=detail)

    @classmethod
    def absent(cls, detail: str = "") -> "Verdict":
        return cls(VerdictKind.REGRESSION_ABSENT, detail=detail)

    @classmethod
    def inconclusive(cls, reason: InconclusiveReason, detail: str = "") -> "Verdict":
        return cls(VerdictKind.INCONCLUSIVE, reason=reason, detail=detail)

    @property
    def is_conclusive(self) -> bool:
        return self.kind is not VerdictKind.INCONCLUSIVE

    def __str__(self) -> str:
        if self.reason is not None:
            return f"{self.kind.value} ({self.reason.value})"
        return self.kind.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "reason": self.reason.value if self.reason else None,
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Verdict":
        reason = data.get("reason")
        return cls(
            kind=VerdictKind(data["kind"]),
            reason=InconclusiveReason(reason) if reason else None,
            detail=data.get("detail", ""),
        )


@dataclass(frozen=True)
class TrailEntry:
    """One (commit, verdict) pair tried during a run."""

    commit: Commit
    verdict: Verdict
    attempt: int = 1
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "commit": self.commit.to_dict(),
            "verdict": self.verdict.to_dict(),
            "attempt": self.attempt,
            "duration_seconds": round(self.duration_seconds, 3),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrailEntry":
        return cls(
            commit=Commit.from_dict(data["commit"]),
            verdict=Verdict.from_dict(data["verdict"]),
            attempt=data.get("attempt", 1),
            duration_seconds=data.get("duration_seconds", 0.0),
        )
