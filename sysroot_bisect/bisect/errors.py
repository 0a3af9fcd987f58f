# Copyright (c) Meta Platforms, Inc. and affiliates.

"""
Exception hierarchy for toolchain bisection.

Faults that the bisection can recover from locally (a missing artifact, a
sandbox that failed to start) are converted into verdicts close to where they
happen. The exceptions below are the ones that cross component boundaries.
"""

from typing import Any, Optional


class BisectError(Exception):
    """Base exception for bisect related errors."""

    pass


class HistoryError(BisectError):
    """The commit range cannot be resolved or is not an ancestry range."""

    pass


class ArtifactError(BisectError):
    """An artifact could not be downloaded or unpacked."""

    pass


class SandboxError(BisectError):
    """The isolated environment could not be created or used."""

    pass


class SandboxTimeout(SandboxError):
    """The predicate exceeded the per-step wall-clock limit."""

    pass


class ConfigError(BisectError):
    """Invalid or incomplete run configuration."""

    pass


class BisectCancelled(BisectError):
    """
    The run was cancelled between steps.

    Attributes:
        report: The partial BisectReport at the time of cancellation.
    """

    def __init__(self, message: str, report: Optional[Any] = None) -> None:
        super().__init__(message)
        self.report = report
