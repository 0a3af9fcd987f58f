# Copyright (c) Meta Platforms, Inc. and affiliates.

"""
Bisect module for sysroot_bisect.

This module provides tools for bisecting compiler regressions over the
merge history of a repository, using prebuilt toolchains.
"""

from sysroot_bisect.bisect.artifacts import (
    Artifact,
    ArtifactResolver,
    HttpArtifactIndex,
)
from sysroot_bisect.bisect.config import BisectConfig
from sysroot_bisect.bisect.engine import BisectionEngine
from sysroot_bisect.bisect.errors import (
    ArtifactError,
    BisectCancelled,
    BisectError,
    ConfigError,
    HistoryError,
    SandboxError,
    SandboxTimeout,
)
from sysroot_bisect.bisect.executor import CommandResult, ShellExecutor
from sysroot_bisect.bisect.history import GitHistoryProvider, GitHubHistoryProvider
from sysroot_bisect.bisect.logger import BisectLogger
from sysroot_bisect.bisect.report import BisectReport, ReportManager, RunStatus
from sysroot_bisect.bisect.sandbox import (
    DockerSandbox,
    LocalSandbox,
    SandboxedTestRunner,
    ScriptPredicate,
)
from sysroot_bisect.bisect.types import Commit, SearchInterval, Verdict

__all__ = [
    "Artifact",
    "ArtifactError",
    "ArtifactResolver",
    "BisectCancelled",
    "BisectConfig",
    "BisectError",
    "BisectLogger",
    "BisectReport",
    "BisectionEngine",
    "CommandResult",
    "Commit",
    "ConfigError",
    "DockerSandbox",
    "GitHistoryProvider",
    "GitHubHistoryProvider",
    "HistoryError",
    "HttpArtifactIndex",
    "LocalSandbox",
    "ReportManager",
    "RunStatus",
    "SandboxError",
    "SandboxTimeout",
    "SandboxedTestRunner",
    "ScriptPredicate",
    "SearchInterval",
    "ShellExecutor",
    "Verdict",
]
