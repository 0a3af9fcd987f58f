# Copyright (c) Meta Platforms, Inc. and affiliates.

"""
Run configuration for toolchain bisection.

``BisectConfig`` holds the search policy knobs (retry budget, probe limit,
retention window, timeouts). ``EnvDefaults`` collects the values that are
normally provided by the environment rather than on every command line.
"""

import os
from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Optional

from sysroot_bisect.bisect.errors import ConfigError

DEFAULT_LOG_DIR = "./bisect_logs"
DEFAULT_CACHE_DIR = "./cache"
DEFAULT_RETENTION_DAYS = 90
DEFAULT_MAX_RETRIES = 2
DEFAULT_DOCKER_IMAGE = "ubuntu:22.04"


@dataclass
class BisectConfig:
    """
    Search policy for a bisection run.

    Attributes:
        max_retries: Extra attempts for a commit whose test hit an
            infrastructure failure (or whose download failed) before the run
            is declared failed.
        max_probe_distance: How far from the midpoint to look for a commit
            with an available artifact. None means the whole interval.
        retention_days: Age after which artifacts are no longer served by the
            origin. None disables the check.
        step_timeout: Wall-clock limit in seconds for one predicate run.
        preserve: Keep unpacked toolchains, downloads and scratch directories.
        verify_bounds: Test the start and end commits before searching.
        retry_delay: Seconds to wait before retrying a commit.
    """

    max_retries: int = DEFAULT_MAX_RETRIES
    max_probe_distance: Optional[int] = None
    retention_days: Optional[int] = DEFAULT_RETENTION_DAYS
    step_timeout: Optional[float] = None
    preserve: bool = False
    verify_bounds: bool = False
    retry_delay: float = 0.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ConfigError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.max_probe_distance is not None and self.max_probe_distance < 0:
            raise ConfigError(
                f"max_probe_distance must be >= 0, got {self.max_probe_distance}"
            )
        if self.retention_days is not None and self.retention_days <= 0:
            raise ConfigError(
                f"retention_days must be positive, got {self.retention_days}"
            )
        if self.step_timeout is not None and self.step_timeout <= 0:
            raise ConfigError(f"step_timeout must be positive, got {self.step_timeout}")
        if self.retry_delay < 0:
            raise ConfigError(f"retry_delay must be >= 0, got {self.retry_delay}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EnvDefaults:
    """
    Defaults taken from the environment.

    Attributes:
        repo_dir: Local checkout searched for commits (SYSROOT_BISECT_REPO).
        cache_dir: Where toolchains are downloaded and unpacked
            (SYSROOT_BISECT_CACHE).
        github_token: Token for GitHub API requests (GITHUB_TOKEN).
    """

    repo_dir: Optional[str] = None
    cache_dir: str = DEFAULT_CACHE_DIR
    github_token: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EnvDefaults":
        environ = os.environ if environ is None else environ
        return cls(
            repo_dir=environ.get("SYSROOT_BISECT_REPO") or None,
            cache_dir=environ.get("SYSROOT_BISECT_CACHE") or DEFAULT_CACHE_DIR,
            github_token=environ.get("GITHUB_TOKEN") or None,
        )
