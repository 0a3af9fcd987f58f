# Copyright (c) Meta Platforms, Inc. and affiliates.

"""
Sandboxed execution of the user's regression predicate.

A predicate is an oracle that answers one question for a toolchain: does the
regression reproduce? The usual predicate is an external script, which is
run inside a sandbox session. A session is a scoped resource: it is acquired
per step and torn down on every exit path, including interrupts, so no
container or process outlives the step that created it.

The sandbox sees exactly two host paths: the unpacked toolchain (read-only)
and a fresh scratch directory (read-write).
"""

import os
import posixpath
import shutil
import stat
import tempfile
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from sysroot_bisect.bisect.artifacts import Artifact
from sysroot_bisect.bisect.errors import SandboxError, SandboxTimeout
from sysroot_bisect.bisect.executor import CommandResult, ShellExecutor
from sysroot_bisect.bisect.logger import BisectLogger
from sysroot_bisect.bisect.types import InconclusiveReason, Verdict

PREDICATE_NAME = ".sysroot-bisect-test"


@dataclass
class Toolchain:
    """
    What a predicate gets to work with.

    Attributes:
        artifact: The resolved toolchain.
        env: Variables naming the toolchain binaries as seen in the sandbox.
        session: The live sandbox session to run commands in.
        scratch_dir: Host path of the read-write working directory.
        timeout: Wall-clock limit for the predicate, in seconds.
    """

    artifact: Artifact
    env: Dict[str, str]
    session: "SandboxSession"
    scratch_dir: Path
    timeout: Optional[float] = None

    def run(self, argv: List[str]) -> CommandResult:
        """Run a command in the sandbox with the toolchain environment."""
        return self.session.run(argv, self.env, timeout=self.timeout)


class Predicate(ABC):
    """Decides whether the regression is present for a toolchain."""

    @abstractmethod
    def evaluate(self, toolchain: Toolchain) -> bool:
        """
        Returns:
            True if the regression reproduces with this toolchain.

        Raises:
            SandboxError: If the predicate could not be run at all.
        """
        pass


class ScriptPredicate(Predicate):
    """
    Runs an external executable; exit code 0 means "regression reproduced".

    The script is copied into the scratch directory and invoked without
    arguments. The toolchain location is passed through RUSTC, CARGO and
    RUSTDOC (plus *_RELATIVE variants relative to the working directory).

    Example:
        >>> predicate = ScriptPredicate(Path("test.sh"))
        >>> runner.run(artifact, predicate)
    """

    def __init__(
        self,
        script: Path,
        invert: bool = False,
        logger: Optional[BisectLogger] = None,
    ) -> None:
        """
        Args:
            script: Path to the executable.
            invert: Treat a nonzero exit code as "regression reproduced".
            logger: BisectLogger instance for logging.
        """
        self.script = Path(script).resolve()
        self.invert = invert
        self.logger = logger

    def evaluate(self, toolchain: Toolchain) -> bool:
        if not self.script.is_file():
            raise SandboxError(f"Test script not found: {self.script}")

        copy = toolchain.scratch_dir / PREDICATE_NAME
        shutil.copy2(self.script, copy)
        copy.chmod(copy.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

        result = toolchain.run([toolchain.session.sandbox_path(copy)])
        if result.timed_out:
            raise SandboxTimeout(result.stderr)
        if result.launch_failed:
            raise SandboxError(f"Could not run test script: {result.stderr}")

        reproduced = result.exit_code == 0
        if self.invert:
            reproduced = not reproduced

        if self.logger is not None:
            commit = toolchain.artifact.commit
            self.logger.info(
                f"tested {commit.short_sha} from {commit.date:%a, %d %b %Y %H:%M:%S %z}: "
                f"exit code {result.exit_code}, regression reproduced: {reproduced}"
            )
        return reproduced


class SandboxSession(ABC):
    """
    One acquired sandbox. Use as a context manager.

    Teardown in ``__exit__`` always runs, including on KeyboardInterrupt.
    """

    def __init__(self, artifact: Artifact, scratch_dir: Path) -> None:
        self.artifact = artifact
        self.scratch_dir = scratch_dir

    @property
    @abstractmethod
    def toolchain_root(self) -> str:
        """Where the toolchain is visible inside the sandbox."""
        pass

    @property
    @abstractmethod
    def workdir(self) -> str:
        """Where the scratch directory is visible inside the sandbox."""
        pass

    def start(self) -> None:  # noqa: B027
        """Acquire the sandbox. Raises SandboxError on failure."""
        pass

    def stop(self) -> None:  # noqa: B027
        """Release the sandbox. Must be safe to call after a failed start."""
        pass

    @abstractmethod
    def run(
        self, argv: List[str], env: Dict[str, str], timeout: Optional[float] = None
    ) -> CommandResult:
        """Run a command inside the sandbox."""
        pass

    def sandbox_path(self, host_path: Path) -> str:
        """Translate a path under the scratch directory to the sandbox view."""
        relative = Path(host_path).relative_to(self.scratch_dir)
        return posixpath.join(self.workdir, relative.as_posix())

    def toolchain_env(self) -> Dict[str, str]:
        """Environment variables naming the toolchain binaries."""
        env: Dict[str, str] = {}
        for name, path in (
            ("RUSTC", self.artifact.rustc),
            ("CARGO", self.artifact.cargo),
            ("RUSTDOC", self.artifact.rustdoc),
        ):
            inside = posixpath.join(
                self.toolchain_root, path.relative_to(self.artifact.root).as_posix()
            )
            env[name] = inside
            env[f"{name}_RELATIVE"] = posixpath.relpath(inside, self.workdir)
        return env

    def __enter__(self) -> "SandboxSession":
        try:
            self.start()
        except BaseException:
            self.stop()
            raise
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.stop()
        return False


class Sandbox(ABC):
    """Factory for per-step sandbox sessions."""

    @abstractmethod
    def session(self, artifact: Artifact, scratch_dir: Path) -> SandboxSession:
        pass


class _DockerSession(SandboxSession):
    TOOLCHAIN_MOUNT = "/toolchain"
    WORK_MOUNT = "/work"

    def __init__(self, sandbox: "DockerSandbox", artifact: Artifact, scratch_dir: Path) -> None:
        super().__init__(artifact, scratch_dir)
        self.sandbox = sandbox
        self.name = f"sysroot-bisect-{uuid.uuid4().hex[:12]}"
        self.started = False

    @property
    def toolchain_root(self) -> str:
        return self.TOOLCHAIN_MOUNT

    @property
    def workdir(self) -> str:
        return self.WORK_MOUNT

    def start(self) -> None:
        cmd = ["docker", "run", "--detach", "--rm", "--name", self.name]
        if hasattr(os, "getuid"):
            cmd += ["--user", f"{os.getuid()}:{os.getgid()}"]
        if self.sandbox.network:
            cmd += ["--network", self.sandbox.network]
        cmd += [
            "--volume",
            f"{self.artifact.root}:{self.TOOLCHAIN_MOUNT}:ro",
            "--volume",
            f"{self.scratch_dir}:{self.WORK_MOUNT}",
            "--workdir",
            self.WORK_MOUNT,
            "--env",
            f"HOME={self.WORK_MOUNT}",
            self.sandbox.image,
            "sleep",
            "infinity",
        ]
        result = self.sandbox.executor.run_command(cmd, timeout=self.sandbox.start_timeout)
        if not result.success:
            raise SandboxError(
                f"Failed to start container from {self.sandbox.image}: "
                f"{result.stderr.strip()}"
            )
        self.started = True
        self.sandbox.logger.debug(f"Started container {self.name}")

    def stop(self) -> None:
        # Also runs after a failed or interrupted start, which may still have
        # created the container.
        result = self.sandbox.executor.run_command(
            ["docker", "rm", "--force", self.name], timeout=60
        )
        if self.started and not result.success:
            self.sandbox.logger.warning(
                f"Failed to remove container {self.name}, please do so manually: "
                f"{result.stderr.strip()}"
            )
        self.started = False

    def run(
        self, argv: List[str], env: Dict[str, str], timeout: Optional[float] = None
    ) -> CommandResult:
        cmd = ["docker", "exec", "--workdir", self.WORK_MOUNT]
        for key, value in sorted(env.items()):
            cmd += ["--env", f"{key}={value}"]
        cmd += [self.name, *argv]
        result = self.sandbox.executor.run_command(cmd, timeout=timeout)
        if result.timed_out:
            raise SandboxTimeout(f"{' '.join(argv)} timed out after {timeout}s")
        if result.launch_failed:
            raise SandboxError(f"Could not run docker: {result.stderr}")
        return result


class DockerSandbox(Sandbox):
    """
    Runs each step in a throwaway container.

    Example:
        >>> sandbox = DockerSandbox(executor, logger, image="ubuntu:22.04")
        >>> with sandbox.session(artifact, scratch) as session:
        ...     session.run(["./test.sh"], session.toolchain_env())
    """

    def __init__(
        self,
        executor: ShellExecutor,
        logger: BisectLogger,
        image: str,
        network: Optional[str] = None,
        start_timeout: float = 300.0,
    ) -> None:
        self.executor = executor
        self.logger = logger
        self.image = image
        self.network = network
        self.start_timeout = start_timeout

    def session(self, artifact: Artifact, scratch_dir: Path) -> SandboxSession:
        return _DockerSession(self, artifact, scratch_dir)


class _LocalSession(SandboxSession):
    def __init__(self, sandbox: "LocalSandbox", artifact: Artifact, scratch_dir: Path) -> None:
        super().__init__(artifact, scratch_dir)
        self.sandbox = sandbox

    @property
    def toolchain_root(self) -> str:
        return str(self.artifact.root)

    @property
    def workdir(self) -> str:
        return str(self.scratch_dir)

    def start(self) -> None:
        if not self.artifact.root.is_dir():
            raise SandboxError(f"Toolchain directory missing: {self.artifact.root}")
        if not self.scratch_dir.is_dir():
            raise SandboxError(f"Scratch directory missing: {self.scratch_dir}")

    def run(
        self, argv: List[str], env: Dict[str, str], timeout: Optional[float] = None
    ) -> CommandResult:
        # Only PATH leaks in from the host: build tools and linkers live there.
        full_env = {
            "PATH": os.environ.get("PATH", ""),
            "HOME": str(self.scratch_dir),
            **env,
        }
        result = self.sandbox.executor.run_command(
            argv,
            cwd=str(self.scratch_dir),
            env=full_env,
            timeout=timeout,
            replace_env=True,
        )
        if result.timed_out:
            raise SandboxTimeout(f"{' '.join(argv)} timed out after {timeout}s")
        if result.launch_failed:
            raise SandboxError(f"Could not start {argv[0]}: {result.stderr}")
        return result


class LocalSandbox(Sandbox):
    """
    Process-level isolation on the host.

    Each command gets a cleared environment, the scratch directory as its
    working directory and home, and its own process group, which is killed
    if the step is interrupted or times out.
    """

    def __init__(self, executor: ShellExecutor, logger: BisectLogger) -> None:
        self.executor = executor
        self.logger = logger

    def session(self, artifact: Artifact, scratch_dir: Path) -> SandboxSession:
        return _LocalSession(self, artifact, scratch_dir)


class SandboxedTestRunner:
    """
    Runs a predicate against one toolchain in a fresh sandbox.

    Example:
        >>> runner = SandboxedTestRunner(LocalSandbox(executor, logger), logger)
        >>> verdict = runner.run(artifact, ScriptPredicate(Path("test.sh")))
    """

    def __init__(
        self,
        sandbox: Sandbox,
        logger: BisectLogger,
        workdir_template: Optional[Path] = None,
        scratch_root: Optional[Path] = None,
        preserve: bool = False,
        step_timeout: Optional[float] = None,
    ) -> None:
        """
        Args:
            sandbox: Sandbox factory.
            logger: BisectLogger instance for logging.
            workdir_template: Directory copied into every fresh scratch
                directory (e.g. the project the predicate builds).
            scratch_root: Parent for scratch directories (system temp if None).
            preserve: Keep scratch directories and toolchains after the run.
            step_timeout: Wall-clock limit for one predicate run, in seconds.
        """
        self.sandbox = sandbox
        self.logger = logger
        self.workdir_template = Path(workdir_template) if workdir_template else None
        self.scratch_root = Path(scratch_root) if scratch_root else None
        self.preserve = preserve
        self.step_timeout = step_timeout

    def _make_scratch(self, artifact: Artifact) -> Path:
        if self.scratch_root is not None:
            self.scratch_root.mkdir(parents=True, exist_ok=True)
        scratch = Path(
            tempfile.mkdtemp(
                prefix=f"step-{artifact.commit.short_sha}-",
                dir=str(self.scratch_root) if self.scratch_root else None,
            )
        ).resolve()
        if self.workdir_template is not None:
            shutil.copytree(self.workdir_template, scratch, symlinks=True, dirs_exist_ok=True)
        return scratch

    def run(self, artifact: Artifact, predicate: Predicate) -> Verdict:
        """
        Evaluate ``predicate`` against ``artifact``.

        Returns:
            Present or absent from the predicate, or inconclusive
            (infrastructure failure) if the sandbox could not be used or the
            step timed out. Interrupts propagate after teardown.
        """
        scratch: Optional[Path] = None
        try:
            scratch = self._make_scratch(artifact)
            with self.sandbox.session(artifact, scratch) as session:
                toolchain = Toolchain(
                    artifact=artifact,
                    env=session.toolchain_env(),
                    session=session,
                    scratch_dir=scratch,
                    timeout=self.step_timeout,
                )
                reproduced = predicate.evaluate(toolchain)
        except SandboxTimeout as e:
            self.logger.warning(f"Step timed out for {artifact.commit.short_sha}: {e}")
            return Verdict.inconclusive(
                InconclusiveReason.INFRASTRUCTURE_FAILURE, f"timed out: {e}"
            )
        except (SandboxError, OSError) as e:
            self.logger.warning(f"Sandbox failure for {artifact.commit.short_sha}: {e}")
            return Verdict.inconclusive(InconclusiveReason.INFRASTRUCTURE_FAILURE, str(e))
        finally:
            self._cleanup(artifact, scratch)

        return Verdict.present() if reproduced else Verdict.absent()

    def _cleanup(self, artifact: Artifact, scratch: Optional[Path]) -> None:
        if self.preserve:
            if scratch is not None:
                self.logger.info(f"Preserved scratch directory: {scratch}")
            self.logger.info(f"Preserved toolchain: {artifact.root}")
            return
        if scratch is not None:
            shutil.rmtree(scratch, ignore_errors=True)
        artifact.release(self.logger)
