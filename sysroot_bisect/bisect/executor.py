# Copyright (c) Meta Platforms, Inc. and affiliates.

"""
Shell command executor for bisect operations.

Provides a unified interface for executing external commands with:
- Blocking mode with captured output
- Timeout support
- Environment variable handling (merged or fully replaced)
- Guaranteed termination of the child's process group on every exit path
- Integrated logging
"""

import os
import signal
import subprocess
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

from sysroot_bisect.bisect.logger import BisectLogger


def format_duration(seconds: float) -> str:
    """Format duration in human-readable format."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        minutes = int(seconds // 60)
        secs = seconds % 60
        return f"{minutes}m {secs:.1f}s"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        secs = seconds % 60
        return f"{hours}h {minutes}m {secs:.1f}s"


@dataclass
class CommandResult:
    """
    Result of a command execution.

    Attributes:
        command: The command that was executed (as a string).
        exit_code: The exit code returned by the command (-1 if it never ran
            to completion).
        stdout: Standard output from the command.
        stderr: Standard error output from the command.
        duration_seconds: Time taken to execute the command in seconds.
        timed_out: The command was killed after exceeding its timeout.
        launch_failed: The command could not be started at all.
    """

    command: str
    exit_code: int
    stdout: str
    stderr: str
    duration_seconds: float
    timed_out: bool = False
    launch_failed: bool = False

    @property
    def success(self) -> bool:
        """Check if the command executed successfully (exit code 0)."""
        return self.exit_code == 0

    @property
    def completed(self) -> bool:
        """The command ran and exited on its own."""
        return not (self.timed_out or self.launch_failed)

    @property
    def output(self) -> str:
        """Get combined stdout and stderr output."""
        return self.stdout + self.stderr

    @property
    def duration_formatted(self) -> str:
        """Get duration in human-readable format."""
        return format_duration(self.duration_seconds)


def _kill_process_group(proc: subprocess.Popen) -> None:
    """Kill the child and everything it spawned, then reap it."""
    if proc.poll() is None:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            proc.kill()
    try:
        proc.communicate(timeout=10)
    except subprocess.TimeoutExpired:
        pass


class ShellExecutor:
    """
    Command executor with logging integration.

    Every command runs in its own process group. If the caller is interrupted
    (KeyboardInterrupt, cancellation) or the timeout expires, the whole group
    is killed before control returns, so no orphaned processes survive.

    Example:
        >>> logger = BisectLogger("./bisect_logs")
        >>> executor = ShellExecutor(logger)
        >>> result = executor.run_command(["git", "rev-parse", "HEAD"], cwd="rust")
        >>> if result.success:
        ...     print(result.stdout)
    """

    def __init__(self, logger: BisectLogger) -> None:
        """
        Initialize the shell executor.

        Args:
            logger: BisectLogger instance for logging command execution.
        """
        self.logger = logger

    def run_command(
        self,
        cmd: Union[str, List[str]],
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        shell: bool = False,
        replace_env: bool = False,
    ) -> CommandResult:
        """
        Execute a command in blocking mode.

        Args:
            cmd: Command to execute. Can be a string or list of arguments.
            cwd: Working directory for command execution.
            env: Environment variables. Merged with the current environment
                unless ``replace_env`` is set.
            timeout: Maximum time in seconds to wait for completion.
            shell: If True, execute command through the shell.
            replace_env: Use ``env`` as the complete environment.

        Returns:
            CommandResult containing exit code, stdout, stderr, and duration.
        """
        if replace_env:
            full_env = dict(env or {})
        else:
            full_env = os.environ.copy()
            if env:
                full_env.update(env)

        cmd_str = cmd if isinstance(cmd, str) else " ".join(str(c) for c in cmd)
        self.logger.debug(f"Executing: {cmd_str}")
        if cwd:
            self.logger.debug(f"  cwd: {cwd}")

        start_time = time.time()

        try:
            proc = subprocess.Popen(
                cmd,
                cwd=cwd,
                env=full_env,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
                shell=shell,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            cmd_result = CommandResult(
                command=cmd_str,
                exit_code=-1,
                stdout="",
                stderr=f"{type(e).__name__}: {e}",
                duration_seconds=time.time() - start_time,
                launch_failed=True,
            )
            self._log_result(cmd_result)
            return cmd_result

        try:
            stdout, stderr = proc.communicate(timeout=timeout)
            cmd_result = CommandResult(
                command=cmd_str,
                exit_code=proc.returncode,
                stdout=stdout,
                stderr=stderr,
                duration_seconds=time.time() - start_time,
            )
        except subprocess.TimeoutExpired as e:
            _kill_process_group(proc)
            stdout = e.stdout or ""
            if isinstance(stdout, bytes):
                stdout = stdout.decode("utf-8", errors="replace")
            cmd_result = CommandResult(
                command=cmd_str,
                exit_code=-1,
                stdout=stdout,
                stderr=f"Command timed out after {timeout}s",
                duration_seconds=time.time() - start_time,
                timed_out=True,
            )
        except BaseException:
            _kill_process_group(proc)
            self.logger.warning(f"Interrupted, killed: {cmd_str}")
            raise

        self._log_result(cmd_result)
        return cmd_result

    def _log_result(self, cmd_result: CommandResult) -> None:
        self.logger.log_command_output(
            cmd_result.command, cmd_result.output, cmd_result.exit_code
        )
        self.logger.debug(
            f"Command completed in {cmd_result.duration_formatted} "
            f"(exit code: {cmd_result.exit_code})"
        )
