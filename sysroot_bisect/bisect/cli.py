# Copyright (c) Meta Platforms, Inc. and affiliates.

"""
CLI implementation for the bisect, install and status subcommands.

Usage Examples:
    # Bisect merge commits of a local checkout, testing in a local sandbox
    sysroot-bisect bisect --repo /path/to/rust --test test.sh \\
        --start 927c55d8 --end master --author bors

    # Use the GitHub API instead of a checkout, and run steps in containers
    sysroot-bisect bisect --github rust-lang/rust --test test.sh \\
        --start 927c55d8 --end master --sandbox docker --image ubuntu:22.04

    # Install one toolchain into the cache and keep it
    sysroot-bisect install --repo /path/to/rust --commit 927c55d8

    # Show the most recent report
    sysroot-bisect status
"""

import argparse
import threading
from pathlib import Path
from typing import Optional

from sysroot_bisect.bisect.config import (
    DEFAULT_DOCKER_IMAGE,
    DEFAULT_LOG_DIR,
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETENTION_DAYS,
    BisectConfig,
    EnvDefaults,
)
from sysroot_bisect.bisect.errors import BisectCancelled, BisectError
from sysroot_bisect.bisect.report import (
    EXIT_CANCELLED,
    EXIT_CONVERGED,
    EXIT_ERROR,
    BisectReport,
    ReportManager,
    RunStatus,
)


def _add_source_args(parser: argparse.ArgumentParser) -> None:
    """Arguments selecting where commit history comes from."""
    env = EnvDefaults.from_env()
    source = parser.add_mutually_exclusive_group()
    source.add_argument(
        "--repo",
        type=str,
        default=env.repo_dir,
        help="Path to a local git checkout (default: $SYSROOT_BISECT_REPO)",
    )
    source.add_argument(
        "--github",
        type=str,
        metavar="OWNER/REPO",
        help="Read history from the GitHub API instead of a checkout",
    )
    parser.add_argument(
        "--author",
        type=str,
        default=None,
        help="Only search commits by this author, e.g. the merge bot",
    )
    parser.add_argument(
        "--triple",
        type=str,
        default=None,
        help="Target triple to download (default: host triple of local rustc)",
    )
    parser.add_argument(
        "--cache-dir",
        type=str,
        default=env.cache_dir,
        help="Directory for downloaded toolchains (default: $SYSROOT_BISECT_CACHE or ./cache)",
    )
    parser.add_argument(
        "--retention-days",
        type=int,
        default=DEFAULT_RETENTION_DAYS,
        help=f"Artifacts older than this are not requested; 0 disables the check "
        f"(default: {DEFAULT_RETENTION_DAYS})",
    )
    parser.add_argument(
        "--log-dir",
        type=str,
        default=DEFAULT_LOG_DIR,
        help=f"Directory for log files and reports (default: {DEFAULT_LOG_DIR})",
    )


def _add_bisect_args(parser: argparse.ArgumentParser) -> None:
    """Add arguments for the bisect subcommand."""
    parser.add_argument(
        "--test",
        type=str,
        help="Executable that exits 0 when the regression reproduces",
    )
    parser.add_argument(
        "--start",
        type=str,
        help="Known good revision (regression absent)",
    )
    parser.add_argument(
        "--end",
        type=str,
        default=None,
        help="Known bad revision (default: HEAD, or master with --github)",
    )
    _add_source_args(parser)

    parser.add_argument(
        "--sandbox",
        choices=["local", "docker"],
        default="local",
        help="Where each step runs (default: local)",
    )
    parser.add_argument(
        "--image",
        type=str,
        default=DEFAULT_DOCKER_IMAGE,
        help=f"Container image for --sandbox docker (default: {DEFAULT_DOCKER_IMAGE})",
    )
    parser.add_argument(
        "--network",
        type=str,
        default=None,
        help="Container network for --sandbox docker (e.g. none)",
    )
    parser.add_argument(
        "--workdir",
        type=str,
        default=None,
        help="Directory copied into every fresh step directory",
    )
    parser.add_argument(
        "--preserve",
        action="store_true",
        help="Keep toolchains, downloads and step directories",
    )
    parser.add_argument(
        "--retries",
        type=int,
        default=DEFAULT_MAX_RETRIES,
        help=f"Retries for a step that hit an infrastructure failure "
        f"(default: {DEFAULT_MAX_RETRIES})",
    )
    parser.add_argument(
        "--retry-delay",
        type=float,
        default=5.0,
        help="Seconds to wait before a retry (default: 5)",
    )
    parser.add_argument(
        "--probe-limit",
        type=int,
        default=None,
        help="How far from the midpoint to look for a testable commit (default: unlimited)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Wall-clock limit per step, in seconds",
    )
    parser.add_argument(
        "--verify-bounds",
        action="store_true",
        help="Test the start and end commits before searching",
    )
    parser.add_argument(
        "--invert",
        action="store_true",
        help="The test exits 0 when the regression is absent",
    )

    parser.add_argument(
        "--tui",
        action="store_true",
        default=True,
        dest="tui",
        help="Enable Rich TUI interface (default: enabled on a terminal)",
    )
    parser.add_argument(
        "--no-tui",
        action="store_false",
        dest="tui",
        help="Disable Rich TUI, use plain text output",
    )


def _add_install_args(parser: argparse.ArgumentParser) -> None:
    """Add arguments for the install subcommand."""
    parser.add_argument(
        "--commit",
        type=str,
        required=True,
        help="Revision whose toolchain to install",
    )
    _add_source_args(parser)
    parser.add_argument(
        "--skip-validation",
        action="store_true",
        help="Don't run the installed compiler to check it works",
    )


def _add_status_args(parser: argparse.ArgumentParser) -> None:
    """Add arguments for the status subcommand."""
    parser.add_argument(
        "--report",
        type=str,
        default=None,
        help="Path to a report file (default: newest report in --log-dir)",
    )
    parser.add_argument(
        "--log-dir",
        type=str,
        default=DEFAULT_LOG_DIR,
        help=f"Directory searched for reports (default: {DEFAULT_LOG_DIR})",
    )


def _validate_args(args: argparse.Namespace, parser: argparse.ArgumentParser) -> None:
    """
    Validate argument combinations for the bisect subcommand.

    Args:
        args: Parsed arguments.
        parser: ArgumentParser for error reporting.
    """
    missing = []
    if not args.test:
        missing.append("--test")
    if not args.start:
        missing.append("--start")
    if not args.repo and not args.github:
        missing.append("--repo or --github")
    if missing:
        parser.error(f"The following arguments are required: {', '.join(missing)}")

    if args.github and args.github.count("/") != 1:
        parser.error(f"--github expects OWNER/REPO, got {args.github!r}")
    if args.workdir and not Path(args.workdir).is_dir():
        parser.error(f"--workdir is not a directory: {args.workdir}")
    if args.test and not Path(args.test).is_file():
        parser.error(f"--test script not found: {args.test}")


def _build_config(args: argparse.Namespace) -> BisectConfig:
    """Raises ConfigError for out-of-range values."""
    return BisectConfig(
        max_retries=args.retries,
        max_probe_distance=args.probe_limit,
        retention_days=args.retention_days or None,
        step_timeout=args.timeout,
        preserve=args.preserve,
        verify_bounds=args.verify_bounds,
        retry_delay=args.retry_delay,
    )


def _create_logger(log_dir: str):
    """Create a BisectLogger instance."""
    from sysroot_bisect.bisect.logger import BisectLogger

    return BisectLogger(log_dir)


def _create_history(args: argparse.Namespace, executor, logger):
    from sysroot_bisect.bisect.history import GitHistoryProvider, GitHubHistoryProvider

    if args.github:
        return GitHubHistoryProvider(
            repo=args.github,
            logger=logger,
            token=EnvDefaults.from_env().github_token,
            author=args.author,
        )
    return GitHistoryProvider(
        repo_dir=Path(args.repo),
        executor=executor,
        logger=logger,
        author=args.author,
    )


def _create_resolver(args: argparse.Namespace, executor, logger, preserve: bool):
    from sysroot_bisect.bisect.artifacts import (
        ArtifactResolver,
        HttpArtifactIndex,
        get_host_triple,
    )

    triple = args.triple or get_host_triple(executor)
    logger.info(f"Target triple: {triple}")
    return ArtifactResolver(
        index=HttpArtifactIndex(triple, logger=logger),
        cache_dir=Path(args.cache_dir),
        triple=triple,
        retention_days=args.retention_days or None,
        preserve=preserve,
        logger=logger,
    )


def _create_sandbox(args: argparse.Namespace, executor, logger):
    from sysroot_bisect.bisect.sandbox import DockerSandbox, LocalSandbox

    if args.sandbox == "docker":
        return DockerSandbox(executor, logger, image=args.image, network=args.network)
    return LocalSandbox(executor, logger)


def bisect_command(args: argparse.Namespace) -> int:
    """
    Execute the bisect command based on parsed arguments.

    Args:
        args: Parsed command-line arguments.

    Returns:
        Exit code: 0 converged, 1 error, 2 exhausted, 3 failed, 130 cancelled.
    """
    from sysroot_bisect.bisect.engine import BisectionEngine
    from sysroot_bisect.bisect.executor import ShellExecutor
    from sysroot_bisect.bisect.sandbox import SandboxedTestRunner, ScriptPredicate
    from sysroot_bisect.bisect.ui import BisectUI, print_final_summary

    ui = BisectUI(enabled=args.tui)
    cancel_event = threading.Event()

    engine: Optional[BisectionEngine] = None
    report: Optional[BisectReport] = None
    error_msg = None
    logger = None
    exit_code = EXIT_ERROR

    with ui:
        try:
            logger = _create_logger(args.log_dir)
            if ui.is_tui_enabled:
                logger.configure_for_tui(ui.create_output_callback())
            ui.append_output(ui.get_tui_status_message())
            ui.update_progress(
                log_dir=str(logger.log_dir),
                log_file=logger.module_log_path.name,
                command_log=logger.command_log_path.name,
            )

            config = _build_config(args)
            executor = ShellExecutor(logger)
            engine = BisectionEngine(
                history=_create_history(args, executor, logger),
                resolver=_create_resolver(args, executor, logger, config.preserve),
                runner=SandboxedTestRunner(
                    _create_sandbox(args, executor, logger),
                    logger,
                    workdir_template=Path(args.workdir) if args.workdir else None,
                    scratch_root=Path(args.cache_dir) / "scratch",
                    preserve=config.preserve,
                    step_timeout=config.step_timeout,
                ),
                predicate=ScriptPredicate(Path(args.test), invert=args.invert, logger=logger),
                logger=logger,
                config=config,
                observer=ui.observe,
                cancel_event=cancel_event,
            )
            end = args.end or ("master" if args.github else "HEAD")
            report = engine.run(args.start, end)
            exit_code = report.exit_code

        except BisectCancelled as e:
            report = e.report
            exit_code = EXIT_CANCELLED
        except KeyboardInterrupt:
            cancel_event.set()
            report = engine.report if engine is not None else None
            if report is not None and not report.status.terminal:
                report.finish(RunStatus.CANCELLED, "Interrupted")
            error_msg = "Interrupted"
            exit_code = EXIT_CANCELLED
            if logger is not None:
                logger.warning("Interrupted, sandbox and toolchain cleaned up")
        except BisectError as e:
            error_msg = str(e)
            ui.append_output(f"\nBisect failed: {e}")
        except Exception as e:
            error_msg = str(e)
            ui.append_output(f"\nUnexpected error: {e}")
            if logger is not None:
                logger.exception("Unexpected error")

    report_path = None
    if report is not None and logger is not None:
        report_path = ReportManager.save(report, args.log_dir, logger.session_name)

    if report is None:
        report = BisectReport(start=args.start or "", end=args.end or "")
        report.finish(RunStatus.FAILED, error_msg)

    print_final_summary(
        report,
        repo=args.github,
        log_dir=args.log_dir,
        log_file=str(logger.module_log_path) if logger else None,
        command_log=str(logger.command_log_path) if logger else None,
        report_path=str(report_path) if report_path else None,
    )
    if logger is not None:
        logger.close()
    return exit_code


def install_command(args: argparse.Namespace) -> int:
    """
    Install the toolchain of one commit into the cache and keep it.

    Returns:
        0 if the toolchain was installed (and runs), 1 otherwise.
    """
    from sysroot_bisect.bisect.executor import ShellExecutor
    from sysroot_bisect.bisect.types import Unavailable

    if not args.repo and not args.github:
        print("install requires --repo or --github")
        return EXIT_ERROR

    logger = _create_logger(args.log_dir)
    try:
        executor = ShellExecutor(logger)
        commit = _create_history(args, executor, logger).lookup(args.commit)
        resolver = _create_resolver(args, executor, logger, preserve=True)
        artifact = resolver.resolve(commit)
        if isinstance(artifact, Unavailable):
            print(f"No toolchain for {commit.sha}: {artifact}")
            return EXIT_ERROR

        if not args.skip_validation:
            result = executor.run_command([str(artifact.rustc), "--version"])
            if not result.success:
                print(f"Installed compiler does not run: {result.stderr.strip()}")
                return EXIT_ERROR
            print(result.stdout.strip())

        print(f"Installed {commit.sha} at {artifact.root}")
        return EXIT_CONVERGED
    except BisectError as e:
        print(f"Install failed: {e}")
        return EXIT_ERROR
    finally:
        logger.close()


def status_command(args: argparse.Namespace) -> int:
    """
    Print a saved report.

    Returns:
        0 if a report was shown, 1 if none was found or it could not be read.
    """
    from sysroot_bisect.bisect.ui import print_final_summary

    path = args.report
    if path is None:
        latest = ReportManager.find_latest(args.log_dir)
        if latest is None:
            print(f"No report found in: {args.log_dir}")
            return EXIT_ERROR
        path = str(latest)

    try:
        report = ReportManager.load(path)
    except FileNotFoundError:
        print(f"Report file not found: {path}")
        return EXIT_ERROR
    except (ValueError, KeyError) as e:
        print(f"Error loading report: {e}")
        return EXIT_ERROR

    print_final_summary(report, report_path=path)
    return EXIT_CONVERGED
