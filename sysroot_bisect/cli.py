#!/usr/bin/env python3
#  Copyright (c) Meta Platforms, Inc. and affiliates.
import argparse
from importlib.metadata import PackageNotFoundError, version

from .bisect.cli import (
    _add_bisect_args,
    _add_install_args,
    _add_status_args,
    _validate_args as _validate_bisect_args,
    bisect_command,
    install_command,
    status_command,
)


def _get_package_version() -> str:
    try:
        return version("sysroot-bisect")
    except PackageNotFoundError:
        return "0+unknown"


def main():
    pkg_version = _get_package_version()
    prog_name = "sysroot-bisect"

    parser = argparse.ArgumentParser(
        prog=prog_name,
        description=(
            "Find the commit that introduced a compiler regression by testing "
            "prebuilt toolchains"
        ),
        epilog=(
            "Examples:\n"
            f"  {prog_name} bisect --repo ./rust --test test.sh --start 927c55d8\n"
            f"  {prog_name} bisect --github rust-lang/rust --test test.sh "
            "--start 927c55d8 --end master --author bors\n"
            f"  {prog_name} install --repo ./rust --commit 927c55d8\n"
            f"  {prog_name} status\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {pkg_version}",
        help="Show program's version number and exit",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # bisect subcommand
    bisect_parser = subparsers.add_parser(
        "bisect",
        help="Bisect a commit range to find a regression",
        description=(
            "Binary search the merge commits between --start (good) and --end "
            "(bad).\n\n"
            "For every probed commit the prebuilt toolchain is downloaded and the\n"
            "test script runs against it in a fresh sandbox. The script sees the\n"
            "toolchain through RUSTC, CARGO and RUSTDOC and exits 0 when the\n"
            "regression reproduces (use --invert for the opposite).\n\n"
            "Exit codes:\n"
            "  0    converged on a commit\n"
            "  1    error (bad range, configuration)\n"
            "  2    exhausted: no commit in the range has an artifact\n"
            "  3    failed: retries exhausted or bounds do not bracket the regression\n"
            "  130  cancelled"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    _add_bisect_args(bisect_parser)
    bisect_parser.set_defaults(func="bisect")

    # install subcommand
    install_parser = subparsers.add_parser(
        "install",
        help="Download and unpack the toolchain of one commit",
    )
    _add_install_args(install_parser)
    install_parser.set_defaults(func="install")

    # status subcommand
    status_parser = subparsers.add_parser(
        "status",
        help="Show a saved bisect report",
    )
    _add_status_args(status_parser)
    status_parser.set_defaults(func="status")

    args = parser.parse_args()

    if args.func == "bisect":
        _validate_bisect_args(args, bisect_parser)
        exit_code = bisect_command(args)
    elif args.func == "install":
        exit_code = install_command(args)
    elif args.func == "status":
        exit_code = status_command(args)
    else:
        raise RuntimeError(f"Unknown command: {args.func}")
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()  # pragma: no cover
