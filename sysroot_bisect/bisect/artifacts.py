# Copyright (c) Meta Platforms, Inc. and affiliates.

"""
Artifact resolution: from a commit to an unpacked prebuilt toolchain.

The CI of the toolchain publishes one tarball per component (compiler,
standard library, package manager) per merge commit and target triple. These
are kept only for a limited time, so old commits are reported as expired
without touching the network. Lookups that find nothing, transport failures
and corrupt downloads are all reported as ``Unavailable`` with distinct
reasons; only the caller decides whether to skip or retry.
"""

import lzma
import shutil
import tarfile
import zlib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path, PurePosixPath
from typing import Callable, List, Optional, Sequence, Union

import requests

from sysroot_bisect.bisect.errors import ArtifactError, ConfigError
from sysroot_bisect.bisect.executor import ShellExecutor
from sysroot_bisect.bisect.logger import BisectLogger
from sysroot_bisect.bisect.types import Commit, Unavailable, UnavailableReason

ARTIFACT_BASE_URL = "https://s3.amazonaws.com/rust-lang-ci"

# Probed in order; the first URL that exists wins.
DEFAULT_URL_TEMPLATES = (
    ARTIFACT_BASE_URL + "/rustc-builds/{sha}/{component}-nightly-{triple}.tar.xz",
    ARTIFACT_BASE_URL + "/rustc-builds/{sha}/{component}-nightly-{triple}.tar.gz",
    ARTIFACT_BASE_URL + "/rustc-builds/{sha}/dist/{component}-nightly-{triple}.tar.gz",
    ARTIFACT_BASE_URL + "/rustc-builds/{sha}/{component}-1.16.0-dev-{triple}.tar.gz",
    ARTIFACT_BASE_URL + "/rustc-builds-try/{sha}/{component}-nightly-{triple}.tar.xz",
)

DEFAULT_COMPONENTS = ("rustc", "rust-std", "cargo")

# Package managers built before this date are broken; use a known-good one.
FALLBACK_CARGO_BEFORE = datetime(2017, 3, 20, tzinfo=timezone.utc)
FALLBACK_CARGO_SHA = "53eb08bedc8719844bb553dbe1a39d9010783ff5"

_SHARED_LIB_SUFFIXES = (".so", ".dylib", ".dll")
_COMPLETE_MARKER = ".complete"


@dataclass
class Artifact:
    """
    An unpacked toolchain for one commit.

    Attributes:
        commit: The commit the toolchain was built from.
        triple: Target triple of the toolchain.
        root: Directory holding the unpacked components.
        rustc: Path to the compiler binary.
        cargo: Path to the package manager binary.
        rustdoc: Path to the documentation tool binary.
        used_fallback_cargo: The package manager comes from the fallback build.
        preserve: Keep ``root`` when the artifact is released.
    """

    commit: Commit
    triple: str
    root: Path
    rustc: Path
    cargo: Path
    rustdoc: Path
    used_fallback_cargo: bool = False
    preserve: bool = False

    def release(self, logger: Optional[BisectLogger] = None) -> None:
        """Remove the unpacked toolchain unless it is preserved."""
        if self.preserve or not self.root.exists():
            return
        try:
            shutil.rmtree(self.root)
        except OSError as e:
            if logger is not None:
                logger.warning(
                    f"failed to remove {self.root}, please do so manually: {e}"
                )

    def __enter__(self) -> "Artifact":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.release()
        return False


class ArtifactIndex(ABC):
    """Remote artifact service keyed by commit."""

    @abstractmethod
    def lookup(self, sha: str, component: str) -> Union[str, Unavailable]:
        """Find the download URL of one component of one commit."""
        pass

    @abstractmethod
    def fetch(self, url: str, dest_dir: Path) -> Path:
        """
        Download ``url`` into ``dest_dir``.

        Idempotent: a file already fully downloaded is reused.

        Raises:
            ArtifactError: If the download fails.
        """
        pass


class HttpArtifactIndex(ArtifactIndex):
    """
    Artifact index backed by a static HTTP bucket.

    Example:
        >>> index = HttpArtifactIndex("x86_64-unknown-linux-gnu")
        >>> url = index.lookup("8c2f2d1f...", "rustc")
        >>> if not isinstance(url, Unavailable):
        ...     archive = index.fetch(url, Path("cache/downloads"))
    """

    CHUNK_SIZE = 1 << 20

    def __init__(
        self,
        triple: str,
        url_templates: Sequence[str] = DEFAULT_URL_TEMPLATES,
        session: Optional[requests.Session] = None,
        timeout: float = 60.0,
        logger: Optional[BisectLogger] = None,
    ) -> None:
        self.triple = triple
        self.url_templates = list(url_templates)
        self.session = session or requests.Session()
        self.timeout = timeout
        self.logger = logger

    def _debug(self, msg: str) -> None:
        if self.logger is not None:
            self.logger.debug(msg)

    def lookup(self, sha: str, component: str) -> Union[str, Unavailable]:
        for template in self.url_templates:
            url = template.format(sha=sha, component=component, triple=self.triple)
            self._debug(f"requesting: {url}")
            try:
                response = self.session.head(
                    url, allow_redirects=True, timeout=self.timeout
                )
            except requests.RequestException as e:
                return Unavailable(UnavailableReason.NETWORK_ERROR, f"{url}: {e}")
            self._debug(f"{response.status_code} {url}")
            if response.status_code == 200:
                return url
            if response.status_code >= 500:
                return Unavailable(
                    UnavailableReason.NETWORK_ERROR,
                    f"{url} returned {response.status_code}",
                )
        return Unavailable(
            UnavailableReason.NOT_BUILT,
            f"unable to find sha {sha} triple {self.triple} module {component}",
        )

    def fetch(self, url: str, dest_dir: Path) -> Path:
        dest_dir.mkdir(parents=True, exist_ok=True)
        target = dest_dir / url.rsplit("/", 1)[-1]
        if target.exists():
            self._debug(f"reusing download {target}")
            return target

        partial = target.with_name(target.name + ".part")
        try:
            with self.session.get(url, stream=True, timeout=self.timeout) as response:
                response.raise_for_status()
                with open(partial, "wb") as f:
                    for chunk in response.iter_content(chunk_size=self.CHUNK_SIZE):
                        f.write(chunk)
        except requests.RequestException as e:
            partial.unlink(missing_ok=True)
            raise ArtifactError(f"download of {url} failed: {e}") from e
        except BaseException:
            partial.unlink(missing_ok=True)
            raise
        partial.replace(target)
        return target


class ArtifactResolver:
    """
    Maps commits to unpacked toolchains.

    Example:
        >>> resolver = ArtifactResolver(index, Path("cache"), "x86_64-unknown-linux-gnu")
        >>> artifact = resolver.resolve(commit)
        >>> if isinstance(artifact, Unavailable):
        ...     print(f"skipping: {artifact}")
    """

    def __init__(
        self,
        index: ArtifactIndex,
        cache_dir: Path,
        triple: str,
        retention_days: Optional[int] = 90,
        components: Sequence[str] = DEFAULT_COMPONENTS,
        preserve: bool = False,
        logger: Optional[BisectLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """
        Args:
            index: Remote artifact service.
            cache_dir: Directory for downloads and unpacked toolchains.
            triple: Target triple to download.
            retention_days: Age after which the origin no longer has
                artifacts. None disables the check.
            components: Components to install, in unpack order.
            preserve: Keep downloads and unpacked toolchains.
            logger: BisectLogger instance for logging.
            clock: Returns the current time (UTC); for tests.
        """
        self.index = index
        self.cache_dir = Path(cache_dir)
        self.triple = triple
        self.retention_days = retention_days
        self.components = list(components)
        self.preserve = preserve
        self.logger = logger
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def _log(self, level: str, msg: str) -> None:
        if self.logger is not None:
            getattr(self.logger, level)(msg)

    def is_expired(self, commit: Commit) -> bool:
        if self.retention_days is None:
            return False
        return commit.date < self.clock() - timedelta(days=self.retention_days)

    def toolchain_dir(self, commit: Commit) -> Path:
        return self.cache_dir / commit.sha

    def resolve(self, commit: Commit) -> Union[Artifact, Unavailable]:
        """
        Download and unpack the toolchain for ``commit``.

        Returns:
            The Artifact, or Unavailable with the reason no toolchain could
            be produced. Never raises for expected unavailability.
        """
        if self.is_expired(commit):
            return Unavailable(
                UnavailableReason.EXPIRED,
                f"{commit.short_sha} from {commit.date:%Y-%m-%d} is older than "
                f"{self.retention_days} days",
            )

        used_fallback_cargo = commit.date < FALLBACK_CARGO_BEFORE
        unpack_into = self.toolchain_dir(commit)

        if (unpack_into / _COMPLETE_MARKER).exists():
            self._log("info", f"Reusing unpacked toolchain {unpack_into}")
            return self._descriptor(commit, unpack_into, used_fallback_cargo)
        if unpack_into.exists():
            shutil.rmtree(unpack_into)

        result = self._install(commit, unpack_into, used_fallback_cargo)
        if isinstance(result, Unavailable):
            shutil.rmtree(unpack_into, ignore_errors=True)
            self._log("info", f"No toolchain for {commit.short_sha}: {result}")
        return result

    def _install(
        self, commit: Commit, unpack_into: Path, used_fallback_cargo: bool
    ) -> Union[Artifact, Unavailable]:
        unpack_into.mkdir(parents=True, exist_ok=True)
        for component in self.components:
            sha = commit.sha
            if component == "cargo" and used_fallback_cargo:
                sha = FALLBACK_CARGO_SHA

            url = self.index.lookup(sha, component)
            if isinstance(url, Unavailable):
                return url

            download_dir = self.cache_dir / "downloads" / sha
            try:
                archive = self.index.fetch(url, download_dir)
            except ArtifactError as e:
                return Unavailable(UnavailableReason.NETWORK_ERROR, str(e))

            try:
                self._extract(archive, component, unpack_into)
            except (
                ArtifactError,
                tarfile.TarError,
                OSError,
                EOFError,
                lzma.LZMAError,
                zlib.error,
            ) as e:
                self._log("warning", f"extracting {archive} failed: {e}")
                archive.unlink(missing_ok=True)
                return Unavailable(
                    UnavailableReason.NETWORK_ERROR,
                    f"corrupt archive {archive.name}: {e}",
                )
            finally:
                if not self.preserve:
                    shutil.rmtree(download_dir, ignore_errors=True)

        artifact = self._descriptor(commit, unpack_into, used_fallback_cargo)
        missing = [
            str(path.relative_to(unpack_into))
            for component, path in (("rustc", artifact.rustc), ("cargo", artifact.cargo))
            if component in self.components and not path.exists()
        ]
        if missing:
            return Unavailable(
                UnavailableReason.NOT_BUILT,
                f"archives for {commit.short_sha} lack {', '.join(missing)}",
            )
        (unpack_into / _COMPLETE_MARKER).touch()
        self._log("info", f"Installed toolchain for {commit.short_sha} in {unpack_into}")
        return artifact

    def _descriptor(
        self, commit: Commit, root: Path, used_fallback_cargo: bool
    ) -> Artifact:
        root = root.resolve()
        return Artifact(
            commit=commit,
            triple=self.triple,
            root=root,
            rustc=root / "rustc" / "bin" / "rustc",
            cargo=root / "cargo" / "bin" / "cargo",
            rustdoc=root / "rustc" / "bin" / "rustdoc",
            used_fallback_cargo=used_fallback_cargo,
            preserve=self.preserve,
        )

    def _extract(self, archive: Path, component: str, unpack_into: Path) -> None:
        """
        Unpack one component archive, dropping its top-level directory.

        The standard library is moved under ``rustc/lib/rustlib``; its shared
        libraries duplicate the ones shipped with the compiler, so those are
        hard-linked from ``rustc/lib`` when available.
        """
        is_std = component == "rust-std"
        std_prefix = PurePosixPath(f"rust-std-{self.triple}", "lib", "rustlib")
        to_link: List[PurePosixPath] = []

        with tarfile.open(archive, "r:*") as tar:
            for member in tar:
                parts = PurePosixPath(member.name).parts
                if len(parts) < 2:
                    continue
                path = PurePosixPath(*parts[1:])
                if path.is_absolute() or ".." in path.parts:
                    raise ArtifactError(f"unsafe path in {archive.name}: {member.name}")
                if member.islnk():
                    self._log("debug", f"skipping hard link {member.name}")
                    continue

                if is_std:
                    try:
                        path = path.relative_to(std_prefix)
                    except ValueError:
                        continue
                    if member.isfile() and path.suffix in _SHARED_LIB_SUFFIXES:
                        to_link.append(path)
                        continue
                    path = PurePosixPath("rustc", "lib", "rustlib") / path

                member.name = str(path)
                tar.extract(member, unpack_into, filter="data")

            for path in to_link:
                self._link_shared_lib(tar, std_prefix / path, path, unpack_into)

    def _link_shared_lib(
        self,
        tar: tarfile.TarFile,
        member_name: PurePosixPath,
        path: PurePosixPath,
        unpack_into: Path,
    ) -> None:
        # path is "<triple>/lib/<name>"; the compiler ships the same file in rustc/lib.
        dst = unpack_into / "rustc" / "lib" / "rustlib" / path
        src = unpack_into / "rustc" / "lib" / path.name
        dst.parent.mkdir(parents=True, exist_ok=True)
        if src.exists():
            self._log("debug", f"linking {src} to {dst}")
            if dst.exists():
                dst.unlink()
            dst.hardlink_to(src)
            return
        for member in tar.getmembers():
            if PurePosixPath(*PurePosixPath(member.name).parts[1:]) == member_name:
                member.name = str(PurePosixPath("rustc", "lib", "rustlib") / path)
                tar.extract(member, unpack_into, filter="data")
                return


def get_host_triple(executor: ShellExecutor) -> str:
    """
    Ask the locally installed compiler for its host triple.

    Raises:
        ConfigError: If the compiler cannot be run; pass a triple explicitly.
    """
    result = executor.run_command(["rustc", "-v", "-V"])
    if not result.success:
        raise ConfigError(
            "running rustc -vV to obtain host triple failed; try --triple"
        )
    for line in result.stdout.splitlines():
        if line.startswith("host: "):
            return line[len("host: "):].strip()
    raise ConfigError("rustc -vV did not report a host triple; try --triple")
