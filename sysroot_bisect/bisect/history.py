# Copyright (c) Meta Platforms, Inc. and affiliates.

"""
Commit history providers.

Turn a (start, end) pair of revisions into the ancestry-ordered list of
commits that the bisection searches. Two sources are supported:

- a local git checkout, read through the git command line
- the GitHub REST API, for when no checkout is at hand

Only the first-parent chain is listed: on a repository where every change
lands through a merge bot, that chain is exactly the sequence of merges for
which prebuilt toolchains exist.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import requests

from sysroot_bisect.bisect.errors import HistoryError
from sysroot_bisect.bisect.executor import ShellExecutor
from sysroot_bisect.bisect.logger import BisectLogger
from sysroot_bisect.bisect.types import Commit

# Unit separator between fields of one `git log` record.
_FIELD_SEP = "\x1f"
_LOG_FORMAT = "%H%x1f%P%x1f%ct%x1f%an%x1f%s"

GITHUB_API = "https://api.github.com"


def _with_indexes(commits: List[Commit]) -> List[Commit]:
    return [
        Commit(sha=c.sha, date=c.date, summary=c.summary, author=c.author, index=i)
        for i, c in enumerate(commits)
    ]


class HistoryProvider(ABC):
    """Produces the ordered search space between two revisions."""

    @abstractmethod
    def ordered_commits(self, start: str, end: str) -> List[Commit]:
        """
        List commits from start to end, both inclusive, oldest first.

        Args:
            start: Revision of the first (known good) commit.
            end: Revision of the last (known bad) commit.

        Returns:
            Commits with ``index`` set to their position in the list.

        Raises:
            HistoryError: If either endpoint cannot be resolved or end is not
                a descendant of start.
        """
        pass

    @abstractmethod
    def lookup(self, rev: str) -> Commit:
        """Resolve a single revision to a Commit (index 0)."""
        pass

    author: Optional[str] = None

    def _check_author(self, commit: Commit) -> None:
        if self.author is not None and commit.author != self.author:
            raise HistoryError(
                f"Expected author {self.author} for {commit.sha}, found {commit.author!r}"
            )

    def _filter_author(self, commits: List[Commit]) -> List[Commit]:
        """Drop interior commits by other authors; endpoints must match."""
        self._check_author(commits[0])
        self._check_author(commits[-1])
        kept = [commits[0]]
        for commit in commits[1:]:
            if self.author is not None and commit.author != self.author:
                self.logger.warning(
                    f"{commit.short_sha} has non-{self.author} author "
                    f"{commit.author!r}, skipping"
                )
                continue
            kept.append(commit)
        return kept


class GitHistoryProvider(HistoryProvider):
    """
    Reads the first-parent history of a local git checkout.

    Example:
        >>> logger = BisectLogger("./bisect_logs")
        >>> provider = GitHistoryProvider(Path("rust"), ShellExecutor(logger), logger)
        >>> commits = provider.ordered_commits("927c55d8", "master")
    """

    def __init__(
        self,
        repo_dir: Path,
        executor: ShellExecutor,
        logger: BisectLogger,
        author: Optional[str] = None,
    ) -> None:
        """
        Args:
            repo_dir: Path to the git checkout.
            executor: ShellExecutor used to run git.
            logger: BisectLogger instance for logging.
            author: If set, only commits by this author are searched and both
                endpoints must be authored by it.
        """
        self.repo_dir = Path(repo_dir)
        self.executor = executor
        self.logger = logger
        self.author = author

    def _git(self, *args: str) -> str:
        result = self.executor.run_command(["git", *args], cwd=str(self.repo_dir))
        if not result.success:
            raise HistoryError(
                f"git {' '.join(args)} failed in {self.repo_dir}: {result.stderr.strip()}"
            )
        return result.stdout

    def _resolve(self, rev: str) -> str:
        result = self.executor.run_command(
            ["git", "rev-parse", "--verify", "--quiet", f"{rev}^{{commit}}"],
            cwd=str(self.repo_dir),
        )
        if not result.success or not result.stdout.strip():
            raise HistoryError(f"Could not find a commit for revision specifier '{rev}'")
        return result.stdout.strip()

    @staticmethod
    def _parse_record(line: str) -> Tuple[Commit, List[str]]:
        parts = line.split(_FIELD_SEP)
        if len(parts) != 5:
            raise HistoryError(f"Unexpected git log record: {line!r}")
        sha, parents, timestamp, author, summary = parts
        commit = Commit(
            sha=sha,
            date=datetime.fromtimestamp(int(timestamp), tz=timezone.utc),
            summary=summary,
            author=author,
        )
        return commit, parents.split()

    def lookup(self, rev: str) -> Commit:
        if not self.repo_dir.exists():
            raise HistoryError(f"Repository not found: {self.repo_dir}")
        sha = self._resolve(rev)
        line = self._git("log", "-1", f"--format={_LOG_FORMAT}", sha)
        commit, _ = self._parse_record(line.strip("\n"))
        return commit

    def ordered_commits(self, start: str, end: str) -> List[Commit]:
        if not self.repo_dir.exists():
            raise HistoryError(f"Repository not found: {self.repo_dir}")

        start_sha = self._resolve(start)
        end_sha = self._resolve(end)
        if start_sha == end_sha:
            raise HistoryError(f"Start and end are the same commit: {start_sha}")

        ancestry = self.executor.run_command(
            ["git", "merge-base", "--is-ancestor", start_sha, end_sha],
            cwd=str(self.repo_dir),
        )
        if ancestry.exit_code == 1:
            raise HistoryError(f"{end_sha} is not a descendant of {start_sha}")
        if not ancestry.success:
            raise HistoryError(
                f"Could not check ancestry of {start_sha}..{end_sha}: "
                f"{ancestry.stderr.strip()}"
            )

        first_line = self._git("log", "-1", f"--format={_LOG_FORMAT}", start_sha)
        first, _ = self._parse_record(first_line.strip("\n"))

        output = self._git(
            "log",
            "--first-parent",
            "--reverse",
            f"--format={_LOG_FORMAT}",
            f"{start_sha}..{end_sha}",
        )
        records = [self._parse_record(line) for line in output.splitlines() if line]
        if not records or not records[0][1] or records[0][1][0] != start_sha:
            raise HistoryError(
                f"{start_sha} is not on the first-parent chain of {end_sha}"
            )

        commits = self._filter_author([first] + [commit for commit, _ in records])

        self.logger.info(
            f"Loaded {len(commits)} commits from {self.repo_dir} "
            f"({first.short_sha}..{commits[-1].short_sha})"
        )
        return _with_indexes(commits)


class GitHubHistoryProvider(HistoryProvider):
    """
    Lists first-parent history through the GitHub commits API.

    The API lists everything reachable from ``end`` in date order, merged
    branches included. Pages are fetched newest-first until the chain of
    first parents from ``end`` reaches ``start``; commits off that chain are
    dropped. Running out of pages means ``start`` is not on the chain.
    """

    PER_PAGE = 100

    def __init__(
        self,
        repo: str,
        logger: BisectLogger,
        session: Optional[requests.Session] = None,
        token: Optional[str] = None,
        author: Optional[str] = None,
        max_pages: int = 50,
        timeout: float = 30.0,
    ) -> None:
        """
        Args:
            repo: Repository as "owner/name" (e.g. "rust-lang/rust").
            logger: BisectLogger instance for logging.
            session: requests.Session to use (one is created if omitted).
            token: GitHub API token, sent as "Authorization: token ...".
            author: If set, only commits by this author are searched and both
                endpoints must be authored by it.
            max_pages: Upper bound on pages fetched before giving up.
            timeout: Per-request timeout in seconds.
        """
        self.repo = repo
        self.logger = logger
        self.session = session or requests.Session()
        self.token = token
        self.author = author
        self.max_pages = max_pages
        self.timeout = timeout

    def _get(self, url: str, params: Optional[Dict[str, Any]] = None) -> requests.Response:
        headers = {"Accept": "application/vnd.github+json"}
        if self.token:
            headers["Authorization"] = f"token {self.token}"
        self.logger.info(f"Requesting: {url}")
        try:
            response = self.session.get(
                url, params=params, headers=headers, timeout=self.timeout
            )
        except requests.RequestException as e:
            raise HistoryError(f"API request to {url} failed: {e}") from e
        if response.status_code in (404, 422):
            raise HistoryError(f"{url} returned {response.status_code}: unknown revision")
        if not response.ok:
            raise HistoryError(f"{url} returned {response.status_code}: {response.text[:200]}")
        return response

    def _resolve(self, rev: str) -> str:
        data = self._get(f"{GITHUB_API}/repos/{self.repo}/commits/{rev}").json()
        return data["sha"]

    def lookup(self, rev: str) -> Commit:
        data = self._get(f"{GITHUB_API}/repos/{self.repo}/commits/{rev}").json()
        return self._parse_commit(data)

    @staticmethod
    def _parse_commit(data: Dict[str, Any]) -> Commit:
        detail = data.get("commit", {})
        committer = detail.get("committer") or {}
        author = detail.get("author") or {}
        message = detail.get("message", "")
        date = datetime.fromisoformat(committer["date"].replace("Z", "+00:00"))
        return Commit(
            sha=data["sha"],
            date=date,
            summary=message.splitlines()[0] if message else "",
            author=author.get("name", ""),
        )

    def ordered_commits(self, start: str, end: str) -> List[Commit]:
        start_sha = self._resolve(start)
        end_sha = self._resolve(end)
        if start_sha == end_sha:
            raise HistoryError(f"Start and end are the same commit: {start_sha}")

        url: Optional[str] = f"{GITHUB_API}/repos/{self.repo}/commits"
        params: Optional[Dict[str, Any]] = {"sha": end_sha, "per_page": self.PER_PAGE}

        # sha -> (commit, first parent); the listing is in date order and
        # includes commits of merged branches.
        seen: Dict[str, Tuple[Commit, Optional[str]]] = {}
        pages = 0
        while url is not None and pages < self.max_pages:
            response = self._get(url, params)
            value = response.json()
            if not isinstance(value, list):
                raise HistoryError(f"{url} returned non-array response: {value}")
            pages += 1
            for item in value:
                parents = item.get("parents") or []
                first_parent = parents[0]["sha"] if parents else None
                seen[item["sha"]] = (self._parse_commit(item), first_parent)

            chain = self._first_parent_chain(seen, start_sha, end_sha)
            if chain is not None:
                commits = self._filter_author(chain)
                self.logger.info(
                    f"Loaded {len(commits)} commits from {self.repo} in {pages} page(s)"
                )
                return _with_indexes(commits)
            # The next link already carries the query string.
            url = response.links.get("next", {}).get("url")
            params = None

        raise HistoryError(
            f"Couldn't find first commit {start_sha} on the first-parent chain of {end_sha}"
        )

    @staticmethod
    def _first_parent_chain(
        seen: Dict[str, Tuple[Commit, Optional[str]]], start_sha: str, end_sha: str
    ) -> Optional[List[Commit]]:
        """
        Walk first parents from end back to start, oldest first.

        Returns None while a commit on the way has not been listed yet.

        Raises:
            HistoryError: If the chain ends at a root without reaching start.
        """
        chain: List[Commit] = []
        sha: Optional[str] = end_sha
        while sha != start_sha:
            if sha is None:
                raise HistoryError(
                    f"{start_sha} is not on the first-parent chain of {end_sha}"
                )
            if sha not in seen:
                return None
            commit, sha = seen[sha]
            chain.append(commit)
        if start_sha not in seen:
            return None
        chain.append(seen[start_sha][0])
        chain.reverse()
        return chain
