# Copyright (c) Meta Platforms, Inc. and affiliates.

"""Tests for the git and GitHub commit history providers."""

import os
import shutil
import subprocess
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock

SHAS = [f"{c}" * 40 for c in "abcdef"]


def _result(stdout="", exit_code=0, stderr=""):
    from sysroot_bisect.bisect.executor import CommandResult

    return CommandResult(
        command="git",
        exit_code=exit_code,
        stdout=stdout,
        stderr=stderr,
        duration_seconds=0.0,
    )


def _record(sha, parents, timestamp, author="bors", summary="Auto merge"):
    return "\x1f".join([sha, " ".join(parents), str(timestamp), author, summary])


class FakeGit:
    """Answers the git invocations GitHistoryProvider makes."""

    def __init__(self, chain, authors=None, ancestor=True, refs=None):
        self.chain = chain
        self.authors = authors or {}
        self.ancestor = ancestor
        self.refs = refs or {}
        self.commands = []

    def _record(self, i):
        parents = [self.chain[i - 1]] if i > 0 else []
        return _record(
            self.chain[i],
            parents,
            1500000000 + i * 3600,
            author=self.authors.get(i, "bors"),
            summary=f"Auto merge of #{i}",
        )

    def run_command(self, cmd, cwd=None, **kwargs):
        self.commands.append(cmd)
        args = cmd[1:]
        if args[0] == "rev-parse":
            rev = args[-1][: -len("^{commit}")]
            sha = self.refs.get(rev, rev)
            if sha in self.chain:
                return _result(sha + "\n")
            return _result(exit_code=1)
        if args[0] == "merge-base":
            return _result(exit_code=0 if self.ancestor else 1)
        if args[0] == "log" and args[1] == "-1":
            return _result(self._record(self.chain.index(args[-1])) + "\n")
        if args[0] == "log":
            start, end = args[-1].split("..")
            lo, hi = self.chain.index(start), self.chain.index(end)
            lines = [self._record(i) for i in range(lo + 1, hi + 1)]
            return _result("\n".join(lines) + "\n")
        raise AssertionError(f"unexpected command {cmd}")


class GitHistoryProviderTest(unittest.TestCase):
    """Tests for GitHistoryProvider with a scripted executor."""

    def _provider(self, fake, author=None):
        from sysroot_bisect.bisect.history import GitHistoryProvider

        tmpdir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, tmpdir)
        executor = MagicMock()
        executor.run_command = fake.run_command
        return GitHistoryProvider(Path(tmpdir), executor, MagicMock(), author=author)

    def test_ordered_commits(self):
        provider = self._provider(FakeGit(SHAS, refs={"master": SHAS[-1]}))
        commits = provider.ordered_commits(SHAS[1], "master")

        self.assertEqual([c.sha for c in commits], SHAS[1:])
        self.assertEqual([c.index for c in commits], list(range(5)))
        self.assertEqual(commits[0].summary, "Auto merge of #1")
        self.assertEqual(commits[0].date.tzinfo is not None, True)
        self.assertLess(commits[0].date, commits[-1].date)

    def test_uses_first_parent_log(self):
        fake = FakeGit(SHAS)
        self._provider(fake).ordered_commits(SHAS[0], SHAS[2])
        log = [c for c in fake.commands if c[1] == "log" and c[2] != "-1"][0]
        self.assertIn("--first-parent", log)
        self.assertIn("--reverse", log)

    def test_unknown_revision(self):
        from sysroot_bisect.bisect.errors import HistoryError

        provider = self._provider(FakeGit(SHAS))
        with self.assertRaisesRegex(HistoryError, "nosuchrev"):
            provider.ordered_commits("nosuchrev", SHAS[2])

    def test_same_start_and_end(self):
        from sysroot_bisect.bisect.errors import HistoryError

        provider = self._provider(FakeGit(SHAS))
        with self.assertRaises(HistoryError):
            provider.ordered_commits(SHAS[2], SHAS[2])

    def test_end_not_descendant(self):
        from sysroot_bisect.bisect.errors import HistoryError

        provider = self._provider(FakeGit(SHAS, ancestor=False))
        with self.assertRaisesRegex(HistoryError, "not a descendant"):
            provider.ordered_commits(SHAS[3], SHAS[1])

    def test_author_filter_skips_other_commits(self):
        fake = FakeGit(SHAS, authors={2: "someone"})
        commits = self._provider(fake, author="bors").ordered_commits(SHAS[0], SHAS[4])
        self.assertEqual([c.sha for c in commits], [SHAS[0], SHAS[1], SHAS[3], SHAS[4]])
        self.assertEqual([c.index for c in commits], [0, 1, 2, 3])

    def test_author_filter_checks_endpoints(self):
        from sysroot_bisect.bisect.errors import HistoryError

        fake = FakeGit(SHAS, authors={4: "someone"})
        with self.assertRaisesRegex(HistoryError, "Expected author bors"):
            self._provider(fake, author="bors").ordered_commits(SHAS[0], SHAS[4])

    def test_lookup(self):
        provider = self._provider(FakeGit(SHAS, refs={"HEAD": SHAS[3]}))
        commit = provider.lookup("HEAD")
        self.assertEqual(commit.sha, SHAS[3])
        self.assertEqual(commit.author, "bors")

    def test_missing_repository(self):
        from sysroot_bisect.bisect.errors import HistoryError
        from sysroot_bisect.bisect.history import GitHistoryProvider

        provider = GitHistoryProvider(Path("/nonexistent/repo"), MagicMock(), MagicMock())
        with self.assertRaises(HistoryError):
            provider.ordered_commits("a", "b")


@unittest.skipUnless(shutil.which("git"), "git not installed")
class GitHistoryProviderRealRepoTest(unittest.TestCase):
    """Runs GitHistoryProvider against a throwaway repository."""

    def _git(self, repo, *args):
        env = {
            **os.environ,
            "GIT_AUTHOR_NAME": "bors",
            "GIT_AUTHOR_EMAIL": "bors@example.com",
            "GIT_COMMITTER_NAME": "bors",
            "GIT_COMMITTER_EMAIL": "bors@example.com",
        }
        return subprocess.run(
            ["git", *args], cwd=repo, env=env, check=True, capture_output=True, text=True
        ).stdout.strip()

    def test_first_parent_chain(self):
        from sysroot_bisect.bisect.executor import ShellExecutor
        from sysroot_bisect.bisect.history import GitHistoryProvider

        with tempfile.TemporaryDirectory() as repo:
            self._git(repo, "init", "-q", "-b", "main")
            shas = []
            for i in range(4):
                Path(repo, "file.txt").write_text(f"{i}\n")
                self._git(repo, "add", "file.txt")
                self._git(repo, "commit", "-q", "-m", f"Auto merge of #{i}")
                shas.append(self._git(repo, "rev-parse", "HEAD"))

            # A side branch merged with --no-ff: its commit is not first-parent.
            self._git(repo, "checkout", "-q", "-b", "topic")
            Path(repo, "other.txt").write_text("x\n")
            self._git(repo, "add", "other.txt")
            self._git(repo, "commit", "-q", "-m", "topic work")
            topic = self._git(repo, "rev-parse", "HEAD")
            self._git(repo, "checkout", "-q", "main")
            self._git(repo, "merge", "-q", "--no-ff", "-m", "Auto merge of #4", "topic")
            merge = self._git(repo, "rev-parse", "HEAD")

            logger = MagicMock()
            provider = GitHistoryProvider(Path(repo), ShellExecutor(logger), logger)
            commits = provider.ordered_commits(shas[1], "main")

            self.assertEqual([c.sha for c in commits], shas[1:] + [merge])
            self.assertNotIn(topic, [c.sha for c in commits])


def _api_commit(sha, parents=(), message="Auto merge of #1\n\ndetails", day=1, author="bors"):
    return {
        "sha": sha,
        "parents": [{"sha": p} for p in parents],
        "commit": {
            "author": {"name": author, "date": f"2017-06-{day:02d}T00:00:00Z"},
            "committer": {"name": author, "date": f"2017-06-{day:02d}T00:00:00Z"},
            "message": message,
        },
    }


def _response(payload, status=200, links=None):
    response = MagicMock()
    response.status_code = status
    response.ok = status < 400
    response.json.return_value = payload
    response.links = links or {}
    response.text = ""
    return response


class GitHubHistoryProviderTest(unittest.TestCase):
    """Tests for GitHubHistoryProvider with a mocked requests session."""

    def _provider(self, responses, **kwargs):
        from sysroot_bisect.bisect.history import GitHubHistoryProvider

        session = MagicMock()
        session.get.side_effect = responses
        provider = GitHubHistoryProvider(
            "rust-lang/rust", MagicMock(), session=session, **kwargs
        )
        return provider, session

    def test_walks_pages_until_start(self):
        start, mid1, mid2, end = SHAS[:4]
        provider, session = self._provider(
            [
                _response(_api_commit(start)),
                _response(_api_commit(end, [mid2])),
                _response(
                    [_api_commit(end, [mid2], day=4), _api_commit(mid2, [mid1], day=3)],
                    links={"next": {"url": "https://api.github.com/page2"}},
                ),
                _response([_api_commit(mid1, [start], day=2), _api_commit(start, day=1)]),
            ],
            token="ghp_x",
        )
        commits = provider.ordered_commits("start", "end")

        self.assertEqual([c.sha for c in commits], [start, mid1, mid2, end])
        self.assertEqual([c.index for c in commits], [0, 1, 2, 3])
        self.assertEqual(commits[0].summary, "Auto merge of #1")
        last_call = session.get.call_args_list[-1]
        self.assertEqual(last_call.args[0], "https://api.github.com/page2")
        self.assertEqual(last_call.kwargs["headers"]["Authorization"], "token ghp_x")

    def test_branch_commits_are_not_candidates(self):
        start, branch, merge = SHAS[0], SHAS[1], SHAS[2]
        provider, _ = self._provider(
            [
                _response(_api_commit(start)),
                _response(_api_commit(merge, [start, branch])),
                _response(
                    [
                        _api_commit(merge, [start, branch], day=3),
                        _api_commit(branch, [start], day=2, author="someone"),
                        _api_commit(start, day=1),
                    ]
                ),
            ]
        )
        commits = provider.ordered_commits("start", "end")
        self.assertEqual([c.sha for c in commits], [start, merge])

    def test_chain_follows_parents_not_dates(self):
        start, older, newer, end = SHAS[:4]
        # "older" carries a later date than "newer" but comes first in ancestry.
        provider, _ = self._provider(
            [
                _response(_api_commit(start)),
                _response(_api_commit(end, [newer])),
                _response(
                    [
                        _api_commit(end, [newer], day=9),
                        _api_commit(older, [start], day=8),
                        _api_commit(newer, [older], day=7),
                        _api_commit(start, day=1),
                    ]
                ),
            ]
        )
        commits = provider.ordered_commits("start", "end")
        self.assertEqual([c.sha for c in commits], [start, older, newer, end])

    def test_start_not_found(self):
        from sysroot_bisect.bisect.errors import HistoryError

        provider, _ = self._provider(
            [
                _response(_api_commit(SHAS[0])),
                _response(_api_commit(SHAS[3], [SHAS[2]])),
                _response(
                    [_api_commit(SHAS[3], [SHAS[2]]), _api_commit(SHAS[2], [SHAS[1]])]
                ),
            ]
        )
        with self.assertRaisesRegex(HistoryError, "Couldn't find first commit"):
            provider.ordered_commits("start", "end")

    def test_start_off_the_chain(self):
        from sysroot_bisect.bisect.errors import HistoryError

        start, root, end = SHAS[0], SHAS[1], SHAS[2]
        provider, _ = self._provider(
            [
                _response(_api_commit(start)),
                _response(_api_commit(end, [root])),
                _response([_api_commit(end, [root]), _api_commit(root)]),
            ]
        )
        with self.assertRaisesRegex(HistoryError, "not on the first-parent chain"):
            provider.ordered_commits("start", "end")

    def test_unknown_revision(self):
        from sysroot_bisect.bisect.errors import HistoryError

        provider, _ = self._provider([_response({"message": "No commit"}, status=422)])
        with self.assertRaisesRegex(HistoryError, "unknown revision"):
            provider.ordered_commits("nosuchrev", "end")

    def test_request_exception(self):
        import requests
        from sysroot_bisect.bisect.errors import HistoryError

        provider, _ = self._provider(requests.ConnectionError("offline"))
        with self.assertRaisesRegex(HistoryError, "offline"):
            provider.lookup("master")

    def test_author_filter_skips_other_commits(self):
        start, other, end = SHAS[0], SHAS[1], SHAS[2]
        provider, session = self._provider(
            [
                _response(_api_commit(start)),
                _response(_api_commit(end, [other])),
                _response(
                    [
                        _api_commit(end, [other], day=3),
                        _api_commit(other, [start], day=2, author="someone"),
                        _api_commit(start, day=1),
                    ]
                ),
            ],
            author="bors",
        )
        commits = provider.ordered_commits("start", "end")
        self.assertEqual([c.sha for c in commits], [start, end])
        params = session.get.call_args_list[-1].kwargs["params"]
        self.assertEqual(params["sha"], end)

    def test_author_filter_checks_endpoints(self):
        from sysroot_bisect.bisect.errors import HistoryError

        start, end = SHAS[0], SHAS[1]
        provider, _ = self._provider(
            [
                _response(_api_commit(start)),
                _response(_api_commit(end, [start], author="someone")),
                _response(
                    [_api_commit(end, [start], author="someone"), _api_commit(start)]
                ),
            ],
            author="bors",
        )
        with self.assertRaisesRegex(HistoryError, "Expected author bors"):
            provider.ordered_commits("start", "end")


if __name__ == "__main__":
    unittest.main()
