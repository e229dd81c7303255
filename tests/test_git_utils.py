"""Tests for issuepilot.git_utils: local branch inspection and cleanup."""

import subprocess
from unittest.mock import patch

import pytest

from issuepilot.git_utils import BranchStatus, delete_local_branch, get_branch_status


def _result(stdout="", returncode=0):
    return subprocess.CompletedProcess(args=["git"], returncode=returncode, stdout=stdout, stderr="")


class FakeGit:
    """Minimal git: a set of local branches and a current branch."""

    def __init__(self, branches, current, log="", porcelain=""):
        self.branches = set(branches)
        self.current = current
        self.log = log
        self.porcelain = porcelain
        self.commands: list[list[str]] = []

    def __call__(self, args, cwd=None, check=True):
        self.commands.append(args)
        if args[:2] == ["rev-parse", "--verify"]:
            name = args[-1].removeprefix("refs/heads/")
            return _result(returncode=0 if name in self.branches else 1)
        if args[:2] == ["rev-parse", "--abbrev-ref"]:
            return _result(self.current + "\n")
        if args[0] == "log":
            return _result(self.log)
        if args[0] == "status":
            return _result(self.porcelain)
        if args[0] == "checkout":
            self.current = args[1]
            return _result()
        if args[:2] == ["branch", "-D"]:
            self.branches.discard(args[2])
            return _result()
        raise AssertionError(f"unexpected git call: {args}")


class TestGetBranchStatus:
    def test_missing_branch(self):
        git = FakeGit(branches={"main"}, current="main")
        with patch("issuepilot.git_utils.run_git", git):
            status = get_branch_status("feature/issue-3")

        assert status == BranchStatus(branch="feature/issue-3")
        assert not status.has_local_work

    def test_unpushed_commits(self):
        git = FakeGit(branches={"main", "feature/issue-3"}, current="main", log="abc wip\ndef more\n")
        with patch("issuepilot.git_utils.run_git", git):
            status = get_branch_status("feature/issue-3", base_branch="main")

        assert status.exists
        assert status.unpushed_commits == ["abc wip", "def more"]
        assert not status.checked_out
        assert ["log", "origin/main..feature/issue-3", "--oneline"] in git.commands
        assert not any(cmd[0] == "status" for cmd in git.commands)

    def test_uncommitted_changes_only_seen_when_checked_out(self):
        git = FakeGit(branches={"feature/issue-3"}, current="feature/issue-3", porcelain=" M app.py\n")
        with patch("issuepilot.git_utils.run_git", git):
            status = get_branch_status("feature/issue-3")

        assert status.checked_out
        assert status.has_uncommitted_changes
        assert status.has_local_work


class TestDeleteLocalBranch:
    def test_switches_away_before_deleting(self):
        git = FakeGit(branches={"main", "feature/issue-3"}, current="feature/issue-3")
        with patch("issuepilot.git_utils.run_git", git):
            assert delete_local_branch("feature/issue-3", base_branch="main") is True

        assert git.current == "main"
        assert "feature/issue-3" not in git.branches

    def test_missing_branch(self):
        git = FakeGit(branches={"main"}, current="main")
        with patch("issuepilot.git_utils.run_git", git):
            assert delete_local_branch("feature/issue-3") is False

    def test_checkout_failure_propagates(self):
        git = FakeGit(branches={"main", "feature/issue-3"}, current="feature/issue-3")

        def failing(args, cwd=None, check=True):
            if args[0] == "checkout":
                raise subprocess.CalledProcessError(1, ["git"] + args, stderr="local changes")
            return git(args, cwd=cwd, check=check)

        with patch("issuepilot.git_utils.run_git", failing):
            with pytest.raises(subprocess.CalledProcessError):
                delete_local_branch("feature/issue-3")
