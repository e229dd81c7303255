"""Local git helpers used by the operator CLI for work-branch cleanup."""

import subprocess
from dataclasses import dataclass, field
from pathlib import Path


def run_git(args: list[str], cwd: Path | str | None = None, check: bool = True) -> subprocess.CompletedProcess:
    """Run a git command.

    Args:
        args: Git command arguments (without 'git')
        cwd: Working directory for the command
        check: Raise exception on non-zero exit

    Returns:
        CompletedProcess instance
    """
    cmd = ["git"] + args
    return subprocess.run(
        cmd,
        cwd=cwd,
        capture_output=True,
        text=True,
        check=check,
        timeout=120,
    )


@dataclass
class BranchStatus:
    """Local state of a work branch."""

    branch: str
    exists: bool = False
    checked_out: bool = False
    unpushed_commits: list[str] = field(default_factory=list)
    has_uncommitted_changes: bool = False

    @property
    def has_local_work(self) -> bool:
        return bool(self.unpushed_commits) or self.has_uncommitted_changes


def get_current_branch(cwd: Path | str | None = None) -> str:
    result = run_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd, check=False)
    if result.returncode != 0:
        return ""
    return result.stdout.strip()


def branch_exists(branch: str, cwd: Path | str | None = None) -> bool:
    result = run_git(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], cwd=cwd, check=False)
    return result.returncode == 0


def get_branch_status(branch: str, base_branch: str = "main", cwd: Path | str | None = None) -> BranchStatus:
    """Inspect a local branch for work that would be lost by deleting it.

    Unpushed commits are those on ``branch`` but not on ``origin/<base>``.
    Uncommitted changes can only be seen when the branch is checked out.
    """
    status = BranchStatus(branch=branch)
    if not branch_exists(branch, cwd=cwd):
        return status
    status.exists = True

    result = run_git(["log", f"origin/{base_branch}..{branch}", "--oneline"], cwd=cwd, check=False)
    if result.returncode == 0:
        status.unpushed_commits = [line for line in result.stdout.splitlines() if line.strip()]

    status.checked_out = get_current_branch(cwd=cwd) == branch
    if status.checked_out:
        result = run_git(["status", "--porcelain"], cwd=cwd, check=False)
        status.has_uncommitted_changes = bool(result.stdout.strip())

    return status


def delete_local_branch(branch: str, base_branch: str = "main", cwd: Path | str | None = None) -> bool:
    """Force-delete a local branch, switching to ``base_branch`` first if needed.

    Returns:
        True if the branch was deleted, False if it did not exist

    Raises:
        subprocess.CalledProcessError: If checkout or deletion fails
    """
    if not branch_exists(branch, cwd=cwd):
        return False

    if get_current_branch(cwd=cwd) == branch:
        run_git(["checkout", base_branch], cwd=cwd)

    run_git(["branch", "-D", branch], cwd=cwd)
    return True
