"""GitHub issue operations via the gh CLI.

This is the tracked-item source consumed by the scheduler: listing issues by
label, reading and editing labels, posting comments, finding the approved
plan in the comment history, and resolving work branches and pull requests.
"""

import json
import logging
import subprocess
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger(__name__)

ISSUE_FIELDS = "number,title,body,labels,url"

# Markers the grooming agent uses when it posts a plan comment
PLAN_MARKER = "Implementation Plan"
_REQUIREMENTS_HEADINGS = ("## Requirements", "### Requirements")
_DETAIL_HEADINGS = ("## Steps", "### Steps", "## Files", "### Files")


class GitHubError(RuntimeError):
    """Raised when a gh command fails."""

    def __init__(self, message: str, command: list[str] | None = None, stderr: str = ""):
        super().__init__(message)
        self.command = command or []
        self.stderr = stderr

    @property
    def not_found(self) -> bool:
        return "404" in self.stderr or "Not Found" in self.stderr


@dataclass
class Issue:
    """An open GitHub issue (never a pull request)."""

    number: int
    title: str
    body: str = ""
    labels: list[str] = field(default_factory=list)
    url: str = ""

    @classmethod
    def from_gh(cls, data: dict[str, Any]) -> "Issue":
        return cls(
            number=int(data["number"]),
            title=data.get("title", ""),
            body=data.get("body") or "",
            labels=_label_names(data.get("labels")),
            url=data.get("url", ""),
        )


def _label_names(raw: list | None) -> list[str]:
    """gh returns labels as objects; older output formats use plain strings."""
    names = []
    for label in raw or []:
        if isinstance(label, str):
            names.append(label)
        elif isinstance(label, dict) and label.get("name"):
            names.append(label["name"])
    return names


def run_gh(args: list[str], input: str | None = None, timeout: int = 30) -> subprocess.CompletedProcess:
    """Run a gh command.

    Args:
        args: gh command arguments (without 'gh')
        input: Optional text fed to stdin
        timeout: Seconds before the command is abandoned

    Returns:
        CompletedProcess instance (returncode is always 0)

    Raises:
        GitHubError: If gh is missing, times out, or exits non-zero
    """
    cmd = ["gh"] + args
    try:
        result = subprocess.run(
            cmd,
            input=input,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError:
        raise GitHubError("gh CLI not found - please install GitHub CLI (gh)", cmd) from None
    except subprocess.TimeoutExpired:
        raise GitHubError(f"Timeout after {timeout}s: {' '.join(cmd)}", cmd) from None

    if result.returncode != 0:
        stderr = result.stderr.strip()
        raise GitHubError(
            f"{' '.join(cmd[:3])} failed: {stderr or f'exit code {result.returncode}'}",
            cmd,
            stderr,
        )
    return result


def find_plan_in_comments(comments: list[str]) -> str | None:
    """Return the most recent comment that looks like an implementation plan.

    A comment qualifies if it mentions "Implementation Plan" anywhere, or if
    it has a Requirements heading together with a Steps or Files heading.
    """
    for comment in reversed(comments):
        if PLAN_MARKER in comment:
            return comment
        if (
            any(h in comment for h in _REQUIREMENTS_HEADINGS)
            and any(h in comment for h in _DETAIL_HEADINGS)
        ):
            return comment
    return None


def branch_name_for(item_id: int) -> str:
    return f"feature/issue-{item_id}"


class GitHubIssues:
    """Issue/label/comment/branch operations for one repository.

    Args:
        repo: Repository as ``owner/name``
        base_branch: Branch new work branches are created from
        runner: Callable with the signature of ``run_gh``. Allows injection
            for testing.
    """

    def __init__(
        self,
        repo: str,
        base_branch: str = "main",
        runner: Callable[..., subprocess.CompletedProcess] = run_gh,
    ):
        self.repo = repo
        self.base_branch = base_branch
        self._run = runner

    def _json(self, args: list[str]) -> Any:
        result = self._run(args)
        try:
            return json.loads(result.stdout or "null")
        except json.JSONDecodeError as e:
            raise GitHubError(f"Invalid JSON from gh {' '.join(args[:2])}: {e}", args) from e

    # ------------------------------------------------------------------
    # Issues and labels
    # ------------------------------------------------------------------

    def list_items_by_label(self, label: str) -> list[Issue]:
        """Open issues carrying ``label``. ``gh issue list`` never returns PRs."""
        data = self._json([
            "issue", "list",
            "--repo", self.repo,
            "--state", "open",
            "--label", label,
            "--json", ISSUE_FIELDS,
            "--limit", "100",
        ])
        return [Issue.from_gh(entry) for entry in data or []]

    def get_issue(self, item_id: int) -> Issue:
        data = self._json([
            "issue", "view", str(item_id),
            "--repo", self.repo,
            "--json", ISSUE_FIELDS,
        ])
        return Issue.from_gh(data)

    def get_labels(self, item_id: int) -> list[str]:
        data = self._json([
            "issue", "view", str(item_id),
            "--repo", self.repo,
            "--json", "labels",
        ])
        return _label_names((data or {}).get("labels"))

    def add_label(self, item_id: int, label: str) -> None:
        """Add ``label``, creating it in the repository if it does not exist yet."""
        self._run([
            "api", "-X", "POST", f"repos/{self.repo}/issues/{item_id}/labels",
            "-f", f"labels[]={label}",
        ])

    def remove_label(self, item_id: int, label: str) -> None:
        """Remove ``label``. Removing a label that is not on the issue is a no-op."""
        if label not in self.get_labels(item_id):
            return
        self._run([
            "issue", "edit", str(item_id),
            "--repo", self.repo,
            "--remove-label", label,
        ])

    # ------------------------------------------------------------------
    # Comments
    # ------------------------------------------------------------------

    def append_comment(self, item_id: int, text: str) -> None:
        self._run(
            ["issue", "comment", str(item_id), "--repo", self.repo, "--body-file", "-"],
            input=text,
        )

    def get_comments(self, item_id: int) -> list[str]:
        """Comment bodies in chronological order."""
        data = self._json([
            "issue", "view", str(item_id),
            "--repo", self.repo,
            "--json", "comments",
        ])
        return [c.get("body") or "" for c in (data or {}).get("comments", [])]

    def find_plan_document(self, item_id: int) -> str | None:
        comments = self.get_comments(item_id)
        logger.debug("Found %d comments on issue #%d", len(comments), item_id)
        plan = find_plan_in_comments(comments)
        if plan is None:
            logger.debug("No plan found in comments of issue #%d", item_id)
        return plan

    # ------------------------------------------------------------------
    # Branches and pull requests
    # ------------------------------------------------------------------

    def _ref_sha(self, branch: str) -> str | None:
        """Head SHA of a remote branch, or None if the branch does not exist."""
        try:
            data = self._json(["api", f"repos/{self.repo}/git/ref/heads/{branch}"])
        except GitHubError as e:
            if e.not_found:
                return None
            raise
        return data["object"]["sha"]

    def ensure_branch(self, item_id: int) -> str:
        """Create the work branch for an issue from the base branch, or reuse it."""
        branch = branch_name_for(item_id)
        if self._ref_sha(branch) is not None:
            logger.info("Branch %s already exists, reusing", branch)
            return branch

        base_sha = self._ref_sha(self.base_branch)
        if base_sha is None:
            raise GitHubError(f"Base branch {self.base_branch!r} not found in {self.repo}")

        self._run([
            "api", "-X", "POST", f"repos/{self.repo}/git/refs",
            "-f", f"ref=refs/heads/{branch}",
            "-f", f"sha={base_sha}",
        ])
        logger.info("Created branch %s from %s", branch, self.base_branch)
        return branch

    def find_pull_request_for_branch(self, branch: str) -> int | None:
        """Number of the open PR whose head is ``branch``, if any."""
        data = self._json([
            "pr", "list",
            "--repo", self.repo,
            "--head", branch,
            "--state", "open",
            "--json", "number",
            "--limit", "1",
        ])
        if not data:
            return None
        return int(data[0]["number"])
