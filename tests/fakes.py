"""In-memory stand-ins for GitHub and the agent spawner.

FakeTracker keeps label state the test can mutate directly to simulate a
worker (or a human) changing labels out of band. FakeSpawner records every
task it is given and hands out increasing fake PIDs. StubRunner stands in
for the gh CLI behind a real GitHubIssues.
"""

import json
import subprocess

from issuepilot.github import GitHubError, Issue, branch_name_for
from issuepilot.spawner import SpawnResult, WorkerTask

PLAN = "## Implementation Plan\n\n### Requirements\n- do it\n\n### Steps\n1. do it"


class FakeTracker:
    def __init__(self):
        self.issues: dict[int, Issue] = {}
        self.labels: dict[int, list[str]] = {}
        self.comments: dict[int, list[str]] = {}
        self.plans: dict[int, str] = {}
        self.pull_requests: dict[str, int] = {}
        self.branches: set[str] = set()
        self.calls: list[tuple] = []
        # Methods named here raise GitHubError when called
        self.fail_on: set[str] = set()

    def add_issue(self, number: int, *labels: str, title: str | None = None, plan: str | None = None) -> Issue:
        issue = Issue(number=number, title=title or f"Issue {number}", body="body", url=f"https://example/{number}")
        self.issues[number] = issue
        self.labels[number] = list(labels)
        if plan is not None:
            self.plans[number] = plan
        return issue

    def _record(self, name: str, *args):
        self.calls.append((name, *args))
        if name in self.fail_on:
            raise GitHubError(f"{name} failed")

    def list_items_by_label(self, label: str) -> list[Issue]:
        self._record("list_items_by_label", label)
        return [
            self.issues[number]
            for number, labels in self.labels.items()
            if label in labels and number in self.issues
        ]

    def get_labels(self, item_id: int) -> list[str]:
        self._record("get_labels", item_id)
        return list(self.labels.get(item_id, []))

    def add_label(self, item_id: int, label: str) -> None:
        self._record("add_label", item_id, label)
        current = self.labels.setdefault(item_id, [])
        if label not in current:
            current.append(label)

    def remove_label(self, item_id: int, label: str) -> None:
        self._record("remove_label", item_id, label)
        current = self.labels.setdefault(item_id, [])
        if label in current:
            current.remove(label)

    def append_comment(self, item_id: int, text: str) -> None:
        self._record("append_comment", item_id, text)
        self.comments.setdefault(item_id, []).append(text)

    def find_plan_document(self, item_id: int) -> str | None:
        self._record("find_plan_document", item_id)
        return self.plans.get(item_id)

    def ensure_branch(self, item_id: int) -> str:
        self._record("ensure_branch", item_id)
        branch = branch_name_for(item_id)
        self.branches.add(branch)
        return branch

    def find_pull_request_for_branch(self, branch: str) -> int | None:
        self._record("find_pull_request_for_branch", branch)
        return self.pull_requests.get(branch)


class FakeSpawner:
    def __init__(self, registry=None, first_pid: int = 1000):
        self.registry = registry
        self.spawned: list[WorkerTask] = []
        self.killed: list[int] = []
        self.fail_for: set[int] = set()
        self._next_pid = first_pid

    def spawn(self, task: WorkerTask) -> SpawnResult:
        self.spawned.append(task)
        if task.item_id in self.fail_for:
            return SpawnResult(success=False, error="terminal not found")
        pid = self._next_pid
        self._next_pid += 1
        if self.registry is not None:
            self.registry.track(task.item_id, pid)
        return SpawnResult(success=True, handle=pid)

    def kill(self, handle: int) -> bool:
        self.killed.append(handle)
        return True

    @property
    def spawned_ids(self) -> list[int]:
        return [task.item_id for task in self.spawned]


def completed_process(stdout="", returncode=0, stderr=""):
    return subprocess.CompletedProcess(args=["gh"], returncode=returncode, stdout=stdout, stderr=stderr)


class StubRunner:
    """Answers gh invocations from a list of (prefix, response) rules."""

    def __init__(self):
        self.calls: list[tuple[list[str], str | None]] = []
        self.rules: list[tuple] = []

    def on(self, *prefix: str, stdout=None, error: GitHubError | None = None):
        self.rules.append((list(prefix), stdout, error))
        return self

    def __call__(self, args, input=None, timeout=30):
        self.calls.append((args, input))
        for prefix, stdout, error in self.rules:
            if args[:len(prefix)] == prefix:
                if error is not None:
                    raise error
                text = stdout if isinstance(stdout, str) else json.dumps(stdout)
                return completed_process(text)
        return completed_process("")
