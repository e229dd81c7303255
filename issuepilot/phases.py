"""Phase processors: claim, label, and spawn work for each pipeline stage.

Every processor follows the same protocol for a candidate issue:

    acquire lease → check preconditions → swap pickup label for the
    in-flight label → comment → spawn worker → attach handle

A processor never does externally visible work for an issue without holding
its lease. Preconditions that are not met yet (no approved plan, no PR) release
the lease silently so the issue is retried on a later tick. Anything else that
goes wrong after the claim goes through ``handle_failure``.

Grooming is a singleton: at most one grooming lease exists system-wide.
Building and reviewing run up to their configured parallelism.
"""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .config import IN_FLIGHT_LABEL_KEYS, PICKUP_LABEL_KEYS, Phase, in_flight_label, pickup_label
from .github import Issue, branch_name_for
from .leases import LeaseStore
from .prompt_renderer import render_prompt
from .spawner import WorkerRegistry, WorkerTask

logger = logging.getLogger(__name__)

GROOMING_SLOTS = 1

# Longest error excerpt posted in a failure comment
MAX_ERROR_CHARS = 1000


@dataclass
class PhaseContext:
    """Collaborators shared by the processors for the lifetime of the process.

    ``tracker`` is the tracked-item source (``GitHubIssues`` in production)
    and ``spawner`` launches workers (``AgentSpawner`` in production).
    """

    tracker: Any
    store: LeaseStore
    spawner: Any
    registry: WorkerRegistry
    labels: dict[str, str]
    repo: str
    max_parallel_builds: int = 3
    max_parallel_reviews: int = 2
    stop: threading.Event = field(default_factory=threading.Event)


# =============================================================================
# Failure path
# =============================================================================


def _best_effort(action: Callable[..., Any], *args: Any) -> None:
    """Run one external call, logging instead of raising on failure."""
    try:
        action(*args)
    except Exception as e:
        logger.error("%s%r failed: %s", getattr(action, "__name__", action), args, e)


def failure_comment(error: str, retry_label: str) -> str:
    return (
        "❌ Agent encountered an error while working on this issue.\n\n"
        f"```\n{error[:MAX_ERROR_CHARS]}\n```\n\n"
        f"Please review and re-add the `{retry_label}` label to retry from grooming."
    )


def handle_failure(ctx: PhaseContext, item_id: int, error: str) -> None:
    """Mark an issue failed on GitHub and release its lease.

    Removes every in-flight and pickup label, adds the failed label and
    posts a diagnostic naming the label to reapply. Each call is attempted
    even if an earlier one failed. The lease is always released; the issue
    only comes back through a human reapplying the grooming label.
    """
    labels = ctx.labels
    logger.warning("Issue #%d failed: %s", item_id, error.splitlines()[0] if error else "")

    # A failure before the label swap would otherwise leave the pickup label on
    stale_keys = list(IN_FLIGHT_LABEL_KEYS.values()) + list(PICKUP_LABEL_KEYS.values())

    try:
        for key in dict.fromkeys(stale_keys):
            _best_effort(ctx.tracker.remove_label, item_id, labels[key])
        _best_effort(ctx.tracker.add_label, item_id, labels["failed"])
        _best_effort(
            ctx.tracker.append_comment,
            item_id,
            failure_comment(error, labels["needs_grooming"]),
        )
    finally:
        ctx.registry.forget(item_id)
        ctx.store.release(item_id)


# =============================================================================
# Shared claim loop
# =============================================================================


def _post_comment(ctx: PhaseContext, item_id: int, text: str) -> None:
    """Comments may lag behind labels; a failed post never rolls back a label."""
    try:
        ctx.tracker.append_comment(item_id, text)
    except Exception as e:
        logger.error("Could not comment on issue #%d: %s", item_id, e)


def _select_candidates(ctx: PhaseContext, phase: Phase, limit: int) -> list[Issue]:
    """Unleased issues carrying the phase's pickup label, oldest first."""
    issues = ctx.tracker.list_items_by_label(pickup_label(phase, ctx.labels))
    leased = ctx.store.leased_ids()
    candidates = sorted(
        (issue for issue in issues if issue.number not in leased),
        key=lambda issue: issue.number,
    )
    return candidates[:limit]


def _begin_phase(ctx: PhaseContext, issue: Issue, phase: Phase, task: WorkerTask, comment: str) -> bool:
    """Move an issue onto the in-flight label and launch its worker.

    Returns:
        True if the worker was launched
    """
    ctx.tracker.remove_label(issue.number, pickup_label(phase, ctx.labels))
    ctx.tracker.add_label(issue.number, in_flight_label(phase, ctx.labels))
    _post_comment(ctx, issue.number, comment)

    result = ctx.spawner.spawn(task)
    if not result.success:
        handle_failure(ctx, issue.number, result.error or "Worker failed to start")
        return False

    if result.handle is not None:
        ctx.store.attach_handle(issue.number, result.handle)
    return True


def _run_phase(
    ctx: PhaseContext,
    phase: Phase,
    max_parallel: int,
    start: Callable[[PhaseContext, Issue], bool],
) -> list[int]:
    """Claim and start up to the free capacity of a phase.

    Args:
        ctx: Shared collaborators
        phase: Phase being processed
        max_parallel: Capacity of the phase
        start: Runs the phase-specific steps for a claimed issue; returns
            True if a worker was launched

    Returns:
        Issue numbers for which a worker was launched, in launch order
    """
    active = ctx.store.list_by_phase(phase)
    available = max_parallel - len(active)
    if available <= 0:
        logger.debug("%s at capacity (%d/%d)", phase, len(active), max_parallel)
        return []

    candidates = _select_candidates(ctx, phase, available)
    if not candidates:
        logger.debug("No issues waiting for %s", phase)
        return []

    logger.info("Found %d issue(s) for %s", len(candidates), phase)

    started = []
    for issue in candidates:
        if ctx.stop.is_set():
            logger.info("Shutdown requested, leaving remaining %s candidates unclaimed", phase)
            break

        if not ctx.store.acquire(issue.number, phase):
            logger.info("Issue #%d already leased, skipping", issue.number)
            continue

        logger.info("Starting %s for issue #%d: %s", phase, issue.number, issue.title)
        try:
            if start(ctx, issue):
                started.append(issue.number)
        except Exception as e:
            logger.exception("Error during %s of issue #%d", phase, issue.number)
            handle_failure(ctx, issue.number, f"{type(e).__name__}: {e}")

    return started


# =============================================================================
# Grooming
# =============================================================================


def _start_grooming(ctx: PhaseContext, issue: Issue) -> bool:
    prompt = render_prompt("grooming", issue, repo=ctx.repo, labels=ctx.labels)
    task = WorkerTask(
        item_id=issue.number,
        phase="grooming",
        title=issue.title,
        prompt=prompt,
    )
    comment = (
        "🔍 Starting grooming session for this issue.\n\n"
        "The agent will ask clarifying questions to understand the requirements."
    )
    return _begin_phase(ctx, issue, "grooming", task, comment)


def process_grooming(ctx: PhaseContext) -> list[int]:
    """Start grooming the oldest waiting issue unless one is already being groomed."""
    return _run_phase(ctx, "grooming", GROOMING_SLOTS, _start_grooming)


# =============================================================================
# Building
# =============================================================================


def _require_plan(ctx: PhaseContext, issue: Issue) -> str | None:
    plan = ctx.tracker.find_plan_document(issue.number)
    if not plan:
        logger.info(
            "No groomed plan found for #%d, skipping. Add %r label to groom first",
            issue.number, ctx.labels["needs_grooming"],
        )
        ctx.store.release(issue.number)
    return plan


def _start_building(ctx: PhaseContext, issue: Issue) -> bool:
    plan = _require_plan(ctx, issue)
    if not plan:
        return False

    branch = ctx.tracker.ensure_branch(issue.number)
    ctx.store.attach_branch(issue.number, branch)

    prompt = render_prompt(
        "building", issue, repo=ctx.repo, labels=ctx.labels, branch=branch, plan=plan,
    )
    task = WorkerTask(
        item_id=issue.number,
        phase="building",
        title=issue.title,
        prompt=prompt,
        branch=branch,
        plan=plan,
    )
    comment = (
        "🔨 Building has started!\n\n"
        f"Branch: `{branch}`\n\n"
        "The agent is implementing the approved plan."
    )
    return _begin_phase(ctx, issue, "building", task, comment)


def process_building(ctx: PhaseContext) -> list[int]:
    """Start builds for approved issues up to ``max_parallel_builds``."""
    return _run_phase(ctx, "building", ctx.max_parallel_builds, _start_building)


# =============================================================================
# Reviewing
# =============================================================================


def _start_reviewing(ctx: PhaseContext, issue: Issue) -> bool:
    plan = _require_plan(ctx, issue)
    if not plan:
        return False

    # Building created the branch; reviewing only looks it up
    branch = branch_name_for(issue.number)
    pr_number = ctx.tracker.find_pull_request_for_branch(branch)
    if pr_number is None:
        # The PR may not have propagated yet
        logger.info("No open PR for %s (issue #%d) yet, skipping", branch, issue.number)
        ctx.store.release(issue.number)
        return False

    ctx.store.attach_branch(issue.number, branch)

    prompt = render_prompt(
        "reviewing", issue,
        repo=ctx.repo, labels=ctx.labels, branch=branch, plan=plan, pr_number=pr_number,
    )
    task = WorkerTask(
        item_id=issue.number,
        phase="reviewing",
        title=issue.title,
        prompt=prompt,
        branch=branch,
        plan=plan,
        pr_number=pr_number,
    )
    comment = f"🧐 Review has started for PR #{pr_number}."
    return _begin_phase(ctx, issue, "reviewing", task, comment)


def process_reviewing(ctx: PhaseContext) -> list[int]:
    """Start reviews for issues with an open PR up to ``max_parallel_reviews``."""
    return _run_phase(ctx, "reviewing", ctx.max_parallel_reviews, _start_reviewing)


# Fixed evaluation order within a tick
PHASE_PROCESSORS: list[tuple[Phase, Callable[[PhaseContext], list[int]]]] = [
    ("grooming", process_grooming),
    ("building", process_building),
    ("reviewing", process_reviewing),
]
