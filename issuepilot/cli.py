"""issuepilot CLI: run the scheduler and manage leases from the command line."""

import argparse
import logging
import shutil
import subprocess
import sys
import time
from pathlib import Path

from . import __version__
from .config import PHASES, ConfigError, get_base_branch, get_workers_dir
from .git_utils import delete_local_branch, get_branch_status
from .github import branch_name_for
from .phases import PhaseContext, handle_failure
from .scheduler import build_context, run_scheduler, setup_logging
from .spawner import is_process_running

logger = logging.getLogger(__name__)

RETRY_GRACE_SECONDS = 5

KILL_REASON = "Worker killed by operator"


def _fmt_table(rows: list[list[str]], headers: list[str]) -> str:
    """Format rows as a simple aligned table."""
    all_rows = [headers] + rows
    widths = [max(len(r[i]) for r in all_rows) for i in range(len(headers))]
    lines = []
    header_line = "  ".join(h.ljust(w) for h, w in zip(headers, widths))
    lines.append(header_line)
    lines.append("  ".join("-" * w for w in widths))
    for row in rows:
        lines.append("  ".join(c.ljust(w) for c, w in zip(row, widths)))
    return "\n".join(lines)


def _confirm(question: str) -> bool:
    answer = input(f"{question} [y/N] ")
    return answer.strip().lower() == "y"


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------

def return_to_grooming(ctx: PhaseContext, item_id: int) -> None:
    """Strip every workflow label from an issue and add the grooming pickup label."""
    pickup = ctx.labels["needs_grooming"]
    current = set(ctx.tracker.get_labels(item_id))
    for label in ctx.labels.values():
        if label != pickup and label in current:
            ctx.tracker.remove_label(item_id, label)
    if pickup not in current:
        ctx.tracker.add_label(item_id, pickup)


def reset_all(ctx: PhaseContext, workers_dir: Path | None = None) -> list[int]:
    """Send every leased issue back to grooming and clear local state.

    Label failures for one issue are reported and do not stop the reset.

    Returns:
        Issue numbers whose lease was cleared
    """
    leases = ctx.store.list_all()
    for lease in leases:
        try:
            return_to_grooming(ctx, lease.item_id)
        except Exception as e:
            print(f"  Could not reset labels on #{lease.item_id}: {e}", file=sys.stderr)

    removed = ctx.store.clear()
    for lease in removed:
        ctx.registry.forget(lease.item_id)

    if workers_dir is not None and workers_dir.exists():
        shutil.rmtree(workers_dir)

    return [lease.item_id for lease in removed]


def retry_item(ctx: PhaseContext, item_id: int, *, base_branch: str = "main",
               assume_yes: bool = False, cwd: Path | str | None = None) -> None:
    """Discard local work for an issue and send it back to grooming."""
    lease = ctx.store.get(item_id)
    branch = (lease.branch if lease else None) or branch_name_for(item_id)

    status = get_branch_status(branch, base_branch=base_branch, cwd=cwd)
    if status.exists:
        if status.has_local_work:
            print(f"WARNING: {branch} has local work that will be lost:")
            if status.unpushed_commits:
                print(f"  {len(status.unpushed_commits)} unpushed commit(s)")
                for line in status.unpushed_commits[:10]:
                    print(f"    {line}")
            if status.has_uncommitted_changes:
                print("  uncommitted changes in the working tree")
            if not assume_yes:
                print(f"Deleting in {RETRY_GRACE_SECONDS}s, press Ctrl-C to abort...")
                time.sleep(RETRY_GRACE_SECONDS)

        try:
            delete_local_branch(branch, base_branch=base_branch, cwd=cwd)
            print(f"Deleted local branch {branch}")
        except subprocess.CalledProcessError as e:
            print(f"Could not delete {branch}: {(e.stderr or '').strip()}", file=sys.stderr)

    ctx.registry.forget(item_id)
    if ctx.store.release(item_id):
        print(f"Released lease for #{item_id}")

    return_to_grooming(ctx, item_id)
    print(f"Issue #{item_id} returned to {ctx.labels['needs_grooming']!r}")


def kill_item(ctx: PhaseContext, item_id: int) -> bool:
    """Terminate an issue's worker and mark the issue failed.

    Returns:
        False if there was no lease for the issue
    """
    lease = ctx.store.get(item_id)
    if lease is None:
        return False

    handle = lease.handle if lease.handle is not None else ctx.registry.get(item_id)
    if handle is not None:
        if ctx.spawner.kill(handle):
            print(f"Sent SIGTERM to worker PID {handle}")
        else:
            print(f"Worker PID {handle} was not running")

    handle_failure(ctx, item_id, KILL_REASON)
    return True


def print_status(ctx: PhaseContext, base_branch: str = "main", cwd: Path | str | None = None) -> None:
    leases = ctx.store.list_all()
    if not leases:
        labels = ctx.labels
        print("No active leases.\n")
        print("Workflow:")
        print(f"  {labels['needs_grooming']} -> {labels['grooming']} -> {labels['awaiting_approval']}")
        print(f"  (human approves) -> {labels['ready']} -> {labels['in_progress']} -> {labels['pr_ready']}")
        print(f"  {labels['pr_ready']} -> {labels['reviewing']} -> done")
        print(f"\nOn failure an issue gets {labels['failed']!r}; re-add {labels['needs_grooming']!r} to retry.")
        return

    headers = ["ISSUE", "PID", "BRANCH", "LABELS", "LOCAL", "STARTED"]
    for phase in PHASES:
        phase_leases = [lease for lease in leases if lease.phase == phase]
        if not phase_leases:
            continue

        rows = []
        for lease in phase_leases:
            try:
                labels = ", ".join(ctx.tracker.get_labels(lease.item_id)) or "-"
            except Exception as e:
                logger.debug("get_labels(#%d) failed: %s", lease.item_id, e)
                labels = "?"

            pid = "-"
            if lease.handle is not None:
                alive = is_process_running(lease.handle)
                pid = f"{lease.handle}{'' if alive else ' (exited)'}"

            local = "-"
            if lease.branch:
                status = get_branch_status(lease.branch, base_branch=base_branch, cwd=cwd)
                notes = []
                if status.unpushed_commits:
                    notes.append(f"{len(status.unpushed_commits)} unpushed")
                if status.has_uncommitted_changes:
                    notes.append("uncommitted changes")
                local = ", ".join(notes) or ("clean" if status.exists else "no local branch")

            rows.append([
                f"#{lease.item_id}",
                pid,
                lease.branch or "-",
                labels,
                local,
                lease.started_at[:19],
            ])

        print(f"{phase.upper()} ({len(rows)})")
        print(_fmt_table(rows, headers))
        print()

    print(f"{len(leases)} active lease(s)")


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------

def _context_or_exit() -> PhaseContext:
    try:
        return build_context()
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def cmd_run(args: argparse.Namespace) -> None:
    """Start the reconciliation loop."""
    sys.exit(run_scheduler(once=args.once, debug=args.debug))


def cmd_status(args: argparse.Namespace) -> None:
    """Show active leases grouped by phase."""
    ctx = _context_or_exit()
    print_status(ctx, base_branch=get_base_branch())


def cmd_reset(args: argparse.Namespace) -> None:
    """Return every leased issue to grooming and clear local state."""
    ctx = _context_or_exit()
    leases = ctx.store.list_all()

    if not leases:
        print("No active leases.")
    elif not args.yes:
        print(f"This will return {len(leases)} issue(s) to {ctx.labels['needs_grooming']!r}:")
        for lease in leases:
            print(f"  #{lease.item_id} ({lease.phase})")
        if not _confirm("Continue?"):
            print("Cancelled.")
            return

    cleared = reset_all(ctx, workers_dir=get_workers_dir())
    print(f"Reset {len(cleared)} lease(s)")


def cmd_retry(args: argparse.Namespace) -> None:
    """Discard local work for an issue and send it back to grooming."""
    ctx = _context_or_exit()
    try:
        retry_item(ctx, args.id, base_branch=get_base_branch(), assume_yes=args.yes)
    except KeyboardInterrupt:
        print("\nAborted.")
        sys.exit(1)


def cmd_kill(args: argparse.Namespace) -> None:
    """Terminate the worker for an issue and mark it failed."""
    ctx = _context_or_exit()
    if not kill_item(ctx, args.id):
        print(f"No active lease for #{args.id}", file=sys.stderr)
        sys.exit(1)
    print(f"Issue #{args.id} marked {ctx.labels['failed']!r}")


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="issuepilot",
        description="Drive GitHub issues through grooming, building and review with AI agents",
    )
    parser.add_argument(
        "--version", "-V",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    sub = parser.add_subparsers(dest="command")

    # run
    p_run = sub.add_parser("run", help="Start the scheduler")
    p_run.add_argument("--once", action="store_true", help="Run a single tick and exit")
    p_run.add_argument("--debug", action="store_true", help="Write debug logs to .issuepilot/runtime/logs/")
    p_run.set_defaults(func=cmd_run)

    # status
    p_status = sub.add_parser("status", help="Show active leases")
    p_status.set_defaults(func=cmd_status)

    # reset
    p_reset = sub.add_parser("reset", help="Return all leased issues to grooming")
    p_reset.add_argument("--yes", "-y", action="store_true", help="Skip confirmation")
    p_reset.set_defaults(func=cmd_reset)

    # retry <id>
    p_retry = sub.add_parser("retry", help="Delete local work for an issue and regroom it")
    p_retry.add_argument("id", type=int, help="Issue number")
    p_retry.add_argument("--yes", "-y", action="store_true", help="Skip the grace period")
    p_retry.set_defaults(func=cmd_retry)

    # kill <id>
    p_kill = sub.add_parser("kill", help="Terminate an issue's worker and mark it failed")
    p_kill.add_argument("id", type=int, help="Issue number")
    p_kill.set_defaults(func=cmd_kill)

    return parser


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(0)

    if args.command != "run":
        setup_logging(debug=False)

    args.func(args)


if __name__ == "__main__":
    main()
