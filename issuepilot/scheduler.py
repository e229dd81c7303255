#!/usr/bin/env python3
"""Reconciliation loop - sync leases with GitHub, then run each phase processor."""

import argparse
import logging
import signal
import sys
import threading
from datetime import datetime
from pathlib import Path

from .config import (
    ConfigError,
    get_agent_config,
    get_base_branch,
    get_database_path,
    get_labels,
    get_logs_dir,
    get_repo,
    get_runtime_dir,
    get_scheduler_config,
    get_workers_dir,
    in_flight_label,
    validate_config,
)
from .github import GitHubIssues
from .leases import LeaseStore
from .lock_utils import instance_lock, read_lock_holder
from .phases import PHASE_PROCESSORS, PhaseContext, handle_failure
from .spawner import AgentSpawner, WorkerRegistry

logger = logging.getLogger(__name__)

SHUTDOWN_REASON = "Orchestrator shutdown"


def sync_leases(ctx: PhaseContext) -> list[int]:
    """Release leases whose phase has ended on GitHub.

    A lease is stale once its issue no longer carries the phase's in-flight
    label: the worker finished, or a human moved the issue. The worker
    process itself is left alone; only our bookkeeping is dropped.

    Returns:
        Issue numbers whose lease was released
    """
    released = []
    for lease in ctx.store.list_all():
        try:
            expected = in_flight_label(lease.phase, ctx.labels)
        except KeyError:
            logger.warning("Lease for #%d has unknown phase %r, releasing", lease.item_id, lease.phase)
            ctx.registry.forget(lease.item_id)
            ctx.store.release(lease.item_id)
            released.append(lease.item_id)
            continue

        try:
            labels = ctx.tracker.get_labels(lease.item_id)
        except Exception as e:
            logger.warning("Could not read labels for #%d, keeping lease: %s", lease.item_id, e)
            continue

        if expected in labels:
            continue

        logger.info(
            "Issue #%d no longer has %r, releasing %s lease",
            lease.item_id, expected, lease.phase,
        )
        ctx.registry.forget(lease.item_id)
        ctx.store.release(lease.item_id)
        released.append(lease.item_id)

    return released


class Scheduler:
    """Poll loop owning the worker registry and the shutdown sequence.

    Args:
        ctx: Collaborators shared with the phase processors
        poll_interval: Seconds to wait between ticks
    """

    def __init__(self, ctx: PhaseContext, poll_interval: float = 60):
        self.ctx = ctx
        self.poll_interval = poll_interval
        self._shut_down = False

    @property
    def stop_event(self) -> threading.Event:
        return self.ctx.stop

    def tick(self) -> None:
        """Run one reconciliation pass. Never raises."""
        logger.debug("Tick starting")

        try:
            sync_leases(self.ctx)
        except Exception:
            logger.exception("Lease sync failed")

        for phase, process in PHASE_PROCESSORS:
            if self.stop_event.is_set():
                break
            try:
                process(self.ctx)
            except Exception:
                logger.exception("%s processor failed", phase.capitalize())

        logger.debug("Tick complete")

    def run(self, once: bool = False) -> None:
        """Tick until a stop is requested, or exactly once with ``once``."""
        logger.info(
            "Scheduler starting for %s (interval %ss, builds %d, reviews %d)",
            self.ctx.repo, self.poll_interval,
            self.ctx.max_parallel_builds, self.ctx.max_parallel_reviews,
        )

        while not self.stop_event.is_set():
            self.tick()
            if once:
                return
            # Returns early when a signal sets the event
            self.stop_event.wait(self.poll_interval)

        self.shutdown()

    def request_stop(self) -> None:
        self.stop_event.set()

    def shutdown(self) -> None:
        """Kill tracked workers and mark their issues failed. Runs at most once."""
        if self._shut_down:
            return
        self._shut_down = True
        self.request_stop()

        handles = self.ctx.registry.handles()
        if handles:
            logger.info("Shutting down: terminating %d worker(s)", len(handles))

        for item_id, handle in handles.items():
            try:
                self.ctx.spawner.kill(handle)
            except Exception as e:
                logger.error("Could not kill worker %d for #%d: %s", handle, item_id, e)
            handle_failure(self.ctx, item_id, SHUTDOWN_REASON)

        logger.info("Scheduler stopped")

    def install_signal_handlers(self) -> None:
        def _handler(signum, frame):
            logger.info("Received %s, stopping after the current step", signal.Signals(signum).name)
            self.request_stop()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)


def setup_logging(debug: bool = False) -> Path | None:
    """Configure console logging and, in debug mode, a dated log file.

    Returns:
        Path of the debug log file, if one was set up
    """
    root = logging.getLogger("issuepilot")
    root.setLevel(logging.DEBUG if debug else logging.INFO)

    formatter = logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s")

    if not any(getattr(h, "_issuepilot_console", False) for h in root.handlers):
        console = logging.StreamHandler()
        console.setLevel(logging.INFO)
        console.setFormatter(formatter)
        console._issuepilot_console = True
        root.addHandler(console)

    if not debug:
        return None

    logs_dir = get_logs_dir()
    logs_dir.mkdir(parents=True, exist_ok=True)
    date_str = datetime.now().strftime("%Y-%m-%d")
    log_file = logs_dir / f"scheduler-{date_str}.log"

    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    return log_file


def build_context(stop: threading.Event | None = None) -> PhaseContext:
    """Wire the production collaborators from config.yaml."""
    validate_config()

    repo = get_repo()
    scheduler_config = get_scheduler_config()
    agent_config = get_agent_config()
    registry = WorkerRegistry()

    return PhaseContext(
        tracker=GitHubIssues(repo, base_branch=get_base_branch()),
        store=LeaseStore(get_database_path(), audit_path=get_logs_dir() / "lease_audit.jsonl"),
        spawner=AgentSpawner(
            get_workers_dir(),
            agent_command=agent_config["command"],
            terminal_command=agent_config["terminal"],
            registry=registry,
        ),
        registry=registry,
        labels=get_labels(),
        repo=repo,
        max_parallel_builds=scheduler_config["max_parallel_builds"],
        max_parallel_reviews=scheduler_config["max_parallel_reviews"],
        stop=stop or threading.Event(),
    )


def get_scheduler_lock_path() -> Path:
    return get_runtime_dir() / "scheduler.lock"


def run_scheduler(once: bool = False, debug: bool = False) -> int:
    """Run the scheduler under the single-instance lock.

    Returns:
        Process exit code
    """
    log_file = setup_logging(debug)
    if log_file:
        print(f"Debug mode enabled - logs in {log_file}")

    try:
        ctx = build_context()
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    lock_path = get_scheduler_lock_path()
    with instance_lock(lock_path) as acquired:
        if not acquired:
            holder = read_lock_holder(lock_path)
            suffix = f" (PID {holder})" if holder else ""
            print(f"Another scheduler instance is running{suffix}, exiting")
            return 0

        scheduler = Scheduler(ctx, poll_interval=get_scheduler_config()["poll_interval_seconds"])
        if once:
            # Workers started by a single tick outlive it, and so do their leases
            scheduler.run(once=True)
            return 0

        scheduler.install_signal_handlers()
        try:
            scheduler.run()
        finally:
            scheduler.shutdown()

    return 0


def main() -> None:
    """Entry point for scheduler."""
    parser = argparse.ArgumentParser(description="Run the issuepilot scheduler")
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging to .issuepilot/runtime/logs/",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single tick and exit",
    )
    args = parser.parse_args()
    sys.exit(run_scheduler(once=args.once, debug=args.debug))


if __name__ == "__main__":
    main()
