"""Launch detached, human-visible worker agents.

Each worker gets its own directory under ``runtime/workers/`` holding the
rendered prompt, a ``run.sh`` launcher and the terminal's stdout/stderr.
The launcher is opened in a new terminal window so a human can watch and
talk to the agent. The spawner returns as soon as the launch succeeds or
fails; it never waits for the agent. Completion is observed through GitHub
labels, not through process exit.
"""

import logging
import os
import shlex
import signal
import subprocess
import uuid
from dataclasses import dataclass
from pathlib import Path

from .config import Phase

logger = logging.getLogger(__name__)


@dataclass
class WorkerTask:
    """Everything one worker needs. Created fresh for every spawn attempt."""

    item_id: int
    phase: Phase
    title: str
    prompt: str
    branch: str | None = None
    plan: str | None = None
    pr_number: int | None = None


@dataclass
class SpawnResult:
    success: bool
    handle: int | None = None
    error: str = ""


class WorkerRegistry:
    """Item id → PID of the workers spawned by this process.

    Owned by the scheduler and shared with the spawner; created at process
    start and emptied at shutdown.
    """

    def __init__(self):
        self._handles: dict[int, int] = {}

    def track(self, item_id: int, handle: int) -> None:
        self._handles[item_id] = handle

    def forget(self, item_id: int) -> int | None:
        return self._handles.pop(item_id, None)

    def get(self, item_id: int) -> int | None:
        return self._handles.get(item_id)

    def handles(self) -> dict[int, int]:
        return dict(self._handles)

    def __len__(self) -> int:
        return len(self._handles)

    def __contains__(self, item_id: int) -> bool:
        return item_id in self._handles


def is_process_running(pid: int) -> bool:
    """Return True if the process with the given PID is running."""
    try:
        os.kill(pid, 0)
        return True
    except (OSError, ProcessLookupError):
        return False


class AgentSpawner:
    """Open worker agents in new terminal windows.

    Args:
        workers_dir: Directory for per-worker scratch files
        agent_command: Agent executable and fixed arguments; the prompt is
            appended as the last argument
        terminal_command: Terminal launcher; ``{title}`` and ``{script}``
            placeholders are substituted in every argument
        registry: Registry receiving the PID of each launched worker
        cwd: Working directory for the agent (the project checkout)
    """

    def __init__(
        self,
        workers_dir: Path,
        agent_command: list[str],
        terminal_command: list[str],
        registry: WorkerRegistry,
        cwd: Path | None = None,
    ):
        self.workers_dir = Path(workers_dir)
        self.agent_command = agent_command
        self.terminal_command = terminal_command
        self.registry = registry
        self.cwd = Path(cwd) if cwd else Path.cwd()

    def _window_title(self, task: WorkerTask) -> str:
        if task.phase == "reviewing" and task.pr_number is not None:
            return f"Reviewer: PR #{task.pr_number}"
        return f"Agent ({task.phase}): Issue #{task.item_id}"

    def write_launcher(self, task: WorkerTask, worker_dir: Path) -> Path:
        """Write prompt.md and run.sh for a task.

        Returns:
            Path to run.sh
        """
        worker_dir.mkdir(parents=True, exist_ok=True)
        prompt_path = worker_dir / "prompt.md"
        prompt_path.write_text(task.prompt)

        agent_cmd = " ".join(shlex.quote(part) for part in self.agent_command)
        lines = [
            "#!/bin/bash",
            f"cd {shlex.quote(str(self.cwd))}",
        ]
        if task.branch:
            branch = shlex.quote(task.branch)
            lines.append(f"git fetch origin {branch} && git checkout {branch}")
        lines += [
            "echo",
            "echo '========================================'",
            f"echo {shlex.quote(f'  {self._window_title(task)}')}",
            f"echo {shlex.quote(f'  {task.title}')}",
            "echo '========================================'",
            "echo",
            f'{agent_cmd} "$(cat {shlex.quote(str(prompt_path))})"',
            "echo",
            "read -n 1 -s -r -p 'Agent finished. Press any key to close.'",
        ]

        script_path = worker_dir / "run.sh"
        script_path.write_text("\n".join(lines) + "\n")
        script_path.chmod(0o755)
        return script_path

    def spawn(self, task: WorkerTask) -> SpawnResult:
        """Launch a worker for ``task`` in a new terminal window.

        Never raises for launch problems; they are reported in the result.
        """
        worker_id = uuid.uuid4().hex[:8]
        worker_dir = self.workers_dir / f"{task.phase}-{task.item_id}-{worker_id}"
        title = self._window_title(task)

        try:
            script_path = self.write_launcher(task, worker_dir)
            cmd = [
                part.replace("{title}", title).replace("{script}", str(script_path))
                for part in self.terminal_command
            ]
            logger.debug("Spawning worker %s for #%d: %s", worker_id, task.item_id, cmd)

            # The child keeps its own copies of the log descriptors
            with open(worker_dir / "stdout.log", "w") as stdout_file, \
                    open(worker_dir / "stderr.log", "w") as stderr_file:
                process = subprocess.Popen(
                    cmd,
                    cwd=self.cwd,
                    stdout=stdout_file,
                    stderr=stderr_file,
                    stdin=subprocess.DEVNULL,
                    start_new_session=True,  # Detach from parent
                )
        except OSError as e:
            logger.error("Failed to spawn %s worker for #%d: %s", task.phase, task.item_id, e)
            return SpawnResult(success=False, error=f"{type(e).__name__}: {e}")

        self.registry.track(task.item_id, process.pid)
        logger.info(
            "Worker %s opened for issue #%d (%s, PID %d)",
            worker_id, task.item_id, task.phase, process.pid,
        )
        return SpawnResult(success=True, handle=process.pid)

    def kill(self, handle: int) -> bool:
        """Terminate a worker's process group. Idempotent.

        Returns:
            True if a signal was delivered
        """
        try:
            os.killpg(handle, signal.SIGTERM)
            return True
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug("killpg(%d) failed: %s, falling back to kill", handle, e)

        try:
            os.kill(handle, signal.SIGTERM)
            return True
        except (ProcessLookupError, OSError):
            return False
