"""Single-instance lock for the scheduler, using fcntl.flock."""

import fcntl
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Generator


def read_lock_holder(path: Path | str) -> int | None:
    """PID recorded by the process holding the lock, if readable."""
    try:
        return int(Path(path).read_text().strip())
    except (OSError, ValueError):
        return None


@contextmanager
def instance_lock(path: Path | str) -> Generator[bool, None, None]:
    """Hold an exclusive, non-blocking lock for the lifetime of the block.

    The lock is released by the kernel if the process dies, so a crashed
    orchestrator never leaves a stale lock behind.

    Yields:
        True if the lock was acquired, False if another process holds it

    Example:
        with instance_lock(runtime_dir / "scheduler.lock") as acquired:
            if not acquired:
                return
            scheduler.run()
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd = os.open(str(path), os.O_RDWR | os.O_CREAT, 0o644)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        os.close(fd)
        yield False
        return

    try:
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        yield True
    finally:
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        except OSError:
            pass
        finally:
            os.close(fd)
