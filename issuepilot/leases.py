"""SQLite lease store.

A lease records that an issue is currently being worked by one phase
processor of this orchestrator process. It is not proof that work is
progressing; GitHub labels remain the source of truth for pipeline position.

Every mutation is committed (and, with ``synchronous=FULL``, flushed)
before the call returns, and appended to a JSONL audit trail at
``runtime/logs/lease_audit.jsonl`` for post-incident forensics.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator

from .config import Phase

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 1


@dataclass
class Lease:
    """One row of the leases table."""

    item_id: int
    phase: Phase
    handle: int | None = None
    branch: str | None = None
    started_at: str = ""

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Lease":
        return cls(
            item_id=row["item_id"],
            phase=row["phase"],
            handle=row["handle"],
            branch=row["branch"],
            started_at=row["started_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class LeaseStore:
    """Persistent item → lease table.

    Args:
        db_path: Path to the SQLite database file (created on first use)
        audit_path: Optional JSONL file receiving one entry per mutation
    """

    def __init__(self, db_path: Path | str, audit_path: Path | str | None = None):
        self.db_path = Path(db_path)
        self.audit_path = Path(audit_path) if audit_path else None
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Open a connection, commit on success, roll back on error."""
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row

        try:
            conn.execute("PRAGMA journal_mode=WAL")
            # Flush every commit to disk before returning
            conn.execute("PRAGMA synchronous=FULL")

            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        """Create tables if they don't exist. Safe to call multiple times."""
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS leases (
                    item_id INTEGER PRIMARY KEY,
                    phase TEXT NOT NULL,
                    handle INTEGER,
                    branch TEXT,
                    started_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_leases_phase ON leases(phase)
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_info (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
            """)
            conn.execute(
                "INSERT OR REPLACE INTO schema_info (key, value) VALUES (?, ?)",
                ("version", str(SCHEMA_VERSION)),
            )

    def _audit(self, action: str, item_id: int, **fields: Any) -> None:
        """Append a structured entry to the lease audit log."""
        if self.audit_path is None:
            return
        try:
            self.audit_path.parent.mkdir(parents=True, exist_ok=True)
            entry = {
                "ts": datetime.now(tz=timezone.utc).isoformat(),
                "action": action,
                "item_id": item_id,
                **fields,
            }
            with open(self.audit_path, "a") as f:
                f.write(json.dumps(entry) + "\n")
        except OSError as e:
            logger.debug("Could not write lease audit entry: %s", e)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def acquire(self, item_id: int, phase: Phase) -> bool:
        """Insert a lease unless one already exists for ``item_id``.

        Returns:
            True if the lease was created, False if any lease (of any phase)
            already exists for the item
        """
        started_at = datetime.now(tz=timezone.utc).isoformat()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO leases (item_id, phase, started_at)
                VALUES (?, ?, ?)
                """,
                (item_id, phase, started_at),
            )
            acquired = cursor.rowcount > 0

        if acquired:
            self._audit("acquire", item_id, phase=phase)
        return acquired

    def attach_handle(self, item_id: int, handle: int) -> None:
        """Record the worker PID on an existing lease. No-op without a lease."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE leases SET handle = ? WHERE item_id = ?",
                (handle, item_id),
            )
            updated = cursor.rowcount > 0

        if updated:
            self._audit("attach_handle", item_id, handle=handle)

    def attach_branch(self, item_id: int, branch: str) -> None:
        """Record the work branch on an existing lease. No-op without a lease."""
        with self._connect() as conn:
            conn.execute(
                "UPDATE leases SET branch = ? WHERE item_id = ?",
                (branch, item_id),
            )

    def release(self, item_id: int) -> bool:
        """Delete the lease for ``item_id``. Idempotent.

        Returns:
            True if a lease existed
        """
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM leases WHERE item_id = ?", (item_id,))
            released = cursor.rowcount > 0

        if released:
            self._audit("release", item_id)
        return released

    def clear(self) -> list[Lease]:
        """Delete every lease and return what was removed."""
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM leases ORDER BY item_id").fetchall()
            conn.execute("DELETE FROM leases")

        removed = [Lease.from_row(row) for row in rows]
        for lease in removed:
            self._audit("clear", lease.item_id, phase=lease.phase)
        return removed

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, item_id: int) -> Lease | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM leases WHERE item_id = ?", (item_id,)
            ).fetchone()
        return Lease.from_row(row) if row else None

    def list_by_phase(self, phase: Phase) -> set[int]:
        """Item ids currently leased for ``phase``."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT item_id FROM leases WHERE phase = ?", (phase,)
            ).fetchall()
        return {row["item_id"] for row in rows}

    def list_all(self) -> list[Lease]:
        """All leases, ordered by item id."""
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM leases ORDER BY item_id").fetchall()
        return [Lease.from_row(row) for row in rows]

    def leased_ids(self) -> set[int]:
        """Item ids leased in any phase."""
        return {lease.item_id for lease in self.list_all()}

    def get_schema_version(self) -> int | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT value FROM schema_info WHERE key = 'version'"
            ).fetchone()
        return int(row["value"]) if row else None
