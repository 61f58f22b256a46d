"""
SQLite ledger of upgrade attempts.

This module implements the UpgradeHistoryStore class that handles:
- Schema initialization
- Atomic check-and-reserve of the single active upgrade
- Compare-and-set status changes and log appends
- History queries ordered by start time

The store is kept in its own database file so that restoring a backup of
the service database never rewrites the ledger of the upgrade doing the
restore.

SQLite Schema:
    CREATE TABLE upgrade_history (
        id TEXT PRIMARY KEY,         -- UUIDv4
        status TEXT,                 -- UpgradeStatus value
        logs TEXT,                   -- JSON array of strings
        started_at REAL,             -- Unix timestamp
        updated_at REAL,             -- Unix timestamp of the last change
        active_slot INTEGER UNIQUE,  -- 1 while non-terminal, NULL afterwards
        ...
    );

``active_slot`` makes "at most one active upgrade" a database constraint:
a second row with ``active_slot = 1`` violates the UNIQUE index even if two
writers race past the application-level check.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
import time
from collections.abc import Callable, Generator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

from mesh_upgrade.errors import ConflictError, FailedPreconditionError, UpgradeError
from mesh_upgrade.logging import get_logger
from mesh_upgrade.upgrades.models import (
    PRE_RESTART_STATUSES,
    TERMINAL_STATUSES,
    UpgradeJob,
    UpgradeStatus,
)

logger = get_logger(__name__)

T = TypeVar("T")

# =============================================================================
# Constants
# =============================================================================

MIN_HISTORY_LIMIT = 1
MAX_HISTORY_LIMIT = 100
DEFAULT_HISTORY_LIMIT = 10

_COLUMNS = (
    "id",
    "from_version",
    "to_version",
    "deployment_method",
    "status",
    "progress",
    "current_step",
    "logs",
    "backup_path",
    "started_at",
    "updated_at",
    "completed_at",
    "initiated_by",
    "error_message",
    "rollback_available",
    "active_slot",
)

# =============================================================================
# SQLite Schema
# =============================================================================

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS upgrade_history (
    id TEXT PRIMARY KEY,
    from_version TEXT NOT NULL,
    to_version TEXT NOT NULL,
    deployment_method TEXT,
    status TEXT NOT NULL,
    progress INTEGER NOT NULL DEFAULT 0,
    current_step TEXT NOT NULL DEFAULT '',
    logs TEXT NOT NULL DEFAULT '[]',
    backup_path TEXT,
    started_at REAL NOT NULL,
    updated_at REAL NOT NULL,
    completed_at REAL,
    initiated_by TEXT NOT NULL DEFAULT 'system',
    error_message TEXT,
    rollback_available INTEGER NOT NULL DEFAULT 0,
    active_slot INTEGER UNIQUE CHECK (active_slot IS NULL OR active_slot = 1)
);

CREATE INDEX IF NOT EXISTS idx_upgrade_history_started
    ON upgrade_history(started_at DESC);
"""


def format_log_line(message: str, timestamp: float | None = None) -> str:
    """Prefix a log message with an ISO 8601 UTC timestamp."""
    ts = datetime.fromtimestamp(
        timestamp if timestamp is not None else time.time(), UTC
    )
    return f"[{ts.isoformat(timespec='seconds')}] {message}"


def clamp_history_limit(limit: Any) -> int:
    """Clamp a requested history size to 1..100, defaulting to 10."""
    try:
        value = int(limit)
    except (TypeError, ValueError):
        return DEFAULT_HISTORY_LIMIT
    return max(MIN_HISTORY_LIMIT, min(MAX_HISTORY_LIMIT, value))


def _row_to_job(row: sqlite3.Row) -> UpgradeJob:
    return UpgradeJob(
        id=row["id"],
        from_version=row["from_version"],
        to_version=row["to_version"],
        deployment_method=row["deployment_method"],
        status=UpgradeStatus(row["status"]),
        progress=row["progress"],
        current_step=row["current_step"],
        logs=json.loads(row["logs"] or "[]"),
        backup_path=row["backup_path"],
        started_at=row["started_at"],
        updated_at=row["updated_at"],
        completed_at=row["completed_at"],
        initiated_by=row["initiated_by"],
        error_message=row["error_message"],
        rollback_available=bool(row["rollback_available"]),
    )


def _job_to_params(job: UpgradeJob) -> tuple[Any, ...]:
    return (
        job.id,
        job.from_version,
        job.to_version,
        job.deployment_method.value if job.deployment_method else None,
        job.status.value,
        job.progress,
        job.current_step,
        json.dumps(job.logs),
        job.backup_path,
        job.started_at,
        job.updated_at,
        job.completed_at,
        job.initiated_by,
        job.error_message,
        int(job.rollback_available),
        None if job.status in TERMINAL_STATUSES else 1,
    )


# =============================================================================
# UpgradeHistoryStore Class
# =============================================================================


class UpgradeHistoryStore:
    """
    SQLite-backed ledger of upgrade jobs.

    Every write runs inside ``BEGIN IMMEDIATE`` so that read-modify-write
    sequences (reserve, compare-and-set, log append) are serialized across
    threads and processes. Blocking calls run in the default executor.

    Example:
        >>> store = UpgradeHistoryStore("/data/upgrade_history.db")
        >>> await store.initialize()
        >>> job = await store.reserve(job)
        >>> await store.transition(job.id, UpgradeStatus.PENDING, UpgradeStatus.BACKING_UP)
    """

    def __init__(
        self,
        db_path: str | Path,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the store.

        Args:
            db_path: Path to the SQLite database file.
            clock: Source of unix timestamps.
        """
        self.db_path = Path(db_path)
        self._clock = clock
        self._initialized = False
        self._lock = asyncio.Lock()

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Get a database connection in autocommit mode.

        Transactions are opened explicitly by the callers.
        """
        conn = sqlite3.connect(str(self.db_path), timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _write_transaction(self) -> Generator[sqlite3.Connection, None, None]:
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    async def _run(self, fn: Callable[[], T], action: str) -> T:
        await self._ensure_initialized()
        try:
            return await asyncio.get_event_loop().run_in_executor(None, fn)
        except UpgradeError:
            raise
        except sqlite3.Error as e:
            logger.error(
                f"Failed to {action}",
                extra={"db_path": str(self.db_path), "error": str(e)},
            )
            raise FailedPreconditionError(
                f"Failed to {action}: {e}",
                details={"db_path": str(self.db_path)},
            ) from e

    async def initialize(self) -> None:
        """
        Create the schema if needed. Idempotent.

        Raises:
            FailedPreconditionError: If the database cannot be initialized.
        """
        if self._initialized:
            return

        async with self._lock:
            if self._initialized:
                return

            def _init_db() -> None:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                with self._get_connection() as conn:
                    conn.executescript(SCHEMA_SQL)

            try:
                await asyncio.get_event_loop().run_in_executor(None, _init_db)
            except (OSError, sqlite3.Error) as e:
                logger.error(
                    "Failed to initialize upgrade history database",
                    extra={"db_path": str(self.db_path), "error": str(e)},
                )
                raise FailedPreconditionError(
                    f"Failed to initialize upgrade history database: {e}",
                    details={"db_path": str(self.db_path)},
                ) from e

            self._initialized = True
            logger.debug(
                "Upgrade history database initialized",
                extra={"db_path": str(self.db_path)},
            )

    async def _ensure_initialized(self) -> None:
        if not self._initialized:
            await self.initialize()

    # -------------------------------------------------------------------------
    # Internal helpers (run inside a write transaction)
    # -------------------------------------------------------------------------

    @staticmethod
    def _select(conn: sqlite3.Connection, upgrade_id: str) -> UpgradeJob | None:
        row = conn.execute(
            "SELECT * FROM upgrade_history WHERE id = ?", (upgrade_id,)
        ).fetchone()
        return _row_to_job(row) if row else None

    @staticmethod
    def _write(conn: sqlite3.Connection, job: UpgradeJob) -> None:
        assignments = ", ".join(f"{c} = ?" for c in _COLUMNS[1:])
        params = _job_to_params(job)
        conn.execute(
            f"UPDATE upgrade_history SET {assignments} WHERE id = ?",
            (*params[1:], job.id),
        )

    def _apply(
        self,
        job: UpgradeJob,
        now: float,
        *,
        status: UpgradeStatus | None = None,
        log: str | None = None,
        **fields: Any,
    ) -> UpgradeJob:
        updates: dict[str, Any] = {"updated_at": now}
        if status is not None:
            updates["status"] = status
            if status in TERMINAL_STATUSES:
                updates["completed_at"] = now
        if "progress" in fields:
            updates["progress"] = max(job.progress, int(fields.pop("progress")))
        updates.update(fields)
        if log is not None:
            updates["logs"] = [*job.logs, format_log_line(log, now)]
        return job.model_copy(update=updates)

    def _expire_stale(
        self, conn: sqlite3.Connection, timeout_seconds: float, now: float
    ) -> list[str]:
        # Jobs past the restart may need a rollback; only reconcile finalizes them
        statuses = sorted(s.value for s in PRE_RESTART_STATUSES)
        placeholders = ", ".join("?" for _ in statuses)
        rows = conn.execute(
            "SELECT * FROM upgrade_history "
            f"WHERE active_slot = 1 AND updated_at < ? AND status IN ({placeholders})",
            (now - timeout_seconds, *statuses),
        ).fetchall()

        expired = []
        for row in rows:
            job = _row_to_job(row)
            message = (
                f"Upgrade timed out after {int(timeout_seconds // 60)} minutes "
                f"in status {job.status.value}"
            )
            self._write(
                conn,
                self._apply(
                    job,
                    now,
                    status=UpgradeStatus.FAILED,
                    log=message,
                    error_message=message,
                    current_step="Timed out",
                ),
            )
            expired.append(job.id)
            logger.warning(
                "Expired stale upgrade",
                extra={"upgrade_id": job.id, "status": job.status.value},
            )
        return expired

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def reserve(
        self,
        job: UpgradeJob,
        *,
        stale_timeout_seconds: float | None = None,
    ) -> UpgradeJob:
        """
        Insert ``job`` as the active upgrade if no other upgrade is active.

        Args:
            job: New job in status pending.
            stale_timeout_seconds: If set, jobs still before the restart
                without a change for this long are marked failed before the
                check.

        Returns:
            The stored job.

        Raises:
            ConflictError: If another upgrade is active.
        """

        def _reserve() -> UpgradeJob:
            now = self._clock()
            stored = job.model_copy(
                update={"started_at": now, "updated_at": now, "completed_at": None}
            )
            with self._write_transaction() as conn:
                if stale_timeout_seconds is not None:
                    self._expire_stale(conn, stale_timeout_seconds, now)

                active = conn.execute(
                    "SELECT id, status FROM upgrade_history WHERE active_slot = 1"
                ).fetchone()
                if active is not None:
                    raise ConflictError(
                        "An upgrade is already in progress",
                        details={
                            "active_upgrade_id": active["id"],
                            "status": active["status"],
                        },
                    )

                placeholders = ", ".join("?" for _ in _COLUMNS)
                try:
                    conn.execute(
                        f"INSERT INTO upgrade_history ({', '.join(_COLUMNS)}) "
                        f"VALUES ({placeholders})",
                        _job_to_params(stored),
                    )
                except sqlite3.IntegrityError as e:
                    raise ConflictError(
                        "An upgrade is already in progress",
                        details={"error": str(e)},
                    ) from e
            return stored

        stored = await self._run(_reserve, "reserve upgrade")
        logger.info(
            "Upgrade reserved",
            extra={
                "upgrade_id": stored.id,
                "from_version": stored.from_version,
                "to_version": stored.to_version,
            },
        )
        return stored

    async def transition(
        self,
        upgrade_id: str,
        expected: UpgradeStatus,
        target: UpgradeStatus,
        *,
        log: str | None = None,
        **fields: Any,
    ) -> UpgradeJob | None:
        """
        Compare-and-set the status of a job.

        Args:
            upgrade_id: Job to update.
            expected: Status the job must currently be in.
            target: New status.
            log: Optional log line appended in the same transaction.
            **fields: Other columns to set (progress is only ever raised).

        Returns:
            The updated job, or None if the job is missing or no longer in
            ``expected``.
        """

        def _transition() -> UpgradeJob | None:
            with self._write_transaction() as conn:
                job = self._select(conn, upgrade_id)
                if job is None or job.status != expected:
                    return None
                updated = self._apply(
                    job, self._clock(), status=target, log=log, **fields
                )
                self._write(conn, updated)
                return updated

        return await self._run(_transition, "update upgrade status")

    async def append_log(self, upgrade_id: str, message: str) -> UpgradeJob | None:
        """Append a timestamped line to a job's log."""

        def _append() -> UpgradeJob | None:
            with self._write_transaction() as conn:
                job = self._select(conn, upgrade_id)
                if job is None:
                    return None
                updated = self._apply(job, self._clock(), log=message)
                self._write(conn, updated)
                return updated

        return await self._run(_append, "append upgrade log")

    async def finalize(
        self,
        upgrade_id: str,
        status: UpgradeStatus,
        *,
        log: str | None = None,
        **fields: Any,
    ) -> UpgradeJob | None:
        """
        Move an active job to a terminal status.

        Returns:
            The finalized job, or None if the job is missing or already terminal.
        """
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Not a terminal status: {status}")

        def _finalize() -> UpgradeJob | None:
            with self._write_transaction() as conn:
                job = self._select(conn, upgrade_id)
                if job is None or job.status in TERMINAL_STATUSES:
                    return None
                updated = self._apply(
                    job, self._clock(), status=status, log=log, **fields
                )
                self._write(conn, updated)
                return updated

        return await self._run(_finalize, "finalize upgrade")

    async def cancel(
        self,
        upgrade_id: str,
        allowed: frozenset[UpgradeStatus],
        message: str,
    ) -> UpgradeJob | None:
        """
        Mark a job failed only if its status is in ``allowed``.

        Returns:
            The cancelled job, or None if the job is missing or not cancellable.
        """

        def _cancel() -> UpgradeJob | None:
            with self._write_transaction() as conn:
                job = self._select(conn, upgrade_id)
                if job is None or job.status not in allowed:
                    return None
                updated = self._apply(
                    job,
                    self._clock(),
                    status=UpgradeStatus.FAILED,
                    log=message,
                    error_message=message,
                    current_step="Cancelled",
                )
                self._write(conn, updated)
                return updated

        return await self._run(_cancel, "cancel upgrade")

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get(self, upgrade_id: str) -> UpgradeJob | None:
        """Return a job by id, or None."""

        def _get() -> UpgradeJob | None:
            with self._get_connection() as conn:
                return self._select(conn, upgrade_id)

        return await self._run(_get, "read upgrade")

    async def get_active(self) -> UpgradeJob | None:
        """Return the single non-terminal job, or None."""

        def _get_active() -> UpgradeJob | None:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT * FROM upgrade_history WHERE active_slot = 1"
                ).fetchone()
                return _row_to_job(row) if row else None

        return await self._run(_get_active, "read active upgrade")

    async def list_history(self, limit: Any = DEFAULT_HISTORY_LIMIT) -> list[UpgradeJob]:
        """
        Return jobs ordered by start time, newest first.

        Args:
            limit: Maximum number of jobs; clamped to 1..100.
        """
        limit = clamp_history_limit(limit)

        def _list() -> list[UpgradeJob]:
            with self._get_connection() as conn:
                rows = conn.execute(
                    "SELECT * FROM upgrade_history "
                    "ORDER BY started_at DESC, rowid DESC LIMIT ?",
                    (limit,),
                ).fetchall()
                return [_row_to_job(row) for row in rows]

        return await self._run(_list, "read upgrade history")
