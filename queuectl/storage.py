import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Sequence

from .errors import StoreIOError, ValidationError
from .models import Job

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "jobs.db"

COLUMNS = (
    "id",
    "command",
    "state",
    "attempts",
    "max_retries",
    "created_at",
    "updated_at",
    "next_run_at",
    "version",
    "worker_id",
    "output",
    "last_error",
)

SCHEMA = """
    CREATE TABLE IF NOT EXISTS jobs (
        seq INTEGER NOT NULL,
        id TEXT PRIMARY KEY,
        command TEXT NOT NULL,
        state TEXT NOT NULL,
        attempts INTEGER NOT NULL,
        max_retries INTEGER NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        next_run_at TEXT,
        version INTEGER NOT NULL DEFAULT 0,
        worker_id TEXT,
        output TEXT,
        last_error TEXT
    )
"""


def db_path() -> str:
    return os.environ.get("QUEUECTL_DB", DEFAULT_DB_PATH)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt is not None else None


def _parse(dt_str: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(dt_str) if dt_str else None


def _to_row(job: Job) -> tuple:
    return (
        job.id,
        job.command,
        job.state,
        job.attempts,
        job.max_retries,
        _iso(job.created_at),
        _iso(job.updated_at),
        _iso(job.next_run_at),
        job.version,
        job.worker_id,
        job.output,
        job.last_error,
    )


def _from_row(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        command=row["command"],
        state=row["state"],
        attempts=row["attempts"],
        max_retries=row["max_retries"],
        created_at=_parse(row["created_at"]),
        updated_at=_parse(row["updated_at"]),
        next_run_at=_parse(row["next_run_at"]),
        version=row["version"],
        worker_id=row["worker_id"],
        output=row["output"],
        last_error=row["last_error"],
    )


class Storage:
    """SQLite-backed job collection shared by the CLI and every worker process.

    Whole-collection reads and writes are single transactions, so no reader
    ever sees a partially written collection. Per-job mutation goes through
    ``compare_and_swap``, which only succeeds against the version the caller
    last read.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, timeout: float = 30.0):
        self.db_path = db_path
        self.timeout = timeout

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = None
        try:
            # autocommit; transactions are opened explicitly
            conn = sqlite3.connect(self.db_path, timeout=self.timeout, isolation_level=None)
            conn.row_factory = sqlite3.Row
            yield conn
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"Job id already exists ({e})") from e
        except sqlite3.Error as e:
            raise StoreIOError(f"Job store {self.db_path} is unreadable: {e}") from e
        finally:
            if conn is not None:
                conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute(SCHEMA)
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _readable(self, conn: sqlite3.Connection) -> bool:
        row = conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'jobs'"
        ).fetchone()
        return row is not None

    def exists(self) -> bool:
        return os.path.exists(self.db_path)

    def load(self) -> List[Job]:
        """Return every job in insertion order; a missing store is empty."""
        if not self.exists():
            return []
        with self._connect() as conn:
            if not self._readable(conn):
                return []
            cursor = conn.execute(f"SELECT {', '.join(COLUMNS)} FROM jobs ORDER BY seq")
            return [_from_row(row) for row in cursor]

    def save(self, jobs: Sequence[Job]) -> None:
        """Atomically replace the whole persisted collection with ``jobs``."""
        placeholders = ", ".join("?" for _ in range(len(COLUMNS) + 1))
        with self._transaction() as conn:
            conn.execute("DELETE FROM jobs")
            conn.executemany(
                f"INSERT INTO jobs (seq, {', '.join(COLUMNS)}) VALUES ({placeholders})",
                [(seq,) + _to_row(job) for seq, job in enumerate(jobs)],
            )
        logger.debug("Saved %d job(s) to %s", len(jobs), self.db_path)

    def add(self, job: Job) -> None:
        placeholders = ", ".join("?" for _ in COLUMNS)
        with self._transaction() as conn:
            conn.execute(
                f"""
                INSERT INTO jobs (seq, {', '.join(COLUMNS)})
                VALUES ((SELECT COALESCE(MAX(seq), -1) + 1 FROM jobs), {placeholders})
                """,
                _to_row(job),
            )

    def get(self, job_id: str) -> Optional[Job]:
        if not self.exists():
            return None
        with self._connect() as conn:
            if not self._readable(conn):
                return None
            row = conn.execute(
                f"SELECT {', '.join(COLUMNS)} FROM jobs WHERE id = ?", (job_id,)
            ).fetchone()
            return _from_row(row) if row else None

    def compare_and_swap(self, job: Job, expected_version: int) -> bool:
        """Persist ``job`` only if the stored copy is still at ``expected_version``.

        On success the stored version (and ``job.version``) becomes
        ``expected_version + 1``. Returns False when another writer got there
        first or the job no longer exists.
        """
        new_version = expected_version + 1
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE jobs
                SET command = ?,
                    state = ?,
                    attempts = ?,
                    max_retries = ?,
                    updated_at = ?,
                    next_run_at = ?,
                    version = ?,
                    worker_id = ?,
                    output = ?,
                    last_error = ?
                WHERE id = ? AND version = ?
                """,
                (
                    job.command,
                    job.state,
                    job.attempts,
                    job.max_retries,
                    _iso(job.updated_at),
                    _iso(job.next_run_at),
                    new_version,
                    job.worker_id,
                    job.output,
                    job.last_error,
                    job.id,
                    expected_version,
                ),
            )
            swapped = cursor.rowcount == 1
        if swapped:
            job.version = new_version
        return swapped

    def count_by_state(self) -> Dict[str, int]:
        if not self.exists():
            return {}
        with self._connect() as conn:
            if not self._readable(conn):
                return {}
            cursor = conn.execute("SELECT state, COUNT(*) FROM jobs GROUP BY state")
            return {state: count for state, count in cursor.fetchall()}
