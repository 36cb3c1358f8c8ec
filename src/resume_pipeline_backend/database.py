"""
SQLite persistence for jobs, source documents and results.

This is the durable store behind the job state machine. Every public method
opens its own connection, so the class is safe to call from worker threads
(the async stores hop here through ``asyncio.to_thread``). Writes that must
not interleave with another worker run inside ``BEGIN IMMEDIATE``, which takes
the database write lock up front.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence


DEFAULT_DB_PATH = Path("data/pipeline.db")


def _ensure_db_dir(db_path: Path) -> None:
    """Ensure the database directory exists."""
    db_path.parent.mkdir(parents=True, exist_ok=True)


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_dumps(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, default=str)


def _json_loads(text: Optional[str], fallback: Any) -> Any:
    if not text:
        return fallback
    return json.loads(text)


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


class PipelineDatabase:
    """
    SQLite database for job, run and result persistence.

    WAL mode lets status polling from the API read while workers write.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        _ensure_db_dir(self.db_path)
        self._init_db()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get a database connection; commits on success, rolls back on error."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    step TEXT NOT NULL,
                    attempt INTEGER NOT NULL DEFAULT 0,
                    lease_expiry REAL NOT NULL,
                    lease_token TEXT,
                    assigned_worker TEXT,
                    last_error TEXT,
                    chunks_total INTEGER NOT NULL,
                    chunks_completed INTEGER NOT NULL DEFAULT 0,
                    chunk_errors TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            # The lease query filters on all four columns
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_lease
                ON jobs(status, step, lease_expiry, attempt)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS runs (
                    run_id TEXT PRIMARY KEY,
                    original_filename TEXT NOT NULL,
                    source_locator TEXT NOT NULL,
                    instruction_text TEXT NOT NULL DEFAULT '',
                    job_description TEXT,
                    extracted_text TEXT,
                    created_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS results (
                    run_id TEXT PRIMARY KEY,
                    original_json TEXT NOT NULL DEFAULT '{}',
                    final_json TEXT,
                    ats_score TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

    # --- jobs ---

    def insert_job(self, job_id: str, status: str, step: str, chunks_total: int, lease_expiry: float) -> bool:
        """
        Create a job row unless one already exists for this id.

        Returns:
            True if a row was inserted, False if the job already existed
        """
        now = _utcnow_iso()
        with self._get_connection() as conn:
            cursor = conn.execute("""
                INSERT OR IGNORE INTO jobs (
                    id, status, step, attempt, lease_expiry,
                    chunks_total, chunks_completed, chunk_errors,
                    created_at, updated_at
                ) VALUES (?, ?, ?, 0, ?, ?, 0, '[]', ?, ?)
            """, (job_id, status, step, lease_expiry, chunks_total, now, now))
            return cursor.rowcount > 0

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
            return self._job_row_to_dict(row) if row else None

    def lease_job(
        self,
        *,
        entry_statuses: Sequence[str],
        running_status: str,
        step: str,
        now: float,
        lease_until: float,
        max_attempts: int,
        lease_token: str,
        worker_id: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Claim one eligible job in a single conditional UPDATE.

        A job is eligible when its status is one of ``entry_statuses``, its lease
        has expired and it still has attempts left. The claim sets the running
        status, extends the lease, increments the attempt counter and stamps
        ``lease_token``; the row is then read back by that token inside the same
        transaction.

        Returns:
            The leased job, or None if nothing was eligible
        """
        eligibility = f"status IN ({_placeholders(entry_statuses)}) AND lease_expiry < ? AND attempt < ?"
        eligibility_params: List[Any] = [*entry_statuses, now, max_attempts]

        selector = f"SELECT id FROM jobs WHERE {eligibility}"
        selector_params = list(eligibility_params)
        if job_id is not None:
            selector += " AND id = ?"
            selector_params.append(job_id)
        selector += " ORDER BY lease_expiry ASC LIMIT 1"

        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            cursor = conn.execute(
                f"""
                UPDATE jobs
                SET status = ?, step = ?, lease_expiry = ?, lease_token = ?,
                    assigned_worker = ?, attempt = attempt + 1, updated_at = ?
                WHERE id = ({selector}) AND {eligibility}
                """,
                (
                    running_status, step, lease_until, lease_token, worker_id, _utcnow_iso(),
                    *selector_params, *eligibility_params,
                ),
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM jobs WHERE lease_token = ?", (lease_token,)).fetchone()
            return self._job_row_to_dict(row) if row else None

    def update_leased_job(self, job_id: str, lease_token: str, **fields: Any) -> bool:
        """
        Update a job only while ``lease_token`` still holds its lease.

        Returns:
            False if another worker has reclaimed the job since
        """
        if "last_error" in fields and fields["last_error"] is not None:
            fields["last_error"] = _json_dumps(fields["last_error"])
        if "chunk_errors" in fields:
            fields["chunk_errors"] = _json_dumps(fields["chunk_errors"])

        assignments = [f"{column} = ?" for column in fields]
        assignments.append("updated_at = ?")
        values = [*fields.values(), _utcnow_iso(), job_id, lease_token]

        with self._get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE jobs SET {', '.join(assignments)} WHERE id = ? AND lease_token = ?",
                values,
            )
            return cursor.rowcount > 0

    def complete_leased_job(
        self,
        job_id: str,
        lease_token: str,
        *,
        status: str,
        step: str,
        lease_expiry: float,
        original: Optional[Dict[str, Any]] = None,
        final: Optional[Dict[str, Any]] = None,
        ats_score: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Move a leased job to its phase's done status and store the phase output
        in the same transaction.

        Nothing is written unless ``lease_token`` still holds the lease, so a
        worker whose lease was reclaimed cannot overwrite the newer holder's result.

        Returns:
            False if another worker has reclaimed the job since
        """
        now = _utcnow_iso()
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            cursor = conn.execute(
                """
                UPDATE jobs SET status = ?, step = ?, lease_expiry = ?, updated_at = ?
                WHERE id = ? AND lease_token = ?
                """,
                (status, step, lease_expiry, now, job_id, lease_token),
            )
            if cursor.rowcount == 0:
                return False

            if original is not None:
                conn.execute("""
                    INSERT INTO results (run_id, original_json, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(run_id) DO UPDATE SET
                        original_json = excluded.original_json,
                        updated_at = excluded.updated_at
                """, (job_id, _json_dumps(original), now, now))
            if final is not None:
                conn.execute("""
                    INSERT INTO results (run_id, final_json, ats_score, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(run_id) DO UPDATE SET
                        final_json = excluded.final_json,
                        ats_score = excluded.ats_score,
                        updated_at = excluded.updated_at
                """, (job_id, _json_dumps(final), _json_dumps(ats_score or {}), now, now))
            return True

    def record_chunk_result(self, job_id: str, lease_token: str, error: Optional[str] = None) -> bool:
        """
        Count one resolved chunk for the current lease holder: a success
        increments ``chunks_completed``, a failure appends to ``chunk_errors``.

        Returns:
            False if ``lease_token`` no longer holds the lease (nothing is written)
        """
        with self._get_connection() as conn:
            if error is None:
                cursor = conn.execute(
                    """
                    UPDATE jobs SET chunks_completed = chunks_completed + 1, updated_at = ?
                    WHERE id = ? AND lease_token = ?
                    """,
                    (_utcnow_iso(), job_id, lease_token),
                )
                return cursor.rowcount > 0

            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT chunk_errors FROM jobs WHERE id = ? AND lease_token = ?", (job_id, lease_token)
            ).fetchone()
            if not row:
                return False
            errors = _json_loads(row["chunk_errors"], [])
            errors.append(error)
            conn.execute(
                "UPDATE jobs SET chunk_errors = ?, updated_at = ? WHERE id = ? AND lease_token = ?",
                (_json_dumps(errors), _utcnow_iso(), job_id, lease_token),
            )
            return True

    def fail_exhausted(
        self,
        *,
        active_statuses: Sequence[str],
        failed_status: str,
        now: float,
        max_attempts: int,
        message: str,
        status_messages: Optional[Dict[str, str]] = None,
        job_id: Optional[str] = None,
    ) -> List[str]:
        """
        Fail jobs whose last lease expired with no attempts left.

        The job keeps its last recorded error, falling back to ``message``;
        a status listed in ``status_messages`` always gets that message instead.

        Returns:
            Ids of the jobs that were moved to ``failed_status``
        """
        condition = f"status IN ({_placeholders(active_statuses)}) AND lease_expiry < ? AND attempt >= ?"
        params: List[Any] = [*active_statuses, now, max_attempts]
        if job_id is not None:
            condition += " AND id = ?"
            params.append(job_id)

        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            rows = conn.execute(f"SELECT id, status, last_error FROM jobs WHERE {condition}", params).fetchall()
            failed: List[str] = []
            for row in rows:
                override = (status_messages or {}).get(row["status"])
                if override:
                    last_error = _json_dumps({"message": override})
                else:
                    last_error = row["last_error"] or _json_dumps({"message": message})
                conn.execute(
                    "UPDATE jobs SET status = ?, last_error = ?, lease_token = NULL, updated_at = ? WHERE id = ?",
                    (failed_status, last_error, _utcnow_iso(), row["id"]),
                )
                failed.append(row["id"])
            return failed

    def list_jobs(self, status: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        """List jobs, newest first, optionally filtered by status."""
        with self._get_connection() as conn:
            if status:
                rows = conn.execute(
                    "SELECT * FROM jobs WHERE status = ? ORDER BY created_at DESC LIMIT ?",
                    (status, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM jobs ORDER BY created_at DESC LIMIT ?", (limit,)
                ).fetchall()
            return [self._job_row_to_dict(row) for row in rows]

    # --- runs (source documents) ---

    def insert_run(
        self,
        run_id: str,
        original_filename: str,
        source_locator: str,
        instruction_text: str = "",
        job_description: Optional[str] = None,
    ) -> None:
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO runs (
                    run_id, original_filename, source_locator,
                    instruction_text, job_description, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
            """, (run_id, original_filename, source_locator, instruction_text, job_description, _utcnow_iso()))

    def get_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,)).fetchone()
            return dict(row) if row else None

    def set_extracted_text(self, run_id: str, text: str) -> bool:
        """Store the derived text; a value that is already set is never replaced."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE runs SET extracted_text = ? WHERE run_id = ? AND extracted_text IS NULL",
                (text, run_id),
            )
            return cursor.rowcount > 0

    # --- results ---

    def get_result(self, run_id: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM results WHERE run_id = ?", (run_id,)).fetchone()
            if not row:
                return None
            return {
                "run_id": row["run_id"],
                "original": _json_loads(row["original_json"], {}),
                "final": _json_loads(row["final_json"], None),
                "ats_score": _json_loads(row["ats_score"], {}),
                "created_at": row["created_at"],
                "updated_at": row["updated_at"],
            }

    def _job_row_to_dict(self, row: sqlite3.Row) -> Dict[str, Any]:
        """Convert a jobs row to a plain dictionary with JSON columns decoded."""
        return {
            "id": row["id"],
            "status": row["status"],
            "step": row["step"],
            "attempt": row["attempt"],
            "lease_expiry": row["lease_expiry"],
            "lease_token": row["lease_token"],
            "assigned_worker": row["assigned_worker"],
            "last_error": _json_loads(row["last_error"], None),
            "chunks_total": row["chunks_total"],
            "chunks_completed": row["chunks_completed"],
            "chunk_errors": _json_loads(row["chunk_errors"], []),
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }
