"""
Job state machine and lease manager.

A job moves ``pending -> parsing -> parsed -> generating -> completed`` and may
drop to ``failed`` from any non-terminal state. Workers never write a job they
have not leased: a lease is claimed atomically in the database, lasts
``lease_ttl_seconds``, and every later write is conditioned on the lease token.
A worker that dies simply lets its lease run out; the next lease on the job
reclaims it. There is no heartbeat.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple
from uuid import uuid4

from .database import PipelineDatabase
from .exceptions import PipelineError
from .models import (
    AtsScore,
    ChunkProgress,
    JobError,
    JobRecord,
    JobStatus,
    JobStatusView,
    JobStep,
    ProgressView,
    TERMINAL_STATUSES,
)
from .schemas import TOTAL_CHUNKS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PhaseSpec:
    """
    Lease contract of one phase.

    ``entry_statuses`` includes the running marker so that a job whose lease
    expired mid-phase (crash, or a failed attempt) can be leased again.
    """

    step: JobStep
    entry_statuses: Tuple[JobStatus, ...]
    running_status: JobStatus
    done_status: JobStatus


PARSE_PHASE = PhaseSpec(
    step=JobStep.PARSE,
    entry_statuses=(JobStatus.PENDING, JobStatus.PARSING),
    running_status=JobStatus.PARSING,
    done_status=JobStatus.PARSED,
)

GENERATE_PHASE = PhaseSpec(
    step=JobStep.GENERATE,
    entry_statuses=(JobStatus.PARSED, JobStatus.GENERATING),
    running_status=JobStatus.GENERATING,
    done_status=JobStatus.COMPLETED,
)

ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PARSING, JobStatus.FAILED}),
    JobStatus.PARSING: frozenset({JobStatus.PARSING, JobStatus.PARSED, JobStatus.FAILED}),
    JobStatus.PARSED: frozenset({JobStatus.GENERATING, JobStatus.FAILED}),
    JobStatus.GENERATING: frozenset({JobStatus.GENERATING, JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}

ACTIVE_STATUSES = tuple(status for status in JobStatus if status not in TERMINAL_STATUSES)

EXHAUSTED_MESSAGE = "Lease expired on the final attempt; attempts exhausted."
GENERATE_NOT_STARTED_MESSAGE = "Attempts exhausted before the generate phase could run."


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


@dataclass(frozen=True)
class Lease:
    job: JobRecord
    token: str
    phase: PhaseSpec

    @property
    def job_id(self) -> str:
        return self.job.id


def _to_datetime(epoch: float) -> datetime:
    return datetime.fromtimestamp(epoch, tz=timezone.utc)


def _to_record(row: Dict) -> JobRecord:
    return JobRecord(
        id=row["id"],
        status=JobStatus(row["status"]),
        step=JobStep(row["step"]),
        attempt=row["attempt"],
        lease_expiry=_to_datetime(row["lease_expiry"]),
        assigned_worker=row["assigned_worker"],
        last_error=JobError(**row["last_error"]) if row["last_error"] else None,
        meta=ChunkProgress(
            chunks_total=row["chunks_total"],
            chunks_completed=row["chunks_completed"],
            chunk_errors=row["chunk_errors"],
        ),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def to_status_view(job: JobRecord) -> JobStatusView:
    """What status polling exposes: no stack traces, only the last error message."""
    return JobStatusView(
        run_id=job.id,
        status=job.status,
        step=job.step,
        attempt=job.attempt,
        progress=ProgressView(
            total_chunks=job.meta.chunks_total,
            completed_chunks=job.meta.chunks_completed,
            chunk_errors=job.meta.chunk_errors,
        ),
        error=job.last_error.message if job.last_error else None,
    )


class JobStore:
    """
    Async facade over the job table that owns every job-state decision.

    The sqlite calls block, so each one is pushed to a worker thread; the event
    loop keeps serving other tasks meanwhile.

    Attributes:
        lease_ttl_seconds: How long a lease protects a job from other workers
        max_attempts: Leases a job may receive before it is failed for good
        worker_id: Written to ``assigned_worker`` on every lease this store takes
    """

    def __init__(
        self,
        database: PipelineDatabase,
        *,
        lease_ttl_seconds: float = 90.0,
        max_attempts: int = 3,
        worker_id: Optional[str] = None,
        clock: Callable[[], float] = time.time,
        chunks_total: int = TOTAL_CHUNKS,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.database = database
        self.lease_ttl_seconds = lease_ttl_seconds
        self.max_attempts = max_attempts
        self.worker_id = worker_id
        self.chunks_total = chunks_total
        self._clock = clock

    async def create_job(self, job_id: str) -> JobRecord:
        """
        Create the job for ``job_id`` if it does not exist yet and return it.

        The lease starts out already expired so the job is immediately eligible.
        """
        expired = self._clock() - self.lease_ttl_seconds
        inserted = await asyncio.to_thread(
            self.database.insert_job,
            job_id,
            JobStatus.PENDING.value,
            JobStep.PARSE.value,
            self.chunks_total,
            expired,
        )
        if inserted:
            logger.info(f"[{job_id}] Job created")
        job = await self.get_job(job_id)
        if job is None:
            raise PipelineError(f"Job {job_id} missing right after insert")
        return job

    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        row = await asyncio.to_thread(self.database.get_job, job_id)
        return _to_record(row) if row else None

    async def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 50) -> List[JobRecord]:
        rows = await asyncio.to_thread(self.database.list_jobs, status.value if status else None, limit)
        return [_to_record(row) for row in rows]

    async def status_view(self, job_id: str) -> Optional[JobStatusView]:
        job = await self.get_job(job_id)
        if job is None:
            return None
        return to_status_view(job)

    async def lease(self, phase: PhaseSpec, job_id: Optional[str] = None) -> Optional[Lease]:
        """
        Atomically lease one job eligible for ``phase``.

        Args:
            phase: The phase the caller is about to run
            job_id: Restrict the lease to this job; any eligible job otherwise

        Returns:
            The lease, or None when no job is eligible (never blocks)
        """
        now = self._clock()
        token = uuid4().hex
        row = await asyncio.to_thread(
            self.database.lease_job,
            entry_statuses=[status.value for status in phase.entry_statuses],
            running_status=phase.running_status.value,
            step=phase.step.value,
            now=now,
            lease_until=now + self.lease_ttl_seconds,
            max_attempts=self.max_attempts,
            lease_token=token,
            worker_id=self.worker_id,
            job_id=job_id,
        )
        if row is None:
            return None
        job = _to_record(row)
        logger.info(f"[{job.id}] Leased for {phase.step.value} (attempt {job.attempt}/{self.max_attempts})")
        return Lease(job=job, token=token, phase=phase)

    async def complete_parse(self, lease: Lease, original: Optional[Dict[str, Any]] = None) -> bool:
        """
        Mark parsing done, storing the parsed result with it, and expire the
        lease so Generate can pick the job up at once.
        """
        return await self._finish(
            lease,
            status=JobStatus.PARSED,
            step=JobStep.GENERATE,
            lease_expiry=self._clock() - self.lease_ttl_seconds,
            original=original,
        )

    async def complete_generate(
        self,
        lease: Lease,
        final: Optional[Dict[str, Any]] = None,
        ats_score: Optional[AtsScore] = None,
    ) -> bool:
        return await self._finish(
            lease,
            status=JobStatus.COMPLETED,
            step=JobStep.GENERATE,
            lease_expiry=self._clock(),
            final=final,
            ats_score=(ats_score or AtsScore()).model_dump() if final is not None else None,
        )

    async def _finish(
        self, lease: Lease, *, status: JobStatus, step: JobStep, lease_expiry: float, **output: Any
    ) -> bool:
        updated = await asyncio.to_thread(
            self.database.complete_leased_job,
            lease.job_id,
            lease.token,
            status=status.value,
            step=step.value,
            lease_expiry=lease_expiry,
            **output,
        )
        if updated:
            logger.info(f"[{lease.job_id}] {lease.phase.running_status.value} -> {status.value}")
        else:
            logger.warning(f"[{lease.job_id}] Lease lost before {lease.phase.step.value} could complete")
        return updated

    async def record_failure(self, lease: Lease, error: BaseException, permanent: bool = False) -> JobStatus:
        """
        Persist a failed phase attempt.

        The job is failed for good when ``permanent`` is set or the attempt just
        used was the last one. Otherwise it keeps its running marker with an
        expired lease, which leaves it eligible for another attempt.

        Returns:
            The status the job was left in
        """
        exhausted = lease.job.attempt >= self.max_attempts
        status = JobStatus.FAILED if permanent or exhausted else lease.phase.running_status
        message = str(error) or type(error).__name__
        updated = await asyncio.to_thread(
            self.database.update_leased_job,
            lease.job_id,
            lease.token,
            status=status.value,
            last_error={"message": message},
            lease_expiry=self._clock() - self.lease_ttl_seconds,
        )
        if not updated:
            logger.warning(f"[{lease.job_id}] Lease lost before failure could be recorded: {message}")
            job = await self.get_job(lease.job_id)
            return job.status if job else status

        if status is JobStatus.FAILED:
            logger.error(f"[{lease.job_id}] Job failed after attempt {lease.job.attempt}: {message}")
        else:
            logger.warning(
                f"[{lease.job_id}] Attempt {lease.job.attempt}/{self.max_attempts} of "
                f"{lease.phase.step.value} failed, job stays eligible: {message}"
            )
        return status

    async def start_chunks(self, lease: Lease, total: int) -> bool:
        """Reset the chunk counters at the start of a phase attempt."""
        return await asyncio.to_thread(
            self.database.update_leased_job,
            lease.job_id,
            lease.token,
            chunks_total=total,
            chunks_completed=0,
            chunk_errors=[],
        )

    async def record_chunk(self, lease: Lease, chunk_name: str, error: Optional[BaseException] = None) -> bool:
        """
        Count one resolved chunk of the current attempt.

        Returns:
            False if the lease was lost; the new holder's counters are left alone
        """
        message = f"{chunk_name}: {error}" if error is not None else None
        recorded = await asyncio.to_thread(self.database.record_chunk_result, lease.job_id, lease.token, message)
        if not recorded:
            logger.warning(f"[{lease.job_id}] Lease lost; progress for chunk {chunk_name} dropped")
        return recorded

    async def fail_exhausted(self, job_id: Optional[str] = None) -> int:
        """
        Fail jobs stranded by a worker that died during their last attempt, and
        parsed jobs left with no attempt for Generate.

        Returns:
            Number of jobs failed
        """
        failed = await asyncio.to_thread(
            self.database.fail_exhausted,
            active_statuses=[status.value for status in ACTIVE_STATUSES],
            failed_status=JobStatus.FAILED.value,
            now=self._clock(),
            max_attempts=self.max_attempts,
            message=EXHAUSTED_MESSAGE,
            status_messages={JobStatus.PARSED.value: GENERATE_NOT_STARTED_MESSAGE},
            job_id=job_id,
        )
        for failed_id in failed:
            logger.error(f"[{failed_id}] Attempts exhausted, job failed")
        return len(failed)
