"""
Phase executors.

Each executor runs one phase of one job end to end: lease the job, gather the
inputs, fan out over the chunks, persist the output, and move the job to the
phase's done status. Chunk failures never fail a phase; they are recorded on
the job as progress metadata. Anything else that goes wrong is written to the
job through ``JobStore.record_failure`` and re-raised as ``PhaseFailedError``
so the caller stops progressing the job in this cycle.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from .chunks import ChunkOrchestrator
from .exceptions import PhaseFailedError, SourceDocumentMissingError, UnrecoverableJobError
from .job_store import GENERATE_PHASE, PARSE_PHASE, JobStore, Lease, PhaseSpec
from .models import JobStatus, SourceDocument
from .prompts import build_optimize_prompt, build_parse_prompt
from .run_store import RunStore
from .scoring import score_result
from .storage import Storage

logger = logging.getLogger(__name__)

TextExtractor = Callable[[bytes], str]


class PhaseExecutor:
    phase: PhaseSpec

    def __init__(self, jobs: JobStore, runs: RunStore, orchestrator: ChunkOrchestrator) -> None:
        self.jobs = jobs
        self.runs = runs
        self.orchestrator = orchestrator

    async def execute(self, job_id: Optional[str] = None) -> Optional[JobStatus]:
        """
        Lease a job for this phase and run the phase on it.

        Args:
            job_id: Only lease this job; any eligible job otherwise

        Returns:
            The phase's done status, or None when no job was eligible or the
            lease was lost to another worker before completion

        Raises:
            PhaseFailedError: The attempt failed; the failure is already persisted
        """
        lease = await self.jobs.lease(self.phase, job_id)
        if lease is None:
            return None

        try:
            completed = await self._run(lease)
        except UnrecoverableJobError as exc:
            status = await self.jobs.record_failure(lease, exc, permanent=True)
            raise PhaseFailedError(lease.job_id, self.phase.step.value, status.value, exc) from exc
        except Exception as exc:
            logger.exception(f"[{lease.job_id}] {self.phase.step.value} attempt {lease.job.attempt} failed")
            status = await self.jobs.record_failure(lease, exc)
            raise PhaseFailedError(lease.job_id, self.phase.step.value, status.value, exc) from exc
        return self.phase.done_status if completed else None

    async def _run(self, lease: Lease) -> bool:
        """Run the phase body; returns whether the completion write landed."""
        raise NotImplementedError

    async def _load_run(self, lease: Lease) -> SourceDocument:
        run = await self.runs.get_run(lease.job_id)
        if run is None:
            raise SourceDocumentMissingError(f"No source document for run {lease.job_id}")
        return run

    async def _record_chunk(self, lease: Lease, chunk_name: str, error: Optional[BaseException]) -> None:
        await self.jobs.record_chunk(lease, chunk_name, error)


class ParseExecutor(PhaseExecutor):
    """Pass 1: structure the uploaded resume without rewriting it."""

    phase = PARSE_PHASE

    def __init__(
        self,
        jobs: JobStore,
        runs: RunStore,
        orchestrator: ChunkOrchestrator,
        storage: Storage,
        extract_text: TextExtractor,
    ) -> None:
        super().__init__(jobs, runs, orchestrator)
        self.storage = storage
        self.extract_text = extract_text

    async def _run(self, lease: Lease) -> bool:
        run_id = lease.job_id
        run = await self._load_run(lease)
        text = await self._resume_text(run)

        await self.jobs.start_chunks(lease, self.orchestrator.total)
        logger.info(f"[{run_id}] Starting Pass 1: Parsing...")
        result = await self.orchestrator.run(
            lambda schema: build_parse_prompt(text, schema),
            label=run_id,
            on_chunk=lambda name, error: self._record_chunk(lease, name, error),
        )
        return await self.jobs.complete_parse(lease, result.merged)

    async def _resume_text(self, run: SourceDocument) -> str:
        """Extracted text of the run, derived once and reused by later attempts."""
        if run.extracted_text:
            return run.extracted_text

        data = await asyncio.to_thread(self.storage.get, run.source_locator)
        text = await asyncio.to_thread(self.extract_text, data)
        if not await self.runs.set_extracted_text(run.run_id, text):
            # Another attempt stored it first; keep the stored value authoritative
            stored = await self.runs.get_run(run.run_id)
            if stored is not None and stored.extracted_text:
                return stored.extracted_text
        return text


class GenerateExecutor(PhaseExecutor):
    """Pass 2: rewrite every chunk following the user's instruction, then score."""

    phase = GENERATE_PHASE

    async def _run(self, lease: Lease) -> bool:
        run_id = lease.job_id
        run = await self._load_run(lease)
        if not run.extracted_text:
            raise SourceDocumentMissingError(f"Run {run_id} has no extracted text to optimize")
        text = run.extracted_text

        await self.jobs.start_chunks(lease, self.orchestrator.total)
        logger.info(f"[{run_id}] Starting Pass 2: Optimization...")
        result = await self.orchestrator.run(
            lambda schema: build_optimize_prompt(text, run.instruction_text, schema, run.job_description),
            label=run_id,
            on_chunk=lambda name, error: self._record_chunk(lease, name, error),
        )

        ats_score = score_result(text, result.merged, run.job_description)
        if run.job_description:
            logger.info(f"[{run_id}] ATS score {ats_score.pre} -> {ats_score.post}")
        return await self.jobs.complete_generate(lease, result.merged, ats_score)
