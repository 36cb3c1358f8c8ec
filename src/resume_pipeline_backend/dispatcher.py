"""
Queue dispatcher: turns queue messages into bounded concurrent phase work.

The loop waits until the process has a free slot, long-polls the queue for at
most as many messages as there are free slots (and no more than the broker
batch limit), and hands each message to its own task. A finishing task frees
its slot, which wakes the loop again. The slot count is an explicit
``ConcurrencyLimiter`` so the ceiling can be inspected and tested directly.

Every message is acknowledged once its task ends, whatever the outcome. A
failed phase therefore does not come back through the queue; it is retried
only through the job's own attempt budget when another message (or the
optional idle reclaim) leases it again.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Set

from pydantic import ValidationError

from .exceptions import PhaseFailedError
from .job_store import GENERATE_PHASE, PARSE_PHASE, JobStore
from .models import JobStatus, QueueMessage
from .phases import GenerateExecutor, ParseExecutor
from .queue_service import QueueEnvelope

logger = logging.getLogger(__name__)


class ConcurrencyLimiter:
    """Counter of in-flight tasks with a hard ceiling and a wait-for-room signal."""

    def __init__(self, limit: int):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.limit = limit
        self._active = 0
        self._condition = asyncio.Condition()

    @property
    def active(self) -> int:
        return self._active

    @property
    def free(self) -> int:
        return self.limit - self._active

    async def wait_for_capacity(self) -> int:
        """Block until at least one slot is free; returns the number of free slots."""
        async with self._condition:
            await self._condition.wait_for(lambda: self._active < self.limit)
            return self.limit - self._active

    def acquire_nowait(self) -> bool:
        if self._active >= self.limit:
            return False
        self._active += 1
        return True

    async def release(self) -> None:
        async with self._condition:
            if self._active <= 0:
                raise RuntimeError("release() called more times than acquire")
            self._active -= 1
            self._condition.notify_all()


class Dispatcher:
    """
    Pulls pipeline messages and runs Parse then Generate for each.

    Attributes:
        limiter: The message-level concurrency ceiling (C)
        broker_max_batch: Largest batch the queue accepts per receive
        wait_time_seconds: Long-poll wait per receive
        error_backoff_seconds: Pause after a failed receive
        reclaim_idle_jobs: When a poll comes back empty, lease any eligible
            job (one per phase) so attempts stranded by an acknowledged
            message still get retried
    """

    def __init__(
        self,
        queue,
        jobs: JobStore,
        parse: ParseExecutor,
        generate: GenerateExecutor,
        *,
        concurrency: int = 4,
        broker_max_batch: int = 10,
        wait_time_seconds: int = 20,
        error_backoff_seconds: float = 5.0,
        reclaim_idle_jobs: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.queue = queue
        self.jobs = jobs
        self.parse = parse
        self.generate = generate
        self.limiter = ConcurrencyLimiter(concurrency)
        self.broker_max_batch = broker_max_batch
        self.wait_time_seconds = wait_time_seconds
        self.error_backoff_seconds = error_backoff_seconds
        self.reclaim_idle_jobs = reclaim_idle_jobs
        self._sleep = sleep
        self._tasks: Set[asyncio.Task] = set()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def run(self) -> None:
        """Poll until ``stop()`` is called, then wait for in-flight tasks."""
        self._running = True
        logger.info(f"Dispatcher started (concurrency={self.limiter.limit}, batch={self.broker_max_batch})")
        try:
            while self._running:
                await self.poll_once()
        finally:
            await self.drain()
            logger.info("Dispatcher stopped")

    def stop(self) -> None:
        if self._running:
            logger.info("Dispatcher stopping; no new messages will be fetched")
        self._running = False

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def poll_once(self) -> int:
        """
        One admission cycle: wait for room, fetch, spawn.

        Returns:
            Number of messages dispatched
        """
        free = await self.limiter.wait_for_capacity()
        batch = min(free, self.broker_max_batch)
        try:
            envelopes = await self.queue.receive(batch, self.wait_time_seconds)
        except Exception:
            logger.exception(f"Failed to receive messages; retrying in {self.error_backoff_seconds}s")
            await self._sleep(self.error_backoff_seconds)
            return 0

        if not envelopes:
            await self._on_idle()
            return 0

        dispatched = 0
        for envelope in envelopes:
            if not self.limiter.acquire_nowait():
                # Only this loop takes slots; an unplaced message reappears after its visibility timeout
                logger.error(f"No free slot for message {envelope.message_id}; leaving it on the queue")
                continue
            self._spawn(self._process(envelope))
            dispatched += 1
        return dispatched

    def _spawn(self, coroutine: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coroutine)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _process(self, envelope: QueueEnvelope) -> None:
        try:
            await self.handle_message(envelope.body)
        except Exception:
            logger.exception(f"Unhandled error processing message {envelope.message_id}")
        finally:
            try:
                await self.queue.delete(envelope.receipt_handle)
            except Exception:
                logger.exception(f"Failed to acknowledge message {envelope.message_id}")
            finally:
                await self.limiter.release()

    async def handle_message(self, body: str) -> Optional[JobStatus]:
        """
        Drive the job named by one queue message as far as it will go.

        Returns:
            The job's status afterwards, or None for a malformed message
        """
        try:
            message = QueueMessage.model_validate_json(body)
        except ValidationError as exc:
            logger.error(f"Discarding malformed queue message: {exc.errors()}")
            return None

        run_id = message.run_id
        await self.jobs.fail_exhausted(run_id)
        job = await self.jobs.get_job(run_id) or await self.jobs.create_job(run_id)
        if job.is_terminal:
            logger.info(f"[{run_id}] Job already {job.status.value}; nothing to do")
            return job.status

        try:
            if job.status in PARSE_PHASE.entry_statuses:
                await self.parse.execute(run_id)
                job = await self.jobs.get_job(run_id)
            if job is not None and job.status in GENERATE_PHASE.entry_statuses:
                await self.generate.execute(run_id)
        except PhaseFailedError as exc:
            logger.warning(f"[{run_id}] {exc}")

        job = await self.jobs.get_job(run_id)
        return job.status if job else None

    async def _on_idle(self) -> None:
        try:
            await self.jobs.fail_exhausted()
        except Exception:
            logger.exception("Sweep of exhausted jobs failed")

        if self.reclaim_idle_jobs and self.limiter.acquire_nowait():
            self._spawn(self._reclaim())

    async def _reclaim(self) -> None:
        try:
            for executor in (self.parse, self.generate):
                try:
                    status = await executor.execute()
                except PhaseFailedError as exc:
                    logger.warning(f"Reclaimed job failed again: {exc}")
                else:
                    if status is not None:
                        logger.info(f"Reclaimed an idle job into {status.value}")
        except Exception:
            logger.exception("Idle reclaim failed")
        finally:
            await self.limiter.release()
