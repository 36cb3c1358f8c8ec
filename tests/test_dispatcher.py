"""
Tests for the queue dispatcher.

Tests cover:
- The concurrency limiter
- Receive sizing against free slots and the broker batch limit
- Unconditional acknowledgement
- End-to-end message handling, sweeping and idle reclaim
"""

import asyncio
import json

import pytest

from resume_pipeline_backend.chunks import ChunkOrchestrator
from resume_pipeline_backend.dispatcher import ConcurrencyLimiter, Dispatcher
from resume_pipeline_backend.exceptions import PhaseFailedError
from resume_pipeline_backend.job_store import PARSE_PHASE
from resume_pipeline_backend.models import JobStatus
from resume_pipeline_backend.phases import GenerateExecutor, ParseExecutor
from resume_pipeline_backend.storage import LocalStorage

from conftest import FakeQueue, ScriptedGenerator


def message(run_id):
    return json.dumps({"runId": run_id})


class StubExecutor:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    async def execute(self, job_id=None):
        self.calls.append(job_id)
        if self.error is not None:
            raise self.error
        return None


def stub_dispatcher(queue, jobs=None, **kwargs):
    return Dispatcher(queue, jobs, StubExecutor(), StubExecutor(), **kwargs)


@pytest.fixture
def pipeline(job_store, run_store, tmp_path):
    """Real executors over a scripted provider and local storage."""
    storage = LocalStorage(tmp_path / "uploads")
    orchestrator = ChunkOrchestrator(ScriptedGenerator(), concurrency=3)
    parse = ParseExecutor(job_store, run_store, orchestrator, storage, lambda data: "Jane Doe\nPython engineer")
    generate = GenerateExecutor(job_store, run_store, orchestrator)

    async def submit(run_id):
        locator = storage.put(f"runs/{run_id}/resume.pdf", b"%PDF-1.4")
        await run_store.create_run(run_id, "resume.pdf", locator, "Keep it short")
        await job_store.create_job(run_id)

    return parse, generate, submit


class TestConcurrencyLimiter:
    def test_ceiling_and_release(self):
        async def scenario():
            limiter = ConcurrencyLimiter(2)
            assert limiter.acquire_nowait()
            assert limiter.acquire_nowait()
            assert not limiter.acquire_nowait()
            assert limiter.free == 0

            waiter = asyncio.ensure_future(limiter.wait_for_capacity())
            await asyncio.sleep(0)
            assert not waiter.done()

            await limiter.release()
            return await waiter, limiter.active

        free, active = asyncio.run(scenario())
        assert free == 1
        assert active == 1

    def test_over_release_raises(self):
        async def scenario():
            limiter = ConcurrencyLimiter(1)
            with pytest.raises(RuntimeError):
                await limiter.release()

        asyncio.run(scenario())

    def test_rejects_zero_limit(self):
        with pytest.raises(ValueError):
            ConcurrencyLimiter(0)


class TestReceiveSizing:
    def test_never_requests_more_than_free_slots(self):
        """Five messages with three slots: receives are sized to the slots actually free."""
        queue = FakeQueue([message(f"run-{i}") for i in range(5)])

        async def scenario():
            dispatcher = stub_dispatcher(queue, concurrency=3)
            gates = {f"run-{i}": asyncio.Event() for i in range(5)}
            in_flight = []
            peak = []

            async def handler(body):
                run_id = json.loads(body)["runId"]
                in_flight.append(run_id)
                peak.append(len(in_flight))
                await gates[run_id].wait()
                in_flight.remove(run_id)

            dispatcher.handle_message = handler

            first = await dispatcher.poll_once()
            active_after_first = dispatcher.limiter.active

            gates["run-0"].set()
            second = await dispatcher.poll_once()

            for gate in gates.values():
                gate.set()
            third = await dispatcher.poll_once()
            await dispatcher.drain()
            return (first, second, third), active_after_first, max(peak), dispatcher.limiter.active

        dispatched, active_after_first, peak, active_after = asyncio.run(scenario())
        assert dispatched == (3, 1, 1)
        assert queue.requests == [3, 1, 3]
        assert active_after_first == 3
        assert peak <= 3
        assert active_after == 0
        assert queue.deleted == [f"rh-{i}" for i in range(5)]

    def test_broker_batch_limit_caps_receive(self):
        queue = FakeQueue([message(f"run-{i}") for i in range(12)])

        async def scenario():
            dispatcher = stub_dispatcher(queue, concurrency=20, broker_max_batch=10)

            async def handler(body):
                return None

            dispatcher.handle_message = handler
            count = await dispatcher.poll_once()
            await dispatcher.drain()
            return count

        assert asyncio.run(scenario()) == 10
        assert queue.requests == [10]

    def test_oversized_batch_never_exceeds_the_ceiling(self):
        """A broker returning more than was asked for leaves the extra messages undispatched."""

        class GreedyQueue(FakeQueue):
            async def receive(self, max_messages=1, wait_time_seconds=None):
                return await super().receive(10, wait_time_seconds)

        queue = GreedyQueue([message(f"run-{i}") for i in range(3)])

        async def scenario():
            dispatcher = stub_dispatcher(queue, concurrency=1)
            gate = asyncio.Event()

            async def handler(body):
                await gate.wait()

            dispatcher.handle_message = handler
            count = await dispatcher.poll_once()
            active = dispatcher.limiter.active
            gate.set()
            await dispatcher.drain()
            return count, active

        count, active = asyncio.run(scenario())
        assert count == 1
        assert active == 1
        assert queue.deleted == ["rh-0"]


class TestAcknowledgement:
    def test_message_deleted_when_handler_raises(self):
        queue = FakeQueue([message("run-1")])

        async def scenario():
            dispatcher = stub_dispatcher(queue, concurrency=2)

            async def handler(body):
                raise RuntimeError("unexpected")

            dispatcher.handle_message = handler
            await dispatcher.poll_once()
            await dispatcher.drain()
            return dispatcher.limiter.active

        assert asyncio.run(scenario()) == 0
        assert queue.deleted == ["rh-0"]

    def test_message_deleted_when_phase_fails(self, job_store):
        queue = FakeQueue([message("run-1")])
        failure = PhaseFailedError("run-1", "parse", "parsing", RuntimeError("provider down"))
        parse = StubExecutor(error=failure)

        async def scenario():
            dispatcher = Dispatcher(queue, job_store, parse, StubExecutor(), concurrency=2)
            await dispatcher.poll_once()
            await dispatcher.drain()

        asyncio.run(scenario())
        assert parse.calls == ["run-1"]
        assert queue.deleted == ["rh-0"]

    def test_malformed_message_is_discarded(self, job_store):
        queue = FakeQueue(["not json", json.dumps({"runId": ""}), json.dumps({"other": 1})])

        async def scenario():
            dispatcher = stub_dispatcher(queue, job_store, concurrency=3)
            results = [await dispatcher.handle_message(envelope.body) for envelope in queue.pending]
            await dispatcher.poll_once()
            await dispatcher.drain()
            return results, dispatcher.parse.calls

        results, parse_calls = asyncio.run(scenario())
        assert results == [None, None, None]
        assert parse_calls == []
        assert queue.deleted == ["rh-0", "rh-1", "rh-2"]


class TestHandleMessage:
    def test_message_drives_job_to_completion(self, job_store, pipeline):
        parse, generate, submit = pipeline
        queue = FakeQueue([message("run-1")])

        async def scenario():
            await submit("run-1")
            dispatcher = Dispatcher(queue, job_store, parse, generate, concurrency=2)
            await dispatcher.poll_once()
            await dispatcher.drain()
            return await job_store.get_job("run-1")

        job = asyncio.run(scenario())
        assert job.status is JobStatus.COMPLETED
        assert queue.deleted == ["rh-0"]

    def test_terminal_job_is_left_alone(self, job_store):
        parse = StubExecutor()

        async def scenario():
            await job_store.create_job("run-1")
            await job_store.record_failure(
                await job_store.lease(PARSE_PHASE), RuntimeError("gone"), permanent=True
            )
            dispatcher = Dispatcher(FakeQueue(), job_store, parse, StubExecutor())
            return await dispatcher.handle_message(message("run-1"))

        assert asyncio.run(scenario()) is JobStatus.FAILED
        assert parse.calls == []

    def test_unknown_run_gets_a_job(self, job_store):
        parse = StubExecutor()

        async def scenario():
            dispatcher = Dispatcher(FakeQueue(), job_store, parse, StubExecutor())
            status = await dispatcher.handle_message(message("run-9"))
            return status, await job_store.get_job("run-9")

        status, job = asyncio.run(scenario())
        assert status is JobStatus.PENDING
        assert job is not None
        assert parse.calls == ["run-9"]

    def test_stranded_job_is_failed_on_redelivery(self, job_store, clock):
        """A job whose last attempt died with its worker is failed, not run a fourth time."""
        parse = StubExecutor()

        async def scenario():
            await job_store.create_job("run-1")
            for _ in range(3):
                await job_store.lease(PARSE_PHASE)
                clock.advance(91)
            dispatcher = Dispatcher(FakeQueue(), job_store, parse, StubExecutor())
            status = await dispatcher.handle_message(message("run-1"))
            return status, await job_store.get_job("run-1")

        status, job = asyncio.run(scenario())
        assert status is JobStatus.FAILED
        assert job.attempt == 3
        assert parse.calls == []


class TestLoop:
    def test_receive_error_backs_off(self, job_store):
        queue = FakeQueue(fail_receives=1)
        sleeps = []

        async def record_sleep(seconds):
            sleeps.append(seconds)

        async def scenario():
            dispatcher = stub_dispatcher(queue, job_store, error_backoff_seconds=5.0, sleep=record_sleep)
            return await dispatcher.poll_once()

        assert asyncio.run(scenario()) == 0
        assert sleeps == [5.0]

    def test_run_until_stopped(self, job_store):
        queue = FakeQueue([message("run-1"), message("run-2")])
        handled = []

        async def scenario():
            dispatcher = stub_dispatcher(queue, job_store, concurrency=4)

            async def handler(body):
                await asyncio.sleep(0.01)
                handled.append(json.loads(body)["runId"])

            dispatcher.handle_message = handler
            queue.on_empty = dispatcher.stop
            await dispatcher.run()
            return dispatcher.running, dispatcher.limiter.active

        running, active = asyncio.run(scenario())
        assert running is False
        assert active == 0
        assert sorted(handled) == ["run-1", "run-2"]
        assert sorted(queue.deleted) == ["rh-0", "rh-1"]

    def test_idle_poll_reclaims_retryable_job(self, job_store, pipeline):
        parse, generate, submit = pipeline

        async def scenario(reclaim):
            await submit("run-1")
            await job_store.record_failure(await job_store.lease(PARSE_PHASE), RuntimeError("provider down"))
            dispatcher = Dispatcher(
                FakeQueue(), job_store, parse, generate, concurrency=2, reclaim_idle_jobs=reclaim
            )
            await dispatcher.poll_once()
            await dispatcher.drain()
            return await job_store.get_job("run-1"), dispatcher.limiter.active

        job, active = asyncio.run(scenario(reclaim=True))
        assert job.status is JobStatus.COMPLETED
        assert job.attempt == 3
        assert active == 0

    def test_idle_poll_without_reclaim_leaves_job(self, job_store, pipeline):
        parse, generate, submit = pipeline

        async def scenario():
            await submit("run-1")
            await job_store.record_failure(await job_store.lease(PARSE_PHASE), RuntimeError("provider down"))
            dispatcher = Dispatcher(FakeQueue(), job_store, parse, generate, concurrency=2)
            await dispatcher.poll_once()
            await dispatcher.drain()
            return await job_store.get_job("run-1")

        job = asyncio.run(scenario())
        assert job.status is JobStatus.PARSING
        assert job.attempt == 1
