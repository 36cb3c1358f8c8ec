"""
Pytest configuration and fixtures for Resume Pipeline Backend tests.
"""

import asyncio
import os
import re
import shutil
import tempfile
from pathlib import Path

import pytest

# Set test environment variables before importing the app
os.environ["DATABASE_PATH"] = str(Path(tempfile.mkdtemp(prefix="pipeline_test_db_")) / "pipeline.db")
os.environ["STORAGE_BACKEND"] = "local"
os.environ["STORAGE_LOCAL_ROOT"] = tempfile.mkdtemp(prefix="pipeline_test_uploads_")
os.environ["AWS_SQS_QUEUE_URL"] = ""
os.environ["LLM_API_KEYS"] = "test-key-1,test-key-2"
os.environ.pop("PIPELINE_CONFIG_PATH", None)

from fastapi.testclient import TestClient

from resume_pipeline_backend.database import PipelineDatabase
from resume_pipeline_backend.job_store import JobStore
from resume_pipeline_backend.main import app, get_queue, get_render_pool
from resume_pipeline_backend.queue_service import QueueEnvelope
from resume_pipeline_backend.render_pool import RenderEngine, RenderPool
from resume_pipeline_backend.run_store import RunStore
from resume_pipeline_backend.schemas import CHUNK_SCHEMAS

_SCHEMA_NAME = re.compile(r"JSON SCHEMA \((\w+)\)")


class FakeClock:
    """Controllable replacement for ``time.time``."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeQueue:
    """In-memory stand-in for SqsQueue."""

    def __init__(self, bodies=(), fail_receives: int = 0):
        self.pending = [
            QueueEnvelope(body=body, receipt_handle=f"rh-{index}", message_id=f"m-{index}")
            for index, body in enumerate(bodies)
        ]
        self.fail_receives = fail_receives
        self.requests = []
        self.deleted = []
        self.sent = []
        self.on_empty = None

    async def receive(self, max_messages=1, wait_time_seconds=None):
        self.requests.append(max_messages)
        if self.fail_receives:
            self.fail_receives -= 1
            raise ConnectionError("queue unavailable")
        batch, self.pending = self.pending[:max_messages], self.pending[max_messages:]
        if not batch and self.on_empty is not None:
            self.on_empty()
        await asyncio.sleep(0)
        return batch

    async def delete(self, receipt_handle):
        self.deleted.append(receipt_handle)

    async def send_message(self, body):
        self.sent.append(body)
        return f"sent-{len(self.sent)}"


def chunk_name(prompt: str) -> str:
    return _SCHEMA_NAME.search(prompt).group(1)


def chunk_output(name: str) -> dict:
    """A plausible provider answer for one chunk: every declared key filled in."""
    schema = next(schema for schema in CHUNK_SCHEMAS if schema.name == name)
    return {key: f"{name}:{key}" for key in schema.output_keys}


class ScriptedGenerator:
    """
    Provider stand-in keyed by chunk name.

    ``responses`` maps a chunk name to a dict to return or an exception to raise;
    chunks without an entry get ``chunk_output(name)``. ``delays`` maps a chunk
    name to seconds to sleep before answering.
    """

    def __init__(self, responses=None, delays=None, default_delay: float = 0.0):
        self.responses = responses or {}
        self.delays = delays or {}
        self.default_delay = default_delay
        self.prompts = []
        self.completion_order = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def generate(self, prompt):
        name = chunk_name(prompt)
        self.prompts.append(prompt)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(name, self.default_delay))
            response = self.responses.get(name, chunk_output(name))
            if isinstance(response, BaseException):
                raise response
            self.completion_order.append(name)
            return response
        finally:
            self.in_flight -= 1


class FakeRenderEngine(RenderEngine):
    def __init__(self, delay: float = 0.01, fail_on=None):
        self.delay = delay
        self.fail_on = fail_on
        self.start_count = 0
        self.shutdown_count = 0
        self.acquired = 0
        self.released = 0
        self.active = 0
        self.max_active = 0
        self.started_documents = []

    async def start(self):
        await asyncio.sleep(0)
        self.start_count += 1

    async def acquire(self):
        self.acquired += 1
        return {"id": self.acquired}

    async def render(self, context, document):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.started_documents.append(document)
        try:
            await asyncio.sleep(self.delay)
            if document == self.fail_on:
                raise RuntimeError("renderer crashed")
            return f"%PDF-{document}".encode()
        finally:
            self.active -= 1

    async def release(self, context):
        self.released += 1

    async def shutdown(self):
        self.shutdown_count += 1


def make_pdf(lines, links=()) -> bytes:
    """Build a one-page PDF with Helvetica text lines and URI link annotations."""
    text_ops = " ".join(f"1 0 0 1 72 {720 - 16 * index} Tm ({line}) Tj" for index, line in enumerate(lines))
    stream = f"BT /F1 12 Tf {text_ops} ET".encode("latin-1")

    annot_ids = [6 + index for index in range(len(links))]
    annots = f" /Annots [{' '.join(f'{i} 0 R' for i in annot_ids)}]" if links else ""
    objects = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        b"<< /Type /Pages /Kids [3 0 R] /Count 1 >>",
        (
            "<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] /Contents 4 0 R "
            f"/Resources << /Font << /F1 5 0 R >> >>{annots} >>"
        ).encode("latin-1"),
        b"<< /Length %d >>\nstream\n" % len(stream) + stream + b"\nendstream",
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    ]
    for link in links:
        objects.append(
            f"<< /Type /Annot /Subtype /Link /Rect [72 100 200 120] /Border [0 0 0] "
            f"/A << /S /URI /URI ({link}) >> >>".encode("latin-1")
        )

    output = bytearray(b"%PDF-1.4\n")
    offsets = []
    for number, body in enumerate(objects, start=1):
        offsets.append(len(output))
        output += b"%d 0 obj\n" % number + body + b"\nendobj\n"
    xref_offset = len(output)
    output += b"xref\n0 %d\n" % (len(objects) + 1)
    output += b"0000000000 65535 f \n"
    for offset in offsets:
        output += b"%010d 00000 n \n" % offset
    output += b"trailer\n<< /Size %d /Root 1 0 R >>\nstartxref\n%d\n%%%%EOF\n" % (len(objects) + 1, xref_offset)
    return bytes(output)


@pytest.fixture(scope="session", autouse=True)
def test_dirs():
    """Cleanup the directories the app was pointed at."""
    database_dir = str(Path(os.environ["DATABASE_PATH"]).parent)
    upload_dir = os.environ["STORAGE_LOCAL_ROOT"]

    yield {"database": database_dir, "upload": upload_dir}

    shutil.rmtree(database_dir, ignore_errors=True)
    shutil.rmtree(upload_dir, ignore_errors=True)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def database(tmp_path):
    return PipelineDatabase(tmp_path / "pipeline.db")


@pytest.fixture
def job_store(database, clock):
    return JobStore(database, lease_ttl_seconds=90.0, max_attempts=3, worker_id="test-worker", clock=clock)


@pytest.fixture
def run_store(database):
    return RunStore(database)


@pytest.fixture
def fake_queue():
    return FakeQueue()


@pytest.fixture
def render_engine():
    return FakeRenderEngine()


@pytest.fixture
def client(fake_queue, render_engine):
    """Create a test client for the FastAPI app with the queue and renderer faked."""
    pool = RenderPool(render_engine, concurrency=2)
    app.dependency_overrides[get_queue] = lambda: fake_queue
    app.dependency_overrides[get_render_pool] = lambda: pool
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def sample_pdf():
    """A small, valid resume PDF with one hyperlink."""
    return make_pdf(
        ["Jane Doe", "Senior Python Engineer", "Experience building Kubernetes platforms"],
        links=["https://github.com/janedoe"],
    )
