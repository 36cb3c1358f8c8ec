from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Dict, List, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from .configuration import get_config
from .exceptions import RenderError, StorageError
from .job_store import JobStore, to_status_view
from .models import JobStatus, JobStatusView, RenderRequest, ResultRecord, RunCreated
from .queue_service import SqsQueue
from .render_pool import RenderPool
from .run_store import RunStore
from .services import ApiServices, build_api_services
from .storage import Storage
from .utils import is_pdf_upload, storage_key

logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 10 * 1024 * 1024


@lru_cache(maxsize=1)
def get_services() -> ApiServices:
    return build_api_services(get_config())


def get_job_store() -> JobStore:
    return get_services().jobs


def get_run_store() -> RunStore:
    return get_services().runs


def get_storage() -> Storage:
    return get_services().storage


def get_queue() -> Optional[SqsQueue]:
    return get_services().queue


def get_render_pool() -> RenderPool:
    return get_services().render_pool


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    if get_services.cache_info().currsize:
        await get_services().render_pool.shutdown()


app = FastAPI(title="Resume Pipeline API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/runs", response_model=RunCreated, status_code=202)
async def create_run(
    resume: UploadFile = File(...),
    instruction_text: str = Form(""),
    job_description: Optional[str] = Form(None),
    jobs: JobStore = Depends(get_job_store),
    runs: RunStore = Depends(get_run_store),
    storage: Storage = Depends(get_storage),
    queue: Optional[SqsQueue] = Depends(get_queue),
) -> RunCreated:
    if not resume.filename:
        raise HTTPException(status_code=400, detail="A PDF file is required.")
    if not is_pdf_upload(resume.filename, resume.content_type or ""):
        raise HTTPException(status_code=400, detail="Only PDF uploads are supported")
    if queue is None:
        raise HTTPException(status_code=503, detail="Processing queue is not configured")

    data = await resume.read(MAX_UPLOAD_BYTES + 1)
    await resume.close()
    if not data:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")
    if len(data) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="Uploaded file is too large")

    run_id = uuid4().hex
    try:
        locator = await asyncio.to_thread(storage.put, storage_key(run_id, resume.filename), data, "application/pdf")
    except StorageError as exc:
        logger.error(f"[{run_id}] {exc}")
        raise HTTPException(status_code=500, detail="Failed to save file to storage.") from exc

    await runs.create_run(
        run_id,
        resume.filename,
        locator,
        instruction_text=instruction_text,
        job_description=job_description or None,
    )
    job = await jobs.create_job(run_id)
    await queue.send_message({"runId": run_id})
    logger.info(f"New job created: {run_id}")

    return RunCreated(run_id=run_id, status=job.status, message="Your resume is being processed.")


@app.get("/runs", response_model=List[JobStatusView])
async def list_runs(
    status: Optional[JobStatus] = None,
    limit: int = 50,
    jobs: JobStore = Depends(get_job_store),
) -> List[JobStatusView]:
    records = await jobs.list_jobs(status=status, limit=max(1, min(limit, 200)))
    return [to_status_view(job) for job in records]


@app.get("/runs/{run_id}/status", response_model=JobStatusView)
async def run_status(run_id: str, jobs: JobStore = Depends(get_job_store)) -> JobStatusView:
    view = await jobs.status_view(run_id)
    if view is None:
        raise HTTPException(status_code=404, detail="Job not found.")
    return view


@app.get("/runs/{run_id}/result", response_model=ResultRecord)
async def run_result(
    run_id: str,
    jobs: JobStore = Depends(get_job_store),
    runs: RunStore = Depends(get_run_store),
) -> ResultRecord:
    result = await runs.get_result(run_id)
    if result is None or result.final is None:
        job = await jobs.get_job(run_id)
        if job is not None and job.status is not JobStatus.COMPLETED:
            raise HTTPException(status_code=404, detail=f"Job is still {job.status.value}. Result not available.")
        if result is None:
            raise HTTPException(status_code=404, detail="Result not found.")
    return result


@app.post("/render-pdf")
async def render_pdf(request: RenderRequest, pool: RenderPool = Depends(get_render_pool)) -> Response:
    try:
        pdf = await pool.render(request.html)
    except RenderError as exc:
        logger.error(f"PDF generation failed: {exc}")
        raise HTTPException(status_code=500, detail="Failed to generate PDF.") from exc
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": 'attachment; filename="resume.pdf"'},
    )
