from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    PENDING = "pending"
    PARSING = "parsing"
    PARSED = "parsed"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


class JobStep(str, Enum):
    PARSE = "parse"
    GENERATE = "generate"


class JobError(BaseModel):
    message: str


class ChunkProgress(BaseModel):
    chunks_total: int
    chunks_completed: int = 0
    chunk_errors: List[str] = Field(default_factory=list)


class JobRecord(BaseModel):
    """Durable job state; the id is the run id of the source document."""

    id: str
    status: JobStatus
    step: JobStep
    attempt: int
    lease_expiry: datetime
    assigned_worker: Optional[str] = None
    last_error: Optional[JobError] = None
    meta: ChunkProgress
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class SourceDocument(BaseModel):
    run_id: str
    original_filename: str
    source_locator: str
    instruction_text: str = ""
    job_description: Optional[str] = None
    extracted_text: Optional[str] = None
    created_at: datetime


class AtsScore(BaseModel):
    pre: int = 0
    post: int = 0
    missing_keywords: List[str] = Field(default_factory=list)


class ResultRecord(BaseModel):
    run_id: str
    original: Dict[str, Any] = Field(default_factory=dict)
    final: Optional[Dict[str, Any]] = None
    ats_score: AtsScore = Field(default_factory=AtsScore)
    created_at: datetime
    updated_at: datetime


class QueueMessage(BaseModel):
    """Body of a pipeline queue message: ``{"runId": "..."}``."""

    model_config = ConfigDict(populate_by_name=True)

    run_id: str = Field(alias="runId", min_length=1)


class ProgressView(BaseModel):
    total_chunks: int
    completed_chunks: int
    chunk_errors: List[str] = Field(default_factory=list)


class JobStatusView(BaseModel):
    run_id: str
    status: JobStatus
    step: JobStep
    attempt: int
    progress: ProgressView
    error: Optional[str] = None


class RunCreated(BaseModel):
    run_id: str
    status: JobStatus
    message: str


class RenderRequest(BaseModel):
    html: str = Field(min_length=1)
