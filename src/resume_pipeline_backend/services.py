"""
Object graph construction for the API and the worker.

Everything stateful (database, stores, key pool, provider client, render
engine) is built here once per process and handed to its users explicitly.
"""

from __future__ import annotations

import logging
import os
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from omegaconf import DictConfig

from .chunks import ChunkOrchestrator
from .configuration import split_api_keys
from .database import PipelineDatabase
from .dispatcher import Dispatcher
from .extraction import extract_text
from .job_store import JobStore
from .key_manager import KeyManager
from .phases import GenerateExecutor, ParseExecutor
from .provider import GenerationOptions, ProviderClient, build_backend
from .queue_service import SqsQueue
from .render_pool import RenderPool, WeasyPrintEngine
from .run_store import RunStore
from .storage import Storage, build_storage

logger = logging.getLogger(__name__)


def worker_identity() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def build_job_store(config: DictConfig, database: PipelineDatabase, worker_id: Optional[str] = None) -> JobStore:
    return JobStore(
        database,
        lease_ttl_seconds=float(config.jobs.lease_ttl_seconds),
        max_attempts=int(config.jobs.max_attempts),
        worker_id=worker_id,
    )


def build_queue(config: DictConfig) -> Optional[SqsQueue]:
    if not config.queue.url:
        logger.warning("AWS_SQS_QUEUE_URL not configured")
        return None
    return SqsQueue(config.queue.url, config.queue.region)


def build_provider(config: DictConfig) -> ProviderClient:
    settings = config.provider
    keys = KeyManager(split_api_keys(settings.api_keys))
    logger.info(f"Provider {settings.backend}/{settings.model} with {len(keys)} API key(s)")
    return ProviderClient(
        keys,
        build_backend(settings.backend, settings.model),
        timeout_seconds=float(settings.timeout_seconds),
        max_retries=int(settings.max_retries),
        backoff_base=float(settings.backoff_base_seconds),
        backoff_max=float(settings.backoff_max_seconds),
        options=GenerationOptions(max_output_tokens=int(settings.max_output_tokens)),
    )


@dataclass
class ApiServices:
    database: PipelineDatabase
    jobs: JobStore
    runs: RunStore
    storage: Storage
    queue: Optional[SqsQueue]
    render_pool: RenderPool


def build_api_services(config: DictConfig) -> ApiServices:
    database = PipelineDatabase(Path(config.database.path))
    concurrency = int(config.render.concurrency)
    return ApiServices(
        database=database,
        jobs=build_job_store(config, database),
        runs=RunStore(database),
        storage=build_storage(config),
        queue=build_queue(config),
        render_pool=RenderPool(
            WeasyPrintEngine(page_size=config.render.page_size, max_workers=concurrency),
            concurrency=concurrency,
        ),
    )


@dataclass
class WorkerServices:
    database: PipelineDatabase
    jobs: JobStore
    runs: RunStore
    storage: Storage
    provider: ProviderClient
    orchestrator: ChunkOrchestrator
    dispatcher: Dispatcher


def build_worker_services(
    config: DictConfig,
    *,
    queue=None,
    provider: Optional[ProviderClient] = None,
) -> WorkerServices:
    """
    Build the worker's object graph.

    Args:
        queue: Queue to consume; SQS from config when omitted
        provider: Provider client; built from config when omitted

    Raises:
        ValueError: No queue is configured, or the API key pool is empty
    """
    database = PipelineDatabase(Path(config.database.path))
    jobs = build_job_store(config, database, worker_id=worker_identity())
    runs = RunStore(database)
    storage = build_storage(config)
    provider = provider or build_provider(config)
    orchestrator = ChunkOrchestrator(provider, concurrency=int(config.chunks.concurrency))

    queue = queue or build_queue(config)
    if queue is None:
        raise ValueError("The worker needs a queue; set AWS_SQS_QUEUE_URL")

    dispatcher_config = config.dispatcher
    dispatcher = Dispatcher(
        queue,
        jobs,
        ParseExecutor(jobs, runs, orchestrator, storage, extract_text),
        GenerateExecutor(jobs, runs, orchestrator),
        concurrency=int(dispatcher_config.concurrency),
        broker_max_batch=int(dispatcher_config.broker_max_batch),
        wait_time_seconds=int(dispatcher_config.wait_time_seconds),
        error_backoff_seconds=float(dispatcher_config.error_backoff_seconds),
        reclaim_idle_jobs=bool(dispatcher_config.reclaim_idle_jobs),
    )
    return WorkerServices(
        database=database,
        jobs=jobs,
        runs=runs,
        storage=storage,
        provider=provider,
        orchestrator=orchestrator,
        dispatcher=dispatcher,
    )
