"""
Worker process entrypoint.

Run with ``resume-pipeline-worker`` (or ``python -m resume_pipeline_backend.worker``).
Any number of workers may run against the same queue and database.
"""

from __future__ import annotations

import asyncio
import logging
import signal

from omegaconf import DictConfig

from .configuration import configure_logging, get_config
from .services import WorkerServices, build_worker_services

logger = logging.getLogger(__name__)


async def run_worker(services: WorkerServices) -> None:
    """Run the dispatcher until SIGINT/SIGTERM, then finish in-flight work and close."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, services.dispatcher.stop)

    try:
        await services.dispatcher.run()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await services.provider.aclose()


def start(config: DictConfig) -> None:
    logger.info("Starting WORKER process...")
    services = build_worker_services(config)
    asyncio.run(run_worker(services))
    logger.info("Worker exited cleanly")


def main() -> None:
    config = get_config()
    configure_logging(config)
    start(config)


if __name__ == "__main__":
    main()
