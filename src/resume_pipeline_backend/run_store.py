from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Optional

from .database import PipelineDatabase
from .exceptions import PipelineError
from .models import AtsScore, ResultRecord, SourceDocument

logger = logging.getLogger(__name__)


class RunStore:
    """Source documents and their results, one of each per run id."""

    def __init__(self, database: PipelineDatabase) -> None:
        self.database = database

    async def create_run(
        self,
        run_id: str,
        original_filename: str,
        source_locator: str,
        instruction_text: str = "",
        job_description: Optional[str] = None,
    ) -> SourceDocument:
        await asyncio.to_thread(
            self.database.insert_run,
            run_id,
            original_filename,
            source_locator,
            instruction_text,
            job_description,
        )
        logger.info(f"[{run_id}] Run created for {original_filename}")
        run = await self.get_run(run_id)
        if run is None:
            raise PipelineError(f"Run {run_id} missing right after insert")
        return run

    async def get_run(self, run_id: str) -> Optional[SourceDocument]:
        row = await asyncio.to_thread(self.database.get_run, run_id)
        if row is None:
            return None
        return SourceDocument(
            run_id=row["run_id"],
            original_filename=row["original_filename"],
            source_locator=row["source_locator"],
            instruction_text=row["instruction_text"] or "",
            job_description=row["job_description"],
            extracted_text=row["extracted_text"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    async def set_extracted_text(self, run_id: str, text: str) -> bool:
        return await asyncio.to_thread(self.database.set_extracted_text, run_id, text)

    async def get_result(self, run_id: str) -> Optional[ResultRecord]:
        row = await asyncio.to_thread(self.database.get_result, run_id)
        if row is None:
            return None
        return ResultRecord(
            run_id=row["run_id"],
            original=row["original"],
            final=row["final"],
            ats_score=AtsScore(**row["ats_score"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )
