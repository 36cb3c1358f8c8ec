"""
Chunked fan-out / fan-in over the provider.

A phase's work is split into the fixed chunk set from ``schemas``. Every
chunk becomes one provider call; calls run concurrently under a process-wide
ceiling, successes are merged into one object, and a failing chunk is
recorded without disturbing its siblings.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

from .schemas import CHUNK_SCHEMAS, ChunkSchema

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_CONCURRENCY = 3

PromptBuilder = Callable[[ChunkSchema], str]
ChunkCallback = Callable[[str, Optional[BaseException]], Awaitable[None]]


class StructuredGenerator(Protocol):
    async def generate(self, prompt: str) -> Dict[str, Any]: ...


@dataclass
class ChunkRunResult:
    merged: Dict[str, Any] = field(default_factory=dict)
    completed: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def error_list(self) -> List[str]:
        return [f"{name}: {message}" for name, message in self.errors.items()]


class ChunkOrchestrator:
    """
    Runs one prompt per chunk with at most ``concurrency`` provider calls in
    flight across every phase in the process.
    """

    def __init__(
        self,
        generator: StructuredGenerator,
        schemas: Sequence[ChunkSchema] = CHUNK_SCHEMAS,
        concurrency: int = DEFAULT_CHUNK_CONCURRENCY,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.generator = generator
        self.schemas = tuple(schemas)
        self.concurrency = concurrency
        self._semaphore = asyncio.Semaphore(concurrency)

    @property
    def total(self) -> int:
        return len(self.schemas)

    async def run(
        self,
        build_prompt: PromptBuilder,
        *,
        label: str = "",
        on_chunk: Optional[ChunkCallback] = None,
    ) -> ChunkRunResult:
        """
        Generate every chunk and merge the results.

        Args:
            build_prompt: Turns a chunk schema into the prompt for this phase
            label: Log prefix (usually the run id)
            on_chunk: Awaited once per chunk as it resolves, with the error if it failed

        Returns:
            Merged output keyed by each chunk's declared output keys, plus the
            names of completed chunks and the per-chunk errors
        """
        result = ChunkRunResult()

        async def run_chunk(schema: ChunkSchema) -> None:
            error: Optional[BaseException] = None
            try:
                output = await self._generate(schema, build_prompt)
            except Exception as exc:
                logger.error(f"[{label}] Chunk {schema.name} failed: {exc}")
                error = exc
                result.errors[schema.name] = str(exc) or type(exc).__name__
            else:
                # Chunks own disjoint keys, so update order does not matter
                result.merged.update(output)
                result.completed.append(schema.name)
                logger.info(f"[{label}] Chunk {schema.name} done")

            if on_chunk is not None:
                try:
                    await on_chunk(schema.name, error)
                except Exception:
                    logger.exception(f"[{label}] Progress update for chunk {schema.name} failed")

        await asyncio.gather(*(run_chunk(schema) for schema in self.schemas))
        logger.info(
            f"[{label}] Chunks finished: {len(result.completed)}/{self.total} ok, {len(result.errors)} failed"
        )
        return result

    async def _generate(self, schema: ChunkSchema, build_prompt: PromptBuilder) -> Dict[str, Any]:
        prompt = build_prompt(schema)
        async with self._semaphore:
            output = await self.generator.generate(prompt)
        if not isinstance(output, dict):
            raise TypeError(f"expected a JSON object, got {type(output).__name__}")
        return {key: output[key] for key in schema.output_keys if key in output}
