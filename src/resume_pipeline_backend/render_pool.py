"""
Bounded render pool for HTML -> PDF conversion.

One render engine per process is started on first use and kept warm. Requests
wait in a FIFO queue and at most ``concurrency`` of them render at once; every
render runs in its own engine context, which is released whether the render
succeeds or not. When a render finishes, the next queued request starts.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from abc import ABC, abstractmethod
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Deque, Optional, Set, Tuple

from .exceptions import RenderError

logger = logging.getLogger(__name__)

DEFAULT_RENDER_CONCURRENCY = 5

PAGE_CSS = "@page {{ size: {page_size}; margin: 20px; }}"


class RenderEngine(ABC):
    """Lifecycle of an expensive renderer: start once, one context per render."""

    @abstractmethod
    async def start(self) -> None: ...

    @abstractmethod
    async def acquire(self) -> Any:
        """Open an isolated context for one render."""

    @abstractmethod
    async def render(self, context: Any, document: str) -> bytes: ...

    @abstractmethod
    async def release(self, context: Any) -> None: ...

    @abstractmethod
    async def shutdown(self) -> None: ...


@dataclass
class WeasyPrintContext:
    id: int
    font_config: Any
    stylesheet: Any
    closed: bool = field(default=False)


class WeasyPrintEngine(RenderEngine):
    """
    WeasyPrint-backed engine.

    WeasyPrint is synchronous and CPU bound, so renders run on a dedicated
    thread pool sized to the pool's ceiling. Each context carries its own font
    configuration; they are not shared between threads.
    """

    def __init__(self, page_size: str = "A4", max_workers: int = DEFAULT_RENDER_CONCURRENCY):
        self.page_size = page_size
        self.max_workers = max_workers
        self._executor: Optional[ThreadPoolExecutor] = None
        self._counter = itertools.count(1)

    @property
    def started(self) -> bool:
        return self._executor is not None

    async def start(self) -> None:
        if self._executor is not None:
            return
        # Imported here: weasyprint loads native libraries (pango, cairo) on import
        import weasyprint  # noqa: F401

        self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="render")
        logger.info(f"Render engine started (weasyprint {weasyprint.__version__}, {self.max_workers} threads)")

    async def acquire(self) -> WeasyPrintContext:
        from weasyprint import CSS
        from weasyprint.text.fonts import FontConfiguration

        if self._executor is None:
            raise RenderError("Render engine is not started")
        font_config = FontConfiguration()
        stylesheet = CSS(string=PAGE_CSS.format(page_size=self.page_size), font_config=font_config)
        return WeasyPrintContext(id=next(self._counter), font_config=font_config, stylesheet=stylesheet)

    async def render(self, context: WeasyPrintContext, document: str) -> bytes:
        from weasyprint import HTML

        if self._executor is None or context.closed:
            raise RenderError("Render context is not usable")

        def _write() -> bytes:
            return HTML(string=document).write_pdf(
                stylesheets=[context.stylesheet],
                font_config=context.font_config,
            )

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, _write)

    async def release(self, context: WeasyPrintContext) -> None:
        context.closed = True
        context.stylesheet = None
        context.font_config = None

    async def shutdown(self) -> None:
        if self._executor is None:
            return
        executor, self._executor = self._executor, None
        await asyncio.to_thread(executor.shutdown, True)
        logger.info("Render engine closed.")


class RenderPool:
    """
    FIFO admission in front of a ``RenderEngine``.

    Attributes:
        concurrency: Ceiling on renders executing at once (K)
    """

    def __init__(self, engine: RenderEngine, concurrency: int = DEFAULT_RENDER_CONCURRENCY):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.engine = engine
        self.concurrency = concurrency
        self._queue: Deque[Tuple[str, asyncio.Future]] = deque()
        self._active = 0
        self._tasks: Set[asyncio.Task] = set()
        self._start_lock = asyncio.Lock()
        self._started = False
        self._closed = False

    @property
    def active(self) -> int:
        return self._active

    @property
    def queued(self) -> int:
        return len(self._queue)

    async def render(self, document: str) -> bytes:
        """
        Render one self-contained HTML document to PDF bytes.

        Raises:
            RenderError: The render failed, or the pool is shut down
        """
        if self._closed:
            raise RenderError("Render pool is shut down")
        await self._ensure_started()

        future = asyncio.get_running_loop().create_future()
        self._queue.append((document, future))
        self._pump()
        return await future

    async def _ensure_started(self) -> None:
        if self._started:
            return
        async with self._start_lock:
            if not self._started:
                logger.info("Initializing render engine for PDF generation...")
                try:
                    await self.engine.start()
                except Exception as exc:
                    raise RenderError(f"Failed to start render engine: {exc}") from exc
                self._started = True

    def _pump(self) -> None:
        while self._active < self.concurrency and self._queue:
            document, future = self._queue.popleft()
            if future.done():
                # Caller gave up while queued
                continue
            self._active += 1
            task = asyncio.ensure_future(self._execute(document, future))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _execute(self, document: str, future: asyncio.Future) -> None:
        try:
            context = await self.engine.acquire()
            try:
                pdf = await self.engine.render(context, document)
            finally:
                await self.engine.release(context)
        except Exception as exc:
            logger.error(f"PDF render failed: {exc}")
            if not future.done():
                if isinstance(exc, RenderError):
                    error = exc
                else:
                    error = RenderError(f"PDF render failed: {exc}")
                    error.__cause__ = exc
                future.set_exception(error)
        else:
            if not future.done():
                future.set_result(pdf)
        finally:
            self._active -= 1
            self._pump()

    async def shutdown(self) -> None:
        """Reject queued requests, let running renders finish, then close the engine."""
        self._closed = True
        while self._queue:
            _, future = self._queue.popleft()
            if not future.done():
                future.set_exception(RenderError("Render pool is shutting down"))
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self._started:
            await self.engine.shutdown()
            self._started = False
