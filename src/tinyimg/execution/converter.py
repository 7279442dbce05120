from __future__ import annotations

import asyncio
from typing import Optional

from tinyimg.utils.logging import get_logger

from ..config import PoolConfig
from .chunked import ChunkedConversion, ProgressCallback, Source, source_size
from .context import ExecutionContext
from .dispatcher import PoolDispatcher, PoolStats

logger = get_logger(__name__)


class Converter:
    """Entry point for callers: one API over single and pool mode.

    In single mode every call shares one dedicated context and one pending
    map. A chunked session holds the context exclusively; converts issued
    while it runs wait for it to close.
    """

    def __init__(
        self,
        config: Optional[PoolConfig] = None,
        dispatcher: Optional[PoolDispatcher] = None,
        context: Optional[ExecutionContext] = None,
    ) -> None:
        self.config = config or PoolConfig()
        self._dispatcher = dispatcher
        self._context = context
        self._start_lock = asyncio.Lock()
        self._session_lock = asyncio.Lock()
        self._no_session = asyncio.Event()
        self._no_session.set()
        self._started = False

    @property
    def mode(self) -> str:
        return self.config.mode

    async def __aenter__(self) -> "Converter":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def start(self) -> None:
        async with self._start_lock:
            if self._started:
                return
            if self.mode == "pool":
                if self._dispatcher is None:
                    self._dispatcher = PoolDispatcher(self.config)
                await self._dispatcher.initialize()
            else:
                if self._context is None:
                    self._context = ExecutionContext(
                        "single",
                        endpoint_prefix=self.config.endpoint_prefix,
                        transfer_encoding=self.config.transfer_encoding,
                    )
                try:
                    await self._context.start(
                        self.config.codec, self.config.codec_options()
                    )
                except Exception:
                    # A fresh context is built on the next attempt.
                    self._context = None
                    raise
            self._started = True
            logger.info("converter started (%s mode)", self.mode)

    async def stop(self) -> None:
        async with self._start_lock:
            if not self._started:
                return
            if self._dispatcher is not None:
                await self._dispatcher.shutdown()
            if self._context is not None:
                await self._context.stop()
                self._context = None
            self._started = False

    def stats(self) -> Optional[PoolStats]:
        if self._dispatcher is None:
            return None
        return self._dispatcher.stats()

    async def convert(self, data: bytes) -> bytes:
        await self.start()
        if self._dispatcher is not None:
            return await self._dispatcher.submit(data)
        while not self._no_session.is_set():
            await self._no_session.wait()
        return await self._context.request("convert", bytes(data))

    async def stream_convert(
        self,
        source: Source,
        on_progress: Optional[ProgressCallback] = None,
        total: Optional[int] = None,
    ) -> bytes:
        await self.start()
        if self._dispatcher is not None:
            return await self._dispatcher.submit_chunked(source, on_progress, total)
        await self._session_lock.acquire()
        self._no_session.clear()
        controller = ChunkedConversion(
            self._context,
            chunk_size=self.config.chunk_size,
            on_progress=on_progress,
        )
        # The session outlives a caller that stops waiting; it holds the
        # context until the controller has closed it.
        task = asyncio.ensure_future(controller.run(source, total=total))
        task.add_done_callback(self._end_session)
        return await asyncio.shield(task)

    def _end_session(self, finished: asyncio.Future) -> None:
        if not finished.cancelled():
            finished.exception()
        self._no_session.set()
        self._session_lock.release()

    async def convert_auto(
        self, source: Source, on_progress: Optional[ProgressCallback] = None
    ) -> bytes:
        """Stream inputs above the configured threshold, convert the rest whole."""
        total = source_size(source)
        if total > self.config.stream_threshold:
            logger.debug("streaming %d bytes", total)
            return await self.stream_convert(source, on_progress, total)
        _notify(on_progress, 10)
        if isinstance(source, (bytes, bytearray, memoryview)):
            data = bytes(source)
        else:
            data = source.read()
        _notify(on_progress, 50)
        result = await self.convert(data)
        _notify(on_progress, 100)
        return result


def _notify(on_progress: Optional[ProgressCallback], value: int) -> None:
    if on_progress is not None:
        on_progress(value)
