from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, List, Optional, Set

from tinyimg.utils.logging import get_logger

from ..config import PoolConfig
from ..errors import ChannelLostFailure, InitializationFailure, NotReadyFailure
from .chunked import ChunkedConversion, ProgressCallback, Source
from .context import ExecutionContext

logger = get_logger(__name__)

ContextFactory = Callable[[str], ExecutionContext]


@dataclass(frozen=True)
class PoolStats:
    pool_size: int
    idle: int
    busy: int
    failed: int
    queued: int


class PoolDispatcher:
    """Routes conversions to a fixed set of execution contexts.

    All state lives on the coordinator's event loop. A context freed by a
    finished task goes straight to the oldest queued waiter, so queued work
    is served in arrival order and never overtaken by a fresh submit.
    """

    def __init__(
        self,
        config: Optional[PoolConfig] = None,
        context_factory: Optional[ContextFactory] = None,
    ) -> None:
        self.config = config or PoolConfig()
        self._context_factory = context_factory or self._default_factory
        self._contexts: List[ExecutionContext] = []
        self._idle: Deque[ExecutionContext] = deque()
        self._busy: Set[ExecutionContext] = set()
        self._failed: Set[ExecutionContext] = set()
        self._queue: Deque[asyncio.Future] = deque()
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def stats(self) -> PoolStats:
        return PoolStats(
            pool_size=len(self._contexts),
            idle=len(self._idle),
            busy=len(self._busy),
            failed=len(self._failed),
            queued=sum(1 for waiter in self._queue if not waiter.done()),
        )

    async def initialize(self, pool_size: Optional[int] = None) -> None:
        if self._initialized:
            return
        size = pool_size if pool_size is not None else self.config.pool_size
        if size <= 0:
            raise ValueError("pool_size must be positive")
        contexts = [self._context_factory(f"ctx-{index}") for index in range(size)]
        results = await asyncio.gather(
            *(
                ctx.start(self.config.codec, self.config.codec_options())
                for ctx in contexts
            ),
            return_exceptions=True,
        )
        failures = [result for result in results if isinstance(result, BaseException)]
        if failures:
            await asyncio.gather(*(ctx.stop() for ctx in contexts), return_exceptions=True)
            logger.error("pool initialization failed: %s", failures[0])
            if isinstance(failures[0], InitializationFailure):
                raise failures[0]
            raise InitializationFailure(str(failures[0])) from failures[0]
        self._contexts = contexts
        self._idle = deque(contexts)
        self._busy.clear()
        self._failed.clear()
        self._initialized = True
        logger.info("pool ready with %d contexts", size)

    async def submit(self, payload: bytes) -> bytes:
        context = await self._acquire()
        return await self._hold(context, context.request("convert", payload))

    async def submit_chunked(
        self,
        source: Source,
        on_progress: Optional[ProgressCallback] = None,
        total: Optional[int] = None,
    ) -> bytes:
        context = await self._acquire()
        controller = ChunkedConversion(
            context, chunk_size=self.config.chunk_size, on_progress=on_progress
        )
        return await self._hold(context, controller.run(source, total=total))

    async def _hold(self, context: ExecutionContext, work: Awaitable[bytes]) -> bytes:
        """Run work on a leased context; the lease ends with the work, not the caller.

        A caller that times out only stops waiting. The context stays busy
        until its real response arrives or its channel is torn down.
        """
        task = asyncio.ensure_future(work)

        def _done(finished: asyncio.Future) -> None:
            if not finished.cancelled():
                finished.exception()
            self._release(context)

        task.add_done_callback(_done)
        return await asyncio.shield(task)

    async def shutdown(self) -> None:
        contexts, self._contexts = self._contexts, []
        self._initialized = False
        self._fail_waiters(ChannelLostFailure("pool shut down"))
        self._idle.clear()
        self._busy.clear()
        self._failed.clear()
        await asyncio.gather(*(ctx.stop() for ctx in contexts), return_exceptions=True)
        logger.info("pool shut down")

    async def _acquire(self) -> ExecutionContext:
        if not self._initialized:
            raise NotReadyFailure("pool is not initialized")
        while self._idle:
            context = self._idle.popleft()
            if context.state == "failed":
                self._failed.add(context)
                continue
            self._mark_busy(context)
            return context
        if not self._busy:
            raise ChannelLostFailure("no live execution contexts in the pool")
        waiter = asyncio.get_running_loop().create_future()
        self._queue.append(waiter)
        logger.debug("all contexts busy, queued (depth=%d)", len(self._queue))
        try:
            return await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                self._release(waiter.result())
            else:
                try:
                    self._queue.remove(waiter)
                except ValueError:
                    pass
            raise

    def _release(self, context: ExecutionContext) -> None:
        if context not in self._busy:
            return
        self._busy.discard(context)
        if context.state == "failed":
            self._failed.add(context)
            logger.error("%s: removed from pool", context.context_id)
            if not self._busy and not self._idle:
                self._fail_waiters(ChannelLostFailure("all execution contexts failed"))
            return
        while self._queue:
            waiter = self._queue.popleft()
            if waiter.done():
                continue
            self._mark_busy(context)
            waiter.set_result(context)
            return
        context.state = "ready"
        self._idle.append(context)

    def _mark_busy(self, context: ExecutionContext) -> None:
        context.state = "busy"
        self._busy.add(context)

    def _fail_waiters(self, error: ChannelLostFailure) -> None:
        while self._queue:
            waiter = self._queue.popleft()
            if not waiter.done():
                waiter.set_exception(ChannelLostFailure(error.message))

    def _handle_context_lost(self, context: ExecutionContext) -> None:
        if context in self._busy or context not in self._contexts:
            return
        try:
            self._idle.remove(context)
        except ValueError:
            pass
        self._failed.add(context)
        logger.error("%s: lost while idle, removed from pool", context.context_id)
        if not self._busy and not self._idle:
            self._fail_waiters(ChannelLostFailure("all execution contexts failed"))

    def _default_factory(self, context_id: str) -> ExecutionContext:
        return ExecutionContext(
            context_id,
            endpoint_prefix=self.config.endpoint_prefix,
            transfer_encoding=self.config.transfer_encoding,
            on_lost=self._handle_context_lost,
        )
