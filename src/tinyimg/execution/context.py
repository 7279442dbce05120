from __future__ import annotations

import asyncio
import threading
import uuid
from typing import Any, Callable, Dict, Literal, Optional

from tinyimg.utils.logging import get_logger

from ..errors import (
    ChannelLostFailure,
    InitializationFailure,
    NotReadyFailure,
    TinyImgError,
)
from .correlator import Correlator, ProgressHandler
from .transports import ZmqChannel
from .worker import ContextWorker

logger = get_logger(__name__)

ContextState = Literal["uninitialized", "ready", "busy", "failed"]

JOIN_TIMEOUT_SECONDS = 5.0


class ExecutionContext:
    """Coordinator-side handle for one context thread.

    The thread runs a ContextWorker on its own event loop behind a PAIR
    socket; every call from the coordinator goes through the Correlator.
    """

    def __init__(
        self,
        context_id: str,
        endpoint_prefix: str = "inproc://tinyimg-context",
        transfer_encoding: str = "binary",
        on_progress: Optional[ProgressHandler] = None,
        on_lost: Optional[Callable[["ExecutionContext"], None]] = None,
    ) -> None:
        self.context_id = context_id
        self.state: ContextState = "uninitialized"
        self.endpoint = f"{endpoint_prefix}-{context_id}-{uuid.uuid4().hex[:8]}"
        self._encoding = transfer_encoding
        self._on_progress = on_progress
        self._on_lost = on_lost
        self._correlator: Optional[Correlator] = None
        self._thread: Optional[threading.Thread] = None
        self._thread_lock = threading.Lock()
        self._thread_loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread_task: Optional[asyncio.Task] = None
        self._stopping = False

    def __repr__(self) -> str:
        return f"ExecutionContext({self.context_id!r}, state={self.state!r})"

    @property
    def pending_count(self) -> int:
        return self._correlator.pending_count if self._correlator else 0

    async def start(self, codec: str, options: Optional[Dict[str, Any]] = None) -> None:
        if self.state != "uninitialized":
            raise InitializationFailure(f"{self.context_id}: already started")
        channel = ZmqChannel(self.endpoint, bind=True, encoding=self._encoding)
        self._correlator = Correlator(
            channel,
            name=self.context_id,
            on_progress=self._on_progress,
            on_lost=self._handle_lost,
        )
        self._correlator.start()
        self._thread = threading.Thread(
            target=self._run_thread,
            name=f"tinyimg-{self.context_id}",
            daemon=True,
        )
        self._thread.start()
        try:
            await self._correlator.call("init", module=codec, options=options or {})
        except TinyImgError as exc:
            self.state = "failed"
            await self.stop()
            if isinstance(exc, InitializationFailure):
                raise InitializationFailure(f"{self.context_id}: {exc.message}") from exc
            raise InitializationFailure(f"{self.context_id}: {exc}") from exc
        self.state = "ready"
        logger.info("%s: ready (%s)", self.context_id, codec)

    async def request(
        self, request_type: str, body: Optional[bytes] = None, **fields: Any
    ) -> Any:
        if self.state == "uninitialized" or self._correlator is None:
            raise NotReadyFailure(f"{self.context_id}: not initialized")
        if self.state == "failed":
            raise ChannelLostFailure(f"{self.context_id}: context failed")
        return await self._correlator.call(request_type, body, **fields)

    async def stop(self) -> None:
        if self._stopping:
            return
        self._stopping = True
        if self._correlator is not None:
            await self._correlator.close()
        if self._thread is not None:
            # A worker mid-task would otherwise block replying to a closed peer.
            self._interrupt_thread()
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._thread.join, JOIN_TIMEOUT_SECONDS)
            if self._thread.is_alive():
                logger.warning("%s: thread did not stop", self.context_id)
        logger.info("%s: stopped", self.context_id)

    def _handle_lost(self, error: ChannelLostFailure) -> None:
        if self._stopping:
            return
        self.state = "failed"
        logger.error("%s: marked failed: %s", self.context_id, error)
        if self._on_lost is not None:
            self._on_lost(self)

    def _interrupt_thread(self) -> None:
        with self._thread_lock:
            loop, task = self._thread_loop, self._thread_task
        if loop is None or task is None:
            return
        try:
            loop.call_soon_threadsafe(task.cancel)
        except RuntimeError:
            # The thread already closed its loop.
            pass

    def _run_thread(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        task = loop.create_task(_serve(self.endpoint, self._encoding, self.context_id))
        with self._thread_lock:
            self._thread_loop, self._thread_task = loop, task
        try:
            loop.run_until_complete(task)
        except asyncio.CancelledError:
            logger.info("%s: task loop interrupted", self.context_id)
        except Exception:
            logger.error("%s: context thread crashed", self.context_id, exc_info=True)
        finally:
            with self._thread_lock:
                self._thread_loop = self._thread_task = None
            loop.close()


async def _serve(endpoint: str, encoding: str, context_id: str) -> None:
    channel = ZmqChannel(endpoint, bind=False, encoding=encoding)
    worker = ContextWorker(channel, context_id)
    logger.info("%s: task loop started", context_id)
    await worker.run_forever()
