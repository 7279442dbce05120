"""Chunked conversion for inputs too large for one message.

    not_started --begin--> started --chunk--> accumulating --finish--> finishing
        --> closed_success | closed_failure

Slices are sent strictly one at a time; the engine's session state is not
safe for concurrent mutation. Once begin has been sent, every exit other
than a successful finish sends abortChunked so the context can open a new
session.
"""

from __future__ import annotations

import io
import os
from typing import Any, BinaryIO, Callable, Iterator, List, Literal, Optional, Protocol, Union

from tinyimg.utils.logging import get_logger

from ..config import DEFAULT_CHUNK_SIZE
from ..errors import ProtocolViolation, SessionFailure, TinyImgError

logger = get_logger(__name__)

SessionState = Literal[
    "not_started",
    "started",
    "accumulating",
    "finishing",
    "closed_success",
    "closed_failure",
]
Source = Union[bytes, bytearray, memoryview, BinaryIO]
ProgressCallback = Callable[[int], None]


class RequestTarget(Protocol):
    async def request(
        self, request_type: str, body: Optional[bytes] = None, **fields: Any
    ) -> Any: ...


def source_size(source: Source) -> int:
    if isinstance(source, (bytes, bytearray, memoryview)):
        return len(source)
    try:
        return os.fstat(source.fileno()).st_size - source.tell()
    except (AttributeError, OSError, io.UnsupportedOperation):
        position = source.tell()
        end = source.seek(0, io.SEEK_END)
        source.seek(position)
        return end - position


def iter_slices(source: Source, chunk_size: int) -> Iterator[bytes]:
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if isinstance(source, (bytes, bytearray, memoryview)):
        view = memoryview(source)
        for start in range(0, len(view), chunk_size):
            yield bytes(view[start:start + chunk_size])
        return
    while True:
        chunk = source.read(chunk_size)
        if not chunk:
            return
        yield chunk


class ChunkedConversion:
    def __init__(
        self,
        target: RequestTarget,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.chunk_size = chunk_size
        self.state: SessionState = "not_started"
        self.chunks_sent = 0
        self.bytes_sent = 0
        self.progress: List[int] = []
        self._target = target
        self._on_progress = on_progress
        self._opened = False

    async def run(self, source: Source, total: Optional[int] = None) -> bytes:
        if self.state != "not_started":
            raise ProtocolViolation(f"session already used (state={self.state})")
        total = source_size(source) if total is None else total
        try:
            await self._step("begin", self._begin())
            for chunk in iter_slices(source, self.chunk_size):
                phase = f"chunk-{self.chunks_sent + 1}"
                await self._step(phase, self._append(chunk, total))
            if self.chunks_sent == 0:
                self._report(100)
            result = await self._step("finish", self._finish())
        except BaseException:
            # Read errors and cancellation end the session here too.
            self.state = "closed_failure"
            await self._abort()
            raise
        self.state = "closed_success"
        logger.debug(
            "session closed: %d chunks, %d bytes", self.chunks_sent, self.bytes_sent
        )
        return result

    async def _begin(self) -> None:
        self._opened = True
        await self._target.request("startChunked")
        self.state = "started"

    async def _append(self, chunk: bytes, total: int) -> None:
        await self._target.request("addChunk", chunk)
        self.state = "accumulating"
        self.chunks_sent += 1
        self.bytes_sent += len(chunk)
        self._report(_percent(self.bytes_sent, total))

    async def _finish(self) -> bytes:
        self.state = "finishing"
        return await self._target.request("finishChunked")

    async def _abort(self) -> None:
        if not self._opened:
            return
        try:
            await self._target.request("abortChunked")
        except TinyImgError as exc:
            logger.debug("session abort not delivered: %s", exc)

    async def _step(self, phase: str, step: Any) -> Any:
        try:
            return await step
        except TinyImgError as exc:
            self.state = "closed_failure"
            logger.error("chunked session failed at %s: %s", phase, exc)
            raise SessionFailure(f"{exc}", phase=phase) from exc

    def _report(self, value: int) -> None:
        self.progress.append(value)
        if self._on_progress is not None:
            self._on_progress(value)


def _percent(done: int, total: int) -> int:
    if total <= 0:
        return 100
    return min(100, round(done / total * 100))
