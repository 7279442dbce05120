from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, Optional

from tinyimg.utils.logging import get_logger

from ..errors import ChannelLostFailure, ProtocolViolation, TinyImgError, error_from_dict
from .messages import PROGRESS, Header, Request, Response, new_request_id
from .transports import ChannelClosed, MessageChannel

logger = get_logger(__name__)

ProgressHandler = Callable[[int], None]
LostHandler = Callable[[ChannelLostFailure], None]


class Correlator:
    """Pairs responses on one channel with the calls that caused them.

    Each outstanding call is an asyncio future keyed by request id. The
    future is popped from the map before it is resolved, so a duplicate or
    late response finds nothing and is dropped.
    """

    def __init__(
        self,
        channel: MessageChannel,
        name: str = "channel",
        on_progress: Optional[ProgressHandler] = None,
        on_lost: Optional[LostHandler] = None,
        id_factory: Callable[[], str] = new_request_id,
    ) -> None:
        self.name = name
        self.on_progress = on_progress
        self._channel = channel
        self._on_lost = on_lost
        self._id_factory = id_factory
        self._pending: Dict[str, asyncio.Future] = {}
        self._reader: Optional[asyncio.Task] = None
        self._lost: Optional[ChannelLostFailure] = None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def lost(self) -> bool:
        return self._lost is not None

    def start(self) -> None:
        if self._reader is None:
            self._reader = asyncio.create_task(self._read_loop())

    async def call(
        self, request_type: str, body: Optional[bytes] = None, **fields: Any
    ) -> Any:
        if self._lost is not None:
            raise ChannelLostFailure(self._lost.message)
        request_id = self._id_factory()
        while request_id in self._pending:
            logger.debug("%s: request id collision, regenerating", self.name)
            request_id = self._id_factory()
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        request = Request(id=request_id, type=request_type, body=body, fields=fields)
        try:
            await self._channel.send(*request.to_message())
        except ChannelClosed as exc:
            self._pending.pop(request_id, None)
            raise ChannelLostFailure(f"{self.name}: {exc}") from exc
        try:
            return await future
        finally:
            # Abandoned calls leave no record; their late responses are dropped.
            self._pending.pop(request_id, None)

    def handle_message(self, header: Header, body: Optional[bytes]) -> None:
        if header.get("type") == PROGRESS and "id" not in header:
            self._handle_progress(header)
            return
        if "id" not in header:
            logger.warning("%s: dropping message without id: %r", self.name, header)
            return
        response = Response.from_message(header, body)
        future = self._pending.pop(response.id, None)
        if future is None or future.done():
            logger.warning("%s: dropping unmatched response %s", self.name, response.id)
            return
        if response.ok:
            future.set_result(response.data)
        else:
            future.set_exception(error_from_dict(response.error))

    def fail_all(self, error: TinyImgError) -> int:
        pending = list(self._pending.items())
        self._pending.clear()
        failed = 0
        for _, future in pending:
            if future.done():
                continue
            future.set_exception(type(error)(error.message, phase=error.phase))
            failed += 1
        return failed

    async def close(self) -> None:
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        await self._channel.close()
        if self._lost is None:
            self._lost = ChannelLostFailure(f"{self.name}: closed")
        self.fail_all(self._lost)

    async def _read_loop(self) -> None:
        while True:
            try:
                header, body = await self._channel.recv()
            except ChannelClosed as exc:
                self._mark_lost(ChannelLostFailure(f"{self.name}: {exc}"))
                return
            except ProtocolViolation:
                logger.error("%s: undecodable message", self.name, exc_info=True)
                continue
            try:
                self.handle_message(header, body)
            except (KeyError, TypeError, ValueError):
                logger.error("%s: bad response %r", self.name, header, exc_info=True)

    def _mark_lost(self, error: ChannelLostFailure) -> None:
        self._lost = error
        count = self.fail_all(error)
        logger.error("%s: channel lost, rejected %d pending calls", self.name, count)
        if self._on_lost is not None:
            self._on_lost(error)

    def _handle_progress(self, header: Header) -> None:
        if self.on_progress is None:
            logger.debug("%s: progress %s", self.name, header.get("value"))
            return
        try:
            self.on_progress(int(header.get("value", 0)))
        except Exception:
            logger.error("%s: progress handler failed", self.name, exc_info=True)
