from __future__ import annotations

import asyncio
from typing import Any, Optional, Protocol, runtime_checkable

from tinyimg.utils.logging import get_logger

from .messages import CLOSE, Header, Message, close_message, decode_frames, encode_frames

logger = get_logger(__name__)

CLOSE_LINGER_MS = 1000


class ChannelClosed(Exception):
    """The channel, or its peer, has been closed."""


@runtime_checkable
class MessageChannel(Protocol):
    async def send(self, header: Header, body: Optional[bytes] = None) -> None: ...
    async def recv(self) -> Message: ...
    async def close(self) -> None: ...


class ZmqChannel(MessageChannel):
    """One end of a PAIR socket; the coordinator binds, the context connects.

    Must be created and used on the event loop of the thread that owns it.
    """

    def __init__(self, endpoint: str, *, bind: bool, encoding: str = "binary") -> None:
        self.endpoint = endpoint
        self._encoding = encoding
        self._socket = _create_socket(endpoint, bind=bind)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, header: Header, body: Optional[bytes] = None) -> None:
        if self._closed:
            raise ChannelClosed(f"channel closed: {self.endpoint}")
        frames = encode_frames(header, body, self._encoding)
        try:
            await self._socket.send_multipart(frames, copy=False)
        except asyncio.CancelledError:
            # Closing the socket cancels sends still blocked on a departed peer.
            task = asyncio.current_task()
            if self._closed and task is not None and not task.cancelling():
                raise ChannelClosed(f"channel closed: {self.endpoint}") from None
            raise

    async def recv(self) -> Message:
        if self._closed:
            raise ChannelClosed(f"channel closed: {self.endpoint}")
        frames = await self._socket.recv_multipart()
        header, body = decode_frames(frames)
        if header.get("type") == CLOSE and "id" not in header:
            self._closed = True
            self._socket.close(linger=0)
            raise ChannelClosed(f"peer closed: {self.endpoint}")
        return header, body

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        import zmq  # type: ignore

        header, _ = close_message()
        try:
            await self._socket.send_multipart(
                encode_frames(header, None, self._encoding), flags=zmq.NOBLOCK
            )
        except zmq.ZMQError:
            logger.debug("peer gone before close frame: %s", self.endpoint)
        finally:
            self._socket.close(linger=CLOSE_LINGER_MS)


def _create_socket(endpoint: str, *, bind: bool) -> Any:
    try:
        import zmq  # type: ignore
        import zmq.asyncio  # type: ignore
    except ImportError as exc:
        raise RuntimeError("pyzmq is required for the execution layer") from exc
    context = zmq.asyncio.Context.instance()
    socket = context.socket(zmq.PAIR)
    if bind:
        socket.bind(endpoint)
    else:
        socket.connect(endpoint)
    return socket
