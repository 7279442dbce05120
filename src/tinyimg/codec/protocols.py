from __future__ import annotations

from typing import Any, Callable, Protocol, runtime_checkable

DECODE_FAILED = -1
ENCODE_FAILED = -2
UNKNOWN_SESSION = -3


class CodecError(Exception):
    """Raised by an engine with a non-zero status code."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(f"conversion failed with status {status}: {message}")
        self.status = status


@runtime_checkable
class CodecEngine(Protocol):
    def convert(self, data: bytes) -> bytes: ...

    def start_session(self) -> str: ...

    def append_chunk(self, handle: str, chunk: bytes) -> None: ...

    def finish_session(self, handle: str) -> bytes: ...

    def discard_session(self, handle: str) -> None: ...


CodecFactory = Callable[..., Any]
