from __future__ import annotations

import io
import uuid
from typing import Dict

from PIL import Image, UnidentifiedImageError

from .protocols import DECODE_FAILED, ENCODE_FAILED, UNKNOWN_SESSION, CodecError

# Modes JPEG can store directly; everything else is flattened to RGB.
_JPEG_MODES = frozenset({"L", "RGB", "CMYK"})


class PillowCodecEngine:
    """TIFF (or any Pillow-readable image) to JPEG.

    Chunked sessions only buffer bytes; decoding happens once, on finish.
    """

    def __init__(self, quality: int = 90) -> None:
        self.quality = quality
        self._sessions: Dict[str, bytearray] = {}

    def convert(self, data: bytes) -> bytes:
        try:
            image = Image.open(io.BytesIO(data))
            image.load()
        except (UnidentifiedImageError, OSError, ValueError) as exc:
            raise CodecError(DECODE_FAILED, f"decode: {exc}") from exc
        try:
            if image.mode not in _JPEG_MODES:
                image = image.convert("RGB")
            out = io.BytesIO()
            image.save(out, format="JPEG", quality=self.quality)
        except (OSError, ValueError) as exc:
            raise CodecError(ENCODE_FAILED, f"encode: {exc}") from exc
        return out.getvalue()

    def start_session(self) -> str:
        handle = uuid.uuid4().hex
        self._sessions[handle] = bytearray()
        return handle

    def append_chunk(self, handle: str, chunk: bytes) -> None:
        self._buffer(handle).extend(chunk)

    def finish_session(self, handle: str) -> bytes:
        data = bytes(self._buffer(handle))
        del self._sessions[handle]
        return self.convert(data)

    def discard_session(self, handle: str) -> None:
        self._sessions.pop(handle, None)

    def _buffer(self, handle: str) -> bytearray:
        try:
            return self._sessions[handle]
        except KeyError:
            raise CodecError(UNKNOWN_SESSION, f"unknown session {handle}") from None
