from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Literal, Optional

from dotenv import load_dotenv

Mode = Literal["single", "pool"]
TransferEncoding = Literal["binary", "base64"]

MODES = ("single", "pool")
TRANSFER_ENCODINGS = ("binary", "base64")

DEFAULT_CHUNK_SIZE = 1024 * 1024
DEFAULT_STREAM_THRESHOLD = 10 * 1024 * 1024
FALLBACK_POOL_SIZE = 4


def default_pool_size() -> int:
    return os.cpu_count() or FALLBACK_POOL_SIZE


@dataclass(frozen=True)
class PoolConfig:
    mode: Mode = "pool"
    pool_size: int = field(default_factory=default_pool_size)
    chunk_size: int = DEFAULT_CHUNK_SIZE
    transfer_encoding: TransferEncoding = "binary"
    codec: str = "pillow"
    stream_threshold: int = DEFAULT_STREAM_THRESHOLD
    jpeg_quality: int = 90
    endpoint_prefix: str = "inproc://tinyimg-context"

    def __post_init__(self) -> None:
        if self.mode not in MODES:
            raise ValueError(f"mode must be one of {MODES}, got {self.mode!r}")
        if self.transfer_encoding not in TRANSFER_ENCODINGS:
            raise ValueError(
                f"transfer_encoding must be one of {TRANSFER_ENCODINGS}, "
                f"got {self.transfer_encoding!r}"
            )
        for name in ("pool_size", "chunk_size", "stream_threshold"):
            value = getattr(self, name)
            if not isinstance(value, int) or value <= 0:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")
        if not 1 <= self.jpeg_quality <= 100:
            raise ValueError(f"jpeg_quality must be 1..100, got {self.jpeg_quality}")
        if not self.codec:
            raise ValueError("codec reference must not be empty")

    def codec_options(self) -> dict:
        return {"quality": self.jpeg_quality}


def _env_int(name: str) -> Optional[int]:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def load_pool_config() -> PoolConfig:
    load_dotenv()
    kwargs = {}
    mode = os.environ.get("TINYIMG_MODE")
    if mode:
        kwargs["mode"] = mode.strip().lower()
    encoding = os.environ.get("TINYIMG_TRANSFER_ENCODING")
    if encoding:
        kwargs["transfer_encoding"] = encoding.strip().lower()
    codec = os.environ.get("TINYIMG_CODEC")
    if codec:
        kwargs["codec"] = codec.strip()
    for env_name, key in (
        ("TINYIMG_POOL_SIZE", "pool_size"),
        ("TINYIMG_CHUNK_SIZE", "chunk_size"),
        ("TINYIMG_STREAM_THRESHOLD", "stream_threshold"),
        ("TINYIMG_JPEG_QUALITY", "jpeg_quality"),
    ):
        value = _env_int(env_name)
        if value is not None:
            kwargs[key] = value
    return PoolConfig(**kwargs)
