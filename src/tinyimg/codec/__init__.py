"""Codec engines hosted inside execution contexts."""

from .pillow_engine import PillowCodecEngine
from .protocols import CodecEngine, CodecError
from .registry import create_engine, register_codec, resolve_codec, unregister_codec

__all__ = [
    "CodecEngine",
    "CodecError",
    "PillowCodecEngine",
    "create_engine",
    "register_codec",
    "resolve_codec",
    "unregister_codec",
]
