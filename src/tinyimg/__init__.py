"""Parallel TIFF to JPEG conversion over a pool of execution contexts."""

from .config import PoolConfig, load_pool_config
from .errors import (
    ChannelLostFailure,
    InitializationFailure,
    NotReadyFailure,
    ProtocolViolation,
    SessionFailure,
    TaskFailure,
    TinyImgError,
)
from .execution.converter import Converter
from .execution.dispatcher import PoolDispatcher

__all__ = [
    "PoolConfig",
    "load_pool_config",
    "Converter",
    "PoolDispatcher",
    "TinyImgError",
    "InitializationFailure",
    "NotReadyFailure",
    "TaskFailure",
    "ChannelLostFailure",
    "ProtocolViolation",
    "SessionFailure",
]
