"""Coordination layer: contexts, correlation, pooling and chunked sessions."""

from .chunked import ChunkedConversion, iter_slices
from .context import ExecutionContext
from .converter import Converter
from .correlator import Correlator
from .dispatcher import PoolDispatcher, PoolStats
from .transports import ChannelClosed, MessageChannel, ZmqChannel
from .worker import ContextWorker

__all__ = [
    "ChunkedConversion",
    "iter_slices",
    "ExecutionContext",
    "Converter",
    "Correlator",
    "PoolDispatcher",
    "PoolStats",
    "ChannelClosed",
    "MessageChannel",
    "ZmqChannel",
    "ContextWorker",
]
