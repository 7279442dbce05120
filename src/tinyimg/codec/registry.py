from __future__ import annotations

import importlib
from typing import Any, Dict

from .pillow_engine import PillowCodecEngine
from .protocols import CodecEngine, CodecFactory

_FACTORIES: Dict[str, CodecFactory] = {"pillow": PillowCodecEngine}


def register_codec(name: str, factory: CodecFactory) -> None:
    _FACTORIES[name] = factory


def unregister_codec(name: str) -> None:
    _FACTORIES.pop(name, None)


def resolve_codec(reference: str) -> CodecFactory:
    """Look up a registered name, or import a ``package.module:attr`` path."""
    factory = _FACTORIES.get(reference)
    if factory is not None:
        return factory
    module_name, sep, attr = reference.partition(":")
    if not sep or not module_name or not attr:
        raise LookupError(f"unknown codec reference: {reference!r}")
    module = importlib.import_module(module_name)
    try:
        return getattr(module, attr)
    except AttributeError as exc:
        raise LookupError(f"{module_name} has no attribute {attr!r}") from exc


def create_engine(reference: str, options: Dict[str, Any] | None = None) -> CodecEngine:
    factory = resolve_codec(reference)
    engine = factory(**(options or {}))
    if not isinstance(engine, CodecEngine):
        raise TypeError(f"{reference!r} did not produce a codec engine")
    return engine
