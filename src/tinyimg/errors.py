"""Error taxonomy shared by the coordinator and the execution contexts.

Every error carries a ``kind`` so it survives the trip across a channel as
``{"kind": ..., "message": ...}`` and is rebuilt as the same class on the
caller side.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Type


class TinyImgError(Exception):
    kind = "TinyImgError"

    def __init__(self, message: str = "", *, phase: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.phase = phase

    def __str__(self) -> str:
        if self.phase:
            return f"{self.kind} [{self.phase}]: {self.message}"
        return f"{self.kind}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.phase:
            data["phase"] = self.phase
        return data


class InitializationFailure(TinyImgError):
    """The codec module could not be loaded or started in a context."""

    kind = "InitializationFailure"


class NotReadyFailure(TinyImgError):
    """A task was submitted before initialization completed."""

    kind = "NotReadyFailure"


class TaskFailure(TinyImgError):
    """The codec engine failed a single task; the context stays usable."""

    kind = "TaskFailure"


class ChannelLostFailure(TinyImgError):
    """The context became unreachable while calls were outstanding."""

    kind = "ChannelLostFailure"


class ProtocolViolation(TinyImgError):
    kind = "ProtocolViolation"


class SessionFailure(TinyImgError):
    """A chunked session failed; ``phase`` is begin, chunk-N or finish."""

    kind = "SessionFailure"


_KINDS: Dict[str, Type[TinyImgError]] = {
    cls.kind: cls
    for cls in (
        InitializationFailure,
        NotReadyFailure,
        TaskFailure,
        ChannelLostFailure,
        ProtocolViolation,
        SessionFailure,
    )
}


def error_from_dict(data: Any) -> TinyImgError:
    if not isinstance(data, dict):
        return TaskFailure(str(data))
    cls = _KINDS.get(str(data.get("kind")), TaskFailure)
    return cls(str(data.get("message") or ""), phase=data.get("phase"))
