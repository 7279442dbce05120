"""Envelope shared by the coordinator and the execution contexts.

A message is a JSON header plus an optional byte body. With the ``binary``
encoding the body travels as its own frame; with ``base64`` it is folded
into the header as text.

    request   {"id": ..., "type": "convert", ...}            + body
    response  {"id": ..., "data": ...}                       (+ body)
              {"id": ..., "error": {"kind": ..., "message": ...}}
    progress  {"type": "progress", "value": 0..100}
"""

from __future__ import annotations

import base64
import json
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional, Sequence, Tuple

from ..errors import ProtocolViolation, TinyImgError

RequestType = Literal[
    "init", "convert", "startChunked", "addChunk", "finishChunked", "abortChunked"
]
REQUEST_TYPES = frozenset(
    {"init", "convert", "startChunked", "addChunk", "finishChunked", "abortChunked"}
)
PROGRESS = "progress"
CLOSE = "close"

_BODY_B64 = "body_b64"

Header = Dict[str, Any]
Message = Tuple[Header, Optional[bytes]]


def new_request_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Request:
    id: str
    type: str
    body: Optional[bytes] = None
    fields: Optional[Dict[str, Any]] = None

    def to_message(self) -> Message:
        header: Header = dict(self.fields or {})
        header["id"] = self.id
        header["type"] = self.type
        return header, self.body

    @classmethod
    def from_message(cls, header: Header, body: Optional[bytes]) -> "Request":
        request_id = header.get("id")
        request_type = header.get("type")
        if not request_id or request_type not in REQUEST_TYPES:
            raise ProtocolViolation(f"malformed request header: {header!r}")
        fields = {k: v for k, v in header.items() if k not in ("id", "type")}
        return cls(id=str(request_id), type=request_type, body=body, fields=fields)


@dataclass
class Response:
    id: str
    data: Any = None
    error: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, request_id: str, data: Any = None) -> "Response":
        return cls(id=request_id, data=data)

    @classmethod
    def failure(cls, request_id: str, error: TinyImgError) -> "Response":
        return cls(id=request_id, error=error.to_dict())

    def to_message(self) -> Message:
        if self.error is not None:
            return {"id": self.id, "error": self.error}, None
        if isinstance(self.data, (bytes, bytearray, memoryview)):
            return {"id": self.id}, bytes(self.data)
        return {"id": self.id, "data": self.data}, None

    @classmethod
    def from_message(cls, header: Header, body: Optional[bytes]) -> "Response":
        if "error" in header and header["error"] is not None:
            return cls(id=str(header["id"]), error=header["error"])
        data = body if body is not None else header.get("data")
        return cls(id=str(header["id"]), data=data)


def progress_message(value: int) -> Message:
    return {"type": PROGRESS, "value": int(value)}, None


def close_message() -> Message:
    return {"type": CLOSE}, None


def encode_frames(header: Header, body: Optional[bytes], encoding: str) -> List[bytes]:
    if body is not None and encoding == "base64":
        header = dict(header)
        header[_BODY_B64] = base64.b64encode(body).decode("ascii")
        body = None
    frames = [json.dumps(header).encode("utf-8")]
    if body is not None:
        frames.append(body)
    return frames


def decode_frames(frames: Sequence[bytes]) -> Message:
    if not frames:
        raise ProtocolViolation("empty message")
    try:
        header = json.loads(bytes(frames[0]).decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProtocolViolation(f"undecodable header: {exc}") from exc
    if not isinstance(header, dict):
        raise ProtocolViolation("header must be a JSON object")
    body: Optional[bytes] = None
    if len(frames) > 1:
        body = bytes(frames[1])
    elif _BODY_B64 in header:
        body = base64.b64decode(header.pop(_BODY_B64))
    return header, body
