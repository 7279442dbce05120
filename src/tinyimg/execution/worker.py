from __future__ import annotations

from typing import Any, Optional

from tinyimg.utils.logging import get_logger

from ..codec.protocols import CodecEngine, CodecError
from ..codec.registry import create_engine
from ..errors import (
    InitializationFailure,
    NotReadyFailure,
    ProtocolViolation,
    TaskFailure,
    TinyImgError,
)
from .messages import Request, Response
from .transports import ChannelClosed, MessageChannel

logger = get_logger(__name__)


class EngineCrashed(Exception):
    """The engine is no longer usable; the task loop must stop."""


class ContextWorker:
    """Task loop of one execution context.

    Reads one request, runs it to completion against the engine and answers
    before reading the next. Task errors become failure responses; only an
    engine crash ends the loop.
    """

    def __init__(self, channel: MessageChannel, context_id: str = "context") -> None:
        self.context_id = context_id
        self._channel = channel
        self._engine: Optional[CodecEngine] = None
        self._session: Optional[str] = None

    @property
    def ready(self) -> bool:
        return self._engine is not None

    @property
    def session_open(self) -> bool:
        return self._session is not None

    async def run_forever(self) -> None:
        try:
            while await self.run_once():
                pass
        finally:
            await self._channel.close()
            logger.info("%s: task loop stopped", self.context_id)

    async def run_once(self) -> bool:
        try:
            header, body = await self._channel.recv()
        except ChannelClosed:
            return False
        except ProtocolViolation:
            logger.error("%s: undecodable message", self.context_id, exc_info=True)
            return True
        try:
            request = Request.from_message(header, body)
        except ProtocolViolation as exc:
            request_id = header.get("id")
            if request_id:
                await self._reply(Response.failure(str(request_id), exc))
            else:
                logger.warning("%s: dropping %s", self.context_id, exc)
            return True
        try:
            data = self._run_task(request)
        except EngineCrashed as exc:
            logger.error("%s: engine crashed", self.context_id, exc_info=True)
            await self._reply(Response.failure(request.id, TaskFailure(str(exc))))
            return False
        except TinyImgError as exc:
            await self._reply(Response.failure(request.id, exc))
            return True
        return await self._reply(Response.success(request.id, data))

    async def _reply(self, response: Response) -> bool:
        try:
            await self._channel.send(*response.to_message())
        except ChannelClosed:
            logger.error("%s: reply %s lost", self.context_id, response.id)
            return False
        return True

    def _run_task(self, request: Request) -> Any:
        if request.type == "init":
            return self._init(request)
        if self._engine is None:
            raise NotReadyFailure(f"{self.context_id}: {request.type} before init")
        try:
            return self._dispatch(self._engine, request)
        except CodecError as exc:
            raise TaskFailure(str(exc)) from exc
        except MemoryError as exc:
            self._engine = None
            raise EngineCrashed(f"{self.context_id}: out of memory") from exc
        except TinyImgError:
            raise
        except Exception as exc:
            logger.error(
                "%s: %s task failed: %s", self.context_id, request.type, request.id,
                exc_info=True,
            )
            raise TaskFailure(f"{type(exc).__name__}: {exc}") from exc

    def _init(self, request: Request) -> None:
        fields = request.fields or {}
        module = fields.get("module")
        if not module:
            raise InitializationFailure("init without a codec module reference")
        try:
            engine = create_engine(str(module), fields.get("options") or {})
        except Exception as exc:
            logger.error("%s: codec %s failed to load", self.context_id, module, exc_info=True)
            raise InitializationFailure(f"{module}: {exc}") from exc
        if self._engine is not None:
            self._close_session(self._engine)
        self._engine = engine
        self._session = None
        logger.info("%s: codec %s ready", self.context_id, module)
        return None

    def _dispatch(self, engine: CodecEngine, request: Request) -> Any:
        if request.type == "convert":
            return engine.convert(_require_body(request))
        if request.type == "startChunked":
            if self._session is not None:
                raise ProtocolViolation("a chunked session is already open")
            self._session = engine.start_session()
            return True
        if request.type == "addChunk":
            handle = self._require_session(request)
            try:
                engine.append_chunk(handle, _require_body(request))
            except Exception:
                self._close_session(engine)
                raise
            return True
        if request.type == "finishChunked":
            handle = self._require_session(request)
            self._session = None
            return engine.finish_session(handle)
        if request.type == "abortChunked":
            self._close_session(engine)
            return True
        raise ProtocolViolation(f"unknown request type {request.type}")

    def _require_session(self, request: Request) -> str:
        if self._session is None:
            raise ProtocolViolation(f"{request.type} without an open session")
        return self._session

    def _close_session(self, engine: CodecEngine) -> None:
        handle, self._session = self._session, None
        if handle is not None:
            engine.discard_session(handle)


def _require_body(request: Request) -> bytes:
    if request.body is None:
        raise ProtocolViolation(f"{request.type} requires a payload")
    return request.body
