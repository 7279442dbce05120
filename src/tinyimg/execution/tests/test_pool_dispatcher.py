import asyncio

import pytest

from tinyimg.config import PoolConfig
from tinyimg.errors import (
    ChannelLostFailure,
    InitializationFailure,
    NotReadyFailure,
    TaskFailure,
)
from tinyimg.execution.dispatcher import PoolDispatcher


class FakeContext:
    """Coordinator-side stand-in; each request waits until the test settles it."""

    def __init__(self, context_id, log, fail_start=False, auto=False):
        self.context_id = context_id
        self.state = "uninitialized"
        self.calls = []
        self.stopped = False
        self._log = log
        self._fail_start = fail_start
        self._auto = auto
        self._chunks = []

    async def start(self, codec, options=None):
        if self._fail_start:
            self.state = "failed"
            raise InitializationFailure(f"{self.context_id}: codec missing")
        self.state = "ready"

    async def request(self, request_type, body=None, **fields):
        assert self.state == "busy"
        self._log.append((self.context_id, request_type, body))
        if self._auto:
            await asyncio.sleep(0)
            return self._answer(request_type, body)
        future = asyncio.get_running_loop().create_future()
        self.calls.append(future)
        return await future

    async def stop(self):
        self.stopped = True

    def settle(self, result=None, error=None):
        future = next(f for f in self.calls if not f.done())
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)

    def _answer(self, request_type, body):
        if request_type == "convert":
            return b"jpeg:" + body
        if request_type == "addChunk":
            self._chunks.append(body)
        if request_type == "finishChunked":
            data, self._chunks = b"".join(self._chunks), []
            return b"jpeg:" + data
        return True


class Factory:
    def __init__(self, fail_ids=(), auto=False):
        self.log = []
        self.contexts = {}
        self.fail_ids = set(fail_ids)
        self.auto = auto

    def __call__(self, context_id):
        ctx = FakeContext(
            context_id, self.log, fail_start=context_id in self.fail_ids, auto=self.auto
        )
        self.contexts[context_id] = ctx
        return ctx


async def _drain():
    for _ in range(10):
        await asyncio.sleep(0)


def _conserved(dispatcher):
    stats = dispatcher.stats()
    return stats.idle + stats.busy + stats.failed == stats.pool_size


def test_submit_before_initialize_is_not_ready():
    dispatcher = PoolDispatcher(PoolConfig(pool_size=1), context_factory=Factory())
    with pytest.raises(NotReadyFailure):
        asyncio.run(dispatcher.submit(b"x"))


def test_initialize_fails_whole_pool_and_allows_retry():
    factory = Factory(fail_ids={"ctx-1"})
    dispatcher = PoolDispatcher(PoolConfig(pool_size=3), context_factory=factory)

    async def scenario():
        with pytest.raises(InitializationFailure) as excinfo:
            await dispatcher.initialize()
        assert "ctx-1" in str(excinfo.value)
        assert not dispatcher.initialized
        assert all(ctx.stopped for ctx in factory.contexts.values())
        factory.fail_ids.clear()
        await dispatcher.initialize()
        assert dispatcher.initialized
        assert dispatcher.stats().idle == 3

    asyncio.run(scenario())


def test_saturated_pool_serves_queue_in_arrival_order():
    factory = Factory()
    dispatcher = PoolDispatcher(PoolConfig(pool_size=2), context_factory=factory)

    async def scenario():
        await dispatcher.initialize()
        tasks = [
            asyncio.create_task(dispatcher.submit(str(i).encode())) for i in range(5)
        ]
        await _drain()
        assert [body for _, _, body in factory.log] == [b"0", b"1"]
        stats = dispatcher.stats()
        assert (stats.busy, stats.queued) == (2, 3)
        assert _conserved(dispatcher)

        factory.contexts["ctx-1"].settle(b"r1")
        await _drain()
        assert factory.log[-1] == ("ctx-1", "convert", b"2")
        factory.contexts["ctx-0"].settle(b"r0")
        await _drain()
        assert factory.log[-1] == ("ctx-0", "convert", b"3")
        factory.contexts["ctx-0"].settle(b"r3")
        await _drain()
        assert factory.log[-1] == ("ctx-0", "convert", b"4")
        assert _conserved(dispatcher)

        factory.contexts["ctx-1"].settle(b"r2")
        factory.contexts["ctx-0"].settle(b"r4")
        results = await asyncio.gather(*tasks)
        stats = dispatcher.stats()
        assert (stats.idle, stats.busy, stats.queued) == (2, 0, 0)
        return results

    assert asyncio.run(scenario()) == [b"r0", b"r1", b"r2", b"r3", b"r4"]


def test_freed_context_goes_to_queue_before_new_submit():
    factory = Factory()
    dispatcher = PoolDispatcher(PoolConfig(pool_size=1), context_factory=factory)

    async def scenario():
        await dispatcher.initialize()
        first = asyncio.create_task(dispatcher.submit(b"A"))
        queued = asyncio.create_task(dispatcher.submit(b"B"))
        await _drain()
        factory.contexts["ctx-0"].settle(b"a")
        late = asyncio.create_task(dispatcher.submit(b"C"))
        await _drain()
        assert [body for _, _, body in factory.log] == [b"A", b"B"]
        assert dispatcher.stats().queued == 1
        factory.contexts["ctx-0"].settle(b"b")
        await _drain()
        factory.contexts["ctx-0"].settle(b"c")
        return await asyncio.gather(first, queued, late)

    assert asyncio.run(scenario()) == [b"a", b"b", b"c"]


def test_task_failure_is_isolated_and_context_returns_idle():
    factory = Factory()
    dispatcher = PoolDispatcher(PoolConfig(pool_size=2), context_factory=factory)

    async def scenario():
        await dispatcher.initialize()
        failing = asyncio.create_task(dispatcher.submit(b"bad"))
        healthy = asyncio.create_task(dispatcher.submit(b"good"))
        await _drain()
        factory.contexts["ctx-0"].settle(error=TaskFailure("status -1"))
        with pytest.raises(TaskFailure):
            await failing
        assert not healthy.done()
        stats = dispatcher.stats()
        assert (stats.idle, stats.busy, stats.failed) == (1, 1, 0)
        factory.contexts["ctx-1"].settle(b"ok")
        assert await healthy == b"ok"
        assert dispatcher.stats().idle == 2

    asyncio.run(scenario())


def test_lost_context_is_moved_to_failed_set():
    factory = Factory()
    dispatcher = PoolDispatcher(PoolConfig(pool_size=2), context_factory=factory)

    async def scenario():
        await dispatcher.initialize()
        task = asyncio.create_task(dispatcher.submit(b"x"))
        await _drain()
        ctx = factory.contexts["ctx-0"]
        ctx.state = "failed"
        ctx.settle(error=ChannelLostFailure("ctx-0 gone"))
        with pytest.raises(ChannelLostFailure):
            await task
        stats = dispatcher.stats()
        assert (stats.idle, stats.busy, stats.failed) == (1, 0, 1)
        assert _conserved(dispatcher)

        follow_up = asyncio.create_task(dispatcher.submit(b"y"))
        await _drain()
        assert factory.log[-1][0] == "ctx-1"
        factory.contexts["ctx-1"].settle(b"ok")
        assert await follow_up == b"ok"

    asyncio.run(scenario())


def test_queued_waiters_fail_when_last_context_is_lost():
    factory = Factory()
    dispatcher = PoolDispatcher(PoolConfig(pool_size=1), context_factory=factory)

    async def scenario():
        await dispatcher.initialize()
        running = asyncio.create_task(dispatcher.submit(b"x"))
        waiting = asyncio.create_task(dispatcher.submit(b"y"))
        await _drain()
        ctx = factory.contexts["ctx-0"]
        ctx.state = "failed"
        ctx.settle(error=ChannelLostFailure("gone"))
        results = await asyncio.gather(running, waiting, return_exceptions=True)
        assert all(isinstance(result, ChannelLostFailure) for result in results)
        with pytest.raises(ChannelLostFailure):
            await dispatcher.submit(b"z")

    asyncio.run(scenario())


def test_cancelled_waiter_does_not_hold_a_context():
    factory = Factory()
    dispatcher = PoolDispatcher(PoolConfig(pool_size=1), context_factory=factory)

    async def scenario():
        await dispatcher.initialize()
        running = asyncio.create_task(dispatcher.submit(b"x"))
        waiting = asyncio.create_task(dispatcher.submit(b"y"))
        await _drain()
        waiting.cancel()
        await _drain()
        factory.contexts["ctx-0"].settle(b"done")
        assert await running == b"done"
        stats = dispatcher.stats()
        assert (stats.idle, stats.busy, stats.queued) == (1, 0, 0)
        assert [body for _, _, body in factory.log] == [b"x"]

    asyncio.run(scenario())


def test_chunked_sessions_hold_one_context_each():
    factory = Factory(auto=True)
    config = PoolConfig(pool_size=2, chunk_size=4)
    dispatcher = PoolDispatcher(config, context_factory=factory)
    progress = []

    async def scenario():
        await dispatcher.initialize()
        return await asyncio.gather(
            dispatcher.submit_chunked(b"a" * 10, progress.append),
            dispatcher.submit_chunked(b"b" * 10),
            dispatcher.submit(b"c"),
        )

    results = asyncio.run(scenario())
    assert results == [b"jpeg:" + b"a" * 10, b"jpeg:" + b"b" * 10, b"jpeg:c"]
    assert progress == [40, 80, 100]
    for ctx_id in ("ctx-0", "ctx-1"):
        kinds = [kind for cid, kind, _ in factory.log if cid == ctx_id]
        sessions = "".join("s" if k == "startChunked" else "f" if k == "finishChunked" else "" for k in kinds)
        assert "ss" not in sessions


def test_shutdown_stops_contexts_and_rejects_waiters():
    factory = Factory()
    dispatcher = PoolDispatcher(PoolConfig(pool_size=1), context_factory=factory)

    async def scenario():
        await dispatcher.initialize()
        asyncio.create_task(dispatcher.submit(b"x"))
        waiting = asyncio.create_task(dispatcher.submit(b"y"))
        await _drain()
        await dispatcher.shutdown()
        with pytest.raises(ChannelLostFailure):
            await waiting
        assert factory.contexts["ctx-0"].stopped
        assert not dispatcher.initialized

    asyncio.run(scenario())


def test_timed_out_caller_leaves_context_busy_until_response():
    factory = Factory()
    dispatcher = PoolDispatcher(PoolConfig(pool_size=1), context_factory=factory)

    async def scenario():
        await dispatcher.initialize()
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(dispatcher.submit(b"slow"), 0.01)
        assert dispatcher.stats().busy == 1
        queued = asyncio.create_task(dispatcher.submit(b"next"))
        await _drain()
        assert [body for _, _, body in factory.log] == [b"slow"]
        factory.contexts["ctx-0"].settle(b"late")
        await _drain()
        assert factory.log[-1] == ("ctx-0", "convert", b"next")
        factory.contexts["ctx-0"].settle(b"ok")
        assert await queued == b"ok"
        assert dispatcher.stats().idle == 1

    asyncio.run(scenario())


def test_explicit_zero_pool_size_is_rejected():
    dispatcher = PoolDispatcher(PoolConfig(pool_size=2), context_factory=Factory())
    with pytest.raises(ValueError):
        asyncio.run(dispatcher.initialize(pool_size=0))
    assert not dispatcher.initialized
