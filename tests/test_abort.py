import asyncio

import httpx
import pytest

from nim_proxy.abort import (
    AbortCoordinator,
    OutcomeStatus,
    StreamOutcome,
    UpstreamAborted,
    is_benign_cancellation,
)


def test_abort_after_finish_is_ignored():
    coordinator = AbortCoordinator()
    coordinator.mark_finished()
    assert coordinator.abort() is False
    assert coordinator.aborted is False


def test_abort_is_one_shot():
    coordinator = AbortCoordinator()
    assert coordinator.abort() is True
    assert coordinator.abort() is False
    assert coordinator.aborted is True


def test_first_reported_outcome_wins():
    seen = []
    coordinator = AbortCoordinator(on_outcome=seen.append)
    coordinator.report(StreamOutcome(OutcomeStatus.CANCELLED))
    coordinator.report(StreamOutcome(OutcomeStatus.FAILED, http_status=502))
    assert [o.status for o in seen] == [OutcomeStatus.CANCELLED]
    assert coordinator.outcome.status is OutcomeStatus.CANCELLED


def test_benign_cancellation_classification():
    coordinator = AbortCoordinator()
    assert is_benign_cancellation(asyncio.CancelledError()) is True
    assert is_benign_cancellation(UpstreamAborted()) is True
    assert is_benign_cancellation(httpx.ReadError("reset"), coordinator) is False
    coordinator.abort()
    assert is_benign_cancellation(httpx.ReadError("reset"), coordinator) is True
    assert is_benign_cancellation(ValueError("bug"), coordinator) is False


@pytest.mark.asyncio
async def test_run_returns_result_when_not_aborted():
    coordinator = AbortCoordinator()

    async def call():
        return 42

    assert await coordinator.run(call()) == 42


@pytest.mark.asyncio
async def test_run_propagates_upstream_errors():
    coordinator = AbortCoordinator()

    async def call():
        raise httpx.ConnectError("refused")

    with pytest.raises(httpx.ConnectError):
        await coordinator.run(call())


@pytest.mark.asyncio
async def test_run_is_abandoned_on_disconnect():
    cancelled = asyncio.Event()

    async def is_disconnected():
        return True

    async def slow_call():
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    coordinator = AbortCoordinator(is_disconnected, poll_interval=0.01)
    coordinator.start()
    with pytest.raises(UpstreamAborted):
        await asyncio.wait_for(coordinator.run(slow_call()), timeout=2)
    await coordinator.stop()
    assert cancelled.is_set()
    assert coordinator.aborted is True


@pytest.mark.asyncio
async def test_watcher_does_not_abort_finished_response():
    async def is_disconnected():
        return True

    coordinator = AbortCoordinator(is_disconnected, poll_interval=0.01)
    coordinator.mark_finished()
    coordinator.start()
    await asyncio.sleep(0.05)
    await coordinator.stop()
    assert coordinator.aborted is False


@pytest.mark.asyncio
async def test_guard_stops_reading_after_abort():
    pulled = []

    async def source():
        for i in range(5):
            pulled.append(i)
            yield b"x"

    coordinator = AbortCoordinator()
    got = []
    async for chunk in coordinator.guard(source()):
        got.append(chunk)
        if len(got) == 2:
            coordinator.abort()
    assert got == [b"x", b"x"]
    assert pulled == [0, 1]


@pytest.mark.asyncio
async def test_caller_cancellation_while_upstream_winds_down_propagates():
    started = asyncio.Event()
    winding_down = asyncio.Event()
    wound_down = asyncio.Event()

    async def slow_to_cancel():
        started.set()
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            winding_down.set()
            await asyncio.sleep(0.1)
            raise
        finally:
            wound_down.set()

    coordinator = AbortCoordinator()
    caller = asyncio.ensure_future(coordinator.run(slow_to_cancel()))
    await asyncio.wait_for(started.wait(), timeout=2)
    coordinator.abort()
    await asyncio.wait_for(winding_down.wait(), timeout=2)

    caller.cancel()
    with pytest.raises(asyncio.CancelledError):
        await caller
    await asyncio.wait_for(wound_down.wait(), timeout=2)
