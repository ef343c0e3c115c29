from __future__ import annotations

import asyncio
import contextlib
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import httpx


class OutcomeStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class StreamOutcome:
    status: OutcomeStatus
    http_status: Optional[int] = None
    message: Optional[str] = None


class UpstreamAborted(Exception):
    """The upstream call was abandoned because the client went away."""


class AbortCoordinator:
    """Links downstream disconnection of one request to its upstream call.

    ``is_disconnected`` is polled by a watcher task once ``start`` is called.
    Disconnection after ``mark_finished`` is a normal close and never aborts.
    The first outcome passed to ``report`` is final.
    """

    def __init__(
        self,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
        poll_interval: float = 0.5,
        on_outcome: Optional[Callable[[StreamOutcome], None]] = None,
    ) -> None:
        self._is_disconnected = is_disconnected
        self._poll_interval = poll_interval
        self._on_outcome = on_outcome
        self._event = asyncio.Event()
        self._finished = False
        self._watcher: Optional[asyncio.Task] = None
        self.outcome: Optional[StreamOutcome] = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    @property
    def finished(self) -> bool:
        return self._finished

    def abort(self) -> bool:
        """Trigger cancellation; ignored once the response has been fully written."""
        if self._finished or self._event.is_set():
            return False
        self._event.set()
        return True

    def mark_finished(self) -> None:
        self._finished = True

    def start(self) -> None:
        if self._is_disconnected is None or self._watcher is not None:
            return
        self._watcher = asyncio.ensure_future(self._watch())

    async def stop(self) -> None:
        watcher, self._watcher = self._watcher, None
        if watcher is None:
            return
        watcher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watcher

    async def _watch(self) -> None:
        assert self._is_disconnected is not None
        while not self._finished and not self._event.is_set():
            if await self._is_disconnected():
                if self.abort():
                    print("[proxy] Client disconnected, aborting upstream request", file=sys.stderr)
                return
            await asyncio.sleep(self._poll_interval)

    async def _race(self, awaitable: Awaitable[Any]) -> "asyncio.Future[Any]":
        """Await ``awaitable`` unless the abort signal fires first."""
        step = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({step, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not step.done():
                step.cancel()
                # wait() never raises the step's own error; a CancelledError here is ours
                await asyncio.wait({step})
        return step

    async def run(self, awaitable: Awaitable[Any]) -> Any:
        """Run one upstream call; raises UpstreamAborted if the client leaves first."""
        step = await self._race(awaitable)
        if step.cancelled():
            raise UpstreamAborted("client disconnected")
        return step.result()

    async def guard(self, source: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        """Yield chunks from ``source`` until it ends or the abort signal fires."""
        iterator = source.__aiter__()
        while not self._event.is_set():
            step = await self._race(iterator.__anext__())
            if step.cancelled():
                return
            try:
                chunk = step.result()
            except StopAsyncIteration:
                return
            if self._event.is_set():
                return
            yield chunk

    def report(self, outcome: StreamOutcome) -> None:
        if self.outcome is not None:
            return
        self.outcome = outcome
        if self._on_outcome is not None:
            self._on_outcome(outcome)


def is_benign_cancellation(exc: BaseException, coordinator: Optional[AbortCoordinator] = None) -> bool:
    """True for errors that only reflect the client going away."""
    if isinstance(exc, (asyncio.CancelledError, UpstreamAborted)):
        return True
    if coordinator is not None and coordinator.aborted:
        return isinstance(exc, (httpx.HTTPError, httpx.StreamError))
    return False
