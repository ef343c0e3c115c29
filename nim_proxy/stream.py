from __future__ import annotations

import asyncio
import sys
from typing import AsyncIterator, Awaitable, Callable, Optional

import httpx

from .abort import AbortCoordinator, OutcomeStatus, StreamOutcome, is_benign_cancellation
from .framing import FrameKind, LineReassembler, classify
from .transform import ReasoningSplicer, encode_event


async def relay_stream(
    chunks: AsyncIterator[bytes],
    coordinator: AbortCoordinator,
    show_reasoning: bool = True,
    debug: bool = False,
    close: Optional[Callable[[], Awaitable[None]]] = None,
) -> AsyncIterator[bytes]:
    """Re-emit an upstream SSE byte stream with reasoning spliced into content.

    Each call owns its own reassembly and splice state. Output order follows
    input order; the terminal line is forwarded verbatim and ends the stream.
    A mid-stream transport error ends the stream without raising, since the
    response status has already been sent.
    ``close`` releases the upstream response and always runs on exit.
    """
    reassembler = LineReassembler()
    splicer = ReasoningSplicer()
    coordinator.start()
    try:
        async for chunk in coordinator.guard(chunks):
            for line in reassembler.push(chunk):
                if coordinator.aborted:
                    break
                frame = classify(line)
                if frame.kind is FrameKind.IGNORABLE:
                    if debug and line.strip():
                        print(f"[proxy] Dropped stream line: {line[:100]!r}", file=sys.stderr)
                    continue
                if frame.kind is FrameKind.TERMINAL:
                    yield frame.raw + b"\n\n"
                    coordinator.mark_finished()
                    coordinator.report(StreamOutcome(OutcomeStatus.COMPLETED))
                    return
                if show_reasoning:
                    splicer.rewrite(frame.record)
                yield encode_event(frame.record)
        if coordinator.aborted:
            coordinator.report(StreamOutcome(OutcomeStatus.CANCELLED, message="client disconnected"))
        else:
            coordinator.mark_finished()
            coordinator.report(StreamOutcome(OutcomeStatus.COMPLETED))
    except (asyncio.CancelledError, GeneratorExit):
        # the server stopped consuming before the terminal frame
        coordinator.abort()
        coordinator.report(StreamOutcome(OutcomeStatus.CANCELLED, message="client disconnected"))
        raise
    except (httpx.HTTPError, httpx.StreamError) as e:
        if is_benign_cancellation(e, coordinator):
            coordinator.report(StreamOutcome(OutcomeStatus.CANCELLED, message="client disconnected"))
            return
        print(f"[proxy] Stream ended with upstream error: {type(e).__name__}: {e}", file=sys.stderr)
        coordinator.report(StreamOutcome(OutcomeStatus.FAILED, message=str(e)))
    finally:
        reassembler.discard()
        await coordinator.stop()
        if close is not None:
            try:
                await close()
            except Exception as e:
                print(f"[proxy] Failed to close upstream stream: {type(e).__name__}: {e}", file=sys.stderr)
