"""Server-sent-event relay between a model provider and one HTTP response.

Every provider chunk passes three checks before it is forwarded: total stream
age, time since the last write, and the response byte budget. The checks run
on the chunk path itself, so a provider that never sends anything is bounded
only by its client library's read timeout.

The relay talks to the client through an ``EventSink`` whose ``write``
returns ``WriteResult.CLOSED`` once the client is gone; a disconnect is an
ordinary branch that stops provider consumption, not an exception.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, Optional, Protocol, Set

from canvasgate.logging import get_logger, sanitize_error_message
from canvasgate.service.errors import ServiceError

logger = get_logger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


class TerminalStatus(str, Enum):
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    TOO_LARGE = "too_large"
    PROVIDER_ERROR = "provider_error"
    CLIENT_DISCONNECTED = "client_disconnected"


class WriteResult(str, Enum):
    OK = "ok"
    CLOSED = "closed"


def format_sse(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


class EventSink(Protocol):
    async def write(self, event: str, data: dict) -> WriteResult: ...


class QueueSink:
    """Hands SSE frames from the relay task to the response body iterator.

    The queue holds a single frame so the relay waits on a slow client. Once
    ``close`` is called every pending and future write returns ``CLOSED``.
    """

    _END = None

    def __init__(self, maxsize: int = 1) -> None:
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue(maxsize=maxsize)
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def _put(self, item: Optional[str]) -> WriteResult:
        if self._closed.is_set():
            return WriteResult.CLOSED
        put = asyncio.ensure_future(self._queue.put(item))
        closed = asyncio.ensure_future(self._closed.wait())
        done, pending = await asyncio.wait({put, closed}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        return WriteResult.OK if put in done else WriteResult.CLOSED

    async def write(self, event: str, data: dict) -> WriteResult:
        return await self._put(format_sse(event, data))

    async def finish(self) -> None:
        """Signal the end of the stream to the consumer."""
        await self._put(self._END)

    def close(self) -> None:
        self._closed.set()

    async def frames(self) -> AsyncIterator[str]:
        while True:
            item = await self._queue.get()
            if item is self._END:
                return
            yield item


@dataclass(frozen=True)
class StreamLimits:
    total_timeout: float
    idle_timeout: float
    max_bytes: int


@dataclass
class StreamSession:
    """Per-response bookkeeping; never shared between requests."""

    started_at: float
    last_write_at: float
    bytes_written: int = 0
    cancelled: bool = False

    @classmethod
    def open(cls, now: float) -> "StreamSession":
        return cls(started_at=now, last_write_at=now)

    def elapsed(self, now: float) -> float:
        return now - self.started_at

    def idle(self, now: float) -> float:
        return now - self.last_write_at

    def record_write(self, size: int, now: float) -> None:
        self.bytes_written += size
        self.last_write_at = now


class StreamingRelay:
    """Drive one streaming completion into an ``EventSink``."""

    def __init__(self, limits: StreamLimits, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.limits = limits
        self._clock = clock
        self._tasks: Set[asyncio.Task] = set()

    async def stream(
        self,
        provider: Any,
        model: str,
        prompt: str,
        system_context: Optional[str],
        sink: EventSink,
    ) -> TerminalStatus:
        session = StreamSession.open(self._clock())
        status = TerminalStatus.COMPLETED
        error: Optional[tuple[str, str]] = None

        try:
            async with provider.stream_chat(prompt, model, system_context) as chunks:
                async for chunk in chunks:
                    now = self._clock()
                    if session.elapsed(now) > self.limits.total_timeout:
                        status = TerminalStatus.TIMED_OUT
                        error = ("Stream timeout exceeded", "stream_timeout")
                        break
                    if session.idle(now) > self.limits.idle_timeout:
                        status = TerminalStatus.TIMED_OUT
                        error = ("Stream idle timeout exceeded", "stream_idle_timeout")
                        break
                    if not chunk:
                        continue
                    size = len(chunk.encode("utf-8"))
                    if session.bytes_written + size > self.limits.max_bytes:
                        status = TerminalStatus.TOO_LARGE
                        error = ("Response size limit exceeded", "response_too_large")
                        break

                    if await sink.write("chunk", {"content": chunk}) is WriteResult.CLOSED:
                        session.cancelled = True
                        status = TerminalStatus.CLIENT_DISCONNECTED
                        break
                    session.record_write(size, self._clock())
        except asyncio.CancelledError:
            logger.debug("stream_cancelled", model=model, bytes_written=session.bytes_written)
            raise
        except ServiceError as exc:
            status = TerminalStatus.PROVIDER_ERROR
            error = (exc.message, exc.error_code)
            # Provider adapters log the upstream failure where it is raised
            logger.debug(
                "stream_provider_error",
                model=model,
                error_code=exc.error_code,
                bytes_written=session.bytes_written,
            )
        except Exception as exc:
            status = TerminalStatus.PROVIDER_ERROR
            message = sanitize_error_message(str(exc)) or exc.__class__.__name__
            error = (f"AI provider request failed: {message}", "provider_error")
            logger.error(
                "stream_provider_error",
                model=model,
                error_type=exc.__class__.__name__,
                error=message,
                bytes_written=session.bytes_written,
            )

        # The provider context has been left by now; the client frame goes last.
        if status is TerminalStatus.CLIENT_DISCONNECTED:
            logger.debug("stream_client_disconnected", model=model, bytes_written=session.bytes_written)
            return status

        if error is not None:
            message, code = error
            if status is not TerminalStatus.PROVIDER_ERROR:
                logger.warning(
                    "stream_aborted",
                    model=model,
                    reason=code,
                    bytes_written=session.bytes_written,
                    elapsed_seconds=round(session.elapsed(self._clock()), 3),
                )
            if await sink.write("error", {"error": message, "code": code}) is WriteResult.CLOSED:
                logger.debug("stream_client_disconnected", model=model, bytes_written=session.bytes_written)
            return status

        if await sink.write("done", {"bytes_written": session.bytes_written}) is WriteResult.CLOSED:
            logger.debug("stream_client_disconnected", model=model, bytes_written=session.bytes_written)
            return TerminalStatus.CLIENT_DISCONNECTED
        logger.info("stream_completed", model=model, bytes_written=session.bytes_written)
        return status

    def open_stream(
        self,
        provider: Any,
        model: str,
        prompt: str,
        system_context: Optional[str],
    ) -> AsyncIterator[str]:
        """Run the relay in a task and return the SSE frames it produces.

        Closing the returned iterator (client gone) closes the sink, so the
        relay's next write reports ``CLOSED`` and it releases the provider.
        """
        sink = QueueSink()

        async def produce() -> None:
            try:
                await self.stream(provider, model, prompt, system_context, sink)
            finally:
                await sink.finish()

        async def frames() -> AsyncIterator[str]:
            task = asyncio.create_task(produce())
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            try:
                async for frame in sink.frames():
                    yield frame
            finally:
                sink.close()

        return frames()
