"""
NDJSON event multiplexer and the streaming response that carries it
"""
import asyncio
import contextlib
from typing import Awaitable, Callable, Mapping, Optional

import structlog
from pydantic import BaseModel
from starlette.responses import Response
from starlette.types import Message, Receive, Scope, Send

from referral_api.models.referral import ErrorEvent, TERMINAL_EVENT_TYPES, encode_event
from referral_api.services.errors import TransportError
from referral_api.utils.metrics import stream_events_counter

logger = structlog.get_logger()

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


class EventMultiplexer:
    """
    Single writer for one response body.

    Events are written in call order. Once a terminal event (complete or
    error) has been written, further events are dropped.
    """

    def __init__(self, send: Send, stream: str = "referrals"):
        self._send = send
        self.stream = stream
        self.disconnected = False
        self.closed = False
        self.terminated = False
        self.events_written = 0

    def mark_disconnected(self) -> None:
        self.disconnected = True

    async def _write(self, body: bytes, more_body: bool = True) -> None:
        if self.disconnected:
            raise TransportError("Client disconnected")
        try:
            await self._send({"type": "http.response.body", "body": body, "more_body": more_body})
        except Exception as e:
            self.disconnected = True
            raise TransportError(f"Write to client failed: {e}") from e

    async def write_event(self, event: BaseModel) -> None:
        if self.terminated or self.closed:
            logger.warning("Dropping event after stream end", stream=self.stream, event_type=getattr(event, "type", None))
            return
        event_type = getattr(event, "type", "unknown")
        await self._write(encode_event(event))
        self.events_written += 1
        stream_events_counter.labels(stream=self.stream, type=event_type).inc()
        if event_type in TERMINAL_EVENT_TYPES:
            self.terminated = True

    async def fail(self, message: str) -> None:
        """Best-effort error event; the transport may already be gone"""
        try:
            await self.write_event(ErrorEvent(error=message))
        except TransportError as e:
            logger.warning("Could not deliver error event", stream=self.stream, error=str(e))

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.disconnected:
            return
        try:
            await self._write(b"", more_body=False)
        except TransportError as e:
            logger.warning("Could not close stream", stream=self.stream, error=str(e))


Producer = Callable[[EventMultiplexer], Awaitable[None]]


class EventStreamResponse(Response):
    """
    Streaming response driven by a producer coroutine.

    The producer receives the multiplexer and is the only writer. A watcher
    listens on the ASGI receive channel so a client disconnect makes the next
    write fail with TransportError.
    """

    media_type = "application/x-ndjson"

    def __init__(
        self,
        producer: Producer,
        status_code: int = 200,
        headers: Optional[Mapping[str, str]] = None,
        stream: str = "referrals",
        stream_format: str = "ndjson",
    ):
        self.producer = producer
        self.stream = stream
        self.status_code = status_code
        self.background = None
        merged = dict(STREAM_HEADERS)
        merged["X-Stream-Format"] = stream_format
        merged.update(headers or {})
        self.init_headers(merged)

    async def _watch_disconnect(self, receive: Receive, mux: EventMultiplexer) -> None:
        while True:
            message: Message = await receive()
            if message["type"] == "http.disconnect":
                mux.mark_disconnected()
                return

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        await send({
            "type": "http.response.start",
            "status": self.status_code,
            "headers": self.raw_headers,
        })
        mux = EventMultiplexer(send, stream=self.stream)
        watcher = asyncio.create_task(self._watch_disconnect(receive, mux))
        try:
            await self.producer(mux)
        finally:
            watcher.cancel()
            try:
                with contextlib.suppress(asyncio.CancelledError):
                    await watcher
            except Exception as e:
                logger.warning("Disconnect watcher failed", stream=self.stream, error=str(e))
            await mux.close()
