#!/usr/bin/env python3
"""
Per-session transport: one-shot JSON exchanges and the server-sent event stream
"""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Union

from mcp_chrome_proxy.endpoint import ProxyEndpoint
from mcp_chrome_proxy.errors import StreamConflict

logger = logging.getLogger(__name__)

Message = Dict[str, Any]

_END_OF_STREAM = object()


def format_event(event_id: int, message: Any) -> bytes:
    """Encode one JSON-RPC message as an SSE ``message`` event"""
    data = json.dumps(message, separators=(",", ":"))
    return f"id: {event_id}\nevent: message\ndata: {data}\n\n".encode("utf-8")


class StreamTransport:
    """Binds an endpoint to HTTP exchanges for a single session"""

    def __init__(self, endpoint: ProxyEndpoint, keepalive: float = 15.0,
                 on_stream_closed: Optional[Callable[[str], None]] = None):
        """Initialize the transport

        Args:
            endpoint: The session's RPC-facing endpoint
            keepalive: Seconds between keep-alive comments on an idle stream
            on_stream_closed: Called with the session id when the stream ends
        """
        self.endpoint = endpoint
        self.keepalive = keepalive
        self.on_stream_closed = on_stream_closed
        self.closed = False
        self._queue: Optional[asyncio.Queue] = None
        self._event_ids = 0

    @property
    def session_id(self) -> str:
        return self.endpoint.session_id

    @property
    def has_stream(self) -> bool:
        return self._queue is not None

    async def handle_messages(self, messages: Union[Message, List[Message]]) -> Union[Message, List[Message], None]:
        """Run a single message or a batch through the endpoint

        Batch members are handled concurrently; answers come back in
        request order with notifications left out.

        Returns:
            A response, a list of responses, or None when nothing is owed
        """
        if isinstance(messages, list):
            results = await asyncio.gather(*(self.endpoint.handle_message(m) for m in messages))
            responses = [r for r in results if r is not None]
            return responses or None
        return await self.endpoint.handle_message(messages)

    def open_stream(self) -> None:
        """Attach the session's event stream

        Raises:
            StreamConflict: A stream is already open for this session
        """
        if self._queue is not None:
            raise StreamConflict(f"Session {self.session_id} already has an open stream")
        self._queue = asyncio.Queue()
        logger.info(f"[{self.session_id}] Event stream opened")

    def send(self, message: Any) -> bool:
        """Queue a message on the open stream

        Returns:
            False when no stream is open
        """
        if self._queue is None:
            return False
        self._event_ids += 1
        self._queue.put_nowait(format_event(self._event_ids, message))
        return True

    async def events(self, is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None) -> AsyncIterator[bytes]:
        """Yield SSE frames until the stream is ended or the client leaves

        Args:
            is_disconnected: Polled while idle to notice a vanished client
        """
        queue = self._queue
        if queue is None:
            raise RuntimeError("open_stream() must be called before events()")
        try:
            yield b": stream open\n\n"
            while True:
                try:
                    item = await asyncio.wait_for(queue.get(), self.keepalive)
                except asyncio.TimeoutError:
                    if is_disconnected is not None and await is_disconnected():
                        logger.info(f"[{self.session_id}] Stream client disconnected")
                        break
                    yield b": keepalive\n\n"
                    continue
                if item is _END_OF_STREAM:
                    break
                yield item
        finally:
            self._detach(queue)

    def end_stream(self) -> None:
        """Finish the open stream, if any, after queued events are sent"""
        if self._queue is not None:
            self._queue.put_nowait(_END_OF_STREAM)

    def _detach(self, queue: asyncio.Queue) -> None:
        if self._queue is not queue:
            return
        self._queue = None
        logger.info(f"[{self.session_id}] Event stream closed")
        if self.on_stream_closed is not None and not self.closed:
            self.on_stream_closed(self.session_id)

    async def close(self) -> None:
        """End the stream and refuse further streams"""
        if self.closed:
            return
        self.closed = True
        self.end_stream()
        logger.info(f"[{self.session_id}] Transport closed")
