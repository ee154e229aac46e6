from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import httpx
from loguru import logger

from august_relay.errors import TransportError
from august_relay.transport.base import ReconnectingStreamHandle, ReconnectPolicy, StreamDropped, StreamRequest
from august_relay.transport.frames import SseFrame, SseFrameParser

_DONE_EVENTS = {"done", "message_complete"}


class SseStreamHandle(ReconnectingStreamHandle):
    def __init__(
        self,
        url: str,
        request: StreamRequest,
        *,
        client: httpx.AsyncClient | None,
        timeout: float,
        policy: ReconnectPolicy,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        super().__init__("sse-stream", policy=policy, sleep=sleep)
        self._url = url
        self._request = request
        self._client = client
        self._timeout = timeout

    async def _connect_and_read(self) -> None:
        if self._client is not None:
            await self._read_with(self._client)
            return
        async with httpx.AsyncClient(timeout=httpx.Timeout(self._timeout, read=None)) as client:
            await self._read_with(client)

    async def _read_with(self, client: httpx.AsyncClient) -> None:
        headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache", **self._request.headers}
        try:
            async with client.stream(
                self._request.method,
                self._url,
                headers=headers,
                json=self._request.body if self._request.method.upper() != "GET" else None,
            ) as response:
                if not response.is_success:
                    await response.aread()
                    raise TransportError(
                        f"HTTP Error: {response.status_code} {response.reason_phrase}".rstrip(),
                        status_code=response.status_code,
                    )
                self._mark_open()
                parser = SseFrameParser()
                async for chunk in response.aiter_bytes():
                    for frame in parser.feed(chunk):
                        if self._dispatch(frame):
                            return
                for frame in parser.flush():
                    if self._dispatch(frame):
                        return
        except httpx.TransportError as ex:
            if self._opened:
                raise StreamDropped(f"{type(ex).__name__}: {ex}") from ex
            raise TransportError(f"Could not connect to {self._url}: {type(ex).__name__}: {ex}") from ex
        raise StreamDropped("event stream ended without a done frame")

    def _dispatch(self, frame: SseFrame) -> bool:
        """Emit one frame; True once the stream reached a terminal frame."""
        if self.closed:
            return True
        if frame.event in _DONE_EVENTS:
            self._emit("done", frame.data)
            return True
        if frame.event == "error":
            raise TransportError(f"Backend reported an error: {frame.data or 'unknown error'}")
        logger.trace(f"SSE frame event={frame.event} bytes={len(frame.data)}")
        self._emit("message", {"event": frame.event, "data": frame.data})
        return False


class SseTransport:
    """Chunked ``text/event-stream`` reader over httpx."""

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        policy: ReconnectPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._client = client
        self._timeout = timeout
        self._policy = policy or ReconnectPolicy()
        self._sleep = sleep

    def open(self, url: str, request: StreamRequest | None = None) -> SseStreamHandle:
        handle = SseStreamHandle(
            url,
            request or StreamRequest(),
            client=self._client,
            timeout=self._timeout,
            policy=self._policy,
            sleep=self._sleep,
        )
        logger.debug(f"Opening event stream: {url.split('?', 1)[0]}")
        handle.start()
        return handle
