from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import socketio
from loguru import logger
from socketio.exceptions import ConnectionError as SocketConnectionError
from socketio.exceptions import SocketIOError

from august_relay.errors import TransportError
from august_relay.transport.base import ReconnectingStreamHandle, ReconnectPolicy, StreamDropped, StreamRequest

# socket.io events handed to the relay as ``message`` frames, in arrival order.
FORWARDED_EVENTS = ("message_chunk", "auth_required", "confirmation_required")
COMPLETE_EVENT = "message_complete"


def default_client_factory() -> socketio.AsyncClient:
    # Reconnection belongs to the handle, so each attempt re-emits the request.
    return socketio.AsyncClient(reconnection=False, logger=False, engineio_logger=False)


def bearer_token(headers: dict[str, str]) -> str | None:
    scheme, _, token = headers.get("Authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _describe(data: Any) -> str:
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error") or data)
    return str(data or "unknown error")


class SocketStreamHandle(ReconnectingStreamHandle):
    """One ``send_message`` exchange over a socket.io connection.

    The bearer token travels in the socket.io ``auth`` payload. The exchange
    ends on ``message_complete``; a disconnect before that is a drop.
    """

    def __init__(
        self,
        url: str,
        request: StreamRequest,
        *,
        client_factory: Callable[[], Any],
        connect_timeout: float,
        policy: ReconnectPolicy,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        super().__init__("socket-stream", policy=policy, sleep=sleep)
        self._url = url
        self._request = request
        self._client_factory = client_factory
        self._connect_timeout = connect_timeout

    def _forwarder(self, event: str) -> Callable[..., None]:
        def forward(data: Any = None) -> None:
            if not self.closed:
                self._emit("message", {"event": event, "data": data})

        return forward

    async def _connect_and_read(self) -> None:
        client = self._client_factory()
        outcome: asyncio.Queue = asyncio.Queue()
        for event in FORWARDED_EVENTS:
            client.on(event, self._forwarder(event))
        client.on(COMPLETE_EVENT, lambda data=None: outcome.put_nowait(("done", data)))
        client.on("error", lambda data=None: outcome.put_nowait(("error", data)))
        client.on("disconnect", lambda *args: outcome.put_nowait(("disconnect", args[0] if args else None)))

        token = bearer_token(self._request.headers)
        try:
            await client.connect(
                self._url,
                headers=dict(self._request.headers),
                auth={"token": token} if token else None,
                transports=["websocket"],
                wait_timeout=self._connect_timeout,
            )
        except SocketConnectionError as ex:
            if self._opened:
                raise StreamDropped(f"reconnect failed: {ex}") from ex
            raise TransportError(f"Could not connect to {self._url}: {ex}") from ex

        try:
            self._mark_open()
            await client.emit(self._request.send_event, self._request.body)
            kind, data = await outcome.get()
        except SocketIOError as ex:
            raise StreamDropped(f"{type(ex).__name__}: {ex}") from ex
        finally:
            if client.connected:
                await client.disconnect()

        if kind == "done":
            self._emit("done", data)
            return
        if kind == "error":
            raise TransportError(f"Backend reported an error: {_describe(data)}")
        raise StreamDropped(f"socket disconnected before {COMPLETE_EVENT} ({data or 'no reason given'})")


class SocketTransport:
    """Persistent socket.io channel: emits ``send_message``, listens for the reply events."""

    def __init__(
        self,
        *,
        client_factory: Callable[[], Any] = default_client_factory,
        connect_timeout: float = 10.0,
        policy: ReconnectPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._client_factory = client_factory
        self._connect_timeout = connect_timeout
        self._policy = policy or ReconnectPolicy()
        self._sleep = sleep

    def open(self, url: str, request: StreamRequest | None = None) -> SocketStreamHandle:
        handle = SocketStreamHandle(
            url,
            request or StreamRequest(),
            client_factory=self._client_factory,
            connect_timeout=self._connect_timeout,
            policy=self._policy,
            sleep=self._sleep,
        )
        logger.debug(f"Opening socket.io channel: {url}")
        handle.start()
        return handle
