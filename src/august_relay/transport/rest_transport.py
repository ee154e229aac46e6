from __future__ import annotations

import asyncio
from typing import Any

import httpx
from loguru import logger

from august_relay.backend_client import BackendClient
from august_relay.errors import TransportError
from august_relay.protocol import AUTH_EVENT_NAMES, CONFIRMATION_EVENT_NAMES
from august_relay.transport.base import StreamHandle, StreamRequest


def _reply_content(reply: Any) -> Any:
    if isinstance(reply, dict) and isinstance(reply.get("message"), dict):
        return reply["message"]
    return reply


class RestReplyHandle(StreamHandle):
    """A ``stream=false`` reply presented as a one-frame stream.

    Emits ``open`` and then either the control frame or ``done`` carrying the
    whole reply. There is nothing to reconnect: a failed request is a single
    ``error``.
    """

    def __init__(self, backend: BackendClient, request: StreamRequest):
        super().__init__("rest-reply")
        self._backend = backend
        self._request = request

    def start(self) -> None:
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        body = self._request.body or {}
        try:
            reply = await self._backend.send_message(
                body["chatId"],
                body.get("messages") or [],
                enabled_tools=body.get("enabledTools"),
                auth_status=body.get("authStatus"),
                context_data=body.get("contextData"),
            )
        except TransportError as ex:
            self._emit("error", ex)
        except httpx.HTTPError as ex:
            self._emit("error", TransportError(f"Could not reach the backend: {type(ex).__name__}: {ex}"))
        else:
            self._emit("open")
            self._dispatch(_reply_content(reply))
        finally:
            self._finish()

    def _dispatch(self, reply: Any) -> None:
        if isinstance(reply, dict):
            frame_type = str(reply.get("type", "")).lower()
            if frame_type in AUTH_EVENT_NAMES or frame_type in CONFIRMATION_EVENT_NAMES:
                self._emit("message", {"event": "message", "data": reply})
                return
            if reply.get("error"):
                self._emit("error", TransportError(f"Backend reported an error: {reply['error']}"))
                return
        self._emit("done", reply)


class RestTransport:
    """Non-streaming ``POST .../messages`` behind the stream handle surface."""

    def __init__(self, backend: BackendClient):
        self._backend = backend

    def open(self, url: str, request: StreamRequest | None = None) -> RestReplyHandle:
        handle = RestReplyHandle(self._backend, request or StreamRequest(method="POST"))
        logger.debug(f"Requesting complete reply: {url}")
        handle.start()
        return handle
