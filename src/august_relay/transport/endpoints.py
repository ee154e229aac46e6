from __future__ import annotations

import json
from typing import Any, Protocol, runtime_checkable
from urllib.parse import quote

from august_relay.transport.base import StreamRequest

# Characters encodeURIComponent leaves untouched besides alphanumerics.
_URI_COMPONENT_SAFE = "-_.!~*'()"

_QUERY_FIELDS = ("messages", "enabledTools", "authStatus", "contextData")


def encode_query_value(value: Any) -> str:
    return quote(json.dumps(value, separators=(",", ":"), ensure_ascii=False), safe=_URI_COMPONENT_SAFE)


def messages_url(base_url: str, chat_id: str) -> str:
    return f"{base_url.rstrip('/')}/api/chats/{quote(chat_id, safe='')}/messages"


def build_stream_url(base_url: str, chat_id: str, payload: dict[str, Any]) -> str:
    query = "&".join(f"{name}={encode_query_value(payload.get(name))}" for name in _QUERY_FIELDS)
    return f"{messages_url(base_url, chat_id)}/stream?{query}"


@runtime_checkable
class StreamEndpoint(Protocol):
    def target(self, chat_id: str, payload: dict[str, Any], headers: dict[str, str]) -> tuple[str, StreamRequest]: ...


class SseEndpoint:
    """``GET .../messages/stream?…`` by default, ``POST .../messages`` with ``stream: true`` otherwise."""

    def __init__(self, base_url: str, *, method: str = "GET"):
        self._base_url = base_url
        self._method = method.upper()

    def target(self, chat_id: str, payload: dict[str, Any], headers: dict[str, str]) -> tuple[str, StreamRequest]:
        if self._method == "GET":
            return build_stream_url(self._base_url, chat_id, payload), StreamRequest(method="GET", headers=dict(headers))
        body = {
            "messages": payload.get("messages"),
            "enabledTools": payload.get("enabledTools"),
            "stream": True,
            "authStatus": payload.get("authStatus"),
            "contextData": payload.get("contextData"),
        }
        return messages_url(self._base_url, chat_id), StreamRequest(method=self._method, headers=dict(headers), body=body)


class SocketEndpoint:
    def __init__(self, socket_url: str, *, send_event: str = "send_message"):
        self._socket_url = socket_url
        self._send_event = send_event

    def target(self, chat_id: str, payload: dict[str, Any], headers: dict[str, str]) -> tuple[str, StreamRequest]:
        body = {**payload, "chatId": chat_id}
        return self._socket_url, StreamRequest(headers=dict(headers), body=body, send_event=self._send_event)


class RestEndpoint:
    """``POST .../messages`` with ``stream: false``; the chat id rides in the body for the REST transport."""

    def __init__(self, base_url: str):
        self._base_url = base_url

    def target(self, chat_id: str, payload: dict[str, Any], headers: dict[str, str]) -> tuple[str, StreamRequest]:
        body = {**payload, "chatId": chat_id}
        return messages_url(self._base_url, chat_id), StreamRequest(method="POST", headers=dict(headers), body=body)
