"""Wire-format boundary between transport frames and typed stream events.

Backend frames arrive either as SSE ``data:`` strings or as decoded socket
payloads. Everything past this module sees only ``StreamEvent`` values; the
inline ``[AUTH_REQUEST:<SERVICE>]`` markup never leaves it.
"""

from __future__ import annotations

import json
import re
from typing import Any

from loguru import logger

from august_relay.errors import ProtocolError
from august_relay.models import StreamEvent, StreamEventKind

_AUTH_TOKEN_RE = re.compile(r"\s*\[AUTH_REQUEST:([A-Za-z0-9_.\-]+)\]")
_AUTH_TOKEN_OPENER = "[AUTH_REQUEST:"
_SERVICE_CHARS_RE = re.compile(r"[A-Za-z0-9_.\-]*")

AUTH_EVENT_NAMES = {"auth_required", "tool_auth_required"}
CONFIRMATION_EVENT_NAMES = {"confirmation_required", "confirm_required"}
FRAGMENT_EVENT_NAMES = {"message", "message_chunk", "fragment"}
DONE_EVENT_NAMES = {"done", "message_complete"}
ERROR_EVENT_NAMES = {"error"}


def extract_auth_requests(text: str) -> tuple[str, list[str]]:
    """Strip inline auth markup and return (clean_text, services)."""
    services: list[str] = []
    for match in _AUTH_TOKEN_RE.finditer(text):
        service = match.group(1).lower()
        if service not in services:
            services.append(service)
    if not services:
        return text, []
    return _AUTH_TOKEN_RE.sub("", text), services


def _parse_data(data: Any) -> Any:
    if not isinstance(data, str):
        return data
    try:
        return json.loads(data)
    except json.JSONDecodeError:
        return data


def _require_str(payload: dict, key: str, event_name: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ProtocolError(f"{event_name} event is missing required field {key!r}")
    return value.strip()


def _auth_event(payload: Any, event_name: str) -> StreamEvent:
    if not isinstance(payload, dict):
        raise ProtocolError(f"{event_name} event payload must be an object, got {type(payload).__name__}")
    service = _require_str(payload, "service", event_name).lower()
    details = payload.get("details")
    return StreamEvent(
        StreamEventKind.TOOL_AUTH_REQUIRED,
        {"service": service, "details": details if isinstance(details, dict) else None},
    )


def _confirmation_event(payload: Any, event_name: str) -> StreamEvent:
    if not isinstance(payload, dict):
        raise ProtocolError(f"{event_name} event payload must be an object, got {type(payload).__name__}")
    action = _require_str(payload, "action", event_name)
    service = payload.get("service")
    details = payload.get("details")
    if details is not None and not isinstance(details, dict):
        raise ProtocolError(f"{event_name} event field 'details' must be an object")
    return StreamEvent(
        StreamEventKind.CONFIRMATION_REQUIRED,
        {
            "action": action,
            "service": service.lower() if isinstance(service, str) and service else None,
            "details": details,
        },
    )


def strip_partial_auth_request(text: str) -> str:
    """Drop an auth token cut off at the end of a cumulative fragment.

    ``"Connect [AUTH_REQ"`` renders as ``"Connect"``; the next fragment
    carries the complete token.
    """
    start = text.rfind("[")
    if start == -1 or "]" in text[start:]:
        return text
    tail = text[start:]
    if _AUTH_TOKEN_OPENER.startswith(tail):
        return text[:start].rstrip()
    if tail.startswith(_AUTH_TOKEN_OPENER) and _SERVICE_CHARS_RE.fullmatch(tail[len(_AUTH_TOKEN_OPENER):]):
        return text[:start].rstrip()
    return text


def _fragment_events(text: str) -> list[StreamEvent]:
    clean, services = extract_auth_requests(text)
    events = [StreamEvent(StreamEventKind.FRAGMENT, strip_partial_auth_request(clean))]
    for service in services:
        events.append(StreamEvent(StreamEventKind.TOOL_AUTH_REQUIRED, {"service": service, "details": None}))
    return events


def decode_message(event_name: str, data: Any) -> list[StreamEvent]:
    """Turn one named backend frame into zero or more stream events."""
    name = (event_name or "message").lower()
    payload = _parse_data(data)

    if name in AUTH_EVENT_NAMES:
        return [_auth_event(payload, name)]
    if name in CONFIRMATION_EVENT_NAMES:
        return [_confirmation_event(payload, name)]
    if name in DONE_EVENT_NAMES:
        return [decode_done(payload)]
    if name in ERROR_EVENT_NAMES:
        return [StreamEvent(StreamEventKind.ERROR, _error_text(payload))]
    if name not in FRAGMENT_EVENT_NAMES:
        logger.debug(f"Ignoring unknown stream frame {name!r}")
        return []

    if not isinstance(payload, dict):
        # Non-object frames are plain text, rendered exactly as sent.
        return _fragment_events(data if isinstance(data, str) else str(payload))

    frame_type = str(payload.get("type", "")).lower()
    if frame_type in AUTH_EVENT_NAMES:
        return [_auth_event(payload, frame_type)]
    if frame_type in CONFIRMATION_EVENT_NAMES:
        return [_confirmation_event(payload, frame_type)]
    if frame_type in DONE_EVENT_NAMES:
        return [decode_done(payload)]
    if frame_type in ERROR_EVENT_NAMES or payload.get("error"):
        return [StreamEvent(StreamEventKind.ERROR, _error_text(payload))]

    content = payload.get("content")
    if isinstance(content, str):
        return _fragment_events(content)
    if content is not None:
        raise ProtocolError(f"Fragment content must be a string, got {type(content).__name__}")

    logger.debug(f"Ignoring message frame without content: {sorted(payload)}")
    return []


def decode_done(data: Any) -> StreamEvent:
    payload = _parse_data(data)
    content = None
    if isinstance(payload, dict) and isinstance(payload.get("content"), str):
        content = payload["content"]
    elif isinstance(payload, str) and payload and payload != "[DONE]":
        content = payload
    if content is not None:
        content, _ = extract_auth_requests(content)
    return StreamEvent(StreamEventKind.DONE, content)


def _error_text(payload: Any) -> str:
    if isinstance(payload, dict):
        for key in ("message", "error", "detail"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
            if isinstance(value, dict) and isinstance(value.get("message"), str):
                return value["message"]
        return json.dumps(payload, ensure_ascii=True)
    if payload is None:
        return "Unknown stream error"
    return str(payload)
