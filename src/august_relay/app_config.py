from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

_TRANSPORTS = {"sse", "socket", "rest"}


@dataclass
class RuntimeEnv:
    auth_token: str | None
    backend_url_override: str | None


@dataclass
class AppConfig:
    backend_url: str
    transport: str
    socket_url: str
    stream_method: str
    interrupt_timeout_seconds: float | None
    max_reconnect_attempts: int
    reconnect_delay_seconds: float
    enabled_tools: list[str]
    use_tools: bool
    chat_db_path: str | None
    auth_poll_interval_seconds: float
    request_timeout_seconds: float
    log_level: str
    log_consumers: list | None


def load_json_config() -> dict:
    config_path = Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def parse_app_config(config: dict, env: RuntimeEnv | None = None) -> AppConfig:
    backend_url = str(config.get("BackendUrl", "http://localhost:3000")).rstrip("/")
    if env is not None and env.backend_url_override:
        backend_url = env.backend_url_override.rstrip("/")

    transport = str(config.get("Transport", "sse")).strip().lower()
    if transport not in _TRANSPORTS:
        raise ValueError(f"Unknown Transport {transport!r}; expected one of {', '.join(sorted(_TRANSPORTS))}")

    interrupt_timeout = config.get("InterruptTimeoutSeconds", 60)
    chat_db_path = str(config.get("ChatDbPath", ".august/chats.db") or "").strip()

    return AppConfig(
        backend_url=backend_url,
        transport=transport,
        # socket.io serves from the backend origin unless told otherwise
        socket_url=str(config.get("SocketUrl") or backend_url).rstrip("/"),
        stream_method=str(config.get("StreamMethod", "GET")).strip().upper(),
        # 0 or null disables the cap
        interrupt_timeout_seconds=float(interrupt_timeout) if interrupt_timeout else None,
        max_reconnect_attempts=int(config.get("MaxReconnectAttempts", 3)),
        reconnect_delay_seconds=float(config.get("ReconnectDelaySeconds", 1.0)),
        enabled_tools=[str(t).strip().lower() for t in config.get("EnabledTools", []) if str(t).strip()],
        use_tools=_to_bool(config.get("UseTools", True), default=True),
        chat_db_path=chat_db_path or None,
        auth_poll_interval_seconds=float(config.get("AuthPollIntervalSeconds", 2.0)),
        request_timeout_seconds=float(config.get("RequestTimeoutSeconds", 30.0)),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def resolve_runtime_env() -> RuntimeEnv:
    return RuntimeEnv(
        auth_token=os.environ.get("AUGUST_AUTH_TOKEN", "").strip() or None,
        backend_url_override=os.environ.get("AUGUST_BACKEND_URL", "").strip() or None,
    )
