from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from august_relay.app_config import AppConfig, RuntimeEnv
from august_relay.auth_poller import AuthStatusPoller
from august_relay.backend_client import BackendClient
from august_relay.chat_state import ChatState
from august_relay.collaborators import EnvTokenProvider, StaticTokenProvider
from august_relay.logging_config import setup_logging
from august_relay.persistence import ChatStore, PersistenceBridge
from august_relay.relay import MessageRelay
from august_relay.transport.base import ReconnectPolicy
from august_relay.transport.endpoints import RestEndpoint, SocketEndpoint, SseEndpoint
from august_relay.transport.rest_transport import RestTransport
from august_relay.transport.socket_transport import SocketTransport
from august_relay.transport.sse_transport import SseTransport


@dataclass
class AppRuntime:
    state: ChatState
    relay: MessageRelay
    backend: BackendClient
    poller: AuthStatusPoller
    bridge: PersistenceBridge
    chat_store: ChatStore | None
    transport_name: str
    log_descriptions: list[str]

    async def aclose(self) -> None:
        await self.poller.stop()
        await self.backend.aclose()
        if self.chat_store is not None:
            self.chat_store.close()


def _open_store(db_path: str | None) -> ChatStore | None:
    if not db_path:
        logger.info("ChatDbPath not set; chats are kept in memory only")
        return None
    path = Path(db_path)
    if db_path != ":memory:" and not path.is_absolute():
        path = Path.cwd() / path
    try:
        return ChatStore(str(path) if db_path != ":memory:" else db_path)
    except sqlite3.Error as ex:
        logger.error(f"Could not open chat store at {path}, continuing offline: {ex}")
        return None


async def bootstrap_runtime(app: AppConfig, env: RuntimeEnv) -> AppRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)

    auth = StaticTokenProvider(env.auth_token) if env.auth_token else EnvTokenProvider()
    chat_store = _open_store(app.chat_db_path)
    state = ChatState(
        chat_store,
        interrupt_timeout=app.interrupt_timeout_seconds,
        default_tools=app.enabled_tools,
        use_tools=app.use_tools,
    )
    state.load()

    policy = ReconnectPolicy(
        max_attempts=app.max_reconnect_attempts,
        delay_seconds=app.reconnect_delay_seconds,
    )
    backend = BackendClient(app.backend_url, auth=auth, timeout=app.request_timeout_seconds)
    if app.transport == "socket":
        transport = SocketTransport(connect_timeout=app.request_timeout_seconds, policy=policy)
        endpoint = SocketEndpoint(app.socket_url)
    elif app.transport == "rest":
        transport = RestTransport(backend)
        endpoint = RestEndpoint(app.backend_url)
    else:
        transport = SseTransport(timeout=app.request_timeout_seconds, policy=policy)
        endpoint = SseEndpoint(app.backend_url, method=app.stream_method)

    bridge = PersistenceBridge(chat_store)
    relay = MessageRelay(state, transport, bridge, endpoint, auth=auth)
    poller = AuthStatusPoller(backend, interval_seconds=app.auth_poll_interval_seconds)

    return AppRuntime(
        state=state,
        relay=relay,
        backend=backend,
        poller=poller,
        bridge=bridge,
        chat_store=chat_store,
        transport_name=app.transport,
        log_descriptions=log_descriptions,
    )
