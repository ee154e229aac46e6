from __future__ import annotations

import os
from typing import Any, Protocol, runtime_checkable

from loguru import logger


@runtime_checkable
class ChatPersistence(Protocol):
    def create_message(
        self,
        chat_id: str,
        role: str,
        content: str,
        *,
        is_partial: bool = False,
        is_error: bool = False,
    ) -> dict[str, Any]:
        """Insert a message and return the stored row (must include ``id``)."""
        ...

    def update_message(
        self,
        message_id: str,
        content: str,
        *,
        is_partial: bool = False,
        is_error: bool = False,
    ) -> dict[str, Any] | None:
        """Overwrite a message's content in place."""
        ...

    def get_chat_by_id(self, chat_id: str) -> dict[str, Any] | None:
        """Return the chat row with an ordered ``messages`` list, or None."""
        ...


@runtime_checkable
class AuthTokenProvider(Protocol):
    async def get_current_token(self) -> str | None: ...


@runtime_checkable
class ToolAuthBroker(Protocol):
    async def init_auth(self, service: str) -> dict[str, Any]:
        """Start an OAuth flow; returns ``{"redirectUrl": ...}``."""
        ...

    async def check_auth_status(self, service: str) -> dict[str, Any]:
        """Returns ``{"authenticated": bool}``."""
        ...


class StaticTokenProvider:
    def __init__(self, token: str | None):
        self._token = token or None

    async def get_current_token(self) -> str | None:
        return self._token


class EnvTokenProvider:
    """Reads the bearer token from the environment on every request."""

    def __init__(self, env_var: str = "AUGUST_AUTH_TOKEN"):
        self._env_var = env_var

    async def get_current_token(self) -> str | None:
        token = os.environ.get(self._env_var, "").strip()
        if not token:
            logger.debug(f"{self._env_var} is not set; requests will be unauthenticated")
            return None
        return token
