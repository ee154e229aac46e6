from __future__ import annotations

from collections.abc import Awaitable, Callable


class CommandRouter:
    def __init__(
        self,
        *,
        on_help: Callable[[], Awaitable[None]],
        on_new: Callable[[str], Awaitable[None]],
        on_chats: Callable[[str], Awaitable[None]],
        on_open: Callable[[str], Awaitable[None]],
        on_rename: Callable[[str], Awaitable[None]],
        on_delete: Callable[[str], Awaitable[None]],
        on_tools: Callable[[str], Awaitable[None]],
        on_auth: Callable[[str], Awaitable[None]],
        on_test: Callable[[], Awaitable[None]],
        on_unknown: Callable[[str], None],
    ) -> None:
        self._prefix_handlers: list[tuple[str, Callable[[str], Awaitable[None]]]] = [
            ("/new", on_new),
            ("/chats", on_chats),
            ("/open", on_open),
            ("/rename", on_rename),
            ("/delete", on_delete),
            ("/tools", on_tools),
            ("/auth", on_auth),
        ]
        self._on_help = on_help
        self._on_test = on_test
        self._on_unknown = on_unknown

    async def try_handle(self, user_message: str) -> bool:
        trimmed = user_message.strip()
        if not trimmed.startswith("/"):
            return False

        if trimmed == "/help":
            await self._on_help()
            return True
        if trimmed == "/test":
            await self._on_test()
            return True

        command = trimmed.split(maxsplit=1)[0]
        for name, handler in self._prefix_handlers:
            if command == name:
                await handler(trimmed)
                return True

        self._on_unknown(trimmed)
        return True
