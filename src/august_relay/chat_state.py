from __future__ import annotations

import random
import sqlite3

from loguru import logger

from august_relay.errors import ConversationNotFoundError
from august_relay.models import Conversation, Message, Role, SendOptions, utc_now
from august_relay.persistence.store import ChatStore
from august_relay.state_machine import ConversationStateMachine

MOCK_CHAT_PREFIX = "mock-chat-"


def _message_from_row(row: dict) -> Message:
    return Message(
        id=str(row["id"]),
        conversation_id=str(row["chat_id"]),
        role=Role(row["role"]),
        content=row.get("content") or "",
        created_at=row.get("created_at") or utc_now(),
        is_partial=bool(row.get("is_partial")),
        is_error=bool(row.get("is_error")),
        stored_id=str(row["id"]),
    )


class ChatState:
    """Conversations, their state machines and the per-service auth status.

    Owned by the composition root and handed to the relay; nothing here is
    module-level. Conversations that could not be stored get a
    ``mock-chat-NNNNNN`` id and ``ephemeral=True``.
    """

    def __init__(
        self,
        store: ChatStore | None,
        *,
        interrupt_timeout: float | None = 60.0,
        default_tools: list[str] | None = None,
        use_tools: bool = True,
    ):
        self._store = store
        self._interrupt_timeout = interrupt_timeout
        self._default_tools = list(default_tools or [])
        self._use_tools = use_tools
        self._conversations: dict[str, Conversation] = {}
        self._machines: dict[str, ConversationStateMachine] = {}
        self.auth_status: dict[str, bool] = {}
        self._rng = random.Random()

    @property
    def store(self) -> ChatStore | None:
        return self._store

    def load(self) -> list[dict]:
        """Load auth status and return stored chat summaries, newest first."""
        if self._store is None:
            return []
        try:
            self.auth_status.update(self._store.load_auth_status())
            return self._store.list_chats()
        except sqlite3.Error as ex:
            logger.error(f"Could not load chats: {ex}")
            return []

    def open_conversation(self, chat_id: str) -> Conversation:
        if chat_id in self._conversations:
            return self._conversations[chat_id]
        row = self._store.get_chat_by_id(chat_id) if self._store is not None else None
        if row is None:
            raise ConversationNotFoundError(chat_id)
        conversation = Conversation(
            id=str(row["id"]),
            title=row.get("title") or "New Chat",
            messages=[_message_from_row(m) for m in row.get("messages", [])],
            updated_at=row.get("updated_at") or utc_now(),
            enabled_tools=list(self._default_tools),
            use_tools=self._use_tools,
        )
        return self._register(conversation)

    def create_conversation(self, title: str = "New Chat") -> Conversation:
        conversation: Conversation | None = None
        if self._store is not None:
            try:
                row = self._store.create_chat(title)
                conversation = Conversation(id=str(row["id"]), title=row["title"], updated_at=row["updated_at"])
            except (sqlite3.Error, KeyError) as ex:
                logger.error(f"Could not store new chat, continuing offline: {ex}")
        if conversation is None:
            conversation = Conversation(id=self._mock_chat_id(), title=title.strip() or "New Chat", ephemeral=True)
            logger.info(f"Created ephemeral conversation {conversation.id}")
        conversation.enabled_tools = list(self._default_tools)
        conversation.use_tools = self._use_tools
        return self._register(conversation)

    def get(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return self.open_conversation(conversation_id)
        return conversation

    def machine_for(self, conversation_id: str) -> ConversationStateMachine:
        machine = self._machines.get(conversation_id)
        if machine is None:
            machine = ConversationStateMachine(self.get(conversation_id), interrupt_timeout=self._interrupt_timeout)
            self._machines[conversation_id] = machine
        return machine

    def rename(self, conversation_id: str, title: str) -> Conversation:
        conversation = self.get(conversation_id)
        title = title.strip()
        if not title:
            raise ValueError("Title must not be empty")
        if not conversation.ephemeral and self._store is not None:
            self._store.update_chat_title(conversation_id, title)
        conversation.title = title
        conversation.updated_at = utc_now()
        return conversation

    def delete(self, conversation_id: str) -> bool:
        conversation = self._conversations.get(conversation_id)
        deleted = conversation is not None
        if self._store is not None and not (conversation is not None and conversation.ephemeral):
            try:
                deleted = self._store.delete_chat(conversation_id) or deleted
            except sqlite3.Error as ex:
                logger.error(f"Could not delete chat {conversation_id}: {ex}")
                return False
        self._conversations.pop(conversation_id, None)
        self._machines.pop(conversation_id, None)
        return deleted

    def set_enabled_tools(self, conversation_id: str, tools: list[str]) -> None:
        self.get(conversation_id).enabled_tools = [t.strip().lower() for t in tools if t.strip()]

    def toggle_tools(self, conversation_id: str, enabled: bool) -> None:
        self.get(conversation_id).use_tools = enabled

    def update_auth_status(self, service: str, authenticated: bool) -> None:
        service = service.lower()
        self.auth_status[service] = authenticated
        if self._store is None:
            return
        try:
            self._store.save_auth_status(service, authenticated)
        except sqlite3.Error as ex:
            logger.error(f"Could not persist auth status for {service}: {ex}")

    def send_options(self, conversation_id: str) -> SendOptions:
        conversation = self.get(conversation_id)
        return SendOptions(
            enabled_tools=list(conversation.enabled_tools),
            use_tools=conversation.use_tools,
            auth_status=dict(self.auth_status),
        )

    def conversations(self) -> list[Conversation]:
        return sorted(self._conversations.values(), key=lambda c: c.updated_at, reverse=True)

    def _register(self, conversation: Conversation) -> Conversation:
        self._conversations[conversation.id] = conversation
        return conversation

    def _mock_chat_id(self) -> str:
        while True:
            candidate = f"{MOCK_CHAT_PREFIX}{self._rng.randrange(1_000_000):06d}"
            if candidate not in self._conversations:
                return candidate
