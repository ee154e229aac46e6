from __future__ import annotations

from august_relay.models import Conversation, InterruptKind, InterruptRequest, Message


class ChatController:
    def __init__(self, *, line_prefix: str, short_id_len: int = 8, preview_len: int = 60):
        self._line_prefix = line_prefix
        self._short_id_len = short_id_len
        self._preview_len = preview_len

    def short_id(self, value: str) -> str:
        if len(value) <= self._short_id_len:
            return value
        return value[: self._short_id_len]

    def preview(self, text: str) -> str:
        flat = " ".join(text.split())
        if len(flat) <= self._preview_len:
            return flat
        return flat[: self._preview_len - 3] + "..."

    def format_chat_list_entry(self, chat: dict, *, active_chat_id: str | None) -> str:
        marker = "*" if chat["id"] == active_chat_id else " "
        return (
            f"{self._line_prefix}{marker} {chat.get('title') or 'New Chat'} "
            f"[{self.short_id(chat['id'])}] (id={chat['id']}, updated={chat.get('updated_at', '-')})"
        )

    def format_conversation_header(self, conversation: Conversation) -> str:
        mode = "offline" if conversation.ephemeral else "saved"
        tools = ", ".join(conversation.enabled_tools) if conversation.use_tools and conversation.enabled_tools else "none"
        return (
            f"{self._line_prefix}Chat: {conversation.title} [{self.short_id(conversation.id)}] "
            f"({mode}, {len(conversation.messages)} messages, tools: {tools})"
        )

    def format_history_lines(self, conversation: Conversation, *, limit: int = 10) -> list[str]:
        lines = []
        for message in conversation.messages[-limit:]:
            flag = " (error)" if message.is_error else " (partial)" if message.is_partial else ""
            lines.append(f"{self._line_prefix}{message.role.value}{flag}: {self.preview(message.content)}")
        return lines

    def format_interrupt_prompt(self, request: InterruptRequest) -> str:
        if request.kind == InterruptKind.AUTH:
            return (
                f"{self._line_prefix}The assistant needs access to {request.service}. "
                "Type 'connect' to sign in, or 'cancel' to stop: "
            )
        target = f" on {request.service}" if request.service else ""
        details = ""
        if request.details:
            details = " (" + ", ".join(f"{k}={v}" for k, v in request.details.items()) + ")"
        return f"{self._line_prefix}Confirm '{request.action}'{target}{details}? [y/N]: "

    def format_final(self, message: Message) -> str:
        if message.is_error and message.is_partial:
            return f"{self._line_prefix}[incomplete] the reply was interrupted and saved as partial"
        if not message.durable:
            return f"{self._line_prefix}[offline] reply kept in memory only (id={message.id})"
        return ""
