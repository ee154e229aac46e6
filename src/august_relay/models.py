from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


def new_id() -> str:
    return str(uuid4())


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ConversationStatus(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    AWAITING_AUTH = "awaiting_auth"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    ERROR = "error"


class StreamEventKind(str, Enum):
    OPEN = "open"
    FRAGMENT = "fragment"
    TOOL_AUTH_REQUIRED = "tool_auth_required"
    CONFIRMATION_REQUIRED = "confirmation_required"
    DONE = "done"
    ERROR = "error"


class InterruptKind(str, Enum):
    AUTH = "auth"
    CONFIRMATION = "confirmation"


@dataclass
class Message:
    id: str
    conversation_id: str
    role: Role
    content: str
    created_at: str = field(default_factory=utc_now)
    is_partial: bool = False
    is_error: bool = False
    # False when the id was allocated locally and no durable copy exists.
    durable: bool = True
    # Row id assigned by the bridge, a mock-msg id when not durable.
    stored_id: str | None = None

    def to_wire(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclass
class Conversation:
    id: str
    title: str
    messages: list[Message] = field(default_factory=list)
    updated_at: str = field(default_factory=utc_now)
    status: ConversationStatus = ConversationStatus.IDLE
    ephemeral: bool = False
    enabled_tools: list[str] = field(default_factory=list)
    use_tools: bool = True

    def append(self, message: Message) -> None:
        self.messages.append(message)
        self.updated_at = utc_now()

    def wire_history(self) -> list[dict[str, str]]:
        """History sent to the backend: settled, non-error turns in send order."""
        return [
            m.to_wire()
            for m in self.messages
            if not m.is_error and not (m.role == Role.ASSISTANT and m.is_partial)
        ]


@dataclass(frozen=True)
class StreamEvent:
    kind: StreamEventKind
    payload: Any = None


@dataclass(frozen=True)
class InterruptRequest:
    kind: InterruptKind
    resume_token: str
    service: str | None = None
    action: str | None = None
    details: dict[str, Any] | None = None


@dataclass(frozen=True)
class InterruptResolution:
    resumed: bool
    auth_status: dict[str, bool] = field(default_factory=dict)
    confirmed: bool = False
    timed_out: bool = False


@dataclass
class SendOptions:
    enabled_tools: list[str] = field(default_factory=list)
    use_tools: bool = True
    auth_status: dict[str, bool] = field(default_factory=dict)
    context_data: dict[str, Any] = field(default_factory=dict)
