from __future__ import annotations


class RelayError(Exception):
    """Base class for every failure raised by the relay core."""


class TransportError(RelayError):
    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ConcurrentSendError(RelayError):
    def __init__(self, conversation_id: str):
        super().__init__(f"A message is already in flight for conversation {conversation_id}")
        self.conversation_id = conversation_id


class InterruptTimeoutError(RelayError):
    def __init__(self, resume_token: str, timeout_seconds: float):
        super().__init__(
            f"Interrupt {resume_token} was not resolved within {timeout_seconds:g}s"
        )
        self.resume_token = resume_token
        self.timeout_seconds = timeout_seconds


class PersistenceError(RelayError):
    pass


class ProtocolError(RelayError):
    pass


class InvalidTransitionError(RelayError):
    def __init__(self, conversation_id: str, current: str, target: str):
        super().__init__(f"Conversation {conversation_id}: illegal status change {current} -> {target}")
        self.conversation_id = conversation_id
        self.current = current
        self.target = target


class ConversationNotFoundError(RelayError):
    def __init__(self, conversation_id: str):
        super().__init__(f"Chat not found: {conversation_id}")
        self.conversation_id = conversation_id
