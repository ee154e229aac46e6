from __future__ import annotations

import random
from dataclasses import dataclass

from loguru import logger

from august_relay.collaborators import ChatPersistence
from august_relay.errors import PersistenceError
from august_relay.models import Role, new_id, utc_now

MOCK_MESSAGE_PREFIX = "mock-msg-"


@dataclass(frozen=True)
class CommitFlags:
    is_partial: bool = False
    is_error: bool = False


@dataclass(frozen=True)
class CommitResult:
    message_id: str
    stored_id: str
    durable: bool
    error: PersistenceError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class EphemeralMessageLog:
    """In-memory stand-in for conversations with no durable storage."""

    def __init__(self) -> None:
        self._messages: dict[str, dict[str, dict]] = {}
        self._rng = random.Random()

    def allocate_id(self) -> str:
        taken = {mid for rows in self._messages.values() for mid in rows}
        while True:
            candidate = f"{MOCK_MESSAGE_PREFIX}{self._rng.randrange(1_000_000):06d}"
            if candidate not in taken:
                return candidate

    def put(self, conversation_id: str, stored_id: str, role: str, content: str, flags: CommitFlags) -> dict:
        rows = self._messages.setdefault(conversation_id, {})
        row = rows.get(stored_id)
        if row is None:
            row = {"id": stored_id, "chat_id": conversation_id, "role": role, "created_at": utc_now()}
            rows[stored_id] = row
        row.update(content=content, is_partial=flags.is_partial, is_error=flags.is_error)
        return row

    def messages(self, conversation_id: str) -> list[dict]:
        return [dict(row) for row in self._messages.get(conversation_id, {}).values()]


class PersistenceBridge:
    """Commits exchange messages to the persistence collaborator.

    Commits are keyed by the relay's local message id: committing the same
    id again overwrites the stored row instead of inserting a second one.
    When the collaborator is missing, the conversation is ephemeral, or the
    write fails, the message lands in an ``EphemeralMessageLog`` under a
    ``mock-msg-NNNNNN`` id and the result is flagged ``durable=False``.
    Failures are returned, never raised.
    """

    def __init__(self, persistence: ChatPersistence | None, *, ephemeral_log: EphemeralMessageLog | None = None):
        self._persistence = persistence
        self._ephemeral = ephemeral_log or EphemeralMessageLog()
        self._committed: dict[str, CommitResult] = {}

    @property
    def ephemeral_log(self) -> EphemeralMessageLog:
        return self._ephemeral

    def stored_id(self, message_id: str) -> str | None:
        result = self._committed.get(message_id)
        return result.stored_id if result is not None else None

    def release(self, *message_ids: str) -> None:
        """Forget settled messages; a later commit of the same id inserts a new row."""
        for message_id in message_ids:
            self._committed.pop(message_id, None)

    def commit_user_message(
        self,
        conversation_id: str,
        text: str,
        *,
        message_id: str | None = None,
        ephemeral: bool = False,
    ) -> CommitResult:
        return self._commit(
            conversation_id,
            message_id or new_id(),
            Role.USER,
            text,
            CommitFlags(),
            ephemeral=ephemeral,
        )

    def reserve_placeholder(self, conversation_id: str, placeholder_id: str, *, ephemeral: bool = False) -> CommitResult:
        return self._commit(
            conversation_id,
            placeholder_id,
            Role.ASSISTANT,
            "",
            CommitFlags(is_partial=True),
            ephemeral=ephemeral,
        )

    def commit_assistant_message(
        self,
        conversation_id: str,
        placeholder_id: str,
        final_text: str,
        flags: CommitFlags | None = None,
        *,
        ephemeral: bool = False,
    ) -> CommitResult:
        return self._commit(
            conversation_id,
            placeholder_id,
            Role.ASSISTANT,
            final_text,
            flags or CommitFlags(),
            ephemeral=ephemeral,
        )

    def _commit(
        self,
        conversation_id: str,
        message_id: str,
        role: Role,
        text: str,
        flags: CommitFlags,
        *,
        ephemeral: bool,
    ) -> CommitResult:
        previous = self._committed.get(message_id)
        if ephemeral or self._persistence is None or (previous is not None and not previous.durable):
            return self._commit_local(conversation_id, message_id, role, text, flags, previous)

        try:
            if previous is not None:
                row = self._persistence.update_message(
                    previous.stored_id, text, is_partial=flags.is_partial, is_error=flags.is_error
                )
                if row is None:
                    raise PersistenceError(f"Stored message {previous.stored_id} no longer exists")
                stored_id = previous.stored_id
            else:
                row = self._persistence.create_message(
                    conversation_id, role.value, text, is_partial=flags.is_partial, is_error=flags.is_error
                )
                stored_id = str(row["id"])
        except Exception as ex:
            error = ex if isinstance(ex, PersistenceError) else PersistenceError(
                f"Could not persist {role.value} message for {conversation_id}: {ex}"
            )
            logger.error(f"{error}; keeping message in memory")
            return self._commit_local(conversation_id, message_id, role, text, flags, None, error=error)

        result = CommitResult(message_id=message_id, stored_id=stored_id, durable=True)
        self._committed[message_id] = result
        logger.debug(f"Persisted {role.value} message {message_id} as {stored_id}")
        return result

    def _commit_local(
        self,
        conversation_id: str,
        message_id: str,
        role: Role,
        text: str,
        flags: CommitFlags,
        previous: CommitResult | None,
        *,
        error: PersistenceError | None = None,
    ) -> CommitResult:
        stored_id = previous.stored_id if previous is not None and not previous.durable else self._ephemeral.allocate_id()
        self._ephemeral.put(conversation_id, stored_id, role.value, text, flags)
        result = CommitResult(message_id=message_id, stored_id=stored_id, durable=False, error=error)
        self._committed[message_id] = result
        return result
