from __future__ import annotations

import asyncio
from collections.abc import Callable
from uuid import uuid4

from loguru import logger

from august_relay.errors import ConcurrentSendError, InterruptTimeoutError, InvalidTransitionError, ProtocolError
from august_relay.events import EventChannel
from august_relay.models import (
    Conversation,
    ConversationStatus,
    InterruptKind,
    InterruptRequest,
    InterruptResolution,
    StreamEvent,
    StreamEventKind,
)

S = ConversationStatus

_TRANSITIONS: dict[ConversationStatus, set[ConversationStatus]] = {
    S.IDLE: {S.SENDING},
    S.SENDING: {S.STREAMING, S.ERROR},
    S.STREAMING: {S.AWAITING_AUTH, S.AWAITING_CONFIRMATION, S.IDLE, S.ERROR},
    S.AWAITING_AUTH: {S.STREAMING, S.ERROR},
    S.AWAITING_CONFIRMATION: {S.STREAMING, S.ERROR},
    S.ERROR: {S.IDLE},
}


class ConversationStateMachine:
    """Owns ``Conversation.status`` and the interrupt handshake for one conversation.

    An interrupt suspends the exchange behind a pending future keyed by a
    fresh resume token. Only a resolution carrying that exact token settles
    it; anything else is ignored so a stale screen cannot resume the wrong
    exchange. Unresolved interrupts are auto-cancelled after
    ``interrupt_timeout`` seconds.
    """

    def __init__(self, conversation: Conversation, *, interrupt_timeout: float | None = 60.0):
        self._conversation = conversation
        self._interrupt_timeout = interrupt_timeout
        self._placeholder_id: str | None = None
        self._pending: InterruptRequest | None = None
        self._future: asyncio.Future[InterruptResolution] | None = None
        self.last_error: str | None = None
        self._status_channel: EventChannel[ConversationStatus] = EventChannel(f"status:{conversation.id}")
        self._interrupt_channel: EventChannel[InterruptRequest] = EventChannel(f"interrupts:{conversation.id}")

    @property
    def conversation_id(self) -> str:
        return self._conversation.id

    @property
    def status(self) -> ConversationStatus:
        return self._conversation.status

    @property
    def placeholder_id(self) -> str | None:
        return self._placeholder_id

    @property
    def pending_interrupt(self) -> InterruptRequest | None:
        return self._pending

    @property
    def is_idle(self) -> bool:
        return self.status == S.IDLE

    def subscribe_status(self, callback: Callable[[ConversationStatus], None]) -> Callable[[], None]:
        return self._status_channel.subscribe(callback)

    def subscribe_interrupts(self, callback: Callable[[InterruptRequest], None]) -> Callable[[], None]:
        return self._interrupt_channel.subscribe(callback)

    # -- exchange lifecycle -------------------------------------------------

    def begin_send(self) -> None:
        if self.status != S.IDLE:
            raise ConcurrentSendError(self.conversation_id)
        self.last_error = None
        self._transition(S.SENDING)

    def register_placeholder(self, message_id: str) -> None:
        self._placeholder_id = message_id

    def on_open(self) -> None:
        if self.status == S.SENDING:
            self._transition(S.STREAMING)

    def finish(self) -> None:
        self._transition(S.IDLE)
        self._placeholder_id = None

    def fail(self, reason: str) -> None:
        if self.status in (S.IDLE, S.ERROR):
            self.last_error = reason
            return
        self._settle_pending(InterruptResolution(resumed=False))
        self.last_error = reason
        self._transition(S.ERROR)
        logger.warning(f"Conversation {self.conversation_id} failed: {reason}")

    def reset(self) -> None:
        if self.status == S.ERROR:
            self._transition(S.IDLE)
        self._placeholder_id = None

    # -- interrupts ---------------------------------------------------------

    def suspend(self, event: StreamEvent) -> InterruptRequest:
        payload = event.payload if isinstance(event.payload, dict) else {}
        if event.kind == StreamEventKind.TOOL_AUTH_REQUIRED:
            service = payload.get("service")
            if not isinstance(service, str) or not service:
                self.fail("auth interrupt without a service")
                raise ProtocolError("toolAuthRequired event is missing 'service'")
            kind, target = InterruptKind.AUTH, S.AWAITING_AUTH
        elif event.kind == StreamEventKind.CONFIRMATION_REQUIRED:
            if not isinstance(payload.get("action"), str) or not payload.get("action"):
                self.fail("confirmation interrupt without an action")
                raise ProtocolError("confirmationRequired event is missing 'action'")
            kind, target = InterruptKind.CONFIRMATION, S.AWAITING_CONFIRMATION
        else:
            raise ProtocolError(f"{event.kind.value} is not an interrupt event")

        if self.status == S.SENDING:
            self._transition(S.STREAMING)
        self._transition(target)

        request = InterruptRequest(
            kind=kind,
            resume_token=uuid4().hex,
            service=payload.get("service"),
            action=payload.get("action"),
            details=payload.get("details"),
        )
        self._pending = request
        self._future = asyncio.get_running_loop().create_future()
        logger.info(
            f"Conversation {self.conversation_id} suspended for {kind.value}"
            f"{f' ({request.service})' if request.service else ''} token={request.resume_token[:8]}"
        )
        self._interrupt_channel.publish(request)
        return request

    async def wait_for_resolution(self) -> InterruptResolution:
        if self._pending is None or self._future is None:
            raise ProtocolError("No interrupt is pending")
        token = self._pending.resume_token
        future = self._future
        try:
            if self._interrupt_timeout is None:
                return await future
            return await asyncio.wait_for(future, timeout=self._interrupt_timeout)
        except TimeoutError:
            if self._pending is not None and self._pending.resume_token == token:
                self._pending = None
                self._future = None
                self.fail("interrupt timed out")
            raise InterruptTimeoutError(token, self._interrupt_timeout or 0) from None

    def resume(self, resume_token: str, auth_status: dict[str, bool] | None = None) -> bool:
        if not self._matches(resume_token):
            return False
        resolution = InterruptResolution(
            resumed=True,
            auth_status=dict(auth_status or {}),
            confirmed=self._pending is not None and self._pending.kind == InterruptKind.CONFIRMATION,
        )
        self._settle_pending(resolution)
        self._transition(S.STREAMING)
        return True

    def confirm(self, resume_token: str) -> bool:
        if not self._matches(resume_token):
            return False
        if self._pending is not None and self._pending.kind != InterruptKind.CONFIRMATION:
            logger.warning(f"confirm() called for a {self._pending.kind.value} interrupt; use resume()")
            return False
        return self.resume(resume_token)

    def cancel(self, resume_token: str) -> bool:
        if not self._matches(resume_token):
            return False
        self.fail("interrupt cancelled by user")
        return True

    def cancel_pending(self) -> None:
        if self._pending is not None:
            self.fail("exchange cancelled")

    def _matches(self, resume_token: str) -> bool:
        if self._pending is None:
            logger.warning(f"Ignoring resolution for {self.conversation_id}: no interrupt pending")
            return False
        if resume_token != self._pending.resume_token:
            logger.warning(
                f"Ignoring resolution for {self.conversation_id}: stale resume token {resume_token[:8]}"
            )
            return False
        return True

    def _settle_pending(self, resolution: InterruptResolution) -> None:
        future = self._future
        self._pending = None
        self._future = None
        if future is not None and not future.done():
            future.set_result(resolution)

    def _transition(self, target: ConversationStatus) -> None:
        current = self.status
        if target == current:
            return
        if target not in _TRANSITIONS[current]:
            raise InvalidTransitionError(self.conversation_id, current.value, target.value)
        self._conversation.status = target
        logger.debug(f"Conversation {self.conversation_id}: {current.value} -> {target.value}")
        self._status_channel.publish(target)
