from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from august_relay.chat_state import ChatState
from august_relay.collaborators import AuthTokenProvider
from august_relay.errors import InterruptTimeoutError, ProtocolError
from august_relay.events import EventChannel
from august_relay.models import (
    Conversation,
    ConversationStatus,
    InterruptKind,
    InterruptRequest,
    Message,
    Role,
    SendOptions,
    StreamEventKind,
    new_id,
)
from august_relay.persistence.bridge import CommitFlags, PersistenceBridge
from august_relay.protocol import decode_done, decode_message
from august_relay.state_machine import ConversationStateMachine
from august_relay.transport.base import StreamHandle, StreamTransport
from august_relay.transport.endpoints import StreamEndpoint

OFFLINE_MESSAGE = (
    "Sorry, I couldn't reach the assistant, so this reply was not generated (offline mode). "
    "Please check your connection and try again later."
)
CANCELLED_MESSAGE = "Request cancelled. The assistant did not finish this response."
TIMEOUT_MESSAGE = (
    "The {kind} request was not answered within {seconds:g} seconds and has been cancelled. "
    "Send your message again to retry."
)
PROTOCOL_ERROR_MESSAGE = "The assistant sent a response that could not be understood. Please try again."


@dataclass
class _Exchange:
    conversation: Conversation
    machine: ConversationStateMachine
    placeholder: Message | None = None
    handle: StreamHandle | None = None
    queue: asyncio.Queue | None = None
    cancelled: bool = False
    settled: bool = False
    message_ids: list[str] = field(default_factory=list)


@dataclass
class _Outcome:
    kind: str
    request: InterruptRequest | None = None
    error: str | None = None


class MessageRelay:
    """Runs one send -> reply exchange per call to ``send``.

    Fragments carry the cumulative reply text and replace the placeholder's
    content. Interrupts park the exchange on the state machine; a resume
    re-issues the request on a fresh stream that keeps writing into the same
    placeholder. Every exchange ends with exactly one assistant commit.
    """

    def __init__(
        self,
        state: ChatState,
        transport: StreamTransport,
        bridge: PersistenceBridge,
        endpoint: StreamEndpoint,
        *,
        auth: AuthTokenProvider | None = None,
    ):
        self._state = state
        self._transport = transport
        self._bridge = bridge
        self._endpoint = endpoint
        self._auth = auth
        self._exchanges: dict[str, _Exchange] = {}
        self._channels: dict[str, EventChannel[Message]] = {}

    def subscribe(self, conversation_id: str, callback: Callable[[Message], None]) -> Callable[[], None]:
        """Receive a read-only snapshot of the assistant message on every change."""
        return self._channel(conversation_id).subscribe(callback)

    def in_flight(self, conversation_id: str) -> bool:
        return conversation_id in self._exchanges

    def cancel(self, conversation_id: str) -> bool:
        exchange = self._exchanges.get(conversation_id)
        if exchange is None or exchange.settled:
            return False
        logger.info(f"Cancelling exchange for {conversation_id}")
        exchange.cancelled = True
        if exchange.handle is not None:
            exchange.handle.close()
        if exchange.queue is not None:
            exchange.queue.put_nowait(("cancel", None))
        exchange.machine.cancel_pending()
        return True

    async def send(self, conversation_id: str, text: str, options: SendOptions | None = None) -> Message:
        conversation = self._state.get(conversation_id)
        machine = self._state.machine_for(conversation_id)
        machine.begin_send()

        exchange = _Exchange(conversation=conversation, machine=machine)
        self._exchanges[conversation_id] = exchange
        try:
            with logger.contextualize(conversation=conversation_id):
                return await self._run(exchange, text, options or self._state.send_options(conversation_id))
        finally:
            self._exchanges.pop(conversation_id, None)
            self._bridge.release(*exchange.message_ids)
            if exchange.handle is not None:
                exchange.handle.close()
            if machine.status != ConversationStatus.IDLE:
                machine.fail(machine.last_error or "exchange aborted")
                machine.reset()

    async def _run(self, exchange: _Exchange, text: str, options: SendOptions) -> Message:
        conversation = exchange.conversation
        cid = conversation.id

        user = Message(id=new_id(), conversation_id=cid, role=Role.USER, content=text)
        conversation.append(user)
        committed = self._bridge.commit_user_message(cid, text, message_id=user.id, ephemeral=conversation.ephemeral)
        user.durable, user.stored_id = committed.durable, committed.stored_id
        exchange.message_ids.append(user.id)

        placeholder = Message(id=new_id(), conversation_id=cid, role=Role.ASSISTANT, content="", is_partial=True)
        conversation.append(placeholder)
        exchange.placeholder = placeholder
        exchange.machine.register_placeholder(placeholder.id)
        reserved = self._bridge.reserve_placeholder(cid, placeholder.id, ephemeral=conversation.ephemeral)
        placeholder.durable, placeholder.stored_id = reserved.durable, reserved.stored_id
        exchange.message_ids.append(placeholder.id)
        self._notify(placeholder)

        history = conversation.wire_history()
        auth_status = dict(options.auth_status)
        context_data = dict(options.context_data)

        try:
            while True:
                outcome = await self._stream_once(exchange, history, options, auth_status, context_data)

                if outcome.kind == "done":
                    return self._settle(exchange, placeholder.content)
                if outcome.kind == "cancelled":
                    return self._settle(exchange, CANCELLED_MESSAGE, is_error=True, reason="cancelled")
                if outcome.kind == "error":
                    logger.error(f"Exchange for {cid} failed: {outcome.error}")
                    if placeholder.content:
                        return self._settle(
                            exchange, placeholder.content, is_partial=True, is_error=True, reason=outcome.error
                        )
                    return self._settle(exchange, OFFLINE_MESSAGE, is_error=True, reason=outcome.error)

                request = outcome.request
                try:
                    resolution = await exchange.machine.wait_for_resolution()
                except InterruptTimeoutError as ex:
                    return self._settle(
                        exchange,
                        TIMEOUT_MESSAGE.format(kind=request.kind.value, seconds=ex.timeout_seconds),
                        is_error=True,
                        reason=str(ex),
                    )
                finally:
                    self._close_handle(exchange)

                if exchange.cancelled or not resolution.resumed:
                    return self._settle(exchange, CANCELLED_MESSAGE, is_error=True, reason="interrupt cancelled")

                for service, authenticated in resolution.auth_status.items():
                    auth_status[service.lower()] = bool(authenticated)
                    self._state.update_auth_status(service, bool(authenticated))
                resolved = {service.lower() for service in resolution.auth_status}
                if request.kind == InterruptKind.AUTH and request.service and request.service not in resolved:
                    auth_status[request.service] = True
                    self._state.update_auth_status(request.service, True)
                if request.kind == InterruptKind.CONFIRMATION:
                    context_data["confirmation"] = {
                        "resumeToken": request.resume_token,
                        "action": request.action,
                        "approved": True,
                    }
                logger.info(f"Resuming exchange for {cid} after {request.kind.value} interrupt")
        except ProtocolError as ex:
            logger.error(f"Protocol error in exchange for {cid}: {ex}")
            self._settle(exchange, PROTOCOL_ERROR_MESSAGE, is_error=True, reason=str(ex))
            raise

    async def _stream_once(
        self,
        exchange: _Exchange,
        history: list[dict[str, str]],
        options: SendOptions,
        auth_status: dict[str, bool],
        context_data: dict[str, Any],
    ) -> _Outcome:
        if exchange.cancelled:
            return _Outcome("cancelled")
        machine = exchange.machine
        payload = {
            "messages": history,
            "enabledTools": list(options.enabled_tools) if options.use_tools else [],
            "useTools": options.use_tools,
            "authStatus": dict(auth_status),
            "contextData": dict(context_data),
        }
        url, request = self._endpoint.target(exchange.conversation.id, payload, await self._auth_headers())

        queue: asyncio.Queue = asyncio.Queue()
        exchange.queue = queue
        handle = self._transport.open(url, request)
        exchange.handle = handle
        for event_name in ("open", "message", "error", "done", "close"):
            handle.on(event_name, lambda value, name=event_name: queue.put_nowait((name, value)))

        while True:
            name, value = await queue.get()
            if exchange.cancelled or name == "cancel":
                return _Outcome("cancelled")

            if name == "error":
                return _Outcome("error", error=str(value) or type(value).__name__)
            if name == "close":
                return _Outcome("error", error="stream closed before completion")

            machine.on_open()
            if name == "done":
                self._apply_final(exchange, decode_done(value).payload)
                return _Outcome("done")
            if name != "message":
                continue

            for event in decode_message(value.get("event", "message"), value.get("data")):
                if event.kind == StreamEventKind.FRAGMENT:
                    self._apply_fragment(exchange, event.payload)
                elif event.kind in (StreamEventKind.TOOL_AUTH_REQUIRED, StreamEventKind.CONFIRMATION_REQUIRED):
                    # the parked request must not be replayed while the user decides
                    handle.suspend()
                    return _Outcome("interrupt", request=machine.suspend(event))
                elif event.kind == StreamEventKind.DONE:
                    self._apply_final(exchange, event.payload)
                    return _Outcome("done")
                elif event.kind == StreamEventKind.ERROR:
                    return _Outcome("error", error=event.payload)

    def _apply_fragment(self, exchange: _Exchange, text: str) -> None:
        placeholder = exchange.placeholder
        if placeholder is None or text == placeholder.content:
            return
        placeholder.content = text
        self._notify(placeholder)

    def _apply_final(self, exchange: _Exchange, text: str | None) -> None:
        if text:
            self._apply_fragment(exchange, text)

    def _settle(
        self,
        exchange: _Exchange,
        content: str,
        *,
        is_partial: bool = False,
        is_error: bool = False,
        reason: str | None = None,
    ) -> Message:
        placeholder = exchange.placeholder
        if exchange.settled:
            return dataclasses.replace(placeholder)
        exchange.settled = True

        placeholder.content = content
        placeholder.is_partial = is_partial
        placeholder.is_error = is_error
        result = self._bridge.commit_assistant_message(
            placeholder.conversation_id,
            placeholder.id,
            content,
            CommitFlags(is_partial=is_partial, is_error=is_error),
            ephemeral=exchange.conversation.ephemeral,
        )
        placeholder.durable, placeholder.stored_id = result.durable, result.stored_id
        if not result.ok:
            logger.warning(f"Assistant message {placeholder.id} kept in memory only: {result.error}")

        if is_error:
            exchange.machine.fail(reason or content)
        else:
            exchange.machine.on_open()
            exchange.machine.finish()
        self._notify(placeholder)
        return dataclasses.replace(placeholder)

    def _close_handle(self, exchange: _Exchange) -> None:
        if exchange.handle is not None:
            exchange.handle.close()
            exchange.handle = None
        exchange.queue = None

    async def _auth_headers(self) -> dict[str, str]:
        if self._auth is None:
            return {}
        try:
            token = await self._auth.get_current_token()
        except Exception as ex:
            logger.warning(f"Could not read auth token, sending unauthenticated: {ex}")
            return {}
        return {"Authorization": f"Bearer {token}"} if token else {}

    def _notify(self, message: Message) -> None:
        self._channel(message.conversation_id).publish(dataclasses.replace(message))

    def _channel(self, conversation_id: str) -> EventChannel[Message]:
        channel = self._channels.get(conversation_id)
        if channel is None:
            channel = EventChannel(f"messages:{conversation_id}")
            self._channels[conversation_id] = channel
        return channel
