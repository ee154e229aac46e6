from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from loguru import logger
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_incrementing

from august_relay.errors import TransportError
from august_relay.events import EventChannel

HANDLE_EVENTS = ("open", "message", "error", "done", "close")


@dataclass
class StreamRequest:
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    # POST body for HTTP streams, first outbound frame for socket streams.
    body: Any = None
    send_event: str = "send_message"


@dataclass(frozen=True)
class ReconnectPolicy:
    max_attempts: int = 3
    delay_seconds: float = 1.0


class StreamDropped(Exception):
    """The connection went away after open and before ``done``."""


@runtime_checkable
class StreamTransport(Protocol):
    def open(self, url: str, request: StreamRequest | None = None) -> "StreamHandle": ...


class StreamHandle:
    """Event surface of one open stream.

    Reading starts on the next loop iteration, so callbacks registered right
    after ``open()`` see every event including ``open``. Each stream ends with
    exactly one ``close`` event.
    """

    def __init__(self, name: str = "stream"):
        self._name = name
        self._channels: dict[str, EventChannel[Any]] = {
            event: EventChannel(f"{name}:{event}") for event in HANDLE_EVENTS
        }
        self._closed = False
        self._done = False
        self._suspended = False
        self._task: asyncio.Task | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def suspended(self) -> bool:
        return self._suspended

    @property
    def done(self) -> bool:
        return self._done

    def on(self, event: str, callback: Callable[[Any], None]) -> Callable[[], None]:
        channel = self._channels.get(event)
        if channel is None:
            raise ValueError(f"Unknown stream event {event!r}; expected one of {', '.join(HANDLE_EVENTS)}")
        return channel.subscribe(callback)

    def suspend(self) -> None:
        """Park the stream on an interrupt: it stays open but never reconnects.

        The request is only re-issued by the relay after the interrupt is
        resolved.
        """
        self._suspended = True

    def close(self) -> None:
        if self._closed:
            return
        self._finish()
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait_closed(self) -> None:
        if self._task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

    def _emit(self, event: str, payload: Any = None) -> None:
        if self._closed:
            return
        if event == "done":
            self._done = True
        self._channels[event].publish(payload)

    def _finish(self) -> None:
        if self._closed:
            return
        self._channels["close"].publish(None)
        self._closed = True
        for channel in self._channels.values():
            channel.clear()


class ReconnectingStreamHandle(StreamHandle):
    """Drives a subclass connection with linear-backoff reconnection.

    Subclasses implement ``_connect_and_read``: return after emitting ``done``,
    raise ``StreamDropped`` for a disconnect worth retrying, raise
    ``TransportError`` for anything terminal.
    """

    def __init__(
        self,
        name: str,
        *,
        policy: ReconnectPolicy,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        super().__init__(name)
        self._policy = policy
        self._sleep = sleep
        self._opened = False
        self.reconnect_count = 0

    def start(self) -> None:
        self._task = asyncio.get_running_loop().create_task(self._run())

    def _mark_open(self) -> None:
        if not self._opened:
            self._opened = True
            self._emit("open")

    async def _connect_and_read(self) -> None:
        raise NotImplementedError

    def _on_reconnect(self, retry_state) -> None:
        self.reconnect_count = retry_state.attempt_number
        wait = retry_state.next_action.sleep if retry_state.next_action else 0
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            f"{self._name} disconnected ({exc}). Reconnecting in {wait:.1f}s "
            f"(attempt {retry_state.attempt_number}/{self._policy.max_attempts})..."
        )

    def _should_reconnect(self, ex: BaseException) -> bool:
        return isinstance(ex, StreamDropped) and not self._suspended and not self._closed

    async def _run(self) -> None:
        delay = max(0.0, self._policy.delay_seconds)
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception(self._should_reconnect),
                wait=wait_incrementing(start=delay, increment=delay),
                stop=stop_after_attempt(max(0, self._policy.max_attempts) + 1),
                before_sleep=self._on_reconnect,
                sleep=self._sleep,
                reraise=True,
            ):
                with attempt:
                    if self._suspended:
                        # parked during the backoff sleep
                        logger.debug(f"{self._name} suspended, dropping reconnect")
                        return
                    await self._connect_and_read()
        except StreamDropped as ex:
            if self._suspended:
                logger.debug(f"{self._name} ended while suspended on an interrupt: {ex}")
                return
            logger.error(f"{self._name} gave up after {self.reconnect_count} reconnect attempt(s): {ex}")
            self._emit("error", TransportError(f"Stream disconnected before completion: {ex}"))
        except TransportError as ex:
            logger.error(f"{self._name} failed: {ex}")
            self._emit("error", ex)
        except Exception as ex:
            logger.exception(f"{self._name} crashed")
            self._emit("error", TransportError(f"Unexpected stream failure: {ex}"))
        finally:
            self._finish()
