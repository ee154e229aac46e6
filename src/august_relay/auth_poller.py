from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable

from loguru import logger

from august_relay.collaborators import ToolAuthBroker
from august_relay.models import InterruptKind, InterruptRequest
from august_relay.state_machine import ConversationStateMachine


class AuthStatusPoller:
    """Turns ``check_auth_status`` polling into the machine's resume signal.

    The OAuth flow finishes in a browser, so nothing pushes completion back
    to the client. While an auth interrupt is pending the poller asks the
    broker every ``interval_seconds`` and resumes with the same token the
    UI would use. It stops as soon as the interrupt is settled by anyone.
    """

    def __init__(
        self,
        broker: ToolAuthBroker,
        *,
        interval_seconds: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._broker = broker
        self._interval_seconds = max(0.0, interval_seconds)
        self._sleep = sleep
        self._tasks: set[asyncio.Task] = set()

    def watch(self, machine: ConversationStateMachine) -> Callable[[], None]:
        def on_interrupt(request: InterruptRequest) -> None:
            if request.kind != InterruptKind.AUTH or not request.service:
                return
            task = asyncio.get_running_loop().create_task(self.poll(machine, request))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        return machine.subscribe_interrupts(on_interrupt)

    async def poll(self, machine: ConversationStateMachine, request: InterruptRequest) -> bool:
        service = request.service or ""
        while self._is_current(machine, request):
            try:
                status = await self._broker.check_auth_status(service)
            except Exception as ex:
                logger.warning(f"Auth status check for {service} failed: {ex}")
                status = {}
            if status.get("authenticated") and self._is_current(machine, request):
                logger.info(f"{service} authenticated; resuming conversation {machine.conversation_id}")
                return machine.resume(request.resume_token, {service: True})
            await self._sleep(self._interval_seconds)
        return False

    async def stop(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()

    @staticmethod
    def _is_current(machine: ConversationStateMachine, request: InterruptRequest) -> bool:
        pending = machine.pending_interrupt
        return pending is not None and pending.resume_token == request.resume_token
