from __future__ import annotations

from collections.abc import Callable
from typing import Generic, TypeVar

from loguru import logger

T = TypeVar("T")


class EventChannel(Generic[T]):
    """Synchronous fan-out of values to subscribers.

    Subscriber exceptions are logged and do not reach the publisher, so a
    broken UI callback cannot stall a stream.
    """

    def __init__(self, name: str = "channel"):
        self._name = name
        self._subscribers: list[Callable[[T], None]] = []

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, value: T) -> None:
        for callback in list(self._subscribers):
            try:
                callback(value)
            except Exception as ex:
                logger.warning(f"{self._name} subscriber failed: {ex}")

    def clear(self) -> None:
        self._subscribers.clear()

    def __len__(self) -> int:
        return len(self._subscribers)
