"""Explicit subscribe/emit signals.

Components expose their observable state through ``Signal`` instances instead
of shared mutable globals.  Subscribers are called synchronously in
registration order; a subscriber that raises is reported to the signal's
error sink and never stops delivery to the others.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Generic, TypeVar

logger = logging.getLogger("pulsecast.heartbeat.events")

T = TypeVar("T")

ErrorSink = Callable[[str, BaseException], None]


def log_error_sink(signal_name: str, exc: BaseException) -> None:
    """Default sink: log and continue."""
    logger.error("Subscriber of '%s' failed: %s", signal_name, exc, exc_info=exc)


class Signal(Generic[T]):
    """A named, synchronous event stream."""

    def __init__(self, name: str, error_sink: ErrorSink | None = None) -> None:
        self.name = name
        self._error_sink = error_sink or log_error_sink
        self._subscribers: list[Callable[[T], Any]] = []

    def subscribe(self, callback: Callable[[T], Any]) -> Callable[[], None]:
        """Register ``callback``; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, value: T) -> None:
        for callback in list(self._subscribers):
            try:
                callback(value)
            except Exception as exc:
                self._error_sink(self.name, exc)

    def __len__(self) -> int:
        return len(self._subscribers)


class AsyncSignal(Generic[T]):
    """Like ``Signal`` but awaits coroutine subscribers in order.

    Used by the live store to deliver write events to the dispatcher.
    """

    def __init__(self, name: str, error_sink: ErrorSink | None = None) -> None:
        self.name = name
        self._error_sink = error_sink or log_error_sink
        self._subscribers: list[Callable[[T], Awaitable[Any] | Any]] = []

    def subscribe(self, callback: Callable[[T], Awaitable[Any] | Any]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def emit(self, value: T) -> None:
        for callback in list(self._subscribers):
            try:
                result = callback(value)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                self._error_sink(self.name, exc)

    def __len__(self) -> int:
        return len(self._subscribers)
