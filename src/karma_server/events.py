"""Multicast callbacks for supervisor lifecycle events."""

from __future__ import annotations

import logging
from typing import Callable, Generic

from typing_extensions import ParamSpec, Self

P = ParamSpec("P")


class EventHook(Generic[P]):
    """A list of listeners fired in registration order.

    A listener that raises is logged and skipped; the remaining listeners still run
    and nothing propagates back to the code that fired the event.
    """

    def __init__(self, name: str, logger: logging.Logger) -> None:
        self.name: str = name
        self._logger: logging.Logger = logger
        self._listeners: list[Callable[P, object]] = []

    def subscribe(self, listener: Callable[P, object]) -> Callable[[], None]:
        """Register a listener and return a function that removes it again."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            self.unsubscribe(listener)

        return unsubscribe

    def unsubscribe(self, listener: Callable[P, object]) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def __iadd__(self, listener: Callable[P, object]) -> Self:
        self.subscribe(listener)
        return self

    def __isub__(self, listener: Callable[P, object]) -> Self:
        self.unsubscribe(listener)
        return self

    def __len__(self) -> int:
        return len(self._listeners)

    def fire(self, *args: P.args, **kwargs: P.kwargs) -> None:
        # Copy so listeners may unsubscribe themselves while firing.
        for listener in list(self._listeners):
            try:
                listener(*args, **kwargs)
            except Exception:
                self._logger.exception(f"Listener for '{self.name}' failed")
