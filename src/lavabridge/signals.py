"""Typed observer channels used by nodes, players and the router."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable
from typing import Any, List

__all__ = ["Signal"]

logger = logging.getLogger("lavabridge.signals")

Listener = Callable[..., Any]


class Signal:
    """A single named event with any number of listeners.

    Listeners may be plain callables or coroutine functions. ``emit`` awaits
    coroutine listeners in registration order so the caller only resumes once
    every observer has handled the event.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._listeners: List[Listener] = []

    def __len__(self) -> int:
        return len(self._listeners)

    def __repr__(self) -> str:
        return f"<Signal {self.name} listeners={len(self._listeners)}>"

    def connect(self, listener: Listener) -> Callable[[], None]:
        """Add a listener. Returns unsubscribe function."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            self.disconnect(listener)

        return _unsubscribe

    def disconnect(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def clear(self) -> None:
        self._listeners.clear()

    async def emit(self, *args: Any) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "Signal listener failed", extra={"signal": self.name}
                )
