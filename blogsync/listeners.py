"""Callback registration with explicit unsubscribe handles."""

import inspect
import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)


class Subscription:
    """Handle returned by a registration; call ``unsubscribe()`` to detach."""

    def __init__(self, on_unsubscribe: Callable[[], None]):
        self._on_unsubscribe = on_unsubscribe
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        """Detach the callback. Safe to call more than once."""
        if not self._active:
            return
        self._active = False
        self._on_unsubscribe()


class ListenerSet:
    """A set of callbacks notified in registration order.

    Callbacks may be plain functions or coroutine functions. A failing
    listener is logged and does not stop the others.
    """

    def __init__(self, name: str = "listeners"):
        self._name = name
        self._callbacks: list[Callable[..., Any]] = []

    def __len__(self) -> int:
        return len(self._callbacks)

    def add(self, callback: Callable[..., Any]) -> Subscription:
        self._callbacks.append(callback)
        return Subscription(lambda: self._remove(callback))

    def _remove(self, callback: Callable[..., Any]) -> None:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            pass

    async def notify(self, *args: Any) -> None:
        """Call every listener with ``args``, awaiting coroutine results."""
        for callback in list(self._callbacks):
            try:
                result = callback(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"{self._name} callback {callback!r} failed: {e}")

    def notify_nowait(self, *args: Any) -> None:
        """Call synchronous listeners only; coroutine results are discarded with a warning."""
        for callback in list(self._callbacks):
            try:
                result = callback(*args)
                if inspect.iscoroutine(result):
                    logger.warning(
                        f"{self._name} callback {callback!r} is async; use notify()"
                    )
                    result.close()
            except Exception as e:
                logger.error(f"{self._name} callback {callback!r} failed: {e}")
