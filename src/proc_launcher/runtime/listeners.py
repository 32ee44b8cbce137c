"""Listener handles with paired, idempotent removal.

Every registration in the runtime returns a ``Listener``. Removing it twice
is harmless, so teardown paths can run in any order.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any

__all__ = ["Listener", "ListenerSet", "remove_listeners"]


class Listener:
    """Handle for one registered callback."""

    def __init__(self, remove: Callable[[], None]) -> None:
        self._remove: Callable[[], None] | None = remove

    @property
    def active(self) -> bool:
        return self._remove is not None

    def remove(self) -> None:
        """Detach the callback. Safe to call more than once."""
        remove, self._remove = self._remove, None
        if remove is not None:
            remove()


def remove_listeners(listeners: Iterable[Listener]) -> None:
    """Detach every listener; a list argument is emptied afterwards."""
    for listener in list(listeners):
        listener.remove()
    if isinstance(listeners, list):
        listeners.clear()


class ListenerSet:
    """Ordered set of callbacks for one event.

    Callbacks run in registration order against a snapshot, so a callback
    may remove itself or others while the event is being emitted.

    Args:
        on_empty: Called after the last callback has been removed
    """

    def __init__(self, on_empty: Callable[[], None] | None = None) -> None:
        self._callbacks: list[Callable[..., Any]] = []
        self._on_empty = on_empty

    def __len__(self) -> int:
        return len(self._callbacks)

    def add(self, callback: Callable[..., Any]) -> Listener:
        entry = _Entry(callback)
        self._callbacks.append(entry)

        def remove() -> None:
            try:
                self._callbacks.remove(entry)
            except ValueError:
                return
            if not self._callbacks and self._on_empty:
                self._on_empty()

        return Listener(remove)

    def emit(
        self,
        *args: Any,
        on_error: Callable[[Exception], None] | None = None,
    ) -> None:
        """Call every callback with ``args``.

        Without ``on_error`` the first exception propagates; with it, each
        failure is reported and the remaining callbacks still run.
        """
        for entry in list(self._callbacks):
            # Removed by an earlier callback of this same emit
            if entry not in self._callbacks:
                continue
            if on_error is None:
                entry(*args)
                continue
            try:
                entry(*args)
            except Exception as e:
                on_error(e)


class _Entry:
    """Identity wrapper so the same callable can be registered twice."""

    __slots__ = ("callback",)

    def __init__(self, callback: Callable[..., Any]) -> None:
        self.callback = callback

    def __call__(self, *args: Any) -> Any:
        return self.callback(*args)
