"""Process-wide registry of host exit and signal hooks.

Each launched process registers its own hooks here and removes them when it
is done. Hooks for one event run in registration order. Handlers are
installed lazily on the first hook for an event and removed again with the
last one, so an idle registry leaves the host's signal disposition untouched.

POSIX uses ``loop.add_signal_handler``; Windows falls back to
``signal.signal`` and hops back onto the loop with ``call_soon_threadsafe``.
"""

from __future__ import annotations

import asyncio
import atexit
import logging
import signal
from collections.abc import Callable
from typing import Any

from .listeners import Listener, ListenerSet

__all__ = ["HostEvents", "get_host_events"]

logger = logging.getLogger(__name__)


class HostEvents:
    """Ordered hooks for host termination and host signals.

    Example:
        ```python
        host = get_host_events()
        guard = host.add_exit_listener(kill_child)
        on_term = host.add_signal_listener(signal.SIGTERM, request_close)
        ...
        guard.remove()
        on_term.remove()
        ```

    Args:
        install_handlers: When False, nothing is installed with the OS or
            ``atexit``; events only fire through ``dispatch_exit`` and
            ``dispatch_signal``.
    """

    def __init__(self, install_handlers: bool = True) -> None:
        self.install_handlers = install_handlers
        self._exit_hooks = ListenerSet()
        self._signal_hooks: dict[signal.Signals, ListenerSet] = {}
        self._installed: dict[signal.Signals, asyncio.AbstractEventLoop | None] = {}
        self._original_handlers: dict[signal.Signals, Any] = {}
        self._atexit_registered = False

    def listener_count(self, event: signal.Signals | str) -> int:
        """Number of hooks for ``"exit"`` or a signal."""
        if event == "exit":
            return len(self._exit_hooks)
        hooks = self._signal_hooks.get(signal.Signals(event))
        return len(hooks) if hooks else 0

    def add_exit_listener(self, callback: Callable[[], None]) -> Listener:
        """Run ``callback`` synchronously when the interpreter exits."""
        if self.install_handlers and not self._atexit_registered:
            atexit.register(self.dispatch_exit)
            self._atexit_registered = True
        return self._exit_hooks.add(callback)

    def add_signal_listener(
        self,
        signum: signal.Signals,
        callback: Callable[[], None],
    ) -> Listener:
        """Run ``callback`` on the event loop when the host receives ``signum``."""
        signum = signal.Signals(signum)
        hooks = self._signal_hooks.get(signum)
        if hooks is None:
            hooks = ListenerSet(on_empty=lambda: self._uninstall(signum))
            self._signal_hooks[signum] = hooks
        listener = hooks.add(callback)
        if self.install_handlers and not self._is_installed(signum):
            self._install(signum)
        return listener

    def dispatch_exit(self) -> None:
        """Run every exit hook; one failing hook does not stop the rest."""
        self._dispatch(self._exit_hooks, "exit")

    def dispatch_signal(self, signum: signal.Signals) -> None:
        """Run every hook registered for ``signum``."""
        signum = signal.Signals(signum)
        hooks = self._signal_hooks.get(signum)
        if hooks is not None:
            self._dispatch(hooks, signum.name)

    def _dispatch(self, hooks: ListenerSet, name: str) -> None:
        logger.debug(f"Dispatching host event {name} to {len(hooks)} hook(s)")
        hooks.emit(on_error=lambda e: logger.warning(f"Error in {name} hook: {e}"))

    def _is_installed(self, signum: signal.Signals) -> bool:
        if signum not in self._installed:
            return False
        loop = self._installed[signum]
        # A handler bound to a finished loop is gone with that loop
        return loop is None or not loop.is_closed()

    def _install(self, signum: signal.Signals) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running event loop, {signum.name} is not forwarded")
            return

        try:
            loop.add_signal_handler(signum, self.dispatch_signal, signum)
            self._installed[signum] = loop
        except NotImplementedError:
            # Windows: no loop signal handlers
            try:
                self._original_handlers[signum] = signal.signal(
                    signum,
                    lambda sig, frame: loop.call_soon_threadsafe(
                        self.dispatch_signal, signum
                    ),
                )
                self._installed[signum] = None
            except (OSError, ValueError) as e:
                logger.warning(f"Cannot install {signum.name} handler: {e}")
                return
        except (RuntimeError, ValueError) as e:
            # Not the main thread, or a signal the platform refuses
            logger.warning(f"Cannot install {signum.name} handler: {e}")
            return

        logger.debug(f"{signum.name} handler installed")

    def _uninstall(self, signum: signal.Signals) -> None:
        if signum not in self._installed:
            return
        loop = self._installed.pop(signum)
        try:
            if loop is not None:
                if not loop.is_closed():
                    loop.remove_signal_handler(signum)
            elif signum in self._original_handlers:
                signal.signal(signum, self._original_handlers.pop(signum))
        except Exception as e:
            logger.debug(f"Error removing {signum.name} handler: {e}")
            return

        logger.debug(f"{signum.name} handler removed")


# Process-wide instance (created lazily)
_host_events: HostEvents | None = None


def get_host_events() -> HostEvents:
    """Return the process-wide registry."""
    global _host_events
    if _host_events is None:
        _host_events = HostEvents()
    return _host_events
