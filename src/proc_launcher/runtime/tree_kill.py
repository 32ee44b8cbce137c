"""Platform-specific process tree termination.

POSIX: the child leads its own process group (``start_new_session=True``),
so one signal to the group reaches every descendant.
Windows: there are no process groups to signal; ``taskkill /T /F`` walks the
tree instead.

This is the only place that branches on the platform to end a process tree.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys

__all__ = ["IS_WINDOWS", "kill_process_tree", "terminate_process_tree"]

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"


def kill_process_tree(pid: int, timeout: float = 5.0) -> None:
    """Forcefully end ``pid`` and all of its descendants.

    Synchronous, so it can run from an ``atexit`` hook.

    Args:
        pid: Process id of the group leader
        timeout: Seconds allowed for the ``taskkill`` command (Windows only)

    Raises:
        ProcessLookupError: The group is already gone
        OSError: The signal could not be delivered
        subprocess.SubprocessError: ``taskkill`` failed or timed out
    """
    if IS_WINDOWS:
        subprocess.run(
            ["taskkill", "/pid", str(pid), "/T", "/F"],
            check=True,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=timeout,
        )
        logger.debug(f"taskkill completed for pid={pid}")
    else:
        os.killpg(pid, signal.SIGKILL)
        logger.debug(f"Sent SIGKILL to process group pgid={pid}")


def terminate_process_tree(pid: int) -> None:
    """Ask ``pid`` and its descendants to exit.

    POSIX sends SIGTERM to the process group. Windows sends CTRL_BREAK_EVENT,
    which reaches the group created with ``CREATE_NEW_PROCESS_GROUP``.

    Raises:
        ProcessLookupError: The process is already gone
        OSError: The signal could not be delivered
    """
    if IS_WINDOWS:
        os.kill(pid, signal.CTRL_BREAK_EVENT)
        logger.debug(f"Sent CTRL_BREAK_EVENT to pid={pid}")
    else:
        os.killpg(pid, signal.SIGTERM)
        logger.debug(f"Sent SIGTERM to process group pgid={pid}")
