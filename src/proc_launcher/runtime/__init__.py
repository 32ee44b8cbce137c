"""Runtime module for child process launch and shutdown.

This module provides process launching with process-tree isolation, output
relay, a reentrant shutdown protocol, and readiness waits on output lines.
"""

from __future__ import annotations

from .coordinator import ShutdownCoordinator, ShutdownState
from .host import HostEvents, get_host_events
from .line_awaiter import wait_for_line
from .process import LaunchedProcess
from .relay import LineStream, LogChannel, LoggingSink, LogSink, OutputRelay
from .supervisor import LaunchOptions, LaunchResult, ProcessSupervisor, launch_process

__all__ = [
    "HostEvents",
    "LaunchOptions",
    "LaunchResult",
    "LaunchedProcess",
    "LineStream",
    "LogChannel",
    "LogSink",
    "LoggingSink",
    "OutputRelay",
    "ProcessSupervisor",
    "ShutdownCoordinator",
    "ShutdownState",
    "get_host_events",
    "launch_process",
    "wait_for_line",
]
