"""proc-launcher - 子进程启动与关闭协议。

启动子进程，转发其输出，并保证在调用方返回前子进程及其临时目录已被完全清理。

环境变量:
    PL_LOG_DEBUG: 日志调试模式 (默认 false)
    PL_DRAIN_TIMEOUT: 退出后等待输出读完的时间 (默认 1.0s)
    PL_LINE_LIMIT: 单行输出最大字节数 (默认 1 MiB)
    PL_TREE_KILL_TIMEOUT: taskkill 超时时间 (默认 5.0s)
    PL_GRACE_PERIOD: 命令行入口优雅关闭等待时间 (默认 5.0s)

用法:
    python -m proc_launcher --wait-for "Listening on (\\S+)" -- my-server --port 0
"""

__version__ = "0.1.0"

from .errors import (
    LaunchError,
    ProcessLauncherError,
    ReadinessTimeoutError,
    StreamTerminationError,
)
from .runtime import (
    LaunchedProcess,
    LaunchOptions,
    LaunchResult,
    ProcessSupervisor,
    ShutdownState,
    launch_process,
    wait_for_line,
)

__all__ = [
    "__version__",
    "LaunchError",
    "LaunchOptions",
    "LaunchResult",
    "LaunchedProcess",
    "ProcessLauncherError",
    "ProcessSupervisor",
    "ReadinessTimeoutError",
    "ShutdownState",
    "StreamTerminationError",
    "launch_process",
    "wait_for_line",
]
