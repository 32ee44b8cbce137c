"""proc-launcher 命令行入口。

启动一个子进程并转发其输出，可选地等待就绪行（例如服务器打印的监听地址），
然后等待子进程退出。SIGINT/SIGTERM/SIGHUP 会触发优雅关闭；
第二次 Ctrl+C 会强制结束整个进程树。
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from .config import Config, get_config
from .errors import LaunchError, ReadinessTimeoutError, StreamTerminationError
from .runtime import LaunchOptions, LaunchResult, ProcessSupervisor, wait_for_line
from .runtime.tree_kill import terminate_process_tree

__all__ = ["build_parser", "run", "main"]

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """构建命令行参数解析器。"""
    parser = argparse.ArgumentParser(
        prog="proc-launcher",
        description="Launch a process, relay its output and shut it down cleanly.",
    )
    parser.add_argument(
        "--no-pipe",
        dest="pipe",
        action="store_false",
        help="Inherit stdout/stderr instead of relaying them through the logger",
    )
    parser.add_argument("--cwd", default=None, help="Working directory of the process")
    parser.add_argument(
        "--temp-dir",
        dest="temp_dirs",
        action="append",
        default=[],
        help="Directory removed when the process is gone (repeatable)",
    )
    parser.add_argument("--wait-for", default=None, help="Regex of the readiness line")
    parser.add_argument(
        "--wait-stream",
        choices=("stdout", "stderr"),
        default="stdout",
        help="Stream searched for the readiness line",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=0.0,
        help="Seconds to wait for the readiness line (0 = no limit)",
    )
    parser.add_argument(
        "--grace-period",
        type=float,
        default=None,
        help="Seconds the process gets to exit after SIGTERM (default: PL_GRACE_PERIOD)",
    )
    parser.add_argument("command", nargs=argparse.REMAINDER, help="Executable and arguments")
    return parser


def _exit_status(exit_code: int | None, signal_name: str | None) -> int:
    """将退出码/信号转换为 shell 风格的退出状态（信号为 128+N）。"""
    if exit_code is not None:
        return exit_code
    if signal_name is not None:
        try:
            return 128 + signal.Signals[signal_name].value
        except KeyError:
            pass
    return 1


async def run(args: argparse.Namespace, config: Config | None = None) -> int:
    """启动子进程并等待其结束。

    Args:
        args: build_parser() 解析得到的参数
        config: 配置（默认从环境变量读取）

    Returns:
        子进程的退出状态；就绪等待失败时返回 1，启动失败时返回 127
    """
    config = config or get_config()
    command = list(args.command)
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        raise ValueError("No command given")

    grace_period = args.grace_period if args.grace_period is not None else config.grace_period
    loop = asyncio.get_running_loop()
    exited: asyncio.Future[int] = loop.create_future()
    launched: list[LaunchResult] = []

    def on_exit(exit_code: int | None, signal_name: str | None) -> None:
        if not exited.done():
            exited.set_result(_exit_status(exit_code, signal_name))

    async def attempt_graceful_close() -> None:
        # Raising here makes the supervisor escalate to a forceful kill
        terminate_process_tree(launched[0].process.pid)
        await asyncio.wait_for(asyncio.shield(exited), timeout=grace_period)

    supervisor = ProcessSupervisor(config=config)
    try:
        result = await supervisor.launch(
            LaunchOptions(
                executable_path=command[0],
                args=command[1:],
                cwd=args.cwd,
                pipe=args.pipe,
                handle_sigint=True,
                handle_sigterm=True,
                handle_sighup=True,
                temp_directories=args.temp_dirs,
                attempt_graceful_close=attempt_graceful_close,
                on_exit=on_exit,
            )
        )
    except LaunchError as e:
        logger.error(str(e))
        return 127
    launched.append(result)

    if args.wait_for:
        stream = getattr(result.process, args.wait_stream)
        try:
            match = await wait_for_line(
                result.process, stream, args.wait_for, args.timeout
            )
        except (ReadinessTimeoutError, StreamTerminationError) as e:
            logger.error(f"Process did not become ready: {e}")
            await result.graceful_close()
            return 1
        print(match.group(1) if match.re.groups else match.group(0), flush=True)

    status = await asyncio.shield(exited)
    # Exit already observed: returns once temp directories are gone
    await result.kill()
    return status


def configure_logging(config: Config) -> None:
    """配置日志输出。"""
    log_handlers: list[logging.Handler] = []

    if config.log_debug and config.log_file:
        # LOG_DEBUG 模式：输出到临时文件
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        # 默认模式：输出到 stderr
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(stderr_handler)
        log_level = logging.INFO

    # 配置 root logger（第三方库）为 WARNING，减少噪音
    logging.basicConfig(
        level=logging.WARNING,
        handlers=log_handlers,
    )
    # 只对 proc_launcher 命名空间启用详细日志
    logging.getLogger("proc_launcher").setLevel(log_level)


def main(argv: list[str] | None = None) -> None:
    """主入口点。"""
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command or args.command == ["--"]:
        parser.error("missing command to launch")

    config = get_config()
    configure_logging(config)
    logger.debug(f"Starting proc-launcher: {config}")

    sys.exit(asyncio.run(run(args, config)))


if __name__ == "__main__":
    main()
