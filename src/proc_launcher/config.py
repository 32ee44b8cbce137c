"""PL 环境变量配置管理。

环境变量:
    PL_LOG_DEBUG: 日志调试模式
        - true/1/yes = 开启 (日志输出到临时文件)
        - false/0/no = 关闭 (默认，日志输出到 stderr)

    PL_DRAIN_TIMEOUT: 进程退出后等待 stdout/stderr 读完的时间（秒）
        - 默认 1.0 秒，范围 0-30

    PL_LINE_LIMIT: 单行输出的最大字节数
        - 默认 1 MiB，范围 4 KiB - 64 MiB
        - 超长的行会被丢弃并记录警告

    PL_TREE_KILL_TIMEOUT: Windows 上 taskkill 命令的超时时间（秒）
        - 默认 5.0 秒，范围 1-60

    PL_GRACE_PERIOD: 命令行入口优雅关闭的等待时间（秒）
        - 默认 5.0 秒，范围 0.1-120
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

__all__ = ["Config", "load_config", "get_config", "reload_config"]

DEFAULT_DRAIN_TIMEOUT = 1.0
DEFAULT_LINE_LIMIT = 1024 * 1024
DEFAULT_TREE_KILL_TIMEOUT = 5.0
DEFAULT_GRACE_PERIOD = 5.0


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值环境变量。"""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_float(
    value: str | None,
    default: float,
    lower: float,
    upper: float,
) -> float:
    """解析浮点数环境变量，并限制在 [lower, upper] 范围内。

    Args:
        value: 环境变量值
        default: 未设置或无效时的默认值
        lower: 下限
        upper: 上限

    Returns:
        解析后的值
    """
    if not value:
        return default
    try:
        return max(lower, min(float(value), upper))
    except ValueError:
        return default


def _parse_int(value: str | None, default: int, lower: int, upper: int) -> int:
    """解析整数环境变量，并限制在 [lower, upper] 范围内。"""
    if not value:
        return default
    try:
        return max(lower, min(int(value), upper))
    except ValueError:
        return default


@dataclass
class Config:
    """PL 配置。

    Attributes:
        log_debug: 日志调试模式（输出到临时文件）
        log_file: 日志文件路径（当 log_debug=True 时自动设置）
        drain_timeout: 进程退出后等待输出流结束的时间（秒）
        line_limit: 单行输出的最大字节数
        tree_kill_timeout: taskkill 命令超时时间（秒）
        grace_period: 命令行入口优雅关闭的等待时间（秒）
    """

    log_debug: bool = False
    log_file: str | None = None
    drain_timeout: float = DEFAULT_DRAIN_TIMEOUT
    line_limit: int = DEFAULT_LINE_LIMIT
    tree_kill_timeout: float = DEFAULT_TREE_KILL_TIMEOUT
    grace_period: float = DEFAULT_GRACE_PERIOD

    def __repr__(self) -> str:
        return (
            f"Config(log_debug={self.log_debug}, "
            f"log_file={self.log_file}, "
            f"drain_timeout={self.drain_timeout}, "
            f"line_limit={self.line_limit}, "
            f"tree_kill_timeout={self.tree_kill_timeout}, "
            f"grace_period={self.grace_period})"
        )


def _generate_log_file_path() -> str:
    """生成日志文件路径。

    Returns:
        临时目录下的日志文件绝对路径
    """
    log_dir = Path(tempfile.gettempdir()) / "proc-launcher"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"pl_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """从环境变量加载配置。"""
    log_debug = _parse_bool(os.environ.get("PL_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        log_debug=log_debug,
        log_file=log_file,
        drain_timeout=_parse_float(
            os.environ.get("PL_DRAIN_TIMEOUT"), DEFAULT_DRAIN_TIMEOUT, 0.0, 30.0
        ),
        line_limit=_parse_int(
            os.environ.get("PL_LINE_LIMIT"), DEFAULT_LINE_LIMIT, 4096, 64 * 1024 * 1024
        ),
        tree_kill_timeout=_parse_float(
            os.environ.get("PL_TREE_KILL_TIMEOUT"), DEFAULT_TREE_KILL_TIMEOUT, 1.0, 60.0
        ),
        grace_period=_parse_float(
            os.environ.get("PL_GRACE_PERIOD"), DEFAULT_GRACE_PERIOD, 0.1, 120.0
        ),
    )


# 全局配置实例（延迟加载）
_config: Config | None = None


def get_config() -> Config:
    """获取全局配置实例。"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """重新加载配置（用于测试）。"""
    global _config
    _config = load_config()
    return _config
