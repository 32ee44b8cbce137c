"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import sys
from collections.abc import Callable
from pathlib import Path

import pytest

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from proc_launcher.config import Config  # noqa: E402
from proc_launcher.runtime.host import HostEvents  # noqa: E402
from proc_launcher.runtime.relay import LogChannel  # noqa: E402
from proc_launcher.runtime.supervisor import ProcessSupervisor  # noqa: E402

FAKE_SERVER = Path(__file__).parent / "fixtures" / "fake_server.py"


class RecordingSink:
    """记录所有 (channel, line) 的日志 sink。"""

    def __init__(self) -> None:
        self.records: list[tuple[LogChannel, str]] = []

    def __call__(self, channel: LogChannel, line: str) -> None:
        self.records.append((channel, line))

    def lines(self, channel_name: str) -> list[str]:
        return [line for channel, line in self.records if channel.name == channel_name]


@pytest.fixture
def fake_server_argv() -> Callable[..., list[str]]:
    """返回启动 fake_server.py 的参数列表构造函数。"""

    def build(*args: str) -> list[str]:
        return [str(FAKE_SERVER), *args]

    return build


@pytest.fixture
def python_executable() -> str:
    """当前解释器路径。"""
    return sys.executable


@pytest.fixture
def host_events() -> HostEvents:
    """不安装真实信号处理器的 HostEvents。"""
    return HostEvents(install_handlers=False)


@pytest.fixture
def exit_calls() -> list[int]:
    """记录 exit_host 调用。"""
    return []


@pytest.fixture
def supervisor(host_events: HostEvents, exit_calls: list[int]) -> ProcessSupervisor:
    """使用短超时配置的 ProcessSupervisor。"""
    config = Config(drain_timeout=1.0, tree_kill_timeout=5.0)
    return ProcessSupervisor(
        host_events=host_events,
        config=config,
        exit_host=exit_calls.append,
    )


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def temp_dirs(tmp_path: Path) -> list[Path]:
    """两个带内容的临时目录。"""
    dirs = []
    for name in ("profile", "downloads"):
        directory = tmp_path / name
        directory.mkdir()
        (directory / "data.txt").write_text("data")
        dirs.append(directory)
    return dirs
