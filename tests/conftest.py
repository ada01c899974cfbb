"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

# 测试用的假 CLI
FAKE_CLI_PATH = PROJECT_ROOT / "tests" / "fixtures" / "fake_cli.py"

from procwrap import Command, ProcessRunner, wrap  # noqa: E402
from procwrap.config import reload_config  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_config():
    """每个测试使用按当前环境重新加载的配置。"""
    reload_config()
    yield
    reload_config()


@pytest.fixture
def fake_cli() -> Command:
    """以当前解释器运行 fake_cli.py 的命令（参数需追加）。"""
    return wrap(sys.executable)


@pytest.fixture
def fake_cli_args():
    """构造 fake_cli 的完整参数列表。"""

    def build(*args: str) -> list[str]:
        return [str(FAKE_CLI_PATH), *args]

    return build


@pytest.fixture
def runner() -> ProcessRunner:
    """Create ProcessRunner instance with short timeouts for testing."""
    return ProcessRunner(term_timeout=0.5, kill_timeout=0.3)


@pytest.fixture
def temp_workspace(tmp_path: Path) -> Path:
    """Create temporary workspace directory."""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return workspace
