"""校验策略与执行结果类型定义。

执行结果一经返回即不可变（frozen 模型）。
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, ConfigDict

__all__ = [
    "CommandResultValidation",
    "CommandResult",
    "BufferedCommandResult",
]


class CommandResultValidation(str, Enum):
    """命令执行结果的校验策略。

    - ZERO_EXIT_CODE: 非零退出码视为失败（默认）
    - NONE: 不校验，由调用方自行检查退出码
    """

    ZERO_EXIT_CODE = "zero-exit-code"
    NONE = "none"


class CommandResult(BaseModel):
    """一次运行的结果。

    Attributes:
        exit_code: 进程退出码（POSIX 上被信号终止时为负的信号编号）
        start_time: 进程启动时间（UTC）
        exit_time: 进程退出时间（UTC）
    """

    model_config = ConfigDict(frozen=True)

    exit_code: int
    start_time: datetime
    exit_time: datetime

    @property
    def is_success(self) -> bool:
        """退出码是否为零。"""
        return self.exit_code == 0

    @property
    def run_time(self) -> timedelta:
        """进程运行时长。"""
        return self.exit_time - self.start_time


class BufferedCommandResult(CommandResult):
    """缓冲执行的结果，附带解码后的 stdout/stderr 文本。

    Attributes:
        standard_output: stdout 文本
        standard_error: stderr 文本
    """

    standard_output: str = ""
    standard_error: str = ""
