"""procwrap - 子进程执行与流管道引擎。

以不可变的 Command 描述一次进程调用（目标、参数、工作目录、环境、
stdin 来源、stdout/stderr 去向、退出码校验策略），然后异步执行。

Example:
    from procwrap import wrap

    result = await wrap("git").with_arguments(["status"], escape=True).execute_buffered()
    print(result.standard_output)
"""

from __future__ import annotations

from .command import Argument, Command, wrap
from .config import Config, get_config, load_config, reload_config
from .errors import (
    CommandCancelledError,
    CommandExecutionError,
    LaunchError,
    PipeError,
    ProcwrapError,
)
from .execution import (
    execute,
    execute_buffered,
    execute_buffered_sync,
    execute_sync,
)
from .logging_setup import configure_logging
from .orchestrator import RunInfo, RunRegistry
from .pipes import PipeSource, PipeTarget
from .runtime import ProcessRunner
from .types import BufferedCommandResult, CommandResult, CommandResultValidation

__version__ = "0.1.0"

__all__ = [
    # 命令
    "wrap",
    "Command",
    "Argument",
    # 管道
    "PipeSource",
    "PipeTarget",
    # 结果与校验
    "CommandResultValidation",
    "CommandResult",
    "BufferedCommandResult",
    # 执行
    "execute",
    "execute_buffered",
    "execute_sync",
    "execute_buffered_sync",
    "ProcessRunner",
    "RunRegistry",
    "RunInfo",
    # 异常
    "ProcwrapError",
    "LaunchError",
    "PipeError",
    "CommandExecutionError",
    "CommandCancelledError",
    # 配置与日志
    "Config",
    "load_config",
    "get_config",
    "reload_config",
    "configure_logging",
    "__version__",
]
