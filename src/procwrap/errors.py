"""procwrap 异常类。

错误分类：
- LaunchError: 可执行文件不存在或无法启动（任何流打开之前）
- PipeError: 管道适配器失败（I/O 错误、回调抛出异常）
- CommandExecutionError: 退出码违反校验策略
- CommandCancelledError: 运行被调用方取消
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .command import Command

__all__ = [
    "ProcwrapError",
    "LaunchError",
    "PipeError",
    "CommandExecutionError",
    "CommandCancelledError",
]


class ProcwrapError(Exception):
    """procwrap 基础异常。"""
    pass


class LaunchError(ProcwrapError):
    """进程启动失败。

    Attributes:
        target: 目标可执行文件
    """

    def __init__(self, target: str, message: str) -> None:
        self.target = target
        super().__init__(f"Failed to start '{target}': {message}")


class PipeError(ProcwrapError):
    """管道适配器失败，运行已被中止。

    原始异常通过 __cause__ 保留。

    Attributes:
        stream: 出错的流 ("stdin" / "stdout" / "stderr")
    """

    def __init__(self, stream: str, message: str) -> None:
        self.stream = stream
        super().__init__(f"Pipe error on {stream}: {message}")


class CommandExecutionError(ProcwrapError):
    """退出码校验失败。进程本身正常结束。

    Attributes:
        command: 执行的命令
        exit_code: 进程退出码
        standard_error: 缓冲执行时捕获的 stderr 文本，否则为空字符串
    """

    def __init__(
        self,
        command: Command,
        exit_code: int,
        standard_error: str = "",
    ) -> None:
        self.command = command
        self.exit_code = exit_code
        self.standard_error = standard_error

        message = (
            f"Command execution failed because the underlying process "
            f"({command.target_file}) returned a non-zero exit code ({exit_code})."
        )
        if standard_error.strip():
            lines = standard_error.strip().split("\n")
            # 取最后 5 行
            message += "\n\nStandard error:\n" + "\n".join(lines[-5:])
        super().__init__(message)


class CommandCancelledError(ProcwrapError):
    """运行被取消，没有结果。

    Attributes:
        command: 被取消的命令
        spawned: 取消时子进程是否已经启动
    """

    def __init__(self, command: Command, spawned: bool) -> None:
        self.command = command
        self.spawned = spawned
        state = "after" if spawned else "before"
        super().__init__(
            f"Command '{command.target_file}' was cancelled {state} the process started"
        )
