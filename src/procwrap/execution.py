"""命令执行入口与结果校验。

异步函数是基础 API；同步版本只是在边界处阻塞等待，
不能在已经运行的事件循环中调用。

基础用法:
    result = await execute(wrap("make").with_arguments(["all"]))

缓冲用法:
    result = await execute_buffered(wrap("git").with_arguments(["status"]))
    print(result.standard_output)

取消:
    scope = anyio.CancelScope()
    task = asyncio.create_task(execute(cmd, cancel_scope=scope))
    ...
    scope.cancel()  # task 以 CommandCancelledError 结束
"""

from __future__ import annotations

import asyncio
import io
import logging
from collections.abc import Callable
from functools import partial
from typing import TYPE_CHECKING

import anyio

from .errors import CommandExecutionError
from .pipes import PipeTarget
from .runtime import ProcessRunner
from .types import BufferedCommandResult, CommandResult, CommandResultValidation

if TYPE_CHECKING:
    from .command import Command

__all__ = [
    "execute",
    "execute_buffered",
    "execute_sync",
    "execute_buffered_sync",
]

logger = logging.getLogger(__name__)


def _validate(command: Command, result: CommandResult, standard_error: str = "") -> None:
    """按校验策略检查退出码。

    Raises:
        CommandExecutionError: ZERO_EXIT_CODE 策略下退出码非零
    """
    if command.validation is CommandResultValidation.NONE:
        return
    if result.exit_code != 0:
        logger.debug(
            f"Validation failed: {command.target_file} exited with code {result.exit_code}"
        )
        raise CommandExecutionError(command, result.exit_code, standard_error)


async def execute(
    command: Command,
    *,
    cancel_scope: anyio.CancelScope | None = None,
    runner: ProcessRunner | None = None,
    on_started: Callable[[int], None] | None = None,
) -> CommandResult:
    """执行命令并按校验策略检查结果。

    Args:
        command: 命令描述符
        cancel_scope: 运行级取消信号（每次运行一个）
        runner: 自定义 runner（默认按配置新建）
        on_started: 子进程启动后以 pid 调用

    Returns:
        执行结果

    Raises:
        LaunchError: 无法启动进程
        PipeError: 管道失败
        CommandExecutionError: 退出码违反校验策略
        CommandCancelledError: 运行被取消
    """
    runner = runner or ProcessRunner()
    logger.info(f"Executing: {command}")

    result = await runner.run(command, cancel_scope=cancel_scope, on_started=on_started)
    _validate(command, result)
    return result


async def execute_buffered(
    command: Command,
    encoding: str | None = None,
    *,
    cancel_scope: anyio.CancelScope | None = None,
    runner: ProcessRunner | None = None,
    on_started: Callable[[int], None] | None = None,
) -> BufferedCommandResult:
    """缓冲执行：stdout/stderr 解码为文本并随结果返回。

    已配置的 stdout/stderr 目标仍然会收到数据（与内存缓冲合并）。

    Args:
        command: 命令描述符
        encoding: 解码使用的编码（默认使用配置的编码）
        cancel_scope: 运行级取消信号
        runner: 自定义 runner
        on_started: 子进程启动后以 pid 调用

    Returns:
        附带 stdout/stderr 文本的执行结果

    Raises:
        CommandExecutionError: 退出码违反校验策略，携带捕获的 stderr
    """
    stdout_buffer = io.StringIO()
    stderr_buffer = io.StringIO()

    buffered = (
        command.with_standard_output_pipe(
            PipeTarget.merge(
                command.standard_output_pipe,
                PipeTarget.to_string_io(stdout_buffer, encoding),
            )
        )
        .with_standard_error_pipe(
            PipeTarget.merge(
                command.standard_error_pipe,
                PipeTarget.to_string_io(stderr_buffer, encoding),
            )
        )
        # 校验推迟到拿到 stderr 之后
        .with_validation(CommandResultValidation.NONE)
    )

    result = await execute(
        buffered,
        cancel_scope=cancel_scope,
        runner=runner,
        on_started=on_started,
    )

    standard_output = stdout_buffer.getvalue()
    standard_error = stderr_buffer.getvalue()
    _validate(command, result, standard_error)

    return BufferedCommandResult(
        exit_code=result.exit_code,
        start_time=result.start_time,
        exit_time=result.exit_time,
        standard_output=standard_output,
        standard_error=standard_error,
    )


def _ensure_no_running_loop(name: str) -> None:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return
    raise RuntimeError(
        f"{name}() cannot be called from a running event loop; "
        f"await the async version instead"
    )


def execute_sync(
    command: Command,
    *,
    runner: ProcessRunner | None = None,
) -> CommandResult:
    """阻塞执行，见 execute()。"""
    _ensure_no_running_loop("execute_sync")
    return anyio.run(partial(execute, command, runner=runner), backend="asyncio")


def execute_buffered_sync(
    command: Command,
    encoding: str | None = None,
    *,
    runner: ProcessRunner | None = None,
) -> BufferedCommandResult:
    """阻塞缓冲执行，见 execute_buffered()。"""
    _ensure_no_running_loop("execute_buffered_sync")
    return anyio.run(
        partial(execute_buffered, command, encoding, runner=runner),
        backend="asyncio",
    )
