"""命令描述符。

Command 是不可变的：每个 with_* 方法返回一个新的副本，
未修改的字段按引用共享，原描述符可以继续独立使用。
构造和配置过程中不做任何 I/O。

用法:
    from procwrap import wrap, PipeSource, PipeTarget, CommandResultValidation

    cmd = (
        wrap("git")
        .with_arguments(["commit", "-m", "my message"], escape=True)
        .with_working_directory("/path/to/repo")
        .with_validation(CommandResultValidation.NONE)
    )
    result = await cmd.execute_buffered()

管道运算符:
    result = await (wrap("echo").with_argument("hello") | wrap("cat")).execute()
    result = await ("some input" | wrap("cat") | PipeTarget.to_file("out.txt")).execute()
"""

from __future__ import annotations

import os
import shlex
import subprocess
import sys
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, NamedTuple

from .pipes import PipeSource, PipeTarget
from .types import CommandResultValidation

if TYPE_CHECKING:
    import anyio

    from .types import BufferedCommandResult, CommandResult

__all__ = ["Argument", "Command", "wrap"]

IS_WINDOWS = sys.platform == "win32"

_EMPTY_ENV: Mapping[str, str | None] = MappingProxyType({})


class Argument(NamedTuple):
    """一个参数。

    Attributes:
        value: 参数文本
        escape: 是否按平台规则转义（否则原样拼接）
    """

    value: str
    escape: bool = False

    def render(self) -> str:
        if not self.escape:
            return self.value
        if IS_WINDOWS:
            return subprocess.list2cmdline([self.value])
        return shlex.quote(self.value)


@dataclass(frozen=True)
class Command:
    """一次进程调用的完整描述。

    Attributes:
        target_file: 可执行文件路径或名称
        arguments: 参数序列
        working_directory: 工作目录（None = 继承当前目录）
        environment_variables: 环境变量覆盖，值为 None 表示删除该变量
        standard_input_pipe: stdin 来源
        standard_output_pipe: stdout 去向
        standard_error_pipe: stderr 去向
        validation: 退出码校验策略
    """

    target_file: str
    arguments: tuple[Argument, ...] = ()
    working_directory: str | None = None
    environment_variables: Mapping[str, str | None] = field(default_factory=lambda: _EMPTY_ENV)
    standard_input_pipe: PipeSource = field(default_factory=PipeSource.null)
    standard_output_pipe: PipeTarget = field(default_factory=PipeTarget.null)
    standard_error_pipe: PipeTarget = field(default_factory=PipeTarget.null)
    validation: CommandResultValidation = CommandResultValidation.ZERO_EXIT_CODE

    # =========================================================================
    # 配置
    # =========================================================================

    def with_target_file(self, target_file: str | os.PathLike[str]) -> Command:
        """设置目标可执行文件。"""
        return replace(self, target_file=os.fspath(target_file))

    def with_arguments(
        self,
        arguments: str | Iterable[str],
        escape: bool = False,
    ) -> Command:
        """设置参数（替换已有参数）。

        Args:
            arguments: 参数序列，或一个已经格式化好的参数字符串
            escape: 是否按平台规则转义每个参数

        Returns:
            新的 Command
        """
        if isinstance(arguments, str):
            tokens = (Argument(arguments, escape),)
        else:
            tokens = tuple(Argument(str(arg), escape) for arg in arguments)
        return replace(self, arguments=tokens)

    def with_argument(self, argument: str) -> Command:
        """设置单个参数（不转义）。"""
        return self.with_arguments([argument], escape=False)

    def with_escaped_arguments(self, arguments: Iterable[str]) -> Command:
        """设置参数，每个参数都会被转义。"""
        return self.with_arguments(list(arguments), escape=True)

    def with_working_directory(
        self,
        working_directory: str | os.PathLike[str] | None,
    ) -> Command:
        """设置工作目录。"""
        path = os.fspath(working_directory) if working_directory is not None else None
        return replace(self, working_directory=path)

    def with_environment_variables(
        self,
        environment_variables: Mapping[str, str | None],
    ) -> Command:
        """设置环境变量覆盖（替换已有覆盖）。"""
        return replace(
            self,
            environment_variables=MappingProxyType(dict(environment_variables)),
        )

    def with_standard_input_pipe(self, source: PipeSource) -> Command:
        """设置 stdin 来源。"""
        return replace(self, standard_input_pipe=source)

    def with_standard_output_pipe(self, target: PipeTarget) -> Command:
        """设置 stdout 去向。"""
        return replace(self, standard_output_pipe=target)

    def with_standard_error_pipe(self, target: PipeTarget) -> Command:
        """设置 stderr 去向。"""
        return replace(self, standard_error_pipe=target)

    def with_validation(self, validation: CommandResultValidation) -> Command:
        """设置退出码校验策略。"""
        return replace(self, validation=CommandResultValidation(validation))

    # =========================================================================
    # 参数与环境
    # =========================================================================

    @property
    def argument_string(self) -> str:
        """所有参数渲染后以单个空格连接的字符串。"""
        return " ".join(arg.render() for arg in self.arguments)

    def build_argv(self) -> list[str]:
        """按平台规则把参数字符串拆分为 argv（不含可执行文件）。"""
        if IS_WINDOWS:
            # 转义的参数原样保留，由 list2cmdline 重新加引号
            argv: list[str] = []
            for arg in self.arguments:
                argv.extend([arg.value] if arg.escape else arg.value.split())
            return argv
        return shlex.split(self.argument_string)

    def build_environment(
        self,
        base: Mapping[str, str] | None = None,
    ) -> dict[str, str] | None:
        """合并环境变量覆盖。

        Returns:
            合并后的环境；没有覆盖时返回 None（继承父进程环境）
        """
        if not self.environment_variables:
            return None
        env = dict(os.environ if base is None else base)
        for key, value in self.environment_variables.items():
            if value is None:
                env.pop(key, None)
            else:
                env[key] = value
        return env

    # =========================================================================
    # 执行
    # =========================================================================

    async def execute(
        self,
        *,
        cancel_scope: anyio.CancelScope | None = None,
    ) -> CommandResult:
        """执行命令，见 procwrap.execution.execute。"""
        from .execution import execute

        return await execute(self, cancel_scope=cancel_scope)

    async def execute_buffered(
        self,
        encoding: str | None = None,
        *,
        cancel_scope: anyio.CancelScope | None = None,
    ) -> BufferedCommandResult:
        """缓冲执行命令，见 procwrap.execution.execute_buffered。"""
        from .execution import execute_buffered

        return await execute_buffered(self, encoding, cancel_scope=cancel_scope)

    # =========================================================================
    # 管道运算符
    # =========================================================================

    def __or__(self, other: Any) -> Command:
        """command | target / command | (stdout, stderr) / command | command"""
        if isinstance(other, PipeTarget):
            return self.with_standard_output_pipe(other)
        if isinstance(other, Command):
            return other.with_standard_input_pipe(PipeSource.from_command(self))
        if isinstance(other, tuple) and len(other) == 2 and all(
            isinstance(t, PipeTarget) for t in other
        ):
            stdout_target, stderr_target = other
            return self.with_standard_output_pipe(stdout_target).with_standard_error_pipe(
                stderr_target
            )
        return NotImplemented

    def __ror__(self, other: Any) -> Command:
        """bytes | command / str | command"""
        if isinstance(other, (bytes, bytearray, memoryview)):
            return self.with_standard_input_pipe(PipeSource.from_bytes(other))
        if isinstance(other, str):
            return self.with_standard_input_pipe(PipeSource.from_string(other))
        return NotImplemented

    def __str__(self) -> str:
        arguments = self.argument_string
        return f"{self.target_file} {arguments}" if arguments else self.target_file


def wrap(target_file: str | os.PathLike[str]) -> Command:
    """为指定的可执行文件、批处理文件或脚本创建命令。"""
    return Command(target_file=os.fspath(target_file))
