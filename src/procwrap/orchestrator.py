"""运行编排与管理模块。

提供运行级别的隔离和管理，包括：
- RunRegistry: 活动运行的登记和管理
- 单个/批量取消
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, TypeVar

import anyio

from .command import Command
from .execution import execute, execute_buffered
from .runtime import ProcessRunner
from .types import BufferedCommandResult, CommandResult

__all__ = ["RunRegistry", "RunInfo"]

logger = logging.getLogger(__name__)

ResultT = TypeVar("ResultT", bound=CommandResult)


@dataclass
class RunInfo:
    """活动运行的信息。

    Attributes:
        run_id: 唯一运行标识符
        command: 执行的命令
        cancel_scope: 该运行的取消信号
        created_at: 登记时间
        pid: 子进程 pid（启动前为 None）
    """

    run_id: str
    command: Command
    cancel_scope: anyio.CancelScope
    created_at: datetime = field(default_factory=datetime.now)
    pid: Optional[int] = None

    def __repr__(self) -> str:
        elapsed = (datetime.now() - self.created_at).total_seconds()
        status = "cancelling" if self.cancel_scope.cancel_called else "running"
        return (
            f"RunInfo(id={self.run_id[:8]}..., "
            f"target={self.command.target_file}, "
            f"pid={self.pid}, "
            f"status={status}, "
            f"elapsed={elapsed:.1f}s)"
        )


class RunRegistry:
    """活动运行的注册表。

    通过注册表执行的命令在运行期间被登记，可以单独或批量取消。
    被取消的运行以 CommandCancelledError 结束。

    线程安全：所有操作都是同步的，由调用方保证在同一个事件循环中调用。

    Example:
        ```python
        registry = RunRegistry()

        async with anyio.create_task_group() as tg:
            tg.start_soon(registry.execute, wrap("sleep").with_argument("60"))
            tg.start_soon(registry.execute, wrap("sleep").with_argument("60"))
            await anyio.sleep(1)
            print(f"Active: {registry.active_count}")
            registry.cancel_all()
        ```
    """

    def __init__(self, runner: ProcessRunner | None = None) -> None:
        """初始化运行注册表。

        Args:
            runner: 所有运行共用的 runner（默认按配置新建）
        """
        self._runner = runner or ProcessRunner()
        self._runs: Dict[str, RunInfo] = {}

    @staticmethod
    def generate_run_id() -> str:
        """生成唯一的运行 ID。

        Returns:
            UUID4 格式的字符串
        """
        return str(uuid.uuid4())

    async def execute(
        self,
        command: Command,
        *,
        run_id: str | None = None,
    ) -> CommandResult:
        """登记并执行命令，见 procwrap.execution.execute。"""
        return await self._tracked(command, run_id, execute)

    async def execute_buffered(
        self,
        command: Command,
        encoding: str | None = None,
        *,
        run_id: str | None = None,
    ) -> BufferedCommandResult:
        """登记并缓冲执行命令，见 procwrap.execution.execute_buffered。"""

        async def run(command: Command, **kwargs) -> BufferedCommandResult:
            return await execute_buffered(command, encoding, **kwargs)

        return await self._tracked(command, run_id, run)

    async def _tracked(
        self,
        command: Command,
        run_id: str | None,
        run: Callable[..., Awaitable[ResultT]],
    ) -> ResultT:
        run_id = run_id or self.generate_run_id()
        if run_id in self._runs:
            raise ValueError(f"Run {run_id} already registered")

        info = RunInfo(run_id=run_id, command=command, cancel_scope=anyio.CancelScope())
        self._runs[run_id] = info
        logger.debug(f"Registered run: {info}")

        def on_started(pid: int) -> None:
            info.pid = pid

        try:
            return await run(
                command,
                cancel_scope=info.cancel_scope,
                runner=self._runner,
                on_started=on_started,
            )
        finally:
            self._runs.pop(run_id, None)
            logger.debug(f"Unregistered run: {info}")

    def get(self, run_id: str) -> Optional[RunInfo]:
        """获取运行信息。

        Args:
            run_id: 运行标识符

        Returns:
            运行信息，如果不存在则返回 None
        """
        return self._runs.get(run_id)

    def cancel(self, run_id: str) -> bool:
        """取消指定运行。

        Args:
            run_id: 运行标识符

        Returns:
            是否成功发起取消（运行存在且尚未取消则返回 True）
        """
        info = self._runs.get(run_id)
        if info and not info.cancel_scope.cancel_called:
            info.cancel_scope.cancel()
            logger.info(f"Cancelled run: {info}")
            return True
        return False

    def cancel_all(self) -> int:
        """取消所有活动运行。

        Returns:
            成功发起取消的运行数量
        """
        cancelled = 0
        for run_id in list(self._runs):
            if self.cancel(run_id):
                cancelled += 1

        if cancelled > 0:
            logger.info(f"Cancelled {cancelled} active run(s)")

        return cancelled

    def has_active_runs(self) -> bool:
        """检查是否有活动运行。"""
        return bool(self._runs)

    @property
    def active_count(self) -> int:
        """获取活动运行数量。"""
        return len(self._runs)

    def list_active(self) -> list[RunInfo]:
        """列出所有活动运行（按登记时间排序）。"""
        return sorted(self._runs.values(), key=lambda x: x.created_at)

    def __len__(self) -> int:
        """返回注册表中的运行数量。"""
        return len(self._runs)

    def __contains__(self, run_id: str) -> bool:
        """检查运行是否在注册表中。"""
        return run_id in self._runs
