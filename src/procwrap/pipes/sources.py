"""stdin 管道源。

每种变体实现同一个适配器接口 PipeSource.copy_to()，
由 runner 连接到子进程的 stdin。工厂方法见 PipeSource。

所有权规则：
- from_bytes / from_string 持有数据副本
- from_memory 持有只读视图（不拷贝）
- from_stream / from_command 是借用的，引擎不会关闭流或终止不是自己创建的进程
"""

from __future__ import annotations

import asyncio
import io
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import TYPE_CHECKING, BinaryIO

import anyio
import anyio.to_thread

from .streams import PipeWriterBridge, resolve_encoding, stream_lock

if TYPE_CHECKING:
    from ..command import Command

__all__ = ["PipeSource"]

logger = logging.getLogger(__name__)

# 子进程提前退出时写 stdin 产生的异常
STDIN_CLOSED_ERRORS = (BrokenPipeError, ConnectionResetError)


class PipeSource(ABC):
    """子进程 stdin 的数据来源。

    Example:
        cmd = wrap("cat").with_standard_input_pipe(PipeSource.from_string("hello"))
    """

    #: 为 True 时 runner 不打开 stdin 管道（使用空设备）
    is_null: bool = False

    @abstractmethod
    async def copy_to(self, writer: asyncio.StreamWriter, buffer_size: int) -> None:
        """把数据写入子进程的 stdin。

        管道的关闭由 runner 负责。

        Args:
            writer: 子进程 stdin
            buffer_size: 拷贝块大小
        """
        ...

    @staticmethod
    def null() -> PipeSource:
        """不提供任何数据（等同于空设备）。"""
        return NULL_SOURCE

    @staticmethod
    def create(handler: Callable[[BinaryIO], None]) -> PipeSource:
        """匿名管道源，handler 在 worker 线程中向可写流写入数据。

        运行被取消或失败时不会等待 handler 返回：run() 可能先于 handler 结束，
        之后 handler 对流的写入会抛出异常（OSError / ValueError）。
        """
        return _CallbackSource(handler)

    @staticmethod
    def from_bytes(data: bytes | bytearray | memoryview) -> PipeSource:
        """从内存缓冲读取（拷贝一份）。"""
        return _BufferSource(bytes(data))

    @staticmethod
    def from_memory(data: bytes | bytearray | memoryview) -> PipeSource:
        """从内存缓冲读取，不拷贝。

        调用方在运行结束前不得修改缓冲内容。
        """
        return _BufferSource(memoryview(data).cast("B").toreadonly())

    @staticmethod
    def from_string(text: str, encoding: str | None = None) -> PipeSource:
        """从字符串读取，按 encoding 编码（默认使用配置的编码）。"""
        return _BufferSource(text.encode(resolve_encoding(encoding)))

    @staticmethod
    def from_file(path: str | os.PathLike[str]) -> PipeSource:
        """从文件读取。文件在运行开始时打开。"""
        return _FileSource(path)

    @staticmethod
    def from_stream(stream: BinaryIO) -> PipeSource:
        """从已打开的二进制流读取。流不会被关闭。"""
        return _StreamSource(stream)

    @staticmethod
    def from_command(command: Command) -> PipeSource:
        """从另一个命令的 stdout 读取。

        外层进程启动时嵌套命令随之启动；嵌套命令的失败作为外层的管道错误传播。
        """
        return _CommandSource(command)

    def __or__(self, command: Command) -> Command:
        """source | command"""
        return command.with_standard_input_pipe(self)


class _NullSource(PipeSource):
    is_null = True

    async def copy_to(self, writer: asyncio.StreamWriter, buffer_size: int) -> None:
        return None

    def __repr__(self) -> str:
        return "PipeSource.null()"


NULL_SOURCE = _NullSource()


class _CallbackSource(PipeSource):
    def __init__(self, handler: Callable[[BinaryIO], None]) -> None:
        self._handler = handler

    async def copy_to(self, writer: asyncio.StreamWriter, buffer_size: int) -> None:
        bridge = PipeWriterBridge(writer)
        await anyio.to_thread.run_sync(self._invoke, bridge, abandon_on_cancel=True)

    def _invoke(self, bridge: PipeWriterBridge) -> None:
        try:
            with io.BufferedWriter(bridge, buffer_size=io.DEFAULT_BUFFER_SIZE) as stream:
                self._handler(stream)
        finally:
            bridge.close()


class _BufferSource(PipeSource):
    def __init__(self, data: bytes | memoryview) -> None:
        self._data = data

    async def copy_to(self, writer: asyncio.StreamWriter, buffer_size: int) -> None:
        view = memoryview(self._data)
        # 分块写入，每块之后 drain 一次
        for offset in range(0, len(view), buffer_size):
            writer.write(view[offset:offset + buffer_size])
            await writer.drain()

    def __repr__(self) -> str:
        return f"PipeSource(<{len(self._data)} bytes>)"


class _FileSource(PipeSource):
    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = path

    async def copy_to(self, writer: asyncio.StreamWriter, buffer_size: int) -> None:
        async with await anyio.open_file(self._path, "rb") as f:
            while True:
                chunk = await f.read(buffer_size)
                if not chunk:
                    break
                writer.write(chunk)
                await writer.drain()

    def __repr__(self) -> str:
        return f"PipeSource.from_file({os.fspath(self._path)!r})"


class _StreamSource(PipeSource):
    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream

    async def copy_to(self, writer: asyncio.StreamWriter, buffer_size: int) -> None:
        if not self._stream.readable():
            raise io.UnsupportedOperation("source stream is not readable")

        lock = stream_lock(self._stream)

        def read_chunk() -> bytes:
            with lock:
                return self._stream.read(buffer_size)

        while True:
            chunk = await anyio.to_thread.run_sync(read_chunk)
            if not chunk:
                break
            writer.write(chunk)
            await writer.drain()


class _CommandSource(PipeSource):
    def __init__(self, command: Command) -> None:
        self._command = command

    async def copy_to(self, writer: asyncio.StreamWriter, buffer_size: int) -> None:
        # 延迟导入以避免循环依赖
        from ..errors import CommandCancelledError
        from ..execution import execute
        from .targets import PipeTarget

        scope = anyio.CancelScope()

        async def forward(reader: asyncio.StreamReader) -> None:
            while True:
                chunk = await reader.read(buffer_size)
                if not chunk:
                    return
                try:
                    writer.write(chunk)
                    await writer.drain()
                except STDIN_CLOSED_ERRORS:
                    # 下游已退出：终止上游，不再读取它的输出
                    logger.debug(
                        f"Downstream closed stdin, stopping {self._command.target_file}"
                    )
                    scope.cancel()
                    return

        nested = self._command.with_standard_output_pipe(PipeTarget.create_async(forward))
        try:
            await execute(nested, cancel_scope=scope)
        except CommandCancelledError:
            if not scope.cancel_called:
                raise

    def __repr__(self) -> str:
        return f"PipeSource.from_command({self._command.target_file!r})"
