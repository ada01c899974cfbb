"""stdout / stderr 管道目标。

每种变体实现同一个适配器接口 PipeTarget.copy_from()，
由 runner 连接到子进程的输出流。工厂方法见 PipeTarget。

借用规则：to_stream 的流不会被引擎关闭。
"""

from __future__ import annotations

import asyncio
import io
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable
from typing import BinaryIO, TextIO

import anyio
import anyio.to_thread

from .streams import PipeReaderBridge, drain, make_decoder, stream_lock

__all__ = ["PipeTarget"]

logger = logging.getLogger(__name__)


class PipeTarget(ABC):
    """子进程输出流的去向。

    Example:
        buffer = io.StringIO()
        cmd = wrap("echo").with_arguments("hi").with_standard_output_pipe(
            PipeTarget.to_string_io(buffer)
        )
    """

    #: 为 True 时 runner 不打开对应的流（使用空设备）
    is_null: bool = False

    @abstractmethod
    async def copy_from(self, reader: asyncio.StreamReader, buffer_size: int) -> None:
        """消费子进程输出直到 EOF。

        Args:
            reader: 子进程 stdout 或 stderr
            buffer_size: 拷贝块大小
        """
        ...

    @staticmethod
    def null() -> PipeTarget:
        """丢弃所有数据。

        对应的流根本不会被打开，省去读取和丢弃的开销。
        """
        return NULL_TARGET

    @staticmethod
    def create(handler: Callable[[BinaryIO], None]) -> PipeTarget:
        """匿名管道目标，handler 在 worker 线程中从可读流读取数据。

        运行被取消或失败时不会等待 handler 返回：run() 可能先于 handler 结束，
        之后 handler 读取到的是 EOF 或异常。
        """
        return _CallbackTarget(handler)

    @staticmethod
    def create_async(
        handler: Callable[[asyncio.StreamReader], Awaitable[None]],
    ) -> PipeTarget:
        """异步管道目标，handler 完成后流才会关闭。

        运行被取消时 handler 会收到取消异常。
        """
        return _AsyncCallbackTarget(handler)

    @staticmethod
    def to_file(path: str | os.PathLike[str]) -> PipeTarget:
        """写入文件（覆盖）。文件在运行开始时打开。"""
        return _FileTarget(path)

    @staticmethod
    def to_stream(stream: BinaryIO, auto_flush: bool = True) -> PipeTarget:
        """写入已打开的二进制流。流不会被关闭。

        Args:
            stream: 目标流
            auto_flush: 每次写入后是否 flush
        """
        return _StreamTarget(stream, auto_flush)

    @staticmethod
    def to_string_io(buffer: TextIO, encoding: str | None = None) -> PipeTarget:
        """解码为文本并追加到 buffer（例如 io.StringIO）。"""
        return _TextTarget(buffer, encoding)

    @staticmethod
    def to_delegate(
        callback: Callable[[str], None],
        encoding: str | None = None,
    ) -> PipeTarget:
        """解码为文本，每一行调用一次 callback（不含换行符）。"""
        return _DelegateTarget(callback, encoding)

    @staticmethod
    def merge(*targets: PipeTarget) -> PipeTarget:
        """把同一个流分发给多个目标。"""
        flat = list(_flatten(targets))
        if not flat:
            return NULL_TARGET
        if len(flat) == 1:
            return flat[0]
        return _MergedTarget(flat)


def _flatten(targets: Iterable[PipeTarget]) -> Iterable[PipeTarget]:
    for target in targets:
        if isinstance(target, _MergedTarget):
            yield from _flatten(target.targets)
        elif not target.is_null:
            yield target


class _NullTarget(PipeTarget):
    is_null = True

    async def copy_from(self, reader: asyncio.StreamReader, buffer_size: int) -> None:
        await drain(reader, buffer_size)

    def __repr__(self) -> str:
        return "PipeTarget.null()"


NULL_TARGET = _NullTarget()


class _CallbackTarget(PipeTarget):
    def __init__(self, handler: Callable[[BinaryIO], None]) -> None:
        self._handler = handler

    async def copy_from(self, reader: asyncio.StreamReader, buffer_size: int) -> None:
        bridge = PipeReaderBridge(reader)
        await anyio.to_thread.run_sync(self._invoke, bridge, abandon_on_cancel=True)
        # handler 可能没有读完
        await drain(reader, buffer_size)

    def _invoke(self, bridge: PipeReaderBridge) -> None:
        try:
            with io.BufferedReader(bridge) as stream:
                self._handler(stream)
        finally:
            bridge.close()


class _AsyncCallbackTarget(PipeTarget):
    def __init__(
        self,
        handler: Callable[[asyncio.StreamReader], Awaitable[None]],
    ) -> None:
        self._handler = handler

    async def copy_from(self, reader: asyncio.StreamReader, buffer_size: int) -> None:
        await self._handler(reader)
        await drain(reader, buffer_size)


class _FileTarget(PipeTarget):
    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = path

    async def copy_from(self, reader: asyncio.StreamReader, buffer_size: int) -> None:
        async with await anyio.open_file(self._path, "wb") as f:
            while True:
                chunk = await reader.read(buffer_size)
                if not chunk:
                    break
                await f.write(chunk)

    def __repr__(self) -> str:
        return f"PipeTarget.to_file({os.fspath(self._path)!r})"


class _StreamTarget(PipeTarget):
    def __init__(self, stream: BinaryIO, auto_flush: bool) -> None:
        self._stream = stream
        self._auto_flush = auto_flush

    async def copy_from(self, reader: asyncio.StreamReader, buffer_size: int) -> None:
        if not self._stream.writable():
            raise io.UnsupportedOperation("target stream is not writable")

        lock = stream_lock(self._stream)

        def write_chunk(chunk: bytes) -> None:
            with lock:
                if chunk:
                    self._stream.write(chunk)
                if self._auto_flush or not chunk:
                    self._stream.flush()

        while True:
            chunk = await reader.read(buffer_size)
            if not chunk:
                break
            await anyio.to_thread.run_sync(write_chunk, chunk)

        if not self._auto_flush:
            await anyio.to_thread.run_sync(write_chunk, b"")


class _TextTarget(PipeTarget):
    def __init__(self, buffer: TextIO, encoding: str | None) -> None:
        self._buffer = buffer
        self._encoding = encoding

    async def copy_from(self, reader: asyncio.StreamReader, buffer_size: int) -> None:
        decoder = make_decoder(self._encoding)
        lock = stream_lock(self._buffer)
        while True:
            chunk = await reader.read(buffer_size)
            text = decoder.decode(chunk, final=not chunk)
            if text:
                with lock:
                    self._buffer.write(text)
            if not chunk:
                break


class _DelegateTarget(PipeTarget):
    def __init__(self, callback: Callable[[str], None], encoding: str | None) -> None:
        self._callback = callback
        self._encoding = encoding

    async def copy_from(self, reader: asyncio.StreamReader, buffer_size: int) -> None:
        decoder = make_decoder(self._encoding)
        pending = ""
        while True:
            chunk = await reader.read(buffer_size)
            text = decoder.decode(chunk, final=not chunk)
            if "\n" in text:
                # 每块只拆分一次，最后一段留到下一块
                *lines, tail = text.split("\n")
                lines[0] = pending + lines[0]
                pending = tail
                for line in lines:
                    self._callback(line.rstrip("\r"))
            else:
                pending += text
            if not chunk:
                break

        if pending:
            self._callback(pending.rstrip("\r"))


class _MergedTarget(PipeTarget):
    """把每个数据块喂给各个子目标自己的 StreamReader。"""

    def __init__(self, targets: list[PipeTarget]) -> None:
        self.targets = targets

    async def copy_from(self, reader: asyncio.StreamReader, buffer_size: int) -> None:
        readers = [asyncio.StreamReader() for _ in self.targets]

        async with anyio.create_task_group() as tg:
            for target, sub_reader in zip(self.targets, readers):
                tg.start_soon(target.copy_from, sub_reader, buffer_size)

            try:
                while True:
                    chunk = await reader.read(buffer_size)
                    if not chunk:
                        break
                    for sub_reader in readers:
                        sub_reader.feed_data(chunk)
            finally:
                for sub_reader in readers:
                    sub_reader.feed_eof()

    def __repr__(self) -> str:
        return f"PipeTarget.merge({', '.join(map(repr, self.targets))})"
