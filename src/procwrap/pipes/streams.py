"""管道适配器的流工具。

提供：
- 阻塞式文件对象桥接（worker 线程 <-> asyncio 流）
- 借用流的写入锁（同一个流不会被两个运行并发读写）
- 增量文本解码
"""

from __future__ import annotations

import asyncio
import codecs
import io
import threading
import weakref
from typing import Any

import anyio
import anyio.from_thread

from ..config import get_config

__all__ = [
    "PipeReaderBridge",
    "PipeWriterBridge",
    "stream_lock",
    "resolve_encoding",
    "make_decoder",
    "drain",
]

_locks_guard = threading.Lock()
_stream_locks: "weakref.WeakKeyDictionary[Any, threading.Lock]" = weakref.WeakKeyDictionary()
# 不支持弱引用的对象共用一把锁
_fallback_lock = threading.Lock()


def stream_lock(stream: Any) -> threading.Lock:
    """获取借用流对应的锁。"""
    with _locks_guard:
        try:
            lock = _stream_locks.get(stream)
            if lock is None:
                lock = threading.Lock()
                _stream_locks[stream] = lock
            return lock
        except TypeError:
            return _fallback_lock


def resolve_encoding(encoding: str | None) -> str:
    """None 表示使用配置中的默认编码。"""
    return encoding or get_config().encoding


def make_decoder(encoding: str | None) -> codecs.IncrementalDecoder:
    """创建增量解码器，多字节字符可以跨块拆分。"""
    return codecs.getincrementaldecoder(resolve_encoding(encoding))(errors="replace")


async def drain(reader: asyncio.StreamReader, buffer_size: int) -> None:
    """读取并丢弃剩余数据，避免子进程阻塞在写管道上。"""
    while True:
        chunk = await reader.read(buffer_size)
        if not chunk:
            return


class PipeWriterBridge(io.RawIOBase):
    """worker 线程中使用的可写流，写入转发到子进程的 stdin。

    只能在 anyio.to_thread.run_sync 启动的线程中使用。
    close() 只关闭桥接本身，底层管道由 runner 负责关闭。
    """

    def __init__(self, writer: asyncio.StreamWriter) -> None:
        super().__init__()
        self._writer = writer

    def writable(self) -> bool:
        return True

    def write(self, b: Any) -> int:
        if self.closed:
            raise ValueError("I/O operation on closed pipe")
        data = bytes(b)
        if data:
            anyio.from_thread.run(self._send, data)
        return len(data)

    async def _send(self, data: bytes) -> None:
        self._writer.write(data)
        await self._writer.drain()


class PipeReaderBridge(io.RawIOBase):
    """worker 线程中使用的可读流，从子进程的 stdout/stderr 读取。"""

    def __init__(self, reader: asyncio.StreamReader) -> None:
        super().__init__()
        self._reader = reader

    def readable(self) -> bool:
        return True

    def readinto(self, b: Any) -> int:
        if self.closed:
            raise ValueError("I/O operation on closed pipe")
        view = memoryview(b)
        data = anyio.from_thread.run(self._reader.read, len(view))
        n = len(data)
        view[:n] = data
        return n
