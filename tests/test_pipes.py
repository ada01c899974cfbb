"""管道适配器单元测试。

不启动子进程，直接用 asyncio.StreamReader 驱动目标适配器。
"""

from __future__ import annotations

import asyncio
import io

import pytest

from procwrap import PipeSource, PipeTarget
from procwrap.pipes.streams import make_decoder, resolve_encoding, stream_lock


def _reader(*chunks: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    for chunk in chunks:
        reader.feed_data(chunk)
    reader.feed_eof()
    return reader


# =============================================================================
# 工厂与空管道
# =============================================================================


class TestFactories:
    """工厂方法。"""

    def test_null_singletons(self):
        """null() 是单例且标记为空。"""
        assert PipeSource.null() is PipeSource.null()
        assert PipeTarget.null() is PipeTarget.null()
        assert PipeSource.null().is_null
        assert PipeTarget.null().is_null

    def test_non_null_variants(self):
        """其它变体都不是空管道。"""
        sources = [
            PipeSource.from_bytes(b""),
            PipeSource.from_memory(bytearray(b"x")),
            PipeSource.from_string(""),
            PipeSource.from_file("in.txt"),
            PipeSource.from_stream(io.BytesIO()),
            PipeSource.create(lambda stream: None),
        ]
        targets = [
            PipeTarget.to_file("out.txt"),
            PipeTarget.to_stream(io.BytesIO()),
            PipeTarget.to_string_io(io.StringIO()),
            PipeTarget.to_delegate(lambda line: None),
            PipeTarget.create(lambda stream: None),
        ]
        assert not any(s.is_null for s in sources)
        assert not any(t.is_null for t in targets)

    def test_factories_do_no_io(self, tmp_path):
        """构造文件管道不会打开文件。"""
        PipeSource.from_file(tmp_path / "missing.bin")
        PipeTarget.to_file(tmp_path / "out.bin")
        assert not (tmp_path / "out.bin").exists()


# =============================================================================
# 合并
# =============================================================================


class TestMerge:
    """PipeTarget.merge。"""

    def test_merge_nothing_is_null(self):
        """合并零个目标得到空目标。"""
        assert PipeTarget.merge() is PipeTarget.null()

    def test_merge_drops_nulls(self):
        """空目标被忽略，剩一个时直接返回该目标。"""
        target = PipeTarget.to_string_io(io.StringIO())
        assert PipeTarget.merge(PipeTarget.null(), target) is target

    def test_merge_flattens(self):
        """嵌套合并被展平。"""
        a = PipeTarget.to_string_io(io.StringIO())
        b = PipeTarget.to_string_io(io.StringIO())
        c = PipeTarget.to_string_io(io.StringIO())
        merged = PipeTarget.merge(PipeTarget.merge(a, b), c)
        assert merged.targets == [a, b, c]  # type: ignore[attr-defined]

    @pytest.mark.asyncio
    async def test_merge_fans_out(self):
        """每个子目标都收到完整数据。"""
        first = io.StringIO()
        second = io.BytesIO()
        lines: list[str] = []
        merged = PipeTarget.merge(
            PipeTarget.to_string_io(first),
            PipeTarget.to_stream(second),
            PipeTarget.to_delegate(lines.append),
        )

        await merged.copy_from(_reader(b"a\nb", b"c\n"), 4)

        assert first.getvalue() == "a\nbc\n"
        assert second.getvalue() == b"a\nbc\n"
        assert lines == ["a", "bc"]


# =============================================================================
# 文本目标
# =============================================================================


class TestTextTargets:
    """to_string_io / to_delegate。"""

    @pytest.mark.asyncio
    async def test_multibyte_split_across_chunks(self):
        """多字节字符跨块拆分时正确解码。"""
        data = "héllo wörld".encode("utf-8")
        buffer = io.StringIO()
        target = PipeTarget.to_string_io(buffer, "utf-8")

        # 每块一个字节
        await target.copy_from(_reader(*(data[i:i + 1] for i in range(len(data)))), 1)

        assert buffer.getvalue() == "héllo wörld"

    @pytest.mark.asyncio
    async def test_explicit_encoding(self):
        """按指定编码解码。"""
        buffer = io.StringIO()
        target = PipeTarget.to_string_io(buffer, "cp1251")
        await target.copy_from(_reader("привет".encode("cp1251")), 1024)
        assert buffer.getvalue() == "привет"

    @pytest.mark.asyncio
    async def test_invalid_bytes_are_replaced(self):
        """无效字节替换为替换字符，不抛出异常。"""
        buffer = io.StringIO()
        target = PipeTarget.to_string_io(buffer, "utf-8")
        await target.copy_from(_reader(b"ok\xff"), 1024)
        assert buffer.getvalue() == "ok�"

    @pytest.mark.asyncio
    async def test_delegate_lines(self):
        """每行调用一次回调，去掉换行符和回车。"""
        lines: list[str] = []
        target = PipeTarget.to_delegate(lines.append)
        await target.copy_from(_reader(b"one\r\ntw", b"o\nthree"), 1024)
        assert lines == ["one", "two", "three"]

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_delegate_many_lines_in_one_chunk(self):
        """一个大块中的大量行线性处理。"""
        count = 200_000
        data = b"".join(f"{i}\n".encode() for i in range(count))
        lines: list[str] = []
        await PipeTarget.to_delegate(lines.append).copy_from(_reader(data), len(data))
        assert len(lines) == count
        assert lines[0] == "0"
        assert lines[-1] == str(count - 1)

    @pytest.mark.asyncio
    async def test_delegate_line_spanning_chunks(self):
        """没有换行的块拼接到下一行。"""
        lines: list[str] = []
        target = PipeTarget.to_delegate(lines.append)
        await target.copy_from(_reader(b"al", b"pha", b"\nbeta\n\n", b"gamma\r"), 1024)
        assert lines == ["alpha", "beta", "", "gamma"]

    @pytest.mark.asyncio
    async def test_delegate_empty_input(self):
        """空输入不调用回调。"""
        lines: list[str] = []
        await PipeTarget.to_delegate(lines.append).copy_from(_reader(), 1024)
        assert lines == []


# =============================================================================
# 流目标
# =============================================================================


class _CountingStream(io.BytesIO):
    def __init__(self) -> None:
        super().__init__()
        self.flushes = 0

    def flush(self) -> None:
        self.flushes += 1
        super().flush()


class TestStreamTarget:
    """to_stream。"""

    @pytest.mark.asyncio
    async def test_stream_not_closed(self):
        """借用的流不会被关闭。"""
        stream = io.BytesIO()
        await PipeTarget.to_stream(stream).copy_from(_reader(b"abc"), 1024)
        assert not stream.closed
        assert stream.getvalue() == b"abc"

    @pytest.mark.asyncio
    async def test_auto_flush(self):
        """auto_flush=True 时每块都 flush。"""
        stream = _CountingStream()
        await PipeTarget.to_stream(stream).copy_from(_reader(b"a", b"b", b"c"), 1)
        assert stream.flushes == 3

    @pytest.mark.asyncio
    async def test_flush_once_at_end(self):
        """auto_flush=False 时只在结束时 flush。"""
        stream = _CountingStream()
        await PipeTarget.to_stream(stream, auto_flush=False).copy_from(
            _reader(b"a", b"b", b"c"), 1
        )
        assert stream.flushes == 1
        assert stream.getvalue() == b"abc"

    @pytest.mark.asyncio
    async def test_read_only_stream_rejected(self, tmp_path):
        """不可写的流抛出 UnsupportedOperation。"""
        path = tmp_path / "ro.bin"
        path.write_bytes(b"")
        with open(path, "rb") as stream:
            with pytest.raises(io.UnsupportedOperation):
                await PipeTarget.to_stream(stream).copy_from(_reader(b"x"), 1024)


# =============================================================================
# 回调目标
# =============================================================================


class TestCallbackTargets:
    """create / create_async。"""

    @pytest.mark.asyncio
    async def test_sync_handler_reads_all(self):
        """同步 handler 在线程中读取全部数据。"""
        received: list[bytes] = []
        target = PipeTarget.create(lambda stream: received.append(stream.read()))
        await target.copy_from(_reader(b"hello ", b"world"), 4)
        assert received == [b"hello world"]

    @pytest.mark.asyncio
    async def test_sync_handler_partial_read_drains(self):
        """handler 没读完时剩余数据被丢弃。"""
        reader = _reader(b"x" * 100_000)
        target = PipeTarget.create(lambda stream: stream.read(10))
        await target.copy_from(reader, 1024)
        assert reader.at_eof()

    @pytest.mark.asyncio
    async def test_sync_handler_error_propagates(self):
        """handler 的异常原样传播。"""

        def handler(stream) -> None:
            raise ValueError("bad handler")

        with pytest.raises(ValueError, match="bad handler"):
            await PipeTarget.create(handler).copy_from(_reader(b"x"), 1024)

    @pytest.mark.asyncio
    async def test_async_handler(self):
        """异步 handler 直接读取 StreamReader。"""
        received: list[bytes] = []

        async def handler(reader: asyncio.StreamReader) -> None:
            received.append(await reader.read())

        await PipeTarget.create_async(handler).copy_from(_reader(b"abc"), 1024)
        assert received == [b"abc"]


# =============================================================================
# 流工具
# =============================================================================


class TestStreamHelpers:
    """streams 模块工具函数。"""

    def test_stream_lock_is_per_stream(self):
        """同一个流得到同一把锁，不同流得到不同的锁。"""
        a = io.BytesIO()
        b = io.BytesIO()
        assert stream_lock(a) is stream_lock(a)
        assert stream_lock(a) is not stream_lock(b)

    def test_resolve_encoding_default(self):
        """None 使用配置的默认编码。"""
        assert resolve_encoding(None) == "utf-8"
        assert resolve_encoding("latin-1") == "latin-1"

    def test_decoder_is_incremental(self):
        """解码器保留不完整的多字节序列。"""
        decoder = make_decoder("utf-8")
        data = "é".encode("utf-8")
        assert decoder.decode(data[:1]) == ""
        assert decoder.decode(data[1:], final=True) == "é"

    def test_from_string_uses_encoding(self):
        """from_string 按指定编码编码。"""
        source = PipeSource.from_string("привет", "cp1251")
        assert "12 bytes" not in repr(source)
        assert "6 bytes" in repr(source)

    def test_from_memory_does_not_copy(self):
        """from_memory 持有只读视图而不是副本。"""
        data = bytearray(b"abc")
        source = PipeSource.from_memory(data)
        data[0] = ord("x")
        assert bytes(source._data) == b"xbc"  # type: ignore[attr-defined]
        assert source._data.readonly  # type: ignore[attr-defined]

    def test_from_bytes_copies(self):
        """from_bytes 持有副本。"""
        data = bytearray(b"abc")
        source = PipeSource.from_bytes(data)
        data[0] = ord("x")
        assert bytes(source._data) == b"abc"  # type: ignore[attr-defined]
