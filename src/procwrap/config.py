"""procwrap 环境变量配置管理。

环境变量:
    PROCWRAP_ENCODING: 默认文本编码
        - 用于 from_string / to_string_io / 缓冲执行的编解码
        - 默认 utf-8，无效编码名回退到 utf-8

    PROCWRAP_TERM_TIMEOUT: SIGTERM 后等待进程退出的时间（秒）
        - 默认 2.0，限制在 0-60 秒范围

    PROCWRAP_KILL_TIMEOUT: SIGKILL 后等待进程退出的时间（秒）
        - 默认 1.0，限制在 0-60 秒范围

    PROCWRAP_BUFFER_SIZE: 管道拷贝的块大小（字节）
        - 默认 81920，最小 1024

    PROCWRAP_LOG_DEBUG: 日志调试模式
        - true/1/yes = 开启 (日志输出到临时文件)
        - false/0/no = 关闭 (默认，日志输出到 stderr)
"""

from __future__ import annotations

import codecs
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

__all__ = ["Config", "load_config", "get_config", "reload_config"]

DEFAULT_ENCODING = "utf-8"
DEFAULT_TERM_TIMEOUT = 2.0
DEFAULT_KILL_TIMEOUT = 1.0
DEFAULT_BUFFER_SIZE = 81920
MIN_BUFFER_SIZE = 1024
MAX_TIMEOUT = 60.0


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值环境变量。"""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_encoding(value: str | None) -> str:
    """解析编码名，无效时回退到默认编码。"""
    if not value or not value.strip():
        return DEFAULT_ENCODING
    try:
        return codecs.lookup(value.strip()).name
    except LookupError:
        return DEFAULT_ENCODING


def _parse_timeout(value: str | None, default: float) -> float:
    """解析超时时间环境变量。"""
    if not value:
        return default
    try:
        timeout = float(value)
    except ValueError:
        return default
    return max(0.0, min(timeout, MAX_TIMEOUT))


def _parse_buffer_size(value: str | None) -> int:
    """解析块大小环境变量。"""
    if not value:
        return DEFAULT_BUFFER_SIZE
    try:
        size = int(value)
    except ValueError:
        return DEFAULT_BUFFER_SIZE
    return max(MIN_BUFFER_SIZE, size)


@dataclass
class Config:
    """procwrap 配置。

    Attributes:
        encoding: 默认文本编码
        term_timeout: SIGTERM 后的等待时间（秒）
        kill_timeout: SIGKILL 后的等待时间（秒）
        buffer_size: 管道拷贝块大小（字节）
        log_debug: 日志调试模式（输出到临时文件）
        log_file: 日志文件路径（当 log_debug=True 时自动设置）
    """

    encoding: str = DEFAULT_ENCODING
    term_timeout: float = DEFAULT_TERM_TIMEOUT
    kill_timeout: float = DEFAULT_KILL_TIMEOUT
    buffer_size: int = DEFAULT_BUFFER_SIZE
    log_debug: bool = False
    log_file: str | None = None


def _generate_log_file_path() -> str:
    """生成日志文件路径。

    Returns:
        临时目录下的日志文件绝对路径
    """
    log_dir = Path(tempfile.gettempdir()) / "procwrap"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"procwrap_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """从环境变量加载配置。"""
    log_debug = _parse_bool(os.environ.get("PROCWRAP_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        encoding=_parse_encoding(os.environ.get("PROCWRAP_ENCODING")),
        term_timeout=_parse_timeout(
            os.environ.get("PROCWRAP_TERM_TIMEOUT"), DEFAULT_TERM_TIMEOUT
        ),
        kill_timeout=_parse_timeout(
            os.environ.get("PROCWRAP_KILL_TIMEOUT"), DEFAULT_KILL_TIMEOUT
        ),
        buffer_size=_parse_buffer_size(os.environ.get("PROCWRAP_BUFFER_SIZE")),
        log_debug=log_debug,
        log_file=log_file,
    )


# 全局配置实例（延迟加载）
_config: Config | None = None


def get_config() -> Config:
    """获取全局配置实例。"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """重新加载配置（用于测试）。"""
    global _config
    _config = load_config()
    return _config
