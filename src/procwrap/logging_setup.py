"""日志配置。

库代码只通过 logging.getLogger(__name__) 记录日志；
应用入口可以调用 configure_logging() 安装处理器。
"""

from __future__ import annotations

import logging
import sys

from .config import Config, get_config

__all__ = ["configure_logging"]

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(config: Config | None = None) -> int:
    """按配置安装日志处理器。

    Args:
        config: 配置实例（默认使用全局配置）

    Returns:
        procwrap 命名空间使用的日志级别
    """
    config = config or get_config()
    log_handlers: list[logging.Handler] = []

    if config.log_debug and config.log_file:
        # LOG_DEBUG 模式：输出到临时文件
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        # 默认模式：输出到 stderr
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        log_handlers.append(stderr_handler)
        log_level = logging.INFO

    # root logger（第三方库）为 WARNING，减少噪音
    logging.basicConfig(
        level=logging.WARNING,
        handlers=log_handlers,
    )
    # 只对 procwrap 命名空间启用详细日志
    logging.getLogger("procwrap").setLevel(log_level)

    return log_level
