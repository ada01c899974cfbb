"""管道抽象：stdin 来源与 stdout/stderr 去向。"""

from __future__ import annotations

from .sources import PipeSource
from .targets import PipeTarget

__all__ = [
    "PipeSource",
    "PipeTarget",
]
