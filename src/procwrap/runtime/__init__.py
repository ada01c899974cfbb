"""Runtime module for subprocess management.

This module provides isolated process execution with concurrent stream
pumping, proper signal handling and reliable termination.
"""

from __future__ import annotations

from .process_runner import ProcessRunner

__all__ = [
    "ProcessRunner",
]
