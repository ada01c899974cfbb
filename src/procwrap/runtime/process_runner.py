"""Process runner with concurrent stream pumping and reliable termination.

This module provides:
- Executable resolution before any stream is opened
- Cross-platform subprocess isolation (new session/process group)
- Concurrent stdin feeding, stdout/stderr draining and exit waiting
- Reliable termination with graceful shutdown (SIGTERM -> timeout -> SIGKILL)
- Cancel-safe cleanup using shielded anyio cancel scopes

Key design points:
- POSIX: start_new_session=True to create new process group
- Windows: CREATE_NEW_PROCESS_GROUP for signal isolation
- Null pipes are mapped to DEVNULL so no buffer is allocated for them
- All pumps and the exit wait run in one task group; a failing pump
  cancels the group, the child is terminated and PipeError is raised
- Cancellation terminates the process group, not just the main process
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import signal
import subprocess
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import anyio

from ..command import Command
from ..config import get_config
from ..errors import CommandCancelledError, LaunchError, PipeError
from ..pipes import PipeSource, PipeTarget
from ..pipes.sources import STDIN_CLOSED_ERRORS
from ..types import CommandResult

__all__ = [
    "IS_WINDOWS",
    "ProcessRunner",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _unwrap(exc: BaseException) -> BaseException:
    """Unwrap single-exception groups raised by nested task groups."""
    while isinstance(exc, BaseExceptionGroup) and len(exc.exceptions) == 1:
        exc = exc.exceptions[0]
    return exc


@dataclass
class ProcessRunner:
    """Spawns and supervises exactly one process per run() call.

    A runner holds no per-run state, so one instance can serve many
    concurrent runs.

    Example:
        runner = ProcessRunner()
        cmd = (
            wrap("cat")
            .with_standard_input_pipe(PipeSource.from_bytes(b"data"))
            .with_standard_output_pipe(PipeTarget.to_file("out.bin"))
        )
        result = await runner.run(cmd)

    Attributes:
        term_timeout: Seconds to wait after SIGTERM (None = from config)
        kill_timeout: Seconds to wait after SIGKILL (None = from config)
        buffer_size: Pump chunk size in bytes (None = from config)
    """

    term_timeout: float | None = None
    kill_timeout: float | None = None
    buffer_size: int | None = None

    def __post_init__(self) -> None:
        config = get_config()
        if self.term_timeout is None:
            self.term_timeout = config.term_timeout
        if self.kill_timeout is None:
            self.kill_timeout = config.kill_timeout
        if self.buffer_size is None:
            self.buffer_size = config.buffer_size

    async def run(
        self,
        command: Command,
        *,
        cancel_scope: anyio.CancelScope | None = None,
        on_started: Callable[[int], None] | None = None,
    ) -> CommandResult:
        """Run the command to completion.

        This method:
        1. Fails with CommandCancelledError if cancel_scope is already cancelled
        2. Resolves the executable (LaunchError before any stream is opened)
        3. Starts the subprocess in an isolated process group/session
        4. Feeds stdin and drains stdout/stderr concurrently with the exit wait
        5. Ensures cleanup even if cancelled or a pipe fails

        Validation policy is not applied here; see procwrap.execution.

        Args:
            command: Command descriptor (read-only)
            cancel_scope: Run-scoped cancellation signal; one scope per run
            on_started: Optional callback receiving the child pid

        Returns:
            CommandResult with exit code and timestamps

        Raises:
            LaunchError: Executable missing or could not be started
            PipeError: A pipe source/target failed; the child was terminated
            CommandCancelledError: cancel_scope was cancelled
        """
        scope = cancel_scope if cancel_scope is not None else anyio.CancelScope()
        if scope.cancel_called:
            logger.debug(f"Run cancelled before start: {command.target_file}")
            raise CommandCancelledError(command, spawned=False)

        executable = self._resolve_executable(command)
        try:
            argv = [executable, *command.build_argv()]
        except ValueError as e:
            # e.g. an unbalanced quote in a raw argument
            raise LaunchError(command.target_file, f"invalid arguments: {e}") from e
        kwargs = self._build_subprocess_kwargs(command)

        process: asyncio.subprocess.Process | None = None
        failures: list[tuple[str, BaseException]] = []

        try:
            # Spawn is shielded so a concurrent cancel cannot orphan the child
            with anyio.CancelScope(shield=True):
                process = await self._spawn(command, argv, kwargs)
            start_time = _now()

            logger.debug(
                f"Started subprocess pid={process.pid} "
                f"argv={argv[0]} cwd={command.working_directory}"
            )

            if on_started:
                on_started(process.pid)

            with scope:
                async with anyio.create_task_group() as tg:
                    guard = _PumpGuard(failures, tg.cancel_scope)

                    if process.stdin:
                        tg.start_soon(
                            guard.run, "stdin",
                            self._feed_stdin, command.standard_input_pipe, process.stdin,
                        )
                    if process.stdout:
                        tg.start_soon(
                            guard.run, "stdout",
                            self._drain_output, command.standard_output_pipe, process.stdout,
                        )
                    if process.stderr:
                        tg.start_soon(
                            guard.run, "stderr",
                            self._drain_output, command.standard_error_pipe, process.stderr,
                        )

                    await process.wait()

            exit_time = _now()

            if scope.cancelled_caught:
                logger.debug(f"Run cancelled pid={process.pid}")
                raise CommandCancelledError(command, spawned=True)

            if failures:
                stream, exc = failures[0]
                logger.warning(
                    f"Pipe failure on {stream} pid={process.pid}: "
                    f"{type(exc).__name__}: {exc}"
                )
                raise PipeError(stream, f"{type(exc).__name__}: {exc}") from exc

            logger.debug(
                f"Subprocess completed pid={process.pid} "
                f"returncode={process.returncode}"
            )

            return CommandResult(
                exit_code=process.returncode,
                start_time=start_time,
                exit_time=exit_time,
            )

        finally:
            # Ensure cleanup with shield to prevent cancel interruption
            with anyio.CancelScope(shield=True):
                await self._cleanup(process)

    def _resolve_executable(self, command: Command) -> str:
        """Resolve the target by path or by PATH search.

        Args:
            command: Command descriptor

        Returns:
            Path to the executable

        Raises:
            LaunchError: If the target cannot be found or is not executable
        """
        target = command.target_file
        if not target:
            raise LaunchError(target, "target file is empty")

        if os.path.dirname(target):
            path = target
            if not os.path.isabs(path) and command.working_directory is not None:
                path = os.path.join(command.working_directory, path)
            if not os.path.isfile(path):
                raise LaunchError(target, "file not found")
            if not IS_WINDOWS and not os.access(path, os.X_OK):
                raise LaunchError(target, "file is not executable")
            return os.path.abspath(path)

        env = command.build_environment()
        search_path = (env if env is not None else os.environ).get("PATH")
        resolved = shutil.which(target, path=search_path)
        if resolved is None:
            raise LaunchError(target, "executable not found on PATH")
        return resolved

    def _build_subprocess_kwargs(self, command: Command) -> dict[str, Any]:
        """Build stream modes and platform-specific subprocess kwargs.

        Args:
            command: Command descriptor

        Returns:
            Dict of kwargs for asyncio.create_subprocess_exec
        """
        kwargs: dict[str, Any] = {
            # DEVNULL rather than None: never inherit the parent's streams
            "stdin": _stream_mode(command.standard_input_pipe),
            "stdout": _stream_mode(command.standard_output_pipe),
            "stderr": _stream_mode(command.standard_error_pipe),
            "cwd": command.working_directory,
        }

        env = command.build_environment()
        if env is not None:
            kwargs["env"] = env

        # Platform-specific isolation
        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True

        return kwargs

    async def _spawn(
        self,
        command: Command,
        argv: list[str],
        kwargs: dict[str, Any],
    ) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *argv,
                limit=self.buffer_size,
                **kwargs,
            )
        except OSError as e:
            raise LaunchError(command.target_file, str(e)) from e

    async def _feed_stdin(
        self,
        source: PipeSource,
        stdin: asyncio.StreamWriter,
    ) -> None:
        """Copy the source into stdin, then close it.

        A child that exits without reading all of its input is not a failure.
        """
        try:
            await source.copy_to(stdin, self.buffer_size)
            stdin.close()
            await stdin.wait_closed()
        except STDIN_CLOSED_ERRORS:
            logger.debug("Child closed stdin before all input was written")
        finally:
            if not stdin.is_closing():
                stdin.close()

    async def _drain_output(
        self,
        target: PipeTarget,
        reader: asyncio.StreamReader,
    ) -> None:
        await target.copy_from(reader, self.buffer_size)

    async def _cleanup(self, process: asyncio.subprocess.Process | None) -> None:
        """Close stdin and terminate the subprocess if still running.

        Args:
            process: The subprocess (None if spawn never happened)
        """
        if process is None:
            return

        if process.stdin and not process.stdin.is_closing():
            process.stdin.close()

        if process.returncode is None:
            await self._terminate_process(process)

    async def _terminate_process(
        self,
        process: asyncio.subprocess.Process,
    ) -> None:
        """Terminate subprocess gracefully, then forcefully if needed.

        Termination strategy:
        1. Send SIGTERM (or CTRL_BREAK_EVENT on Windows)
        2. Wait up to term_timeout for graceful exit
        3. If still running, send SIGKILL (or kill() on Windows)
        4. Wait up to kill_timeout for forced exit

        Args:
            process: The subprocess to terminate
        """
        pid = process.pid
        logger.debug(f"Terminating subprocess pid={pid}")

        try:
            # Step 1: Graceful termination
            if IS_WINDOWS:
                await self._windows_terminate(process)
            else:
                await self._posix_signal(process, signal.SIGTERM)

            # Step 2: Wait for graceful exit
            try:
                await asyncio.wait_for(process.wait(), timeout=self.term_timeout)
                logger.debug(
                    f"Subprocess terminated gracefully pid={pid} "
                    f"returncode={process.returncode}"
                )
                return
            except asyncio.TimeoutError:
                pass

            # Step 3: Force kill
            logger.debug(f"Force killing subprocess pid={pid}")
            if IS_WINDOWS:
                process.kill()
            else:
                await self._posix_signal(process, signal.SIGKILL)

            # Step 4: Wait for forced exit
            try:
                await asyncio.wait_for(process.wait(), timeout=self.kill_timeout)
                logger.debug(
                    f"Subprocess killed pid={pid} "
                    f"returncode={process.returncode}"
                )
            except asyncio.TimeoutError:
                logger.warning(f"Subprocess did not exit after kill pid={pid}")

        except ProcessLookupError:
            # Process already exited
            logger.debug(f"Subprocess already exited pid={pid}")
        except Exception as e:
            logger.warning(f"Error terminating subprocess pid={pid}: {e}")

    async def _posix_signal(
        self,
        process: asyncio.subprocess.Process,
        sig: signal.Signals,
    ) -> None:
        """Send a signal to the process group on POSIX systems.

        Args:
            process: The subprocess
            sig: SIGTERM or SIGKILL
        """
        try:
            # Process group ID equals pid due to start_new_session
            pgid = os.getpgid(process.pid)
            os.killpg(pgid, sig)
            logger.debug(f"Sent {sig.name} to process group pgid={pgid}")
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"killpg failed, falling back to send_signal: {e}")
            process.send_signal(sig)

    async def _windows_terminate(
        self,
        process: asyncio.subprocess.Process,
    ) -> None:
        """Send CTRL_BREAK_EVENT on Windows.

        Args:
            process: The subprocess
        """
        try:
            # Works because of CREATE_NEW_PROCESS_GROUP
            os.kill(process.pid, signal.CTRL_BREAK_EVENT)
            logger.debug(f"Sent CTRL_BREAK_EVENT to pid={process.pid}")
        except (ProcessLookupError, OSError) as e:
            logger.debug(f"CTRL_BREAK_EVENT failed, falling back: {e}")
            process.terminate()


def _stream_mode(pipe: PipeSource | PipeTarget) -> int:
    return asyncio.subprocess.DEVNULL if pipe.is_null else asyncio.subprocess.PIPE


class _PumpGuard:
    """Records the first pump failure and cancels the remaining pumps."""

    def __init__(
        self,
        failures: list[tuple[str, BaseException]],
        cancel_scope: anyio.CancelScope,
    ) -> None:
        self._failures = failures
        self._cancel_scope = cancel_scope

    async def run(
        self,
        stream: str,
        func: Callable[..., Awaitable[None]],
        *args: Any,
    ) -> None:
        try:
            await func(*args)
        except Exception as e:
            self._failures.append((stream, _unwrap(e)))
            self._cancel_scope.cancel()
