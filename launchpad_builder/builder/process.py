"""Supervised subprocess execution for install and build steps.

Spawns one external command per call with a sanitized environment, a hard
timeout and a bounded output buffer. Every failure mode (non-zero exit,
timeout, spawn error, broken pipes) is folded into a ``ProcessOutcome`` with
``success=False``; only task cancellation propagates as an exception, and
the child process group is killed before it does.
"""

from __future__ import annotations

import asyncio
import os
import signal
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from rich.console import Console

console = Console()

DEFAULT_MAX_BUFFER_BYTES = 10 * 1024 * 1024
DEFAULT_STRIP_TOKENS = ("TURBO", "TURBOPACK")
_READ_CHUNK_BYTES = 64 * 1024
_KILL_GRACE_SECONDS = 10.0
_ERROR_MESSAGE_LIMIT = 500


@dataclass(frozen=True)
class ProcessInvocation:
    """One command to run under supervision."""

    command: tuple[str, ...]
    cwd: Path
    env_overrides: Mapping[str, str] = field(default_factory=dict)
    timeout_seconds: float = 120.0
    max_buffer_bytes: int = DEFAULT_MAX_BUFFER_BYTES

    @property
    def display(self) -> str:
        return " ".join(self.command)


@dataclass(frozen=True)
class ProcessOutcome:
    """Result of a single supervised subprocess run."""

    success: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    timed_out: bool = False
    cancelled: bool = False
    truncated: bool = False
    error_message: str = ""
    duration_seconds: float = 0.0

    def log_lines(self, label: str) -> list[str]:
        """Render the outcome as log entries.

        Successful runs contribute their raw output. Failed runs prefix each
        stream and end with ``"<label> failed: <error message>"``.
        """
        if self.success:
            return [text for text in (self.stdout, self.stderr) if text]
        lines: list[str] = []
        if self.stderr:
            lines.append(f"stderr: {self.stderr}")
        if self.stdout:
            lines.append(f"stdout: {self.stdout}")
        lines.append(f"{label} failed: {self.error_message or 'Unknown error'}")
        return lines


def sanitize_env(
    base_env: Mapping[str, str],
    strip_tokens: tuple[str, ...] | list[str] = DEFAULT_STRIP_TOKENS,
) -> dict[str, str]:
    """Copy ``base_env`` without variables whose name contains a strip token.

    Matching is case-insensitive. Bundler turbo-mode flags leaking from the
    host process break production builds of the generated project.
    """
    tokens = [token.upper() for token in strip_tokens]
    return {
        key: value
        for key, value in base_env.items()
        if not any(token in key.upper() for token in tokens)
    }


def workspace_env(workspace: Path) -> dict[str, str]:
    """Environment overrides that root npm inside the workspace.

    The real home directory is not writable in sandboxed build hosts, so
    ``HOME``, the npm cache and the npm user config all point at
    workspace-local paths.
    """
    return {
        "NODE_ENV": "production",
        "HOME": str(workspace),
        "NPM_CONFIG_CACHE": str(workspace / ".npm-cache"),
        "NPM_CONFIG_USERCONFIG": os.devnull,
    }


class _OutputBudget:
    """Byte budget shared by the stdout and stderr readers of one process."""

    def __init__(self, limit: int) -> None:
        self.remaining = max(limit, 0)
        self.truncated = False

    def take(self, size: int) -> int:
        granted = min(size, self.remaining)
        self.remaining -= granted
        if granted < size:
            self.truncated = True
        return granted


async def _drain(stream: asyncio.StreamReader | None, sink: bytearray, budget: _OutputBudget) -> None:
    """Read ``stream`` to EOF, keeping only what the budget allows."""
    if stream is None:
        return
    while True:
        chunk = await stream.read(_READ_CHUNK_BYTES)
        if not chunk:
            return
        granted = budget.take(len(chunk))
        if granted:
            sink.extend(chunk[:granted])


def _decode(data: bytearray) -> str:
    return bytes(data).decode("utf-8", errors="replace").strip()


class ProcessRunner:
    """Runs supervised subprocesses.

    Args:
        strip_tokens: Environment variable name fragments removed from the
            inherited environment before spawning.
        base_env: Environment to inherit from. Defaults to ``os.environ`` at
            call time.
    """

    def __init__(
        self,
        strip_tokens: tuple[str, ...] | list[str] = DEFAULT_STRIP_TOKENS,
        base_env: Mapping[str, str] | None = None,
    ) -> None:
        self.strip_tokens = tuple(strip_tokens)
        self.base_env = base_env

    def build_env(self, overrides: Mapping[str, str]) -> dict[str, str]:
        inherited = self.base_env if self.base_env is not None else os.environ
        env = sanitize_env(inherited, self.strip_tokens)
        env.update(overrides)
        return env

    async def run(
        self,
        invocation: ProcessInvocation,
        cancel_event: asyncio.Event | None = None,
    ) -> ProcessOutcome:
        """Execute ``invocation`` and return its outcome.

        Args:
            invocation: The command, working directory, env overrides and bounds.
            cancel_event: When set while the command runs, the process group is
                killed and an outcome with ``cancelled=True`` is returned.

        Returns:
            A ``ProcessOutcome``. Never raises except ``asyncio.CancelledError``.
        """
        start_time = time.monotonic()
        try:
            return await self._run(invocation, cancel_event, start_time)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return ProcessOutcome(
                success=False,
                error_message=f"{type(exc).__name__}: {exc}",
                duration_seconds=time.monotonic() - start_time,
            )

    async def _run(
        self,
        invocation: ProcessInvocation,
        cancel_event: asyncio.Event | None,
        start_time: float,
    ) -> ProcessOutcome:
        if not invocation.command:
            return ProcessOutcome(success=False, error_message="Empty command")
        if not Path(invocation.cwd).is_dir():
            return ProcessOutcome(
                success=False,
                error_message=f"Working directory not found: {invocation.cwd}",
                duration_seconds=time.monotonic() - start_time,
            )

        try:
            process = await asyncio.create_subprocess_exec(
                *invocation.command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
                cwd=str(invocation.cwd),
                env=self.build_env(invocation.env_overrides),
                start_new_session=os.name == "posix",
            )
        except FileNotFoundError:
            return ProcessOutcome(
                success=False,
                error_message=(
                    f"Command not found: '{invocation.command[0]}'. "
                    "Ensure it is installed and in PATH."
                ),
                duration_seconds=time.monotonic() - start_time,
            )
        except PermissionError:
            return ProcessOutcome(
                success=False,
                error_message=f"Permission denied executing: '{invocation.command[0]}'.",
                duration_seconds=time.monotonic() - start_time,
            )

        budget = _OutputBudget(invocation.max_buffer_bytes)
        stdout_buf = bytearray()
        stderr_buf = bytearray()

        async def _communicate() -> int:
            await asyncio.gather(
                _drain(process.stdout, stdout_buf, budget),
                _drain(process.stderr, stderr_buf, budget),
            )
            return await process.wait()

        completion = asyncio.ensure_future(_communicate())
        waiters: set[asyncio.Future] = {completion}
        cancel_waiter: asyncio.Future | None = None
        if cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=invocation.timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            await self._terminate(process, completion)
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()

        if completion not in done:
            cancelled = cancel_waiter is not None and cancel_waiter in done
            await self._terminate(process, completion)
            elapsed = time.monotonic() - start_time
            if cancelled:
                message = f"Cancelled: {invocation.display}"
            else:
                console.print(
                    f"[red]{invocation.display} exceeded {invocation.timeout_seconds}s. Killing...[/red]"
                )
                message = (
                    f"timeout: {invocation.display} exceeded {invocation.timeout_seconds}s "
                    "and was killed"
                )
            return ProcessOutcome(
                success=False,
                stdout=_decode(stdout_buf),
                stderr=_decode(stderr_buf),
                exit_code=process.returncode,
                timed_out=not cancelled,
                cancelled=cancelled,
                truncated=budget.truncated,
                error_message=message,
                duration_seconds=elapsed,
            )

        exit_code = completion.result()
        stdout_text = _decode(stdout_buf)
        stderr_text = _decode(stderr_buf)
        success = exit_code == 0
        error_message = ""
        if not success:
            error_message = (
                stderr_text[:_ERROR_MESSAGE_LIMIT]
                or f"Command failed with exit code {exit_code}: {invocation.display}"
            )
        return ProcessOutcome(
            success=success,
            stdout=stdout_text,
            stderr=stderr_text,
            exit_code=exit_code,
            truncated=budget.truncated,
            error_message=error_message,
            duration_seconds=time.monotonic() - start_time,
        )

    async def _terminate(self, process: asyncio.subprocess.Process, completion: asyncio.Future) -> None:
        """Kill the process group on POSIX (the process alone elsewhere), then reap it.

        The group is killed even if the direct child already exited: its
        descendants may still be running and holding the output pipes.
        """
        try:
            if os.name == "posix":
                os.killpg(process.pid, signal.SIGKILL)
            elif process.returncode is None:
                process.kill()
        except (ProcessLookupError, PermissionError):
            pass
        _, pending = await asyncio.wait({completion}, timeout=_KILL_GRACE_SECONDS)
        for future in pending:
            future.cancel()
        if completion.done() and not completion.cancelled():
            # Retrieve so a reader error is not reported as never retrieved.
            completion.exception()

    async def check_available(self, binary: str = "npm") -> bool:
        """Return True if ``<binary> --version`` runs successfully."""
        outcome = await self.run(
            ProcessInvocation(command=(binary, "--version"), cwd=Path.cwd(), timeout_seconds=10.0)
        )
        if outcome.success:
            console.print(f"[green]{binary} available:[/green] {outcome.stdout}")
        else:
            console.print(f"[red]{binary} not available:[/red] {outcome.error_message}")
        return outcome.success
