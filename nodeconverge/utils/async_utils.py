"""Async utilities for fan-out and subprocess execution.

This module provides utilities for:
- Awaiting a batch of coroutines and keeping every outcome, so one failure
  never abandons its siblings mid-flight
- Running subprocesses asynchronously without blocking the event loop

Use `async_subprocess_run()` instead of `subprocess.run()` in async contexts.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# Fan-out
# =============================================================================


@dataclass(frozen=True)
class Outcome:
    """Value or exception produced by one awaited coroutine."""

    value: Any = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def gather_outcomes(awaitables: Iterable[Awaitable[T]]) -> list[Outcome]:
    """Run awaitables concurrently and wait for all of them.

    Exceptions are captured per awaitable instead of propagating, so every
    task runs to completion before the caller inspects failures. Outcomes
    keep the input order.
    """
    tasks = [asyncio.ensure_future(a) for a in awaitables]
    if not tasks:
        return []
    raw = await asyncio.gather(*tasks, return_exceptions=True)
    outcomes = []
    for item in raw:
        if isinstance(item, BaseException):
            outcomes.append(Outcome(error=item))
        else:
            outcomes.append(Outcome(value=item))
    return outcomes


def first_error(outcomes: Sequence[Outcome]) -> BaseException | None:
    """Return the first captured exception, if any."""
    for outcome in outcomes:
        if outcome.error is not None:
            return outcome.error
    return None


# =============================================================================
# Async Subprocess Utilities
# =============================================================================


class SubprocessTimeoutError(Exception):
    """Error raised when subprocess times out."""

    def __init__(self, command: Sequence[str], timeout: float):
        self.command = list(command)
        self.timeout = timeout
        super().__init__(f"Command {command[0]} timed out after {timeout}s")


@dataclass
class SubprocessResult:
    """Result of async subprocess execution.

    Attributes:
        returncode: Exit code from the process (0 = success).
        stdout: Captured standard output as string.
        stderr: Captured standard error as string.
    """

    returncode: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        """Check if process exited successfully (returncode == 0)."""
        return self.returncode == 0


async def async_subprocess_run(
    cmd: Sequence[str],
    *,
    timeout: float = 60.0,
    env: dict[str, str] | None = None,
) -> SubprocessResult:
    """Run a subprocess asynchronously without blocking the event loop.

    Args:
        cmd: Command and arguments as a sequence (e.g., ["ssh", "host", "uptime"]).
        timeout: Maximum time to wait in seconds (default: 60).
        env: Environment variables for the subprocess.

    Returns:
        SubprocessResult with returncode, stdout, and stderr.

    Raises:
        SubprocessTimeoutError: If the process exceeds the timeout.
        OSError: If the command cannot be executed.
    """
    proc: asyncio.subprocess.Process | None = None
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )

        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            proc.communicate(),
            timeout=timeout,
        )

        stdout = stdout_bytes.decode("utf-8", errors="replace") if stdout_bytes else ""
        stderr = stderr_bytes.decode("utf-8", errors="replace") if stderr_bytes else ""

        return SubprocessResult(
            returncode=proc.returncode or 0,
            stdout=stdout,
            stderr=stderr,
        )

    except asyncio.TimeoutError:
        # Kill the process on timeout
        if proc is not None:
            proc.kill()
            await proc.wait()
        raise SubprocessTimeoutError(cmd, timeout)
