"""Synchronous, asynchronous and time-bounded operations.

Converge and lift runs execute on a background event loop owned by this
module, so they can be started from plain synchronous code (a CLI, a
notebook) as well as from inside a running loop.

Usage:
    # Block until done; raises the run's error
    result = run_operation(orchestrator.converge(groups))

    # Give up waiting after 60s; the run keeps going in the background
    result = run_operation(coro, timeout_seconds=60, timeout_value=None)

    # Get a handle back immediately
    operation = run_operation(coro, async_=True)
    value, error = operation.outcome()
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)


# =============================================================================
# Background Loop
# =============================================================================


class OperationLoop:
    """An event loop running in a daemon thread."""

    _instance: OperationLoop | None = None
    _instance_lock = threading.Lock()

    def __init__(self) -> None:
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(
            target=self._run, name="nodeconverge-operations", daemon=True
        )
        self._thread.start()

    def _run(self) -> None:
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    @property
    def is_running(self) -> bool:
        return self._thread.is_alive()

    def submit(self, coro: Coroutine[Any, Any, Any]) -> concurrent.futures.Future:
        return asyncio.run_coroutine_threadsafe(coro, self.loop)

    def stop(self) -> None:
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout=5.0)
        if not self._thread.is_alive():
            self.loop.close()

    @classmethod
    def get_instance(cls) -> OperationLoop:
        """Get singleton instance."""
        with cls._instance_lock:
            if cls._instance is None or not cls._instance.is_running:
                cls._instance = cls()
            return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Stop and reset singleton (for testing)."""
        with cls._instance_lock:
            if cls._instance is not None:
                cls._instance.stop()
            cls._instance = None


# =============================================================================
# Operations
# =============================================================================


class Operation:
    """Handle on a run executing in the background."""

    def __init__(self, future: concurrent.futures.Future):
        self._future = future

    def done(self) -> bool:
        return self._future.done()

    def cancel(self) -> bool:
        return self._future.cancel()

    def join(self, timeout: float | None = None) -> bool:
        """Wait for completion without fetching the value; True if done."""
        done, _ = concurrent.futures.wait([self._future], timeout=timeout)
        return bool(done)

    def result(self, timeout: float | None = None) -> Any:
        """Wait for the value; raise the run's error.

        Raises:
            TimeoutError: if ``timeout`` elapses first.
        """
        if not self.join(timeout):
            raise TimeoutError(f"Operation still running after {timeout}s")
        return self._future.result()

    def outcome(self, timeout: float | None = None) -> tuple[Any, BaseException | None]:
        """Wait for the ``(value, error)`` pair.

        When the run raised, the value is the partial result attached to
        the error, if any.

        Raises:
            TimeoutError: if ``timeout`` elapses first.
        """
        if not self.join(timeout):
            raise TimeoutError(f"Operation still running after {timeout}s")
        error = self._future.exception()
        if error is None:
            return self._future.result(), None
        return getattr(error, "result", None), error

    async def wait(self) -> Any:
        """Await the value from any event loop."""
        return await asyncio.wrap_future(self._future)


def run_operation(
    coro: Coroutine[Any, Any, Any],
    async_: bool = False,
    timeout_seconds: float | None = None,
    timeout_value: Any = None,
) -> Any:
    """Run ``coro`` on the background loop.

    Args:
        coro: The operation to run.
        async_: Return an Operation handle instead of waiting.
        timeout_seconds: Stop waiting after this long and return
            ``timeout_value``. The operation itself is not cancelled.
        timeout_value: Value returned on timeout.

    Returns:
        The operation's value, ``timeout_value``, or an Operation.
    """
    operation = Operation(OperationLoop.get_instance().submit(coro))
    if async_:
        return operation
    if timeout_seconds is None:
        return operation.result()
    if not operation.join(timeout_seconds):
        logger.warning(
            f"[Operation] Timed out after {timeout_seconds}s, operation still running"
        )
        return timeout_value
    return operation.result()
