"""Phase synchronisation service: a barrier over the phase tree.

A fan-out of per-target tasks enters a phase together, and on exit each
target blocks until every sibling in the same phase subtree has arrived. The
last arrival releases the whole cohort at once, handing every member a
PhaseLeaveValue computed over the cohort's outcome.

State model:
    One immutable, versioned SyncState. Every operation is a pure function
    from the old state to a new one, installed with compare-and-swap and
    retried on conflict. The "mark blocked, test all-blocked, pop the level"
    step is a single transition, so a late arrival can never be missed by a
    release that is already in flight. The install lock is held only for the
    compare-and-set itself; guard functions, leave-value functions,
    on-complete callbacks and release handles are all invoked outside it.

Usage:
    sync = InMemoryPhaseSyncService()
    entry = sync.enter_phase("configure", ["node-1", "node-2"], PhaseOptions())

    # in each target's task
    handle = ReleaseHandle()
    sync.leave_phase("configure", "node-1", handle)
    leave_value = await handle.wait()
    if leave_value.state is LeaveState.ABORT:
        ...
"""

from __future__ import annotations

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, cast

from nodeconverge.coordination.phase_path import PhasePath
from nodeconverge.utils.exceptions import (
    HeterogeneousPhaseError,
    SyncPreconditionError,
)

logger = logging.getLogger(__name__)

__all__ = [
    "LeaveState",
    "PhaseEntry",
    "PhaseLeaveValue",
    "PhaseOptions",
    "PhaseSyncService",
    "InMemoryPhaseSyncService",
    "ReleaseHandle",
    "SyncState",
    "TargetPhaseState",
    "UnblockEntry",
    "default_leave_value",
]


# =============================================================================
# Values
# =============================================================================


class LeaveState(str, Enum):
    """Outcome handed to every member of a released cohort."""

    CONTINUE = "continue"
    ABORT = "abort"


@dataclass(frozen=True)
class PhaseLeaveValue:
    """Value delivered through a release handle."""

    state: LeaveState
    data: Any = None

    @property
    def should_continue(self) -> bool:
        return self.state is LeaveState.CONTINUE


CONTINUE = PhaseLeaveValue(LeaveState.CONTINUE)
ABORT = PhaseLeaveValue(LeaveState.ABORT)


@dataclass(frozen=True)
class PhaseOptions:
    """Callbacks controlling one phase level.

    Attributes:
        guard_fn: Evaluated once per enter_phase call. When present and
            false, the phase is recorded as not guarded; callers skip the
            phase body but still take part in the barrier.
        leave_value_fn: Computes a member's leave value from the cohort's
            unblock map. Defaults to default_leave_value.
        on_complete_fn: Called once per guarded member whose leave value is
            CONTINUE, before its handle is released.
    """

    guard_fn: Callable[[], bool] | None = None
    leave_value_fn: Callable[[Mapping[str, "UnblockEntry"]], PhaseLeaveValue] | None = None
    on_complete_fn: Callable[[], None] | None = None


DEFAULT_OPTIONS = PhaseOptions()


@dataclass(frozen=True)
class PhaseEntry:
    """Result of enter_phase."""

    previous_phase: PhasePath
    guarded: bool


# =============================================================================
# Release Handles
# =============================================================================


class ReleaseHandle:
    """Single-shot completion signal for one blocked target.

    Signalled exactly once with a PhaseLeaveValue. Waiters may be coroutines
    on any event loop or plain threads.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._event = threading.Event()
        self._value: PhaseLeaveValue | None = None
        self._waiters: list[tuple[asyncio.AbstractEventLoop, asyncio.Future]] = []

    @property
    def is_signalled(self) -> bool:
        return self._event.is_set()

    def signal(self, value: PhaseLeaveValue) -> None:
        """Deliver the value and wake every waiter.

        Raises:
            SyncPreconditionError: if the handle was already signalled.
        """
        with self._lock:
            if self._event.is_set():
                raise SyncPreconditionError("Release handle signalled twice")
            self._value = value
            self._event.set()
            waiters, self._waiters = self._waiters, []
        for loop, future in waiters:
            loop.call_soon_threadsafe(_resolve_future, future, value)

    def result(self) -> PhaseLeaveValue:
        """Return the delivered value.

        Raises:
            SyncPreconditionError: if the handle has not been signalled yet.
        """
        if not self._event.is_set():
            raise SyncPreconditionError("Release handle has not been signalled")
        return cast(PhaseLeaveValue, self._value)

    async def wait(self, timeout: float | None = None) -> PhaseLeaveValue:
        """Wait for the release from a coroutine.

        Raises:
            asyncio.TimeoutError: if ``timeout`` elapses first.
        """
        loop = asyncio.get_running_loop()
        with self._lock:
            if self._event.is_set():
                return cast(PhaseLeaveValue, self._value)
            future: asyncio.Future = loop.create_future()
            self._waiters.append((loop, future))
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            with self._lock:
                self._waiters = [w for w in self._waiters if w[1] is not future]

    def wait_blocking(self, timeout: float | None = None) -> PhaseLeaveValue | None:
        """Wait for the release from a thread; None on timeout."""
        if not self._event.wait(timeout):
            return None
        return self._value


def _resolve_future(future: asyncio.Future, value: PhaseLeaveValue) -> None:
    if not future.done():
        future.set_result(value)


# =============================================================================
# State
# =============================================================================


@dataclass(frozen=True)
class TargetPhaseState:
    """Barrier state of one target.

    ``phase`` is the target's phase stack (one segment per entered level);
    ``options_stack`` holds the options of each level, in parallel.
    """

    phase: PhasePath = PhasePath()
    options_stack: tuple[PhaseOptions, ...] = ()
    blocked: ReleaseHandle | None = None
    aborted: bool = False
    guard: bool = False

    @property
    def is_idle(self) -> bool:
        return self.phase.is_root and self.blocked is None and not self.aborted


@dataclass(frozen=True)
class UnblockEntry:
    """A cohort member's state captured when its phase level is popped."""

    handle: ReleaseHandle
    options: PhaseOptions
    aborted: bool
    guard: bool


@dataclass(frozen=True)
class SyncState:
    """Immutable snapshot of the barrier.

    ``unblock`` is non-empty only on the state produced by the transition
    that released a cohort.
    """

    version: int = 0
    target_state: Mapping[str, TargetPhaseState] = field(
        default_factory=lambda: MappingProxyType({})
    )
    unblock: Mapping[str, UnblockEntry] = field(
        default_factory=lambda: MappingProxyType({})
    )

    def phase_of(self, target: str) -> PhasePath:
        """Current phase path of ``target``; the root for unknown targets."""
        state = self.target_state.get(target)
        return state.phase if state is not None else PhasePath.root()

    def state_of(self, target: str) -> TargetPhaseState:
        return self.target_state.get(target, TargetPhaseState())


def _next_state(
    state: SyncState,
    target_state: dict[str, TargetPhaseState],
    unblock: Mapping[str, UnblockEntry] | None = None,
) -> SyncState:
    return SyncState(
        version=state.version + 1,
        target_state=MappingProxyType(target_state),
        unblock=MappingProxyType(dict(unblock or {})),
    )


class _StateRef:
    """Holder for the current SyncState, updated by compare-and-swap."""

    def __init__(self, value: SyncState):
        self._value = value
        self._lock = threading.Lock()

    def get(self) -> SyncState:
        return self._value

    def compare_and_set(self, expected: SyncState, new: SyncState) -> bool:
        with self._lock:
            if self._value is not expected:
                return False
            self._value = new
            return True

    def swap(self, fn: Callable[..., SyncState], *args: Any) -> SyncState:
        """Apply ``fn(state, *args)`` until it installs; return the new state."""
        while True:
            current = self._value
            new = fn(current, *args)
            if self.compare_and_set(current, new):
                return new


# =============================================================================
# Transitions
# =============================================================================


def common_current_phase(state: SyncState, phase: str, targets: Sequence[str]) -> PhasePath:
    """Return the single phase path shared by ``targets``.

    Raises:
        HeterogeneousPhaseError: if the targets are in different phases.
    """
    vectors: list[PhasePath] = []
    for target in targets:
        current = state.phase_of(target)
        if current not in vectors:
            vectors.append(current)
    if len(vectors) > 1:
        raise HeterogeneousPhaseError(phase, targets, vectors)
    return vectors[0] if vectors else PhasePath.root()


def push_phase(
    state: SyncState,
    phase: str,
    targets: Sequence[str],
    options: PhaseOptions,
    guard: bool,
) -> SyncState:
    common_current_phase(state, phase, targets)
    target_state = dict(state.target_state)
    for target in targets:
        current = target_state.get(target, TargetPhaseState())
        target_state[target] = replace(
            current,
            phase=current.phase.child(phase),
            options_stack=current.options_stack + (options,),
            guard=guard,
        )
    return _next_state(state, target_state)


def set_aborted(state: SyncState, target: str) -> SyncState:
    current = state.state_of(target)
    if current.blocked is not None:
        raise SyncPreconditionError(
            f"Cannot abort target {target}: already blocked on {current.phase}",
            target=target,
        )
    target_state = dict(state.target_state)
    target_state[target] = replace(current, aborted=True)
    return _next_state(state, target_state)


def all_blocked(target_state: Mapping[str, TargetPhaseState], phase: PhasePath) -> bool:
    """True when every target under ``phase``'s parent is blocked on ``phase``."""
    parent = phase.parent
    return all(
        s.phase == phase and s.blocked is not None
        for s in target_state.values()
        if parent.is_prefix_of(s.phase)
    )


def unblock_phase(
    target_state: dict[str, TargetPhaseState], phase: PhasePath
) -> dict[str, UnblockEntry]:
    """Pop ``phase`` for every target in its subtree, in place.

    Returns the unblock map of the released cohort.
    """
    unblock: dict[str, UnblockEntry] = {}
    for target, s in list(target_state.items()):
        if not phase.is_prefix_of(s.phase):
            continue
        if s.blocked is None:
            raise SyncPreconditionError(
                f"Unblocking target {target} which is not blocked", target=target
            )
        unblock[target] = UnblockEntry(
            handle=s.blocked,
            options=s.options_stack[-1],
            aborted=s.aborted,
            guard=s.guard,
        )
        popped = TargetPhaseState(
            phase=s.phase.parent,
            options_stack=s.options_stack[:-1],
        )
        if popped.is_idle:
            del target_state[target]
        else:
            target_state[target] = popped
    return unblock


def block_and_release(
    state: SyncState, phase: str | None, target: str, handle: ReleaseHandle
) -> SyncState:
    """Mark ``target`` blocked; pop its level if its cohort is complete."""
    current = state.state_of(target)
    if current.blocked is not None:
        raise SyncPreconditionError(
            f"Target {target} is already blocked on {current.phase}", target=target
        )
    if current.phase.is_root:
        raise SyncPreconditionError(
            f"Target {target} is not in any phase", target=target
        )
    if phase is not None and current.phase.leaf != phase:
        raise SyncPreconditionError(
            f"Target {target} leaving {phase!r} but is in {current.phase}",
            target=target,
        )
    target_state = dict(state.target_state)
    target_state[target] = replace(current, blocked=handle)
    unblock: dict[str, UnblockEntry] = {}
    if all_blocked(target_state, current.phase):
        unblock = unblock_phase(target_state, current.phase)
    return _next_state(state, target_state, unblock)


# =============================================================================
# Release
# =============================================================================


def default_leave_value(unblock: Mapping[str, UnblockEntry]) -> PhaseLeaveValue:
    """Abort the whole cohort if any member aborted, else continue."""
    if any(entry.aborted for entry in unblock.values()):
        return ABORT
    return CONTINUE


def release_targets(unblock: Mapping[str, UnblockEntry]) -> None:
    """Compute each member's leave value and signal its handle.

    Every handle in the cohort is signalled, even when a callback fails;
    a member whose callback failed is released with ABORT. The first
    callback error is raised once all handles have fired.
    """
    values: dict[str, PhaseLeaveValue] = {}
    first_error: Exception | None = None
    try:
        for target, entry in unblock.items():
            try:
                values[target] = _leave_value_for(target, entry, unblock)
            except Exception as e:
                logger.error(f"[PhaseSync] Leave callback failed for {target}: {e}")
                values[target] = ABORT
                if first_error is None:
                    first_error = e
    finally:
        for target, entry in unblock.items():
            if not entry.handle.is_signalled:
                entry.handle.signal(values.get(target, ABORT))
    if first_error is not None:
        raise first_error


def _leave_value_for(
    target: str, entry: UnblockEntry, unblock: Mapping[str, UnblockEntry]
) -> PhaseLeaveValue:
    leave_value_fn = entry.options.leave_value_fn or default_leave_value
    value = leave_value_fn(unblock)
    if not isinstance(value, PhaseLeaveValue):
        raise SyncPreconditionError(
            f"Invalid leave_value_fn return value for {target}: {value!r}",
            target=target,
        )
    if value.state is LeaveState.CONTINUE and entry.guard and entry.options.on_complete_fn:
        entry.options.on_complete_fn()
    return value


# =============================================================================
# Services
# =============================================================================


class PhaseSyncService(ABC):
    """Interface of a phase synchronisation service."""

    @abstractmethod
    def enter_phase(
        self,
        phase: str,
        targets: Sequence[str],
        options: PhaseOptions | None = None,
    ) -> PhaseEntry:
        """Enter ``phase`` for all ``targets`` in lock-step."""

    @abstractmethod
    def leave_phase(self, phase: str | None, target: str, release_handle: ReleaseHandle) -> bool:
        """Block ``target`` on exit; return True if this call released its cohort."""

    @abstractmethod
    def abort_phase(self, phase: str | None, target: str) -> None:
        """Mark ``target`` aborted for its current phase."""

    @abstractmethod
    def dump_state(self) -> SyncState:
        """Snapshot of the internal state, for diagnostics."""


class InMemoryPhaseSyncService(PhaseSyncService):
    """Phase synchronisation within one process.

    One instance serves one converge or lift run.
    """

    def __init__(self) -> None:
        self._state = _StateRef(SyncState())

    def enter_phase(
        self,
        phase: str,
        targets: Sequence[str],
        options: PhaseOptions | None = None,
    ) -> PhaseEntry:
        options = options or DEFAULT_OPTIONS
        targets = list(targets)
        guard = bool(options.guard_fn()) if options.guard_fn is not None else True
        new_state = self._state.swap(push_phase, phase, targets, options, guard)
        previous = new_state.phase_of(targets[0]).parent if targets else PhasePath.root()
        logger.debug(
            f"[PhaseSync] {len(targets)} targets entered {previous.child(phase)} "
            f"(guarded={guard})"
        )
        return PhaseEntry(previous_phase=previous, guarded=guard)

    def leave_phase(self, phase: str | None, target: str, release_handle: ReleaseHandle) -> bool:
        new_state = self._state.swap(block_and_release, phase, target, release_handle)
        if not new_state.unblock:
            logger.debug(f"[PhaseSync] {target} blocked leaving {phase!r}")
            return False
        logger.debug(
            f"[PhaseSync] {target} completed cohort of {len(new_state.unblock)} "
            f"for {phase!r}, releasing"
        )
        release_targets(new_state.unblock)
        return True

    def abort_phase(self, phase: str | None, target: str) -> None:
        self._state.swap(set_aborted, target)
        logger.debug(f"[PhaseSync] {target} aborted {phase!r}")

    def dump_state(self) -> SyncState:
        return self._state.get()
