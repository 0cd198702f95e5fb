"""Exception hierarchy and narrow exception tuples for nodeconverge.

The error taxonomy mirrors how a converge run fails:

- Configuration faults (missing group counts, malformed topology files,
  heterogeneous phase vectors, barrier misuse) are fatal and raised
  immediately. They are never retried.
- Task-level exceptions (a phase could not even run on a target) are
  captured per task and surfaced once all sibling tasks have completed.
- Action-level errors live inside a PhaseResult and are turned into a
  PhaseFailure by the fail-fast gate between phases.
- Create/destroy failures are captured per group and aggregated.

Usage:
    from nodeconverge.utils.exceptions import NETWORK_ERRORS, ProviderError

    try:
        nodes = await provider.list_nodes()
    except NETWORK_ERRORS as e:
        raise ProviderError(f"node listing failed: {e}") from e
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Sequence
from typing import Any

# =============================================================================
# Exception Type Tuples
# =============================================================================

# Network-related exceptions to catch for I/O operations
# Use for: provider HTTP requests, ssh subprocesses
NETWORK_ERRORS: tuple[type[BaseException], ...] = (
    ConnectionError,      # Connection refused, reset, aborted
    TimeoutError,         # Socket/connect timeout
    OSError,              # Low-level I/O errors (includes socket.error)
    asyncio.TimeoutError, # Async operation timeout
)

# JSON/YAML parsing exceptions for data deserialization
PARSE_ERRORS: tuple[type[BaseException], ...] = (
    json.JSONDecodeError,  # Malformed JSON
    KeyError,              # Missing expected key
    TypeError,             # Wrong type in data structure
    ValueError,            # Invalid value format
)


# =============================================================================
# Base
# =============================================================================


class NodeConvergeError(Exception):
    """Base class for all nodeconverge errors."""


# =============================================================================
# Configuration Faults
# =============================================================================


class ConfigurationError(NodeConvergeError):
    """A fatal configuration fault."""


class MissingCountError(ConfigurationError):
    """A group used for reconciliation has no node count."""

    def __init__(self, group_name: str):
        self.group_name = group_name
        super().__init__(f"Node count not specified for group: {group_name}")


class TopologyError(ConfigurationError):
    """A topology document could not be turned into groups and nodes."""


# =============================================================================
# Phase Synchronisation
# =============================================================================


class PhaseSyncError(NodeConvergeError):
    """Base class for barrier errors."""


class HeterogeneousPhaseError(PhaseSyncError):
    """Targets entering a phase together were not in the same phase."""

    def __init__(self, phase: str, targets: Sequence[str], phase_vectors: Sequence[Any]):
        self.phase = phase
        self.targets = list(targets)
        self.phase_vectors = list(phase_vectors)
        super().__init__(
            f"Heterogeneous phases found entering {phase!r}: "
            f"{[str(v) for v in self.phase_vectors]}"
        )


class SyncPreconditionError(PhaseSyncError):
    """The barrier was used in a way that breaks its state machine.

    Raised for re-blocking a blocked target, aborting a blocked target,
    unblocking a target that is not blocked, signalling a release handle
    twice, or a leave-value function returning an invalid value. These are
    programming errors, not recoverable conditions.
    """

    def __init__(self, message: str, target: str | None = None):
        self.target = target
        super().__init__(message)


class BarrierTimeoutError(PhaseSyncError):
    """A target waited longer than allowed for its cohort to arrive."""

    def __init__(self, phase: str, target: str, timeout_seconds: float):
        self.phase = phase
        self.target = target
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Target {target} timed out after {timeout_seconds}s waiting on phase {phase!r}"
        )


# =============================================================================
# Execution Failures
# =============================================================================


class PhaseFailure(NodeConvergeError):
    """One or more actions of a phase reported errors."""

    def __init__(self, message: str, errors: Sequence[Any] = ()):
        self.errors = list(errors)
        super().__init__(message)


class ConvergeFailure(NodeConvergeError):
    """A converge or lift run stopped at a given stage."""

    def __init__(
        self,
        stage: Any,
        message: str,
        errors: Sequence[Any] = (),
        cause: BaseException | None = None,
    ):
        self.stage = stage
        self.errors = list(errors)
        self.cause = cause
        # Partial result of the run, attached by the caller that raises it
        self.result: Any = None
        stage_name = getattr(stage, "value", stage)
        super().__init__(f"[{stage_name}] {message}")


# =============================================================================
# Node Lifecycle
# =============================================================================


class ProviderError(NodeConvergeError):
    """A node provider API call failed."""

    def __init__(self, message: str, status: int | None = None):
        self.status = status
        super().__init__(message)


class NodeCreationError(ProviderError):
    """Node creation failed, possibly after creating some of the nodes."""

    def __init__(self, message: str, nodes: Sequence[Any] = ()):
        self.nodes = list(nodes)
        super().__init__(message)


class GroupOperationError(NodeConvergeError):
    """A create or destroy operation failed for one group."""

    def __init__(self, group_name: str, operation: str, cause: BaseException):
        self.group_name = group_name
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation} failed for group {group_name}: {cause}")


class CombinedError(NodeConvergeError):
    """Several independent operations failed."""

    def __init__(self, errors: Sequence[BaseException]):
        self.errors = list(errors)
        super().__init__(
            f"{len(self.errors)} operations failed: "
            + "; ".join(str(e) for e in self.errors)
        )


def combine_exceptions(errors: Sequence[BaseException]) -> BaseException | None:
    """Fold a sequence of errors into a single error, or None when empty."""
    if not errors:
        return None
    if len(errors) == 1:
        return errors[0]
    return CombinedError(errors)
