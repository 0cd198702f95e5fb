"""Data model for converge runs.

Key concepts:
- Node: a compute node as reported by a node provider
- GroupSpec: the desired state of a named set of nodes
- Target: a node bound to its resolved group (or a group-level target)
- PhaseDefinition: a group's implementation of one phase
- PhaseResult: the outcome of running one phase on one target

Everything here is immutable. New targets and results are derived, never
mutated in place.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from nodeconverge.coordination.phase_sync import PhaseLeaveValue, PhaseOptions

DEFAULT_PHASES: tuple[str, ...] = ("configure",)


def _frozen_mapping(value: Mapping | None) -> Mapping:
    return MappingProxyType(dict(value or {}))


class TargetType(str, Enum):
    """Whether a target stands for a node or for a whole group."""

    NODE = "node"
    GROUP = "group"


# =============================================================================
# Nodes
# =============================================================================


@dataclass(frozen=True)
class Node:
    """A compute node as reported by a node provider."""

    id: str
    group_name: str
    primary_ip: str | None = None
    private_ip: str | None = None
    ssh_port: int = 22
    hostname: str | None = None
    os_family: str | None = None
    os_version: str | None = None
    running: bool = True
    terminated: bool = False
    tags: Mapping[str, str] = field(default_factory=dict, compare=False, hash=False)

    @property
    def ssh_host(self) -> str | None:
        """Address used to reach the node: primary, then private IP, then hostname."""
        return self.primary_ip or self.private_ip or self.hostname

    def __str__(self) -> str:
        return f"{self.id} ({self.group_name})"


# =============================================================================
# Phases
# =============================================================================


@dataclass(frozen=True)
class CommandPlan:
    """Shell commands run in order on a node by the ssh executor."""

    commands: tuple[str, ...] = ()

    @classmethod
    def of(cls, *commands: str) -> "CommandPlan":
        return cls(tuple(commands))


@dataclass(frozen=True)
class PhaseDefinition:
    """A group's implementation of one phase.

    Attributes:
        name: Phase name, e.g. "configure".
        plan: Opaque to the core, interpreted by the phase executor (a
            CommandPlan for ssh, a callable for local execution).
        middleware: Optional phase middleware; targets sharing the same
            middleware are dispatched through it together.
        synchronised: When true, targets running this phase meet at a
            barrier on exit.
        sync_options: Options for the barrier.
    """

    name: str
    plan: Any = None
    middleware: Callable | None = None
    synchronised: bool = False
    sync_options: "PhaseOptions | None" = None


def normalize_phase(name: str, value: Any) -> PhaseDefinition:
    """Turn a plain callable, CommandPlan or PhaseDefinition into a PhaseDefinition."""
    if isinstance(value, PhaseDefinition):
        if value.name != name:
            return replace(value, name=name)
        return value
    if isinstance(value, (list, tuple)) and all(isinstance(c, str) for c in value):
        return PhaseDefinition(name=name, plan=CommandPlan(tuple(value)))
    return PhaseDefinition(name=name, plan=value)


def normalize_phases(phases: Mapping[str, Any] | None) -> Mapping[str, PhaseDefinition]:
    return _frozen_mapping(
        {name: normalize_phase(name, value) for name, value in (phases or {}).items()}
    )


# =============================================================================
# Groups
# =============================================================================


@dataclass(frozen=True)
class GroupSpec:
    """Desired state of a named set of nodes.

    Equality and hashing use ``(group_name, count)`` only, so group specs can
    key result maps.
    """

    group_name: str
    count: int | None = None
    node_filter: Callable[[Node], bool] | None = field(default=None, compare=False)
    phases: Mapping[str, PhaseDefinition] = field(default_factory=dict, compare=False)
    default_phases: tuple[str, ...] = field(default=DEFAULT_PHASES, compare=False)
    roles: frozenset[str] = field(default_factory=frozenset, compare=False)
    node_spec: Mapping[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "phases", normalize_phases(self.phases))
        object.__setattr__(self, "default_phases", tuple(self.default_phases))
        object.__setattr__(self, "roles", frozenset(self.roles))
        object.__setattr__(self, "node_spec", _frozen_mapping(self.node_spec))

    def __str__(self) -> str:
        return f"{self.group_name}[{self.count}]"


# =============================================================================
# Targets
# =============================================================================


@dataclass(frozen=True, eq=False)
class Target:
    """A node bound to its resolved group, or a group-level target.

    Group-level targets have no node; they run the create-group and
    destroy-group phases once per group.
    """

    group_name: str
    node: Node | None = None
    phases: Mapping[str, PhaseDefinition] = field(default_factory=dict)
    default_phases: tuple[str, ...] = DEFAULT_PHASES
    roles: frozenset[str] = field(default_factory=frozenset)
    metadata: Mapping[str, Any] = field(default_factory=dict)
    target_type: TargetType = TargetType.NODE

    def __post_init__(self) -> None:
        object.__setattr__(self, "phases", normalize_phases(self.phases))
        object.__setattr__(self, "default_phases", tuple(self.default_phases))
        object.__setattr__(self, "roles", frozenset(self.roles))
        object.__setattr__(self, "metadata", _frozen_mapping(self.metadata))

    @classmethod
    def from_group(cls, group: GroupSpec, node: Node) -> "Target":
        """Bind ``node`` to ``group``."""
        return cls(
            group_name=group.group_name,
            node=node,
            phases=group.phases,
            default_phases=group.default_phases,
            roles=group.roles,
        )

    @classmethod
    def for_group(cls, group: GroupSpec) -> "Target":
        """Group-level target for ``group``."""
        return cls(
            group_name=group.group_name,
            phases=group.phases,
            default_phases=group.default_phases,
            roles=group.roles,
            target_type=TargetType.GROUP,
        )

    @property
    def target_id(self) -> str:
        if self.node is not None:
            return self.node.id
        return f"group:{self.group_name}"

    def phase_definition(self, name: str) -> PhaseDefinition | None:
        return self.phases.get(name)

    def __repr__(self) -> str:
        return f"Target({self.target_id!r}, group={self.group_name!r})"


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class ActionResult:
    """Outcome of one action inside a phase."""

    action: str
    exit_code: int | None = None
    out: str = ""
    err: str = ""
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass(frozen=True)
class PhaseResult:
    """Outcome of running one phase on one target."""

    target: Target
    phase: str | None = None
    return_value: Any = None
    action_results: tuple[ActionResult, ...] = ()
    error: str | None = None
    leave_value: "PhaseLeaveValue | None" = None
    skipped: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "action_results", tuple(self.action_results))

    @property
    def errors(self) -> list[str]:
        """Action-level errors, plus the result's own error when set."""
        errors = [a.error for a in self.action_results if a.error is not None]
        if self.error is not None:
            errors.append(self.error)
        return errors

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def with_phase(self, phase: str) -> "PhaseResult":
        return replace(self, phase=phase)

    def with_leave_value(self, leave_value: "PhaseLeaveValue") -> "PhaseResult":
        return replace(self, leave_value=leave_value)


def results_have_errors(results: Sequence[PhaseResult]) -> bool:
    return any(r.has_errors for r in results)


def collect_errors(results: Sequence[PhaseResult]) -> list[tuple[str, str | None, str]]:
    """``(target_id, phase, error)`` for every error in ``results``."""
    return [
        (r.target.target_id, r.phase, error)
        for r in results
        for error in r.errors
    ]


@dataclass(frozen=True)
class NodeRemovalResult:
    """Outcome of destroying the selected nodes of one group."""

    group_name: str
    node_ids: tuple[str, ...] = ()
    all: bool = False
