"""Node-count reconciliation.

Diffs the desired size of each group against the targets that currently
belong to it, and decides which groups and nodes to create or remove. All
functions here are pure; nothing talks to a provider.

Usage:
    deltas = group_deltas(targets, groups)
    removals = nodes_to_remove(targets, deltas)
    additions = nodes_to_add(deltas)
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from nodeconverge.coordination.models import GroupSpec, Node, Target
from nodeconverge.utils.exceptions import MissingCountError
from nodeconverge.utils.ordering import distinct, total_order_merge

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GroupDelta:
    """Actual versus desired size of one group."""

    group: GroupSpec
    actual: int
    target: int

    @property
    def delta(self) -> int:
        return self.target - self.actual


@dataclass(frozen=True)
class GroupRemoval:
    """Targets selected for removal from one group."""

    targets: tuple[Target, ...]
    all: bool


def node_in_group(node: Node | None, group: GroupSpec) -> bool:
    """Membership predicate: the group's node filter, else group-name equality."""
    if node is None:
        return False
    if group.node_filter is not None:
        return bool(group.node_filter(node))
    return node.group_name == group.group_name


def group_deltas(targets: Sequence[Target], groups: Sequence[GroupSpec]) -> list[GroupDelta]:
    """Compute the delta of every group.

    Raises:
        MissingCountError: if a group has no count.
    """
    deltas = []
    for group in groups:
        if group.count is None:
            raise MissingCountError(group.group_name)
        actual = sum(1 for t in targets if node_in_group(t.node, group))
        deltas.append(GroupDelta(group=group, actual=actual, target=group.count))
    logger.debug(
        "[Reconciler] deltas: "
        + ", ".join(f"{d.group.group_name}={d.actual}->{d.target}" for d in deltas)
    )
    return deltas


def groups_to_create(deltas: Iterable[GroupDelta]) -> list[GroupSpec]:
    """Groups going from no members to some."""
    return [d.group for d in deltas if d.actual == 0 and d.target > 0]


def groups_to_remove(deltas: Iterable[GroupDelta]) -> list[GroupSpec]:
    """Groups going from some members to none."""
    return [d.group for d in deltas if d.target == 0 and d.actual > 0]


def nodes_to_remove(
    targets: Sequence[Target], deltas: Iterable[GroupDelta]
) -> dict[GroupSpec, GroupRemoval]:
    """Select targets to remove from each shrinking group.

    The first ``-delta`` member targets are taken in input order, so the
    selection is deterministic for a given target list.
    """
    removals: dict[GroupSpec, GroupRemoval] = {}
    for d in deltas:
        if d.delta >= 0:
            continue
        members = [t for t in targets if node_in_group(t.node, d.group)]
        removals[d.group] = GroupRemoval(
            targets=tuple(members[: -d.delta]),
            all=d.target == 0,
        )
    return removals


def nodes_to_add(deltas: Iterable[GroupDelta]) -> dict[GroupSpec, int]:
    """Number of nodes to create for each growing group."""
    return {d.group: d.delta for d in deltas if d.delta > 0}


def service_state(nodes: Iterable[Node], groups: Sequence[GroupSpec]) -> list[Target]:
    """Bind live nodes to the groups they belong to.

    Terminated nodes are dropped. A node matching several groups gets a
    single target merged from all of them.
    """
    targets = []
    for node in nodes:
        if node.terminated:
            continue
        matching = [g for g in groups if node_in_group(node, g)]
        if not matching:
            continue
        if len(matching) == 1:
            targets.append(Target.from_group(matching[0], node))
            continue
        targets.append(_merged_target(node, matching))
    return targets


def _merged_target(node: Node, groups: Sequence[GroupSpec]) -> Target:
    phases: dict = {}
    roles: set[str] = set()
    for group in groups:
        phases.update(group.phases)
        roles.update(group.roles)
    return Target(
        group_name=groups[0].group_name,
        node=node,
        phases=phases,
        default_phases=tuple(total_order_merge(*(g.default_phases for g in groups))),
        roles=frozenset(roles),
        metadata={"groups": tuple(g.group_name for g in groups)},
    )


def service_groups(nodes: Iterable[Node]) -> list[GroupSpec]:
    """One bare group per group name among live nodes."""
    names = distinct(n.group_name for n in nodes if not n.terminated)
    return [GroupSpec(group_name=name) for name in names]
