"""Topology files: groups and nodes as YAML.

Example:
    groups:
      - name: web
        count: 3
        roles: [frontend]
        default_phases: [configure]
        phases:
          bootstrap:
            commands: ["apt-get update"]
          configure:
            commands: ["systemctl restart nginx"]
            synchronised: true
          smoke-test: ["curl -fs localhost"]   # shorthand for commands
    nodes:
      - id: web-0
        group: web
        ip: 10.0.0.10

A phase may select its targets by node flag with one of ``only_flagged``,
``only_unflagged`` or ``one_shot_flag`` naming the flag.

The ``nodes`` list feeds NodeListProvider; it can be omitted when a cloud
provider supplies the nodes.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from nodeconverge.coordination.middleware import (
    execute_on_flagged,
    execute_on_unflagged,
    execute_one_shot_flag,
)
from nodeconverge.coordination.models import (
    DEFAULT_PHASES,
    CommandPlan,
    GroupSpec,
    Node,
    PhaseDefinition,
)
from nodeconverge.utils.exceptions import TopologyError

logger = logging.getLogger(__name__)

_FLAG_MIDDLEWARE = {
    "only_flagged": execute_on_flagged,
    "only_unflagged": execute_on_unflagged,
    "one_shot_flag": execute_one_shot_flag,
}


@dataclass
class Topology:
    """Groups and nodes loaded from a topology file."""

    groups: list[GroupSpec] = field(default_factory=list)
    nodes: list[Node] = field(default_factory=list)

    def group(self, name: str) -> GroupSpec | None:
        for group in self.groups:
            if group.group_name == name:
                return group
        return None


def _require(mapping: Any, key: str, where: str) -> Any:
    if not isinstance(mapping, Mapping):
        raise TopologyError(f"{where}: expected a mapping, got {type(mapping).__name__}")
    if key not in mapping:
        raise TopologyError(f"{where}: missing required key {key!r}")
    return mapping[key]


def _string_list(value: Any, where: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise TopologyError(f"{where}: expected a list of strings")
    return value


def parse_phase(name: str, raw: Any, where: str) -> PhaseDefinition:
    """Build a PhaseDefinition from its YAML form."""
    where = f"{where}.phases.{name}"
    if isinstance(raw, list):
        return PhaseDefinition(name=name, plan=CommandPlan(tuple(_string_list(raw, where))))
    if not isinstance(raw, Mapping):
        raise TopologyError(f"{where}: expected a mapping or a list of commands")

    commands = _string_list(raw.get("commands"), f"{where}.commands")
    middleware = None
    selectors = [k for k in _FLAG_MIDDLEWARE if k in raw]
    if len(selectors) > 1:
        raise TopologyError(f"{where}: only one of {selectors} may be given")
    if selectors:
        flag = raw[selectors[0]]
        if not isinstance(flag, str):
            raise TopologyError(f"{where}.{selectors[0]}: expected a flag name")
        middleware = _FLAG_MIDDLEWARE[selectors[0]](flag)

    synchronised = raw.get("synchronised", False)
    if not isinstance(synchronised, bool):
        raise TopologyError(f"{where}.synchronised: expected true or false")
    return PhaseDefinition(
        name=name,
        plan=CommandPlan(tuple(commands)),
        middleware=middleware,
        synchronised=synchronised,
    )


def parse_group(raw: Any, index: int) -> GroupSpec:
    where = f"groups[{index}]"
    name = _require(raw, "name", where)
    if not isinstance(name, str) or not name:
        raise TopologyError(f"{where}.name: expected a non-empty string")
    where = f"groups[{name}]"

    count = raw.get("count")
    if count is not None and (not isinstance(count, int) or isinstance(count, bool) or count < 0):
        raise TopologyError(f"{where}.count: expected a non-negative integer")

    phases = raw.get("phases") or {}
    if not isinstance(phases, Mapping):
        raise TopologyError(f"{where}.phases: expected a mapping of phase names")

    node_spec = raw.get("node_spec") or {}
    if not isinstance(node_spec, Mapping):
        raise TopologyError(f"{where}.node_spec: expected a mapping")

    default_phases = raw.get("default_phases")
    return GroupSpec(
        group_name=name,
        count=count,
        phases={str(k): parse_phase(str(k), v, where) for k, v in phases.items()},
        default_phases=(
            tuple(_string_list(default_phases, f"{where}.default_phases"))
            if default_phases is not None
            else DEFAULT_PHASES
        ),
        roles=frozenset(_string_list(raw.get("roles"), f"{where}.roles")),
        node_spec=node_spec,
    )


def parse_node(raw: Any, index: int) -> Node:
    where = f"nodes[{index}]"
    node_id = _require(raw, "id", where)
    group = _require(raw, "group", where)
    tags = raw.get("tags") or {}
    if not isinstance(tags, Mapping):
        raise TopologyError(f"{where}.tags: expected a mapping")
    try:
        ssh_port = int(raw.get("port", 22))
    except (TypeError, ValueError) as e:
        raise TopologyError(f"{where}.port: {e}") from e
    return Node(
        id=str(node_id),
        group_name=str(group),
        primary_ip=raw.get("ip"),
        private_ip=raw.get("private_ip"),
        ssh_port=ssh_port,
        hostname=raw.get("hostname"),
        os_family=raw.get("os_family"),
        os_version=raw.get("os_version"),
        tags={str(k): str(v) for k, v in tags.items()},
    )


def parse_topology(document: Any) -> Topology:
    """Build a Topology from an already-parsed document.

    Raises:
        TopologyError: if the document is malformed.
    """
    if document is None:
        return Topology()
    if not isinstance(document, Mapping):
        raise TopologyError("Topology document must be a mapping")

    raw_groups = document.get("groups") or []
    raw_nodes = document.get("nodes") or []
    if not isinstance(raw_groups, list):
        raise TopologyError("groups: expected a list")
    if not isinstance(raw_nodes, list):
        raise TopologyError("nodes: expected a list")

    groups = [parse_group(raw, i) for i, raw in enumerate(raw_groups)]
    names = [g.group_name for g in groups]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise TopologyError(f"Duplicate group names: {duplicates}")

    return Topology(
        groups=groups,
        nodes=[parse_node(raw, i) for i, raw in enumerate(raw_nodes)],
    )


def load_topology(path: str | Path) -> Topology:
    """Load a topology YAML file.

    Raises:
        TopologyError: if the file is missing, is not valid YAML, or is malformed.
    """
    path = Path(path)
    try:
        with open(path) as f:
            document = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise TopologyError(f"Topology file not found: {path}") from e
    except yaml.YAMLError as e:
        raise TopologyError(f"Invalid YAML in {path}: {e}") from e

    topology = parse_topology(document)
    logger.debug(
        f"Loaded topology from {path}: {len(topology.groups)} group(s), "
        f"{len(topology.nodes)} node(s)"
    )
    return topology
