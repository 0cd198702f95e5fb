"""In-memory provider over a fixed node list.

Useful for existing machines reachable over ssh, and in tests. Creation
allocates ids ``<group>-<n>`` without touching any real infrastructure;
destruction marks nodes terminated.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from nodeconverge.coordination.models import Node
from nodeconverge.providers.base import NodeProvider
from nodeconverge.utils.exceptions import ProviderError

if TYPE_CHECKING:
    from nodeconverge.config.converge_config import AdminUser
    from nodeconverge.coordination.models import GroupSpec

logger = logging.getLogger(__name__)


class NodeListProvider(NodeProvider):
    """Provider backed by a list of nodes held in memory."""

    def __init__(self, nodes: Iterable[Node] = ()):
        self._nodes: dict[str, Node] = {n.id: n for n in nodes}
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return "node-list"

    @property
    def nodes(self) -> list[Node]:
        return list(self._nodes.values())

    async def list_nodes(self) -> list[Node]:
        return list(self._nodes.values())

    def _next_index(self, group_name: str) -> int:
        prefix = f"{group_name}-"
        used = [
            int(node_id[len(prefix):])
            for node_id in self._nodes
            if node_id.startswith(prefix) and node_id[len(prefix):].isdigit()
        ]
        return max(used, default=-1) + 1

    async def create_nodes(
        self,
        group: "GroupSpec",
        admin_user: "AdminUser",
        count: int,
        options: Mapping[str, Any] | None = None,
    ) -> list[Node]:
        options = options or {}
        with self._lock:
            start = self._next_index(group.group_name)
            created = []
            for i in range(start, start + count):
                node = Node(
                    id=f"{group.group_name}-{i}",
                    group_name=group.group_name,
                    hostname=f"{group.group_name}-{i}",
                    primary_ip=options.get("primary_ip"),
                    os_family=group.node_spec.get("os_family"),
                    os_version=group.node_spec.get("os_version"),
                )
                self._nodes[node.id] = node
                created.append(node)
        logger.info(f"[NodeListProvider] Created {count} node(s) for {group.group_name}")
        return created

    async def destroy_nodes(self, nodes: Sequence[Node]) -> bool:
        with self._lock:
            unknown = [n.id for n in nodes if n.id not in self._nodes]
            if unknown:
                raise ProviderError(f"Unknown nodes: {unknown}")
            for node in nodes:
                self._nodes[node.id] = replace(
                    self._nodes[node.id], running=False, terminated=True
                )
        logger.info(f"[NodeListProvider] Destroyed {len(nodes)} node(s)")
        return True
