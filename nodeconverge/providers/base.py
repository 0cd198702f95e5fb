"""Node provider interface.

A node provider lists, creates and destroys compute nodes. The converge
engine only talks to providers through this interface; cloud specifics live
in the subclasses.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any

from nodeconverge.coordination.models import Node

if TYPE_CHECKING:
    from nodeconverge.config.converge_config import AdminUser
    from nodeconverge.coordination.models import GroupSpec


class NodeProvider(ABC):
    """Abstract base class for node providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable provider name."""

    @abstractmethod
    async def list_nodes(self) -> list[Node]:
        """Return every node the provider knows about, terminated ones included."""

    @abstractmethod
    async def create_nodes(
        self,
        group: "GroupSpec",
        admin_user: "AdminUser",
        count: int,
        options: Mapping[str, Any] | None = None,
    ) -> list[Node]:
        """Create ``count`` nodes for ``group``.

        Raises:
            NodeCreationError: on failure, carrying any nodes that were
                created before the failure.
        """

    @abstractmethod
    async def destroy_nodes(self, nodes: Sequence[Node]) -> bool:
        """Destroy ``nodes``.

        Raises:
            ProviderError: if the provider rejects the request.
        """

    async def close(self) -> None:
        """Release provider resources (HTTP sessions etc.)."""
