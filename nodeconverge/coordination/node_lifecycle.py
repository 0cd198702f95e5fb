"""Create and destroy nodes through a node provider.

Groups are processed concurrently. A failure in one group never stops the
others: every group runs to completion, partial successes are kept, and the
errors are handed back alongside them.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from nodeconverge.coordination.models import GroupSpec, NodeRemovalResult, Target
from nodeconverge.coordination.reconciler import GroupRemoval
from nodeconverge.utils.async_utils import gather_outcomes
from nodeconverge.utils.exceptions import (
    GroupOperationError,
    NodeCreationError,
    combine_exceptions,
)

if TYPE_CHECKING:
    from nodeconverge.config.converge_config import AdminUser
    from nodeconverge.providers.base import NodeProvider

logger = logging.getLogger(__name__)


class NodeLifecycleDriver:
    """Issues create/destroy requests for reconciliation deltas."""

    def __init__(
        self,
        provider: "NodeProvider",
        admin_user: "AdminUser",
        create_options: Mapping[str, Any] | None = None,
    ):
        self.provider = provider
        self.admin_user = admin_user
        self.create_options = dict(create_options or {})

    async def _create_for_group(self, group: GroupSpec, count: int) -> list[Target]:
        logger.info(f"[NodeLifecycle] Creating {count} node(s) for group {group.group_name}")
        try:
            nodes = await self.provider.create_nodes(
                group, self.admin_user, count, self.create_options
            )
        except NodeCreationError as e:
            logger.warning(
                f"[NodeLifecycle] Node creation failed for {group.group_name} "
                f"after {len(e.nodes)} node(s): {e}"
            )
            raise _PartialCreation(
                [Target.from_group(group, n) for n in e.nodes],
                GroupOperationError(group.group_name, "create", e),
            ) from e
        except Exception as e:
            logger.warning(f"[NodeLifecycle] Node creation failed for {group.group_name}: {e}")
            raise GroupOperationError(group.group_name, "create", e) from e
        return [Target.from_group(group, n) for n in nodes]

    async def create_group_nodes(
        self, group_counts: Mapping[GroupSpec, int]
    ) -> tuple[list[Target], BaseException | None]:
        """Create nodes for every group and bind them as targets.

        Returns:
            The targets created, including partial results from failed
            groups, and the first captured error.
        """
        groups = list(group_counts.items())
        outcomes = await gather_outcomes(
            self._create_for_group(group, count) for group, count in groups
        )
        targets: list[Target] = []
        errors: list[BaseException] = []
        for outcome in outcomes:
            if outcome.ok:
                targets.extend(outcome.value)
            elif isinstance(outcome.error, _PartialCreation):
                targets.extend(outcome.error.targets)
                errors.append(outcome.error.error)
            else:
                errors.append(outcome.error)
        logger.debug(
            f"[NodeLifecycle] Created {len(targets)} target(s) across {len(groups)} group(s), "
            f"{len(errors)} failure(s)"
        )
        return targets, errors[0] if errors else None

    async def _remove_for_group(
        self, group: GroupSpec, removal: GroupRemoval
    ) -> NodeRemovalResult:
        nodes = [t.node for t in removal.targets if t.node is not None]
        logger.info(
            f"[NodeLifecycle] Removing {len(nodes)} node(s) from group {group.group_name}"
            + (" (all)" if removal.all else "")
        )
        try:
            await self.provider.destroy_nodes(nodes)
        except Exception as e:
            logger.warning(f"[NodeLifecycle] Node removal failed for {group.group_name}: {e}")
            raise GroupOperationError(group.group_name, "destroy", e) from e
        return NodeRemovalResult(
            group_name=group.group_name,
            node_ids=tuple(n.id for n in nodes),
            all=removal.all,
        )

    async def remove_group_nodes(
        self, group_removals: Mapping[GroupSpec, GroupRemoval]
    ) -> tuple[list[NodeRemovalResult], BaseException | None]:
        """Destroy the selected nodes of every group.

        Returns:
            Results for the groups that succeeded, and a combined error for
            the ones that failed.
        """
        outcomes = await gather_outcomes(
            self._remove_for_group(group, removal)
            for group, removal in group_removals.items()
        )
        results = [o.value for o in outcomes if o.ok]
        errors = [o.error for o in outcomes if not o.ok]
        return results, combine_exceptions(errors)


class _PartialCreation(Exception):
    """Carries the targets a failed group creation managed to produce."""

    def __init__(self, targets: list[Target], error: GroupOperationError):
        self.targets = targets
        self.error = error
        super().__init__(str(error))
