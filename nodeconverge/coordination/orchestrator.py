"""Converge orchestrator: the top-level control loop.

A converge run moves the node population towards the declared group counts
and then configures the result:

    destroy-server -> remove-group-nodes -> destroy-group -> create-group
    -> create-group-nodes -> settings -> bootstrap + phases

Each stage runs only if the previous one produced neither a task exception
nor an action error. The run stops at the first failure and returns the
partial result with a ConvergeFailure naming the stage.

A lift run skips the count adjustment: it runs settings, then the requested
phases, on the nodes that already exist.

Each run gets a fresh InMemoryPhaseSyncService. Node flags (used by the
one-shot bootstrap middleware) live as long as the orchestrator.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING

from nodeconverge.config.converge_config import AdminUser, ConvergeConfig
from nodeconverge.coordination.executor import PhaseExecutor
from nodeconverge.coordination.middleware import NodeFlags, execute_one_shot_flag
from nodeconverge.coordination.models import (
    GroupSpec,
    NodeRemovalResult,
    PhaseResult,
    Target,
    collect_errors,
    results_have_errors,
)
from nodeconverge.coordination.node_lifecycle import NodeLifecycleDriver
from nodeconverge.coordination.phase_sync import InMemoryPhaseSyncService
from nodeconverge.coordination.pipeline import (
    PhaseExecutionPipeline,
    PostPhaseFn,
    default_phases,
)
from nodeconverge.coordination.reconciler import (
    group_deltas,
    groups_to_create,
    groups_to_remove,
    nodes_to_add,
    nodes_to_remove,
    service_state,
)
from nodeconverge.utils.exceptions import ConfigurationError, ConvergeFailure
from nodeconverge.utils.ordering import distinct, total_order_merge

if TYPE_CHECKING:
    from nodeconverge.providers.base import NodeProvider

logger = logging.getLogger(__name__)


class ConvergeStage(str, Enum):
    """Stages of a converge or lift run, in execution order."""

    DESTROY_SERVER = "destroy-server"
    REMOVE_GROUP_NODES = "remove-group-nodes"
    DESTROY_GROUP = "destroy-group"
    CREATE_GROUP = "create-group"
    CREATE_GROUP_NODES = "create-group-nodes"
    SETTINGS = "settings"
    PHASES = "phases"


@dataclass
class ConvergeResult:
    """Outcome of a converge or lift run.

    Attributes:
        results: Phase results of every stage that ran, in order.
        new_targets: Targets for the nodes created by this run.
        removed: Nodes destroyed by this run, per group.
        targets: Targets the configuration phases ran on.
        error: The failure that stopped the run, if any.
    """

    results: list[PhaseResult] = field(default_factory=list)
    new_targets: list[Target] = field(default_factory=list)
    removed: list[NodeRemovalResult] = field(default_factory=list)
    targets: list[Target] = field(default_factory=list)
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def errors(self) -> list[tuple[str, str | None, str]]:
        return collect_errors(self.results)


def _stage_error(
    stage: ConvergeStage,
    results: Sequence[PhaseResult],
    exception: BaseException | None,
) -> ConvergeFailure | None:
    """The failure for a phase stage, or None when it succeeded."""
    if exception is not None:
        return ConvergeFailure(
            stage, f"{stage.value} failed: {exception}", cause=exception
        )
    if results_have_errors(results):
        errors = collect_errors(results)
        return ConvergeFailure(stage, f"{stage.value} phase failed", errors=errors)
    return None


class ConvergeOrchestrator:
    """Composes reconciliation, node lifecycle and phase execution.

    Example:
        orchestrator = ConvergeOrchestrator(provider, SshPhaseExecutor(admin_user))
        result = await orchestrator.converge([GroupSpec("web", count=3, phases=...)])
        if not result.ok:
            logger.error(f"converge failed: {result.error}")
    """

    def __init__(
        self,
        provider: "NodeProvider | None",
        executor: PhaseExecutor,
        config: ConvergeConfig | None = None,
        admin_user: AdminUser | None = None,
        flags: NodeFlags | None = None,
    ):
        self.provider = provider
        self.executor = executor
        self.config = config or ConvergeConfig()
        self.admin_user = admin_user or AdminUser.from_env()
        self.flags = flags or NodeFlags()

    def new_pipeline(self) -> PhaseExecutionPipeline:
        """A pipeline with a fresh sync service, for one run."""
        return PhaseExecutionPipeline(
            self.executor,
            sync_service=InMemoryPhaseSyncService(),
            config=self.config,
            flags=self.flags,
        )

    async def service_targets(self, groups: Sequence[GroupSpec]) -> list[Target]:
        """Targets for the provider's live nodes that belong to ``groups``."""
        if self.provider is None:
            return []
        nodes = await self.provider.list_nodes()
        targets = service_state(nodes, groups)
        logger.debug(
            f"[Orchestrator] {len(targets)} existing target(s) from {len(nodes)} node(s)"
        )
        return targets

    def _with_bootstrap_middleware(self, targets: Sequence[Target]) -> list[Target]:
        """Run bootstrap only once per node unless a target brings its own middleware."""
        phase = self.config.bootstrap_phase
        middleware = execute_one_shot_flag(self.config.bootstrap_flag)
        adjusted = []
        for target in targets:
            definition = target.phase_definition(phase)
            if definition is None or definition.middleware is not None:
                adjusted.append(target)
                continue
            phases = dict(target.phases)
            phases[phase] = replace(definition, middleware=middleware)
            adjusted.append(replace(target, phases=phases))
        return adjusted

    # -------------------------------------------------------------------------
    # Count adjustment
    # -------------------------------------------------------------------------

    async def adjust_node_counts(
        self,
        groups: Sequence[GroupSpec],
        targets: Sequence[Target],
        pipeline: PhaseExecutionPipeline,
    ) -> ConvergeResult:
        """Create and destroy nodes until every group has its declared count."""
        if self.provider is None:
            raise ConfigurationError("Adjusting node counts requires a node provider")

        deltas = group_deltas(targets, groups)
        removals = nodes_to_remove(targets, deltas)
        additions = nodes_to_add(deltas)
        driver = NodeLifecycleDriver(self.provider, self.admin_user)
        result = ConvergeResult()

        doomed = [t for removal in removals.values() for t in removal.targets]
        results, exception = await pipeline.execute_phase(
            ConvergeStage.DESTROY_SERVER.value, doomed
        )
        result.results.extend(results)
        result.error = _stage_error(ConvergeStage.DESTROY_SERVER, results, exception)
        if result.error is not None:
            return result

        removed, exception = await driver.remove_group_nodes(removals)
        result.removed = removed
        if exception is not None:
            result.error = ConvergeFailure(
                ConvergeStage.REMOVE_GROUP_NODES,
                f"node removal failed: {exception}",
                cause=exception,
            )
            return result

        for stage, stage_groups in (
            (ConvergeStage.DESTROY_GROUP, groups_to_remove(deltas)),
            (ConvergeStage.CREATE_GROUP, groups_to_create(deltas)),
        ):
            results, exception = await pipeline.execute_phase(
                stage.value, [Target.for_group(g) for g in stage_groups]
            )
            result.results.extend(results)
            result.error = _stage_error(stage, results, exception)
            if result.error is not None:
                return result

        new_targets, exception = await driver.create_group_nodes(additions)
        result.new_targets = new_targets
        if exception is not None:
            result.error = ConvergeFailure(
                ConvergeStage.CREATE_GROUP_NODES,
                f"node creation failed: {exception}",
                cause=exception,
            )
        return result

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def _resolve_phases(
        self,
        phases: Sequence[str] | None,
        groups: Sequence[GroupSpec],
        targets: Sequence[Target],
    ) -> list[str]:
        if phases:
            return list(phases)
        return total_order_merge(
            *(g.default_phases for g in groups), default_phases(targets)
        )

    async def _run_configuration(
        self,
        result: ConvergeResult,
        pipeline: PhaseExecutionPipeline,
        phases: Sequence[str],
        targets: Sequence[Target],
        post_phase_fn: PostPhaseFn | None,
    ) -> ConvergeResult:
        """Run settings, then ``phases``, recording into ``result``."""
        settings = self.config.settings_phase
        result.targets = list(targets)

        results, exception = await pipeline.run_phases([settings], targets, post_phase_fn)
        result.results.extend(results)
        result.error = _stage_error(ConvergeStage.SETTINGS, results, exception)
        if result.error is not None:
            return result

        phases = [p for p in distinct(phases) if p != settings]
        logger.debug(f"[Orchestrator] Running phases {phases} on {len(targets)} target(s)")
        results, exception = await pipeline.run_phases(phases, targets, post_phase_fn)
        result.results.extend(results)
        result.error = _stage_error(ConvergeStage.PHASES, results, exception)
        return result

    async def converge(
        self,
        groups: Sequence[GroupSpec],
        phases: Sequence[str] | None = None,
        targets: Sequence[Target] = (),
        post_phase_fn: PostPhaseFn | None = None,
    ) -> ConvergeResult:
        """Adjust node counts to ``groups``, then configure every node.

        Bootstrap runs on nodes that have not been bootstrapped yet, then
        ``phases`` (default: the groups' merged default phases) run on the
        new nodes and on the existing nodes that were not removed.
        """
        if self.provider is None:
            raise ConfigurationError("No source of nodes: converge requires a node provider")
        groups = list(groups)
        logger.info(
            f"[Orchestrator] Converging groups "
            f"{[f'{g.group_name}={g.count}' for g in groups]}"
        )
        pipeline = self.new_pipeline()
        existing = await self.service_targets(groups) + list(targets)
        run_phases = self._resolve_phases(phases, groups, existing)

        result = await self.adjust_node_counts(groups, existing, pipeline)
        if result.error is not None:
            logger.warning(f"[Orchestrator] Converge stopped: {result.error}")
            return result

        removed_ids = {node_id for r in result.removed for node_id in r.node_ids}
        survivors = [
            t for t in existing
            if t.node is None or t.node.id not in removed_ids
        ]
        configure = self._with_bootstrap_middleware(result.new_targets + survivors)
        await self._run_configuration(
            result,
            pipeline,
            [self.config.bootstrap_phase] + run_phases,
            configure,
            post_phase_fn,
        )
        if result.error is not None:
            logger.warning(f"[Orchestrator] Converge stopped: {result.error}")
        else:
            logger.info(
                f"[Orchestrator] Converge complete: {len(result.new_targets)} created, "
                f"{len(removed_ids)} removed, {len(configure)} configured"
            )
        return result

    async def lift(
        self,
        groups: Sequence[GroupSpec],
        phases: Sequence[str] | None = None,
        targets: Sequence[Target] = (),
        post_phase_fn: PostPhaseFn | None = None,
    ) -> ConvergeResult:
        """Run settings and ``phases`` on existing nodes without changing counts."""
        groups = list(groups)
        existing = await self.service_targets(groups) + list(targets)
        if self.provider is None and not existing:
            raise ConfigurationError("No source of nodes: pass a provider or targets")
        run_phases = self._resolve_phases(phases, groups, existing)
        logger.info(
            f"[Orchestrator] Lifting {len(existing)} target(s) through {run_phases}"
        )
        result = await self._run_configuration(
            ConvergeResult(), self.new_pipeline(), run_phases, existing, post_phase_fn
        )
        if result.error is not None:
            logger.warning(f"[Orchestrator] Lift stopped: {result.error}")
        return result
