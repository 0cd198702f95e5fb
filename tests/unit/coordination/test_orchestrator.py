"""Tests for orchestrator.py.

Tests cover:
- Converge creating and removing nodes, then configuring the result
- One-shot bootstrap across repeated converge runs
- Stage-by-stage fail-fast with the failing stage reported, from
  destroy-server through node creation
- Lift on existing nodes, with or without a provider
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from nodeconverge.coordination.models import PhaseDefinition
from nodeconverge.coordination.orchestrator import ConvergeOrchestrator, ConvergeStage
from nodeconverge.providers.node_list import NodeListProvider
from nodeconverge.utils.exceptions import (
    ConfigurationError,
    ConvergeFailure,
    GroupOperationError,
    NodeCreationError,
    ProviderError,
)


@pytest.fixture
def provider() -> NodeListProvider:
    return NodeListProvider()


@pytest.fixture
def orchestrator(provider, executor, config, admin_user) -> ConvergeOrchestrator:
    return ConvergeOrchestrator(provider, executor, config=config, admin_user=admin_user)


class TestConverge:
    """Tests for converge."""

    @pytest.mark.asyncio
    async def test_creates_and_configures_nodes(self, orchestrator, provider, executor, make_group):
        """Missing nodes are created, bootstrapped and configured."""
        web = make_group("web", count=2, phases=("bootstrap", "configure"))

        result = await orchestrator.converge([web])

        assert result.ok
        assert sorted(t.target_id for t in result.new_targets) == ["web-0", "web-1"]
        assert len(provider.nodes) == 2
        assert executor.phases_run() == ["bootstrap", "configure"]
        assert len(result.results) == 4

    @pytest.mark.asyncio
    async def test_bootstrap_runs_once_per_node(self, orchestrator, executor, make_group):
        """A second converge with the same orchestrator skips bootstrap."""
        web = make_group("web", count=1, phases=("bootstrap", "configure"))

        await orchestrator.converge([web])
        executor.calls.clear()
        result = await orchestrator.converge([web])

        assert result.ok
        assert result.new_targets == []
        assert executor.calls == [("web-0", "configure")]

    @pytest.mark.asyncio
    async def test_removes_surplus_nodes(self, executor, config, admin_user, make_node, make_group):
        """Surplus nodes are destroyed and only survivors are configured."""
        provider = NodeListProvider([make_node("web") for _ in range(3)])
        orchestrator = ConvergeOrchestrator(provider, executor, config=config, admin_user=admin_user)
        web = make_group("web", count=1, phases=("destroy-server", "configure"))

        result = await orchestrator.converge([web])

        assert result.ok
        assert [r.node_ids for r in result.removed] == [("web-0", "web-1")]
        assert ("web-0", "destroy-server") in executor.calls
        assert [c for c in executor.calls if c[1] == "configure"] == [("web-2", "configure")]
        assert [n.id for n in provider.nodes if n.terminated] == ["web-0", "web-1"]

    @pytest.mark.asyncio
    async def test_group_phases_run_on_group_targets(self, orchestrator, executor, make_group):
        """create-group runs once for a group that had no nodes."""
        web = make_group("web", count=2, phases=("create-group", "configure"))

        result = await orchestrator.converge([web])

        assert result.ok
        assert executor.calls.count(("group:web", "create-group")) == 1

    @pytest.mark.asyncio
    async def test_explicit_phases(self, orchestrator, executor, make_group):
        """Requested phases replace the groups' defaults."""
        web = make_group("web", count=1, phases=("configure", "deploy"))

        await orchestrator.converge([web], phases=["deploy"])

        assert executor.phases_run() == ["deploy"]

    @pytest.mark.asyncio
    async def test_post_phase_fn(self, orchestrator, make_group):
        """post_phase_fn is called after every configuration phase."""
        seen = []
        web = make_group("web", count=1, phases=("configure",))

        await orchestrator.converge(
            [web], post_phase_fn=lambda targets, phase, results: seen.append(phase)
        )

        assert seen == ["settings", "bootstrap", "configure"]

    @pytest.mark.asyncio
    async def test_requires_provider(self, executor, admin_user, make_group):
        """Converge without a provider is a configuration fault."""
        orchestrator = ConvergeOrchestrator(None, executor, admin_user=admin_user)

        with pytest.raises(ConfigurationError):
            await orchestrator.converge([make_group()])


class TestConvergeFailures:
    """Tests for stage failures during converge."""

    @pytest.mark.asyncio
    async def test_destroy_server_failure_stops_before_removal(
        self, executor, config, admin_user, make_node, make_group
    ):
        """A failing destroy-server phase leaves every node in place."""
        provider = NodeListProvider([make_node("web"), make_node("web")])
        orchestrator = ConvergeOrchestrator(provider, executor, config=config, admin_user=admin_user)
        executor.failures[("web-0", "destroy-server")] = "drain failed"

        result = await orchestrator.converge(
            [make_group("web", count=0, phases=("destroy-server",))]
        )

        assert isinstance(result.error, ConvergeFailure)
        assert result.error.stage is ConvergeStage.DESTROY_SERVER
        assert result.removed == []
        assert not any(n.terminated for n in provider.nodes)

    @pytest.mark.asyncio
    async def test_node_removal_failure_stops_before_group_phases(
        self, executor, config, admin_user, make_node, make_group
    ):
        """A provider error while destroying nodes stops the run before destroy-group."""
        provider = NodeListProvider([make_node("web"), make_node("web")])
        provider.destroy_nodes = AsyncMock(side_effect=ProviderError("terminate failed"))
        provider.create_nodes = AsyncMock()
        orchestrator = ConvergeOrchestrator(provider, executor, config=config, admin_user=admin_user)

        result = await orchestrator.converge(
            [
                make_group("web", count=0, phases=("destroy-server", "destroy-group")),
                make_group("db", count=1, phases=("create-group",)),
            ]
        )

        assert result.error.stage is ConvergeStage.REMOVE_GROUP_NODES
        assert isinstance(result.error.cause, GroupOperationError)
        assert result.removed == []
        assert executor.phases_run() == ["destroy-server"]
        provider.create_nodes.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_destroy_group_failure_stops_before_creation(
        self, executor, config, admin_user, make_node, make_group
    ):
        """A failing destroy-group phase means create-group and node creation never run."""
        provider = NodeListProvider([make_node("web"), make_node("web")])
        orchestrator = ConvergeOrchestrator(provider, executor, config=config, admin_user=admin_user)
        executor.failures[("group:web", "destroy-group")] = "dns cleanup failed"

        result = await orchestrator.converge(
            [
                make_group("web", count=0, phases=("destroy-group",)),
                make_group("db", count=1, phases=("create-group", "configure")),
            ]
        )

        assert result.error.stage is ConvergeStage.DESTROY_GROUP
        assert result.errors == [("group:web", "destroy-group", "dns cleanup failed")]
        assert [r.node_ids for r in result.removed] == [("web-0", "web-1")]
        assert "create-group" not in executor.phases_run()
        assert not any(n.group_name == "db" for n in provider.nodes)

    @pytest.mark.asyncio
    async def test_create_group_failure_stops_before_creation(
        self, orchestrator, provider, executor, make_group
    ):
        """A failing create-group phase means no nodes are created."""
        executor.failures[("group:web", "create-group")] = "no network"

        result = await orchestrator.converge(
            [make_group("web", count=2, phases=("create-group", "configure"))]
        )

        assert result.error.stage is ConvergeStage.CREATE_GROUP
        assert provider.nodes == []

    @pytest.mark.asyncio
    async def test_node_creation_failure(self, orchestrator, provider, executor, make_node, make_group):
        """Creation failures stop the run but keep partially created targets."""
        partial = make_node("web")
        provider.create_nodes = AsyncMock(
            side_effect=NodeCreationError("1 of 2 active", nodes=[partial])
        )

        result = await orchestrator.converge([make_group("web", count=2)])

        assert result.error.stage is ConvergeStage.CREATE_GROUP_NODES
        assert [t.node for t in result.new_targets] == [partial]
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_settings_failure_stops_phases(self, orchestrator, executor, make_group):
        """Configuration phases never run after a failed settings phase."""
        executor.failures[("web-0", "settings")] = "bad settings"

        result = await orchestrator.converge(
            [make_group("web", count=1, phases=("settings", "configure"))]
        )

        assert result.error.stage is ConvergeStage.SETTINGS
        assert result.errors == [("web-0", "settings", "bad settings")]
        assert "configure" not in executor.phases_run()

    @pytest.mark.asyncio
    async def test_phase_exception_reports_phases_stage(self, orchestrator, executor, make_group):
        """A task exception in a configuration phase is reported with its cause."""
        executor.exceptions[("web-0", "configure")] = RuntimeError("connection lost")

        result = await orchestrator.converge([make_group("web", count=1)])

        assert result.error.stage is ConvergeStage.PHASES
        assert isinstance(result.error.cause, RuntimeError)


class TestLift:
    """Tests for lift."""

    @pytest.mark.asyncio
    async def test_lift_existing_nodes(self, executor, config, admin_user, make_node, make_group):
        """Lift configures existing nodes without changing counts."""
        provider = NodeListProvider([make_node("web"), make_node("web")])
        orchestrator = ConvergeOrchestrator(provider, executor, config=config, admin_user=admin_user)

        result = await orchestrator.lift([make_group("web", count=5)])

        assert result.ok
        assert len(provider.nodes) == 2
        assert result.new_targets == []
        assert sorted(executor.calls) == [("web-0", "configure"), ("web-1", "configure")]

    @pytest.mark.asyncio
    async def test_lift_without_provider(self, executor, admin_user, make_target):
        """Explicit targets are enough to lift without a provider."""
        orchestrator = ConvergeOrchestrator(None, executor, admin_user=admin_user)
        target = make_target("web", phases=("configure",))

        result = await orchestrator.lift([], targets=[target])

        assert result.ok
        assert executor.calls == [(target.target_id, "configure")]

    @pytest.mark.asyncio
    async def test_lift_without_nodes_is_an_error(self, executor, admin_user):
        """Without a provider and without targets there is nothing to lift."""
        orchestrator = ConvergeOrchestrator(None, executor, admin_user=admin_user)

        with pytest.raises(ConfigurationError):
            await orchestrator.lift([])

    @pytest.mark.asyncio
    async def test_lift_synchronised_phase(self, executor, admin_user, make_target):
        """Synchronised phases release together under lift."""
        definition = PhaseDefinition("configure", plan="configure", synchronised=True)
        targets = [make_target(phases={"configure": definition}) for _ in range(3)]
        orchestrator = ConvergeOrchestrator(None, executor, admin_user=admin_user)

        result = await orchestrator.lift([], phases=["configure"], targets=targets)

        assert result.ok
        assert all(r.leave_value.should_continue for r in result.results)
