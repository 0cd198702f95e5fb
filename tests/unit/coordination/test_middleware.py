"""Tests for middleware.py."""

from __future__ import annotations

import pytest

from nodeconverge.coordination.middleware import (
    NodeFlags,
    execute_on_flagged,
    execute_on_unflagged,
    execute_one_shot_flag,
)
from nodeconverge.coordination.models import PhaseDefinition, Target
from nodeconverge.coordination.pipeline import PhaseExecutionPipeline


@pytest.fixture
def pipeline(executor, config) -> PhaseExecutionPipeline:
    return PhaseExecutionPipeline(executor, config=config)


class TestNodeFlags:
    """Tests for the per-target flag store."""

    def test_set_and_clear(self, make_target):
        """Flags are set and cleared per target."""
        flags = NodeFlags()
        a, b = make_target(), make_target()

        flags.set(a, "bootstrapped")

        assert flags.is_set(a, "bootstrapped")
        assert not flags.is_set(b, "bootstrapped")
        assert flags.flagged([a, b], "bootstrapped") == [a]
        assert flags.unflagged([a, b], "bootstrapped") == [b]

        flags.clear(a, "bootstrapped")
        assert not flags.is_set(a, "bootstrapped")

    def test_clear_unknown_target(self, make_target):
        """Clearing a flag that was never set is a no-op."""
        NodeFlags().clear(make_target(), "missing")

    def test_reads_node_tag(self, make_node):
        """Flags listed in the node's flags tag count as set."""
        node = make_node("web", tags={"flags": "bootstrapped, monitored"})
        target = Target(group_name="web", node=node)

        assert NodeFlags().is_set(target, "monitored")
        assert not NodeFlags().is_set(target, "other")


class TestFlagMiddleware:
    """Tests for the flag-driven middleware."""

    def test_same_arguments_compare_equal(self):
        """Middleware built with the same flag are interchangeable keys."""
        assert execute_on_flagged("x") == execute_on_flagged("x")
        assert hash(execute_one_shot_flag("x")) == hash(execute_one_shot_flag("x"))
        assert execute_on_flagged("x") != execute_on_unflagged("x")

    @pytest.mark.asyncio
    async def test_on_flagged(self, pipeline, executor, make_target):
        """Only flagged targets run."""
        a, b = make_target(), make_target()
        pipeline.flags.set(a, "ready")

        results, error = await execute_on_flagged("ready")(pipeline, "configure", [a, b])

        assert error is None
        assert [r.target for r in results] == [a]
        assert executor.calls == [(a.target_id, "configure")]

    @pytest.mark.asyncio
    async def test_on_unflagged(self, pipeline, executor, make_target):
        """Only unflagged targets run."""
        a, b = make_target(), make_target()
        pipeline.flags.set(a, "ready")

        results, _ = await execute_on_unflagged("ready")(pipeline, "configure", [a, b])

        assert [r.target for r in results] == [b]

    @pytest.mark.asyncio
    async def test_one_shot_flags_successes(self, pipeline, executor, make_target):
        """Successful targets are flagged and skipped next time; failures retry."""
        ok, failing = make_target(), make_target()
        executor.failures[(failing.target_id, "bootstrap")] = "exit 1"
        middleware = execute_one_shot_flag("bootstrapped")

        await middleware(pipeline, "bootstrap", [ok, failing])

        assert pipeline.flags.is_set(ok, "bootstrapped")
        assert not pipeline.flags.is_set(failing, "bootstrapped")

        executor.calls.clear()
        await middleware(pipeline, "bootstrap", [ok, failing])

        assert executor.calls == [(failing.target_id, "bootstrap")]

    @pytest.mark.asyncio
    async def test_one_shot_through_execute_phase(self, pipeline, executor, make_target):
        """A phase definition's middleware is applied by the pipeline."""
        definition = PhaseDefinition(
            "bootstrap", plan="bootstrap", middleware=execute_one_shot_flag("bootstrapped")
        )
        target = make_target(phases={"bootstrap": definition})

        await pipeline.execute_phase("bootstrap", [target])
        await pipeline.execute_phase("bootstrap", [target])

        assert executor.calls == [(target.target_id, "bootstrap")]
