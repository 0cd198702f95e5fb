"""Tests for pipeline.py.

Tests cover:
- Fail-fast between phases on action errors and task exceptions
- Every task of a phase completing before the phase is judged
- Middleware grouping and targets lacking a phase
- Synchronised phases: cohort release, abort propagation, guards
- post_phase_fn and default phase resolution
"""

from __future__ import annotations

import asyncio

import pytest

from nodeconverge.config.converge_config import ConvergeConfig
from nodeconverge.coordination.middleware import execute_on_flagged
from nodeconverge.coordination.models import PhaseDefinition
from nodeconverge.coordination.phase_sync import LeaveState, PhaseOptions
from nodeconverge.coordination.pipeline import PhaseExecutionPipeline, default_phases
from nodeconverge.utils.exceptions import PhaseFailure


def synchronised(name: str, options: PhaseOptions | None = None) -> PhaseDefinition:
    return PhaseDefinition(name=name, plan=name, synchronised=True, sync_options=options)


@pytest.fixture
def pipeline(executor, sync_service, config) -> PhaseExecutionPipeline:
    return PhaseExecutionPipeline(executor, sync_service=sync_service, config=config)


class TestRunPhases:
    """Tests for run_phases."""

    @pytest.mark.asyncio
    async def test_runs_phases_in_order(self, pipeline, executor, make_target):
        """Every phase runs on every target, in the given order."""
        targets = [make_target(phases=("a", "b")), make_target(phases=("a", "b"))]

        results, error = await pipeline.run_phases(["a", "b"], targets)

        assert error is None
        assert executor.phases_run() == ["a", "b"]
        assert [r.phase for r in results] == ["a", "a", "b", "b"]

    @pytest.mark.asyncio
    async def test_stops_after_failing_phase(self, pipeline, executor, make_target):
        """An action error in b stops the run; c is never dispatched."""
        targets = [make_target(phases=("a", "b", "c")), make_target(phases=("a", "b", "c"))]
        executor.failures[(targets[1].target_id, "b")] = "exit 1"

        results, error = await pipeline.run_phases(["a", "b", "c"], targets)

        assert isinstance(error, PhaseFailure)
        assert error.errors == [(targets[1].target_id, "b", "exit 1")]
        assert executor.phases_run() == ["a", "b"]
        assert len([r for r in results if r.phase == "b"]) == 2

    @pytest.mark.asyncio
    async def test_task_exception_waits_for_siblings(self, executor, make_target, config):
        """A raising task is reported only after its siblings complete."""
        targets = [make_target(phases=("a", "b")) for _ in range(3)]
        executor.exceptions[(targets[0].target_id, "a")] = RuntimeError("boom")
        executor.delay = 0.01
        pipeline = PhaseExecutionPipeline(executor, config=config)

        results, error = await pipeline.run_phases(["a", "b"], targets)

        assert isinstance(error, RuntimeError)
        assert sorted(r.target.target_id for r in results) == sorted(
            t.target_id for t in targets[1:]
        )
        assert executor.phases_run() == ["a"]

    @pytest.mark.asyncio
    async def test_post_phase_fn_runs_before_check(self, pipeline, executor, make_target):
        """post_phase_fn sees the results of a failing phase."""
        target = make_target(phases=("a", "b"))
        executor.failures[(target.target_id, "a")] = "exit 2"
        seen = []

        await pipeline.run_phases(
            ["a", "b"], [target], post_phase_fn=lambda ts, phase, rs: seen.append((phase, len(rs)))
        )

        assert seen == [("a", 1)]

    @pytest.mark.asyncio
    async def test_respects_concurrency_limit(self, executor, make_target):
        """No more than max_concurrent_tasks executor calls run at once."""
        running = 0
        peak = 0

        async def execute(target, phase):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return await original(target, phase)

        original = executor.execute
        executor.execute = execute
        pipeline = PhaseExecutionPipeline(executor, config=ConvergeConfig(max_concurrent_tasks=2))

        _, error = await pipeline.run_phases(["configure"], [make_target() for _ in range(6)])

        assert error is None
        assert peak == 2


class TestExecutePhase:
    """Tests for execute_phase."""

    @pytest.mark.asyncio
    async def test_skips_targets_without_the_phase(self, pipeline, executor, make_target):
        """Targets that do not define the phase are left out."""
        has = make_target(phases=("deploy",))
        lacks = make_target(phases=("configure",))

        results, error = await pipeline.execute_phase("deploy", [has, lacks])

        assert error is None
        assert [r.target for r in results] == [has]
        assert executor.calls == [(has.target_id, "deploy")]

    @pytest.mark.asyncio
    async def test_middleware_filters_its_targets(self, pipeline, executor, make_target):
        """Targets sharing a middleware go through it; others run directly."""
        definition = PhaseDefinition("deploy", plan="deploy", middleware=execute_on_flagged("ready"))
        flagged = make_target(phases={"deploy": definition})
        unflagged = make_target(phases={"deploy": definition})
        plain = make_target(phases=("deploy",))
        pipeline.flags.set(flagged, "ready")

        results, error = await pipeline.execute_phase("deploy", [flagged, unflagged, plain])

        assert error is None
        assert {r.target.target_id for r in results} == {flagged.target_id, plain.target_id}
        assert all(r.phase == "deploy" for r in results)

    @pytest.mark.asyncio
    async def test_equal_middleware_share_a_dispatch(self, pipeline, make_target):
        """Middleware built with the same arguments group their targets together."""
        calls = []

        class Recording:
            async def __call__(self, pipeline, phase, targets):
                calls.append(len(targets))
                return await pipeline.lift_phase(phase, targets)

            def __eq__(self, other):
                return isinstance(other, Recording)

            def __hash__(self):
                return hash(Recording)

        targets = [
            make_target(phases={"deploy": PhaseDefinition("deploy", middleware=Recording())})
            for _ in range(3)
        ]

        await pipeline.execute_phase("deploy", targets)

        assert calls == [3]


class TestSynchronisedPhases:
    """Tests for barrier-synchronised phases."""

    @pytest.mark.asyncio
    async def test_cohort_continues_together(self, pipeline, sync_service, make_target):
        """All members receive CONTINUE and the sync state ends idle."""
        targets = [make_target(phases={"configure": synchronised("configure")}) for _ in range(3)]

        results, error = await pipeline.run_phases(["configure"], targets)

        assert error is None
        assert [r.leave_value.state for r in results] == [LeaveState.CONTINUE] * 3
        assert dict(sync_service.dump_state().target_state) == {}

    @pytest.mark.asyncio
    async def test_failure_aborts_whole_cohort(self, pipeline, executor, make_target):
        """One failing member makes every member leave with ABORT."""
        targets = [make_target(phases={"configure": synchronised("configure")}) for _ in range(3)]
        executor.failures[(targets[2].target_id, "configure")] = "exit 1"

        results, error = await pipeline.run_phases(["configure"], targets)

        assert isinstance(error, PhaseFailure)
        assert [r.leave_value.state for r in results] == [LeaveState.ABORT] * 3

    @pytest.mark.asyncio
    async def test_task_exception_still_releases_cohort(self, pipeline, executor, make_target):
        """A raising member aborts and arrives, so its siblings are released."""
        targets = [make_target(phases={"configure": synchronised("configure")}) for _ in range(2)]
        executor.exceptions[(targets[0].target_id, "configure")] = RuntimeError("lost")

        results, error = await pipeline.run_phases(["configure"], targets)

        assert isinstance(error, RuntimeError)
        assert [r.target for r in results] == [targets[1]]
        assert results[0].leave_value.state is LeaveState.ABORT

    @pytest.mark.asyncio
    async def test_unguarded_phase_is_skipped(self, pipeline, executor, make_target):
        """A false guard skips the body but the barrier still releases."""
        options = PhaseOptions(guard_fn=lambda: False)
        targets = [
            make_target(phases={"configure": synchronised("configure", options)})
            for _ in range(2)
        ]

        results, error = await pipeline.run_phases(["configure"], targets)

        assert error is None
        assert executor.calls == []
        assert all(r.skipped for r in results)
        assert [r.leave_value.state for r in results] == [LeaveState.CONTINUE] * 2

    @pytest.mark.asyncio
    async def test_on_complete_runs_per_guarded_member(self, pipeline, make_target):
        """on_complete_fn is called once per member on a CONTINUE release."""
        completed = []
        options = PhaseOptions(on_complete_fn=lambda: completed.append(True))
        targets = [
            make_target(phases={"configure": synchronised("configure", options)})
            for _ in range(2)
        ]

        await pipeline.run_phases(["configure"], targets)

        assert completed == [True, True]

    @pytest.mark.asyncio
    async def test_raising_on_complete_does_not_hang(self, pipeline, executor, make_target):
        """A failing completion callback is reported and the cohort still leaves."""

        def on_complete():
            raise RuntimeError("hook failed")

        options = PhaseOptions(on_complete_fn=on_complete)
        targets = [
            make_target(
                phases={
                    "configure": synchronised("configure", options),
                    "check": PhaseDefinition(name="check", plan="check"),
                }
            )
            for _ in range(2)
        ]

        results, error = await asyncio.wait_for(
            pipeline.run_phases(["configure", "check"], targets), timeout=5
        )

        assert isinstance(error, RuntimeError)
        assert all(r.leave_value.state is LeaveState.ABORT for r in results)
        assert executor.phases_run() == ["configure"]


class TestDefaultPhases:
    """Tests for default_phases."""

    def test_merges_target_defaults(self, make_target):
        """Default phases from all targets are merged in a consistent order."""
        a = make_target(default_phases=("settings", "configure"))
        b = make_target(default_phases=("bootstrap", "configure", "test"))

        assert default_phases([a, b]) == ["settings", "bootstrap", "configure", "test"]
