"""Phase execution pipeline.

Drives a set of targets through an ordered list of phases:

1. Each phase runs as one asyncio task per target, calling the executor.
2. Every task of a phase is awaited before the phase is judged, even when
   some of them fail.
3. The run stops after the first phase that produced an action error or a
   task exception; later phases are never dispatched.

Synchronised phases meet at a barrier. All synchronised targets dispatched
together for a phase enter it in one cohort; each task leaves the phase when
its executor call is done and waits for the whole cohort before returning.
A target that fails aborts the phase, and every member of its cohort then
receives an ABORT leave value.

Usage:
    pipeline = PhaseExecutionPipeline(executor, config=ConvergeConfig.from_env())
    results, error = await pipeline.run_phases(["settings", "configure"], targets)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Sequence

from nodeconverge.config.converge_config import ConvergeConfig
from nodeconverge.coordination.executor import PhaseExecutor
from nodeconverge.coordination.middleware import NodeFlags
from nodeconverge.coordination.models import (
    PhaseResult,
    Target,
    collect_errors,
    results_have_errors,
)
from nodeconverge.coordination.phase_sync import (
    InMemoryPhaseSyncService,
    PhaseEntry,
    PhaseLeaveValue,
    PhaseSyncService,
    ReleaseHandle,
)
from nodeconverge.utils.async_utils import first_error, gather_outcomes
from nodeconverge.utils.exceptions import BarrierTimeoutError, PhaseFailure
from nodeconverge.utils.ordering import total_order_merge

logger = logging.getLogger(__name__)

PostPhaseFn = Callable[[Sequence[Target], str, list[PhaseResult]], None]


def default_phases(targets: Iterable[Target]) -> list[str]:
    """Total-order merge of the targets' default phases."""
    return total_order_merge(*(t.default_phases for t in targets))


class PhaseExecutionPipeline:
    """Runs phases over targets with one task per target per phase."""

    def __init__(
        self,
        executor: PhaseExecutor,
        sync_service: PhaseSyncService | None = None,
        config: ConvergeConfig | None = None,
        flags: NodeFlags | None = None,
    ):
        self.executor = executor
        self.sync_service = sync_service or InMemoryPhaseSyncService()
        self.config = config or ConvergeConfig()
        self.flags = flags or NodeFlags()
        self._semaphores: dict[asyncio.AbstractEventLoop, asyncio.Semaphore] = {}

    def _semaphore(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        semaphore = self._semaphores.get(loop)
        if semaphore is None:
            semaphore = asyncio.Semaphore(self.config.max_concurrent_tasks)
            self._semaphores[loop] = semaphore
        return semaphore

    # -------------------------------------------------------------------------
    # Per-target tasks
    # -------------------------------------------------------------------------

    async def _execute(self, target: Target, phase: str) -> PhaseResult:
        async with self._semaphore():
            call = self.executor.execute(target, phase)
            timeout = self.config.phase_timeout_seconds
            if timeout is not None:
                return await asyncio.wait_for(call, timeout)
            return await call

    async def _leave(self, phase: str, target: Target) -> PhaseLeaveValue:
        handle = ReleaseHandle()
        self.sync_service.leave_phase(phase, target.target_id, handle)
        timeout = self.config.barrier_timeout_seconds
        try:
            return await handle.wait(timeout)
        except asyncio.TimeoutError as e:
            raise BarrierTimeoutError(phase, target.target_id, timeout) from e

    async def _run_target(
        self, target: Target, phase: str, entry: PhaseEntry | None
    ) -> PhaseResult:
        if entry is None:
            result = await self._execute(target, phase)
            return result.with_phase(phase)

        if not entry.guarded:
            result = PhaseResult(target=target, phase=phase, skipped=True)
        else:
            try:
                result = await self._execute(target, phase)
            except Exception as e:
                # Siblings are waiting at the barrier; abort and arrive anyway.
                self.sync_service.abort_phase(phase, target.target_id)
                try:
                    await self._leave(phase, target)
                except BarrierTimeoutError as timeout_error:
                    logger.warning(f"[Pipeline] {timeout_error} after task failure: {e}")
                raise
            result = result.with_phase(phase)
            if result.has_errors:
                self.sync_service.abort_phase(phase, target.target_id)

        leave_value = await self._leave(phase, target)
        return result.with_leave_value(leave_value)

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    def _enter_synchronised(self, phase: str, targets: Sequence[Target]) -> dict[int, PhaseEntry]:
        """Enter ``phase`` for the synchronised targets, one call per options value."""
        cohorts: dict[int, list[Target]] = {}
        options_by_key = {}
        for target in targets:
            definition = target.phase_definition(phase)
            if definition is None or not definition.synchronised:
                continue
            key = id(definition.sync_options)
            cohorts.setdefault(key, []).append(target)
            options_by_key[key] = definition.sync_options

        entries: dict[int, PhaseEntry] = {}
        for key, members in cohorts.items():
            entry = self.sync_service.enter_phase(
                phase, [t.target_id for t in members], options_by_key[key]
            )
            for target in members:
                entries[id(target)] = entry
        return entries

    async def lift_phase(
        self, phase: str, targets: Sequence[Target]
    ) -> tuple[list[PhaseResult], BaseException | None]:
        """Run ``phase`` on every target concurrently.

        Returns:
            The results of the tasks that completed, and the first task
            exception, if any.
        """
        targets = list(targets)
        if not targets:
            return [], None
        entries = self._enter_synchronised(phase, targets)
        logger.debug(
            f"[Pipeline] Dispatching {phase} to {len(targets)} target(s)"
            + (f", {len(entries)} synchronised" if entries else "")
        )
        outcomes = await gather_outcomes(
            self._run_target(t, phase, entries.get(id(t))) for t in targets
        )
        results = [o.value for o in outcomes if o.ok]
        error = first_error(outcomes)
        if error is not None:
            logger.warning(f"[Pipeline] {phase} task failed: {error}")
        return results, error

    async def execute_phase(
        self, phase: str, targets: Sequence[Target]
    ) -> tuple[list[PhaseResult], BaseException | None]:
        """Run ``phase`` on the targets that define it, through their middleware."""
        paths: dict = {}
        skipped = 0
        for target in targets:
            definition = target.phase_definition(phase)
            if definition is None:
                skipped += 1
                continue
            paths.setdefault(definition.middleware, []).append(target)
        if skipped:
            logger.debug(f"[Pipeline] {skipped} target(s) do not define {phase}")

        runs = []
        for middleware, members in paths.items():
            if middleware is None:
                runs.append(self.lift_phase(phase, members))
            else:
                runs.append(middleware(self, phase, members))
        outcomes = await gather_outcomes(runs)

        results: list[PhaseResult] = []
        errors: list[BaseException] = []
        for outcome in outcomes:
            if not outcome.ok:
                errors.append(outcome.error)
                continue
            path_results, path_error = outcome.value
            results.extend(r.with_phase(phase) for r in path_results)
            if path_error is not None:
                errors.append(path_error)
        return results, errors[0] if errors else None

    async def run_phases(
        self,
        phases: Sequence[str],
        targets: Sequence[Target],
        post_phase_fn: PostPhaseFn | None = None,
    ) -> tuple[list[PhaseResult], BaseException | None]:
        """Run ``phases`` in order, stopping after the first failing phase.

        ``post_phase_fn(targets, phase, results)`` runs after each phase,
        before its results are checked.
        """
        all_results: list[PhaseResult] = []
        for phase in phases:
            results, error = await self.execute_phase(phase, targets)
            all_results.extend(results)
            if post_phase_fn is not None:
                post_phase_fn(targets, phase, results)
            if error is not None:
                return all_results, error
            if results_have_errors(results):
                errors = collect_errors(results)
                logger.warning(f"[Pipeline] {phase} reported {len(errors)} error(s)")
                return all_results, PhaseFailure(
                    f"Phase {phase} failed on {len({e[0] for e in errors})} target(s)",
                    errors=errors,
                )
        return all_results, None
