"""Phase middleware.

A middleware intercepts a phase for the targets whose phase definition
declares it. It is called as ``await middleware(pipeline, phase, targets)``
and returns ``(results, exception)`` like ``pipeline.lift_phase``, which it
normally calls for some subset of the targets.

Middleware here are frozen dataclasses, so two middleware built with the
same arguments compare equal and their targets are dispatched together.

Flags are kept per node in a NodeFlags store owned by the pipeline. The
bootstrap phase uses execute_one_shot_flag so that a node is bootstrapped
once even across repeated converge runs with the same orchestrator.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from nodeconverge.coordination.models import PhaseResult, Target

if TYPE_CHECKING:
    from nodeconverge.coordination.pipeline import PhaseExecutionPipeline

logger = logging.getLogger(__name__)

FLAGS_TAG = "flags"


class NodeFlags:
    """Thread-safe store of named flags per target.

    A node may also carry flags in its comma-separated ``flags`` tag, set
    by the provider; those count as set and cannot be cleared here.
    """

    def __init__(self) -> None:
        self._flags: dict[str, set[str]] = {}
        self._lock = threading.Lock()

    def is_set(self, target: Target, flag: str) -> bool:
        if target.node is not None:
            tagged = target.node.tags.get(FLAGS_TAG, "")
            if flag in (f.strip() for f in tagged.split(",")):
                return True
        with self._lock:
            return flag in self._flags.get(target.target_id, ())

    def set(self, target: Target, flag: str) -> None:
        with self._lock:
            self._flags.setdefault(target.target_id, set()).add(flag)

    def clear(self, target: Target, flag: str) -> None:
        with self._lock:
            self._flags.get(target.target_id, set()).discard(flag)

    def flagged(self, targets: Iterable[Target], flag: str) -> list[Target]:
        return [t for t in targets if self.is_set(t, flag)]

    def unflagged(self, targets: Iterable[Target], flag: str) -> list[Target]:
        return [t for t in targets if not self.is_set(t, flag)]


@dataclass(frozen=True)
class _OnFlagged:
    flag: str

    async def __call__(
        self, pipeline: "PhaseExecutionPipeline", phase: str, targets: list[Target]
    ) -> tuple[list[PhaseResult], BaseException | None]:
        selected = pipeline.flags.flagged(targets, self.flag)
        logger.debug(f"[Middleware] {phase}: {len(selected)}/{len(targets)} flagged {self.flag}")
        return await pipeline.lift_phase(phase, selected)


@dataclass(frozen=True)
class _OnUnflagged:
    flag: str

    async def __call__(
        self, pipeline: "PhaseExecutionPipeline", phase: str, targets: list[Target]
    ) -> tuple[list[PhaseResult], BaseException | None]:
        selected = pipeline.flags.unflagged(targets, self.flag)
        logger.debug(f"[Middleware] {phase}: {len(selected)}/{len(targets)} not flagged {self.flag}")
        return await pipeline.lift_phase(phase, selected)


@dataclass(frozen=True)
class _OneShotFlag:
    flag: str

    async def __call__(
        self, pipeline: "PhaseExecutionPipeline", phase: str, targets: list[Target]
    ) -> tuple[list[PhaseResult], BaseException | None]:
        selected = pipeline.flags.unflagged(targets, self.flag)
        results, exc = await pipeline.lift_phase(phase, selected)
        for result in results:
            if not result.has_errors and not result.skipped:
                pipeline.flags.set(result.target, self.flag)
        return results, exc


def execute_on_flagged(flag: str) -> _OnFlagged:
    """Run the phase only on targets that have ``flag`` set."""
    return _OnFlagged(flag)


def execute_on_unflagged(flag: str) -> _OnUnflagged:
    """Run the phase only on targets that do not have ``flag`` set."""
    return _OnUnflagged(flag)


def execute_one_shot_flag(flag: str) -> _OneShotFlag:
    """Run the phase on unflagged targets, then flag those that succeeded."""
    return _OneShotFlag(flag)
