"""Top-level converge and lift.

Usage:
    from nodeconverge.api import converge
    from nodeconverge.coordination import GroupSpec, LocalPhaseExecutor
    from nodeconverge.providers import NodeListProvider

    result = converge(
        [GroupSpec("web", count=2, phases={"configure": configure_web})],
        provider=NodeListProvider(),
        executor=LocalPhaseExecutor(),
    )

Synchronous calls raise the run's ConvergeFailure, with the partial
ConvergeResult attached as ``error.result``. With ``async_=True`` an
Operation is returned instead.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from nodeconverge.config.converge_config import AdminUser, ConvergeConfig
from nodeconverge.coordination.middleware import NodeFlags
from nodeconverge.coordination.models import GroupSpec, Target
from nodeconverge.coordination.operation import run_operation
from nodeconverge.coordination.orchestrator import ConvergeOrchestrator, ConvergeResult
from nodeconverge.coordination.pipeline import PostPhaseFn

if TYPE_CHECKING:
    from nodeconverge.coordination.executor import PhaseExecutor
    from nodeconverge.providers.base import NodeProvider


def _raise_on_error(result: ConvergeResult) -> ConvergeResult:
    if result.error is not None:
        if getattr(result.error, "result", None) is None:
            result.error.result = result
        raise result.error
    return result


async def _converge(orchestrator: ConvergeOrchestrator, *args: Any) -> ConvergeResult:
    return _raise_on_error(await orchestrator.converge(*args))


async def _lift(orchestrator: ConvergeOrchestrator, *args: Any) -> ConvergeResult:
    return _raise_on_error(await orchestrator.lift(*args))


def converge(
    groups: Sequence[GroupSpec],
    *,
    provider: "NodeProvider",
    executor: "PhaseExecutor",
    phases: Sequence[str] | None = None,
    targets: Sequence[Target] = (),
    config: ConvergeConfig | None = None,
    admin_user: AdminUser | None = None,
    flags: NodeFlags | None = None,
    post_phase_fn: PostPhaseFn | None = None,
    async_: bool = False,
    timeout_seconds: float | None = None,
    timeout_value: Any = None,
) -> Any:
    """Adjust node counts to ``groups`` and configure every node.

    Returns:
        The ConvergeResult, ``timeout_value`` on timeout, or an Operation
        when ``async_`` is set.
    """
    orchestrator = ConvergeOrchestrator(
        provider, executor, config=config, admin_user=admin_user, flags=flags
    )
    return run_operation(
        _converge(orchestrator, groups, phases, targets, post_phase_fn),
        async_=async_,
        timeout_seconds=timeout_seconds,
        timeout_value=timeout_value,
    )


def lift(
    groups: Sequence[GroupSpec],
    *,
    provider: "NodeProvider | None" = None,
    executor: "PhaseExecutor",
    phases: Sequence[str] | None = None,
    targets: Sequence[Target] = (),
    config: ConvergeConfig | None = None,
    admin_user: AdminUser | None = None,
    flags: NodeFlags | None = None,
    post_phase_fn: PostPhaseFn | None = None,
    async_: bool = False,
    timeout_seconds: float | None = None,
    timeout_value: Any = None,
) -> Any:
    """Run settings and ``phases`` on the existing nodes of ``groups``.

    Returns:
        The ConvergeResult, ``timeout_value`` on timeout, or an Operation
        when ``async_`` is set.
    """
    orchestrator = ConvergeOrchestrator(
        provider, executor, config=config, admin_user=admin_user, flags=flags
    )
    return run_operation(
        _lift(orchestrator, groups, phases, targets, post_phase_fn),
        async_=async_,
        timeout_seconds=timeout_seconds,
        timeout_value=timeout_value,
    )
