"""Shared pytest fixtures for coordination tests.

This module provides factories for nodes, groups and targets, and a
recording phase executor whose per-target behaviour can be scripted.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field

import pytest

from nodeconverge.config.converge_config import AdminUser, ConvergeConfig
from nodeconverge.coordination.executor import PhaseExecutor
from nodeconverge.coordination.models import (
    ActionResult,
    GroupSpec,
    Node,
    PhaseDefinition,
    PhaseResult,
    Target,
)
from nodeconverge.coordination.phase_sync import InMemoryPhaseSyncService

# =============================================================================
# FACTORY FIXTURES
# =============================================================================


@pytest.fixture
def make_node() -> Callable[..., Node]:
    """Factory for nodes; ids default to ``<group>-<n>``."""
    counter = {"n": 0}

    def _make(group_name: str = "web", node_id: str | None = None, **kwargs) -> Node:
        if node_id is None:
            node_id = f"{group_name}-{counter['n']}"
            counter["n"] += 1
        kwargs.setdefault("primary_ip", "10.0.0.1")
        return Node(id=node_id, group_name=group_name, **kwargs)

    return _make


@pytest.fixture
def make_target(make_node) -> Callable[..., Target]:
    """Factory for node targets with no-op phase definitions."""

    def _make(
        group_name: str = "web",
        phases: tuple[str, ...] | dict = ("configure",),
        node_id: str | None = None,
        **kwargs,
    ) -> Target:
        if not isinstance(phases, dict):
            phases = {name: PhaseDefinition(name=name, plan=name) for name in phases}
        return Target(
            group_name=group_name,
            node=make_node(group_name, node_id),
            phases=phases,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_group() -> Callable[..., GroupSpec]:
    """Factory for group specs with no-op phase definitions."""

    def _make(
        group_name: str = "web",
        count: int | None = 1,
        phases: tuple[str, ...] = ("configure",),
        **kwargs,
    ) -> GroupSpec:
        return GroupSpec(
            group_name=group_name,
            count=count,
            phases={name: PhaseDefinition(name=name, plan=name) for name in phases},
            **kwargs,
        )

    return _make


# =============================================================================
# EXECUTOR FIXTURES
# =============================================================================


@dataclass
class RecordingExecutor(PhaseExecutor):
    """Executor that records calls and fails where told to.

    ``failures`` maps ``(target_id, phase)`` to an action error message;
    ``exceptions`` maps ``(target_id, phase)`` to an exception to raise.
    """

    failures: dict[tuple[str, str], str] = field(default_factory=dict)
    exceptions: dict[tuple[str, str], BaseException] = field(default_factory=dict)
    delay: float = 0.0
    calls: list[tuple[str, str]] = field(default_factory=list)

    async def execute(self, target: Target, phase: str) -> PhaseResult:
        self.calls.append((target.target_id, phase))
        if self.delay:
            await asyncio.sleep(self.delay)
        key = (target.target_id, phase)
        if key in self.exceptions:
            raise self.exceptions[key]
        error = self.failures.get(key)
        return PhaseResult(
            target=target,
            phase=phase,
            return_value=f"{phase}:{target.target_id}",
            action_results=(ActionResult(action=phase, exit_code=1 if error else 0, error=error),),
        )

    def phases_run(self) -> list[str]:
        seen: list[str] = []
        for _, phase in self.calls:
            if phase not in seen:
                seen.append(phase)
        return seen


@pytest.fixture
def executor() -> RecordingExecutor:
    """A recording executor with no scripted failures."""
    return RecordingExecutor()


@pytest.fixture
def sync_service() -> InMemoryPhaseSyncService:
    """A fresh in-memory phase sync service."""
    return InMemoryPhaseSyncService()


@pytest.fixture
def config() -> ConvergeConfig:
    """Config with a short barrier timeout so broken barriers fail fast."""
    return ConvergeConfig(barrier_timeout_seconds=5.0)


@pytest.fixture
def admin_user() -> AdminUser:
    """Admin user for lifecycle and ssh tests."""
    return AdminUser(username="deploy", private_key_path="~/.ssh/deploy")
