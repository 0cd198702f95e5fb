"""Tests for the top-level converge and lift functions.

Tests cover:
- Synchronous converge returning the result
- Failures raised with the partial result attached
- async_ operations and timeouts
"""

import threading

import pytest

from nodeconverge import converge, lift
from nodeconverge.config.converge_config import AdminUser
from nodeconverge.coordination.executor import LocalPhaseExecutor
from nodeconverge.coordination.models import GroupSpec
from nodeconverge.coordination.operation import Operation, OperationLoop
from nodeconverge.coordination.orchestrator import ConvergeStage
from nodeconverge.providers.node_list import NodeListProvider
from nodeconverge.utils.exceptions import ConfigurationError, ConvergeFailure

ADMIN = AdminUser(username="deploy")


@pytest.fixture(autouse=True)
def reset_loop():
    """Reset the background loop before and after each test."""
    OperationLoop.reset_instance()
    yield
    OperationLoop.reset_instance()


def _configure(session):
    return f"configured {session.node.id}"


def _broken(session):
    raise RuntimeError("service failed to start")


class TestConverge:
    """Tests for converge."""

    def test_converge(self):
        """Nodes are created and configured synchronously."""
        provider = NodeListProvider()
        web = GroupSpec("web", count=2, phases={"configure": _configure})

        result = converge([web], provider=provider, executor=LocalPhaseExecutor(), admin_user=ADMIN)

        assert result.ok
        assert sorted(r.return_value for r in result.results) == [
            "configured web-0",
            "configured web-1",
        ]

    def test_failure_carries_partial_result(self):
        """A failed run raises ConvergeFailure with the partial result attached."""
        provider = NodeListProvider()
        web = GroupSpec("web", count=1, phases={"configure": _broken})

        with pytest.raises(ConvergeFailure) as exc_info:
            converge([web], provider=provider, executor=LocalPhaseExecutor(), admin_user=ADMIN)

        error = exc_info.value
        assert error.stage is ConvergeStage.PHASES
        assert [t.target_id for t in error.result.new_targets] == ["web-0"]
        assert error.result.errors == [
            ("web-0", "configure", "RuntimeError: service failed to start")
        ]

    def test_async_operation(self):
        """async_ returns an Operation whose outcome holds the result."""
        web = GroupSpec("web", count=1, phases={"configure": _configure})

        operation = converge(
            [web],
            provider=NodeListProvider(),
            executor=LocalPhaseExecutor(),
            admin_user=ADMIN,
            async_=True,
        )

        assert isinstance(operation, Operation)
        result, error = operation.outcome(timeout=5.0)
        assert error is None
        assert result.ok

    def test_timeout_value(self):
        """A run that outlasts the timeout yields the timeout value."""
        release = threading.Event()

        def slow(session):
            release.wait(5.0)

        web = GroupSpec("web", count=1, phases={"configure": slow})

        value = converge(
            [web],
            provider=NodeListProvider(),
            executor=LocalPhaseExecutor(),
            admin_user=ADMIN,
            timeout_seconds=0.05,
            timeout_value="still running",
        )

        release.set()
        assert value == "still running"


class TestLift:
    """Tests for lift."""

    def test_lift_requires_nodes(self):
        """Lift without a provider or targets is a configuration fault."""
        with pytest.raises(ConfigurationError):
            lift([], executor=LocalPhaseExecutor(), admin_user=ADMIN)
