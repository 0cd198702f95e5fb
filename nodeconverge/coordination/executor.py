"""Phase executors: run one phase on one target.

An executor is invoked once per (target, phase). Ordinary action failures
are reported inside the returned PhaseResult; only infrastructure faults
raise.

Executors:
- LocalPhaseExecutor: Python callables, ``plan(session)``
- SshPhaseExecutor: CommandPlan shell commands over ssh, with retry
- DryRunPhaseExecutor: logs CommandPlan commands without running them
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from nodeconverge.coordination.models import ActionResult, CommandPlan, PhaseResult, Target
from nodeconverge.utils.async_utils import SubprocessTimeoutError, async_subprocess_run

if TYPE_CHECKING:
    from nodeconverge.config.converge_config import AdminUser

logger = logging.getLogger(__name__)

# Default SSH configuration
SSH_DEFAULT_TIMEOUT = 300
SSH_DEFAULT_CONNECT_TIMEOUT = 10
SSH_MAX_RETRIES = 3
SSH_BASE_DELAY = 1.0  # seconds
SSH_MAX_DELAY = 16.0  # seconds

# ssh exits 255 when the connection itself failed
SSH_CONNECTION_FAILED = 255
TIMEOUT_EXIT_CODE = 124


class PhaseExecutor(ABC):
    """Runs a target's implementation of a phase."""

    @abstractmethod
    async def execute(self, target: Target, phase: str) -> PhaseResult:
        """Run ``phase`` on ``target``."""

    def _no_plan(self, target: Target, phase: str) -> PhaseResult:
        logger.debug(f"[{type(self).__name__}] {target.target_id} has no plan for {phase}")
        return PhaseResult(target=target, phase=phase)


# =============================================================================
# Local (Python callables)
# =============================================================================


@dataclass
class PlanSession:
    """What a Python plan sees while it runs."""

    target: Target
    phase: str
    action_results: list[ActionResult] = field(default_factory=list)

    @property
    def node(self):
        return self.target.node

    def record(self, action_result: ActionResult) -> ActionResult:
        self.action_results.append(action_result)
        return action_result


class LocalPhaseExecutor(PhaseExecutor):
    """Runs plans that are Python callables taking a PlanSession.

    A plan may be a plain function or a coroutine function. Its return value
    becomes the result's return_value; an exception it raises is recorded as
    a failed action.
    """

    async def execute(self, target: Target, phase: str) -> PhaseResult:
        definition = target.phase_definition(phase)
        if definition is None or definition.plan is None:
            return self._no_plan(target, phase)
        if not callable(definition.plan):
            raise TypeError(
                f"LocalPhaseExecutor cannot run plan of type {type(definition.plan).__name__}"
            )

        session = PlanSession(target=target, phase=phase)
        return_value: Any = None
        try:
            return_value = definition.plan(session)
            if inspect.isawaitable(return_value):
                return_value = await return_value
        except Exception as e:
            logger.debug(f"[LocalPhaseExecutor] {phase} plan failed on {target.target_id}: {e}")
            session.record(ActionResult(action=phase, error=f"{type(e).__name__}: {e}"))
        return PhaseResult(
            target=target,
            phase=phase,
            return_value=return_value,
            action_results=tuple(session.action_results),
        )


# =============================================================================
# SSH
# =============================================================================


@dataclass
class SSHConfig:
    """SSH connection configuration."""
    host: str
    port: int = 22
    user: str = "root"
    key_path: str | None = None
    connect_timeout: int = SSH_DEFAULT_CONNECT_TIMEOUT
    command_timeout: float = SSH_DEFAULT_TIMEOUT


class SshPhaseExecutor(PhaseExecutor):
    """Runs CommandPlan commands on a node over ssh.

    Commands run in order and stop at the first failure. Connection failures
    (ssh exit 255) are retried with exponential backoff. Group-level targets
    have no node, so their commands run on the local host.
    """

    def __init__(
        self,
        admin_user: "AdminUser",
        command_timeout: float = SSH_DEFAULT_TIMEOUT,
        connect_timeout: int = SSH_DEFAULT_CONNECT_TIMEOUT,
        max_retries: int = SSH_MAX_RETRIES,
        base_delay: float = SSH_BASE_DELAY,
        max_delay: float = SSH_MAX_DELAY,
    ):
        self.admin_user = admin_user
        self._command_timeout = command_timeout
        self._connect_timeout = connect_timeout
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._max_delay = max_delay

    def ssh_config(self, target: Target) -> SSHConfig:
        node = target.node
        if node is None or node.ssh_host is None:
            raise ValueError(f"Target {target.target_id} has no reachable address")
        return SSHConfig(
            host=node.ssh_host,
            port=node.ssh_port,
            user=self.admin_user.username,
            key_path=self.admin_user.private_key_path,
            connect_timeout=self._connect_timeout,
            command_timeout=self._command_timeout,
        )

    def build_command(self, config: SSHConfig, command: str) -> list[str]:
        ssh_cmd = [
            "ssh",
            "-o", f"ConnectTimeout={config.connect_timeout}",
            "-o", "StrictHostKeyChecking=no",
            "-o", "BatchMode=yes",
        ]

        if config.port != 22:
            ssh_cmd.extend(["-p", str(config.port)])

        if config.key_path:
            ssh_cmd.extend(["-i", os.path.expanduser(config.key_path)])

        ssh_cmd.append(f"{config.user}@{config.host}")
        if self.admin_user.sudo and config.user != "root":
            command = f"sudo -n sh -c {shlex.quote(command)}"
        ssh_cmd.append(command)
        return ssh_cmd

    async def _run_once(self, argv: list[str], command: str) -> ActionResult:
        try:
            result = await async_subprocess_run(argv, timeout=self._command_timeout)
        except SubprocessTimeoutError as e:
            return ActionResult(
                action=command,
                exit_code=TIMEOUT_EXIT_CODE,
                error=str(e),
            )
        return ActionResult(
            action=command,
            exit_code=result.returncode,
            out=result.stdout,
            err=result.stderr,
            error=None if result.success else f"exit code {result.returncode}: {result.stderr.strip()}",
        )

    async def run_command(self, target: Target, command: str) -> ActionResult:
        """Run one command, retrying connection failures."""
        if target.node is None:
            return await self._run_once(["sh", "-c", command], command)

        config = self.ssh_config(target)
        argv = self.build_command(config, command)
        result = ActionResult(action=command)
        for attempt in range(self._max_retries):
            result = await self._run_once(argv, command)
            if result.exit_code != SSH_CONNECTION_FAILED:
                if attempt > 0 and not result.failed:
                    logger.info(
                        f"[SshPhaseExecutor] SSH succeeded on attempt {attempt + 1} "
                        f"to {config.host}"
                    )
                return result

            # Apply backoff before retry
            if attempt < self._max_retries - 1:
                delay = min(self._base_delay * (2 ** attempt), self._max_delay)
                logger.warning(
                    f"[SshPhaseExecutor] SSH attempt {attempt + 1}/{self._max_retries} "
                    f"to {config.host} failed: {result.err.strip()}. Retrying in {delay:.1f}s..."
                )
                await asyncio.sleep(delay)

        logger.error(
            f"[SshPhaseExecutor] SSH to {config.host} failed after {self._max_retries} attempts"
        )
        return result

    async def execute(self, target: Target, phase: str) -> PhaseResult:
        definition = target.phase_definition(phase)
        if definition is None or definition.plan is None:
            return self._no_plan(target, phase)
        plan = definition.plan
        if not isinstance(plan, CommandPlan):
            raise TypeError(f"SshPhaseExecutor cannot run plan of type {type(plan).__name__}")

        results = []
        for command in plan.commands:
            result = await self.run_command(target, command)
            results.append(result)
            if result.failed:
                logger.debug(
                    f"[SshPhaseExecutor] {phase} stopped on {target.target_id}: {result.error}"
                )
                break
        return PhaseResult(
            target=target,
            phase=phase,
            return_value=results[-1].out if results else None,
            action_results=tuple(results),
        )


# =============================================================================
# Dry run
# =============================================================================


class DryRunPhaseExecutor(PhaseExecutor):
    """Logs the commands a CommandPlan would run and reports them as succeeded."""

    async def execute(self, target: Target, phase: str) -> PhaseResult:
        definition = target.phase_definition(phase)
        if definition is None or definition.plan is None:
            return self._no_plan(target, phase)
        commands = definition.plan.commands if isinstance(definition.plan, CommandPlan) else ()
        for command in commands:
            logger.info(f"[dry-run] {target.target_id} {phase}: {command}")
        return PhaseResult(
            target=target,
            phase=phase,
            action_results=tuple(ActionResult(action=c, exit_code=0) for c in commands),
        )
