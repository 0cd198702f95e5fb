"""Runtime configuration for converge and lift runs.

Environment variables:
    NODECONVERGE_MAX_CONCURRENT_TASKS: Concurrent executor calls (default: 32)
    NODECONVERGE_BARRIER_TIMEOUT: Seconds a target waits at a phase barrier
        (default: unset, wait until the cohort arrives)
    NODECONVERGE_PHASE_TIMEOUT: Seconds allowed for one executor call
        (default: unset)
    NODECONVERGE_SETTINGS_PHASE: Name of the settings phase (default: settings)
    NODECONVERGE_BOOTSTRAP_PHASE: Name of the bootstrap phase (default: bootstrap)
    NODECONVERGE_BOOTSTRAP_FLAG: Node flag set after bootstrap (default: bootstrapped)
    NODECONVERGE_DRY_RUN: Log commands instead of running them (default: false)
    NODECONVERGE_ADMIN_USER: Admin user on the nodes (default: $USER)
    NODECONVERGE_ADMIN_PUBLIC_KEY / NODECONVERGE_ADMIN_PRIVATE_KEY: Key paths
"""

from __future__ import annotations

import getpass
import os
from dataclasses import dataclass
from typing import ClassVar

from nodeconverge.config.base_config import BaseConvergeConfig

DEFAULT_MAX_CONCURRENT_TASKS = 32


@dataclass
class ConvergeConfig(BaseConvergeConfig):
    """Tunables for the execution pipeline and orchestrator."""

    _env_prefix: ClassVar[str] = "NODECONVERGE"

    max_concurrent_tasks: int = DEFAULT_MAX_CONCURRENT_TASKS
    barrier_timeout_seconds: float | None = None
    phase_timeout_seconds: float | None = None
    settings_phase: str = "settings"
    bootstrap_phase: str = "bootstrap"
    bootstrap_flag: str = "bootstrapped"
    dry_run: bool = False

    def __post_init__(self) -> None:
        if self.max_concurrent_tasks < 1:
            raise ValueError(
                f"max_concurrent_tasks must be positive, got {self.max_concurrent_tasks}"
            )

    @classmethod
    def from_env(cls) -> "ConvergeConfig":
        """Load configuration from environment variables."""
        return cls(
            max_concurrent_tasks=cls._get_env_int(
                "MAX_CONCURRENT_TASKS", DEFAULT_MAX_CONCURRENT_TASKS
            ),
            barrier_timeout_seconds=cls._get_env_float("BARRIER_TIMEOUT", None),
            phase_timeout_seconds=cls._get_env_float("PHASE_TIMEOUT", None),
            settings_phase=cls._get_env_str("SETTINGS_PHASE", "settings"),
            bootstrap_phase=cls._get_env_str("BOOTSTRAP_PHASE", "bootstrap"),
            bootstrap_flag=cls._get_env_str("BOOTSTRAP_FLAG", "bootstrapped"),
            dry_run=cls._get_env_bool("DRY_RUN", False),
        )


@dataclass(frozen=True)
class AdminUser:
    """The user that phases run as on provisioned nodes."""

    username: str
    public_key_path: str = "~/.ssh/id_rsa.pub"
    private_key_path: str = "~/.ssh/id_rsa"
    sudo: bool = True

    @classmethod
    def from_env(cls) -> "AdminUser":
        """Load the admin user from environment variables."""
        return cls(
            username=os.environ.get("NODECONVERGE_ADMIN_USER") or getpass.getuser(),
            public_key_path=os.environ.get(
                "NODECONVERGE_ADMIN_PUBLIC_KEY", "~/.ssh/id_rsa.pub"
            ),
            private_key_path=os.environ.get(
                "NODECONVERGE_ADMIN_PRIVATE_KEY", "~/.ssh/id_rsa"
            ),
        )

    @property
    def expanded_private_key_path(self) -> str:
        return os.path.expanduser(self.private_key_path)
