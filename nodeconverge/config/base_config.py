"""Base configuration class with typed environment loading.

Usage:
    from nodeconverge.config.base_config import BaseConvergeConfig

    @dataclass
    class MyConfig(BaseConvergeConfig):
        _env_prefix: ClassVar[str] = "NODECONVERGE_MY"

        max_retries: int = 3

        @classmethod
        def from_env(cls) -> "MyConfig":
            return cls(max_retries=cls._get_env_int("MAX_RETRIES", 3))
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from typing import Any, ClassVar, TypeVar

T = TypeVar("T", bound="BaseConvergeConfig")


@dataclass
class BaseConvergeConfig:
    """Base configuration providing env var getters.

    Subclasses should:
    1. Override `_env_prefix` for their specific env var namespace
    2. Add their fields as dataclass fields
    3. Implement `from_env()` classmethod using the helper methods
    """

    # Default environment variable prefix (override in subclasses)
    _env_prefix: ClassVar[str] = "NODECONVERGE"

    # -------------------------------------------------------------------------
    # Environment Variable Helpers
    # -------------------------------------------------------------------------

    @classmethod
    def _make_env_key(cls, suffix: str) -> str:
        """Create full environment variable name from suffix.

        Args:
            suffix: The variable suffix (e.g., "BARRIER_TIMEOUT")

        Returns:
            Full env var name (e.g., "NODECONVERGE_BARRIER_TIMEOUT")
        """
        return f"{cls._env_prefix}_{suffix}"

    @classmethod
    def _get_env_bool(cls, suffix: str, default: bool) -> bool:
        """Get boolean from environment variable.

        Recognizes: "true", "1", "yes", "on" as True (case-insensitive)
        All other values (including "false", "0", "no", "off") → False
        """
        value = os.environ.get(cls._make_env_key(suffix))
        if value is None:
            return default
        return value.lower() in ("true", "1", "yes", "on")

    @classmethod
    def _get_env_int(cls, suffix: str, default: int) -> int:
        """Get integer from environment variable, falling back on invalid values."""
        value = os.environ.get(cls._make_env_key(suffix))
        if value is None:
            return default
        try:
            return int(value)
        except (ValueError, TypeError):
            return default

    @classmethod
    def _get_env_float(cls, suffix: str, default: float | None) -> float | None:
        """Get float from environment variable, falling back on invalid values."""
        value = os.environ.get(cls._make_env_key(suffix))
        if value is None:
            return default
        try:
            return float(value)
        except (ValueError, TypeError):
            return default

    @classmethod
    def _get_env_str(cls, suffix: str, default: str) -> str:
        """Get string from environment variable (stripped of whitespace)."""
        value = os.environ.get(cls._make_env_key(suffix))
        if value is None:
            return default
        return value.strip()

    # -------------------------------------------------------------------------
    # Factory Method (override in subclasses)
    # -------------------------------------------------------------------------

    @classmethod
    def from_env(cls: type[T]) -> T:
        """Create config from environment variables.

        Default implementation uses field defaults only.
        """
        return cls()

    def to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary for logging/serialization."""
        result = {}
        for f in fields(self):
            if not f.name.startswith("_"):
                result[f.name] = getattr(self, f.name)
        return result
