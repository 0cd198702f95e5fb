"""Configuration: environment-driven settings and topology files."""

from nodeconverge.config.base_config import BaseConvergeConfig
from nodeconverge.config.converge_config import AdminUser, ConvergeConfig

__all__ = [
    "AdminUser",
    "BaseConvergeConfig",
    "ConvergeConfig",
]
