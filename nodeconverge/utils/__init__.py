"""Shared utilities: errors, ordering and async helpers."""

from nodeconverge.utils.async_utils import (
    Outcome,
    first_error,
    gather_outcomes,
)
from nodeconverge.utils.exceptions import (
    CombinedError,
    ConfigurationError,
    ConvergeFailure,
    NodeConvergeError,
    combine_exceptions,
)
from nodeconverge.utils.ordering import distinct, total_order_merge

__all__ = [
    "CombinedError",
    "ConfigurationError",
    "ConvergeFailure",
    "NodeConvergeError",
    "Outcome",
    "combine_exceptions",
    "distinct",
    "first_error",
    "gather_outcomes",
    "total_order_merge",
]
