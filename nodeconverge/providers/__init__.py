"""Node providers.

- NodeListProvider: fixed, in-memory node list
- LambdaNodeProvider: Lambda Labs cloud
"""

from nodeconverge.providers.base import NodeProvider
from nodeconverge.providers.lambda_provider import LambdaConfig, LambdaNodeProvider
from nodeconverge.providers.node_list import NodeListProvider

__all__ = [
    "LambdaConfig",
    "LambdaNodeProvider",
    "NodeListProvider",
    "NodeProvider",
]
