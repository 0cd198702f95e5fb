"""nodeconverge: converge compute nodes to a declared topology.

Provisions and configures remote nodes so that every group has its declared
number of nodes, then runs ordered phases on them with barrier
synchronisation at phase boundaries.
"""

from nodeconverge.api import converge, lift

__version__ = "0.1.0"

__all__ = ["converge", "lift", "__version__"]
