"""
Node-local block storage and cluster-wide block removal.
"""

from .block_cache import BlockCache, BroadcastBlockId, StorageLevel
from .coordinator import ClusterCoordinator

__all__ = [
    "BlockCache",
    "BroadcastBlockId",
    "StorageLevel",
    "ClusterCoordinator",
]
