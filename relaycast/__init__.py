"""
relaycast - HTTP broadcast variables for distributed workers

Publish a large read-only value once from an origin node; workers fetch
it on first use and answer from a local cache afterwards.

Example:
    >>> from relaycast import BroadcastConfig, BroadcastManager
    >>> origin = BroadcastManager(is_origin=True, config=BroadcastConfig()).initialize()
    >>> b = origin.new_broadcast({"vocab": vocab})
    >>> b.value["vocab"] is vocab
    True
"""

__version__ = "1.0.0"

from .config import BroadcastConfig, get_config
from .errors import (
    BroadcastError,
    BroadcastNotFoundError,
    InitializationError,
    InvalidBroadcastError,
    SerializationFault,
    TransferError,
    TransferTimeout,
)
from .broadcast import Broadcast, BroadcastManager, BroadcastState, HttpBroadcast

__all__ = [
    "__version__",
    "BroadcastConfig",
    "get_config",
    "BroadcastError",
    "BroadcastNotFoundError",
    "InitializationError",
    "InvalidBroadcastError",
    "SerializationFault",
    "TransferError",
    "TransferTimeout",
    "Broadcast",
    "BroadcastManager",
    "BroadcastState",
    "HttpBroadcast",
]
