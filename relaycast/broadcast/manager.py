"""
Broadcast manager: one per node.
"""

import itertools
import logging
import threading
import uuid
from typing import Any, Optional

from ..auth.security import SecurityManager
from ..config import BroadcastConfig, get_config
from ..io.serializer import Serializer
from ..storage.block_cache import BlockCache
from ..storage.coordinator import ClusterCoordinator
from .http import HttpBroadcast, HttpBroadcastService

logger = logging.getLogger(__name__)


class BroadcastManager:
    """
    Creates and resolves broadcast variables on one node.

    Owns the node's HttpBroadcastService and issues broadcast ids. Ids
    are unique per manager, so a cluster must create all broadcasts on
    its single origin node.

    Usage:
        origin = BroadcastManager(is_origin=True, config=config, coordinator=coordinator)
        origin.initialize()
        b = origin.new_broadcast({"weights": [...]})

        worker = BroadcastManager(is_origin=False, config=config.copy())
        worker.initialize()
        handle = worker.attach(pickle.loads(pickle.dumps(b)))
        handle.value
    """

    def __init__(
        self,
        is_origin: bool,
        config: Optional[BroadcastConfig] = None,
        block_cache: Optional[BlockCache] = None,
        coordinator: Optional[ClusterCoordinator] = None,
        serializer: Optional[Serializer] = None,
        security: Optional[SecurityManager] = None,
        node_id: Optional[str] = None,
    ):
        self.is_origin = is_origin
        self.config = config or get_config()
        self.node_id = node_id or ("origin" if is_origin else f"worker-{uuid.uuid4().hex[:8]}")
        self.block_cache = block_cache or BlockCache(node_id=self.node_id)
        self.coordinator = coordinator
        self.security = security

        if coordinator is not None:
            coordinator.register(self.block_cache, is_origin=is_origin)

        self.service = HttpBroadcastService(self.block_cache, coordinator=coordinator, serializer=serializer)

        self._next_id = itertools.count()
        self._id_lock = threading.Lock()

    def initialize(self) -> "BroadcastManager":
        self.service.initialize(self.is_origin, self.config, self.security)
        return self

    def stop(self) -> None:
        self.service.stop()
        if self.coordinator is not None:
            self.coordinator.unregister(self.block_cache.node_id)

    def _issue_id(self) -> int:
        with self._id_lock:
            return next(self._next_id)

    def new_broadcast(self, value: Any, is_local: bool = False) -> HttpBroadcast:
        """
        Create a broadcast of ``value``.

        Args:
            value: The value to broadcast; must be serializable unless is_local
            is_local: Skip publication (single-node execution)

        Raises:
            SerializationFault: Publication failed; the local copy is removed
        """
        broadcast_id = self._issue_id()
        try:
            broadcast = HttpBroadcast(value, is_local, broadcast_id, self.service)
        except Exception:
            self.block_cache.remove_broadcast(broadcast_id)
            raise

        logger.debug(f"Created {broadcast!r} (local={is_local})")
        return broadcast

    def attach(self, broadcast: HttpBroadcast) -> HttpBroadcast:
        """Bind a deserialized broadcast handle to this node."""
        return broadcast.bind(self.service)

    def unbroadcast(self, broadcast_id: int, remove_from_origin: bool, blocking: bool) -> None:
        self.service.unpersist(broadcast_id, remove_from_origin, blocking)

    def __enter__(self) -> "BroadcastManager":
        return self.initialize()

    def __exit__(self, *exc_info) -> None:
        self.stop()
