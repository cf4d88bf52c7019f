"""
Cluster-wide removal of broadcast blocks.

The coordinator knows every node's block cache and fans a removal
request out to all of them.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Dict, List, Optional, Union

from .block_cache import BlockCache

logger = logging.getLogger(__name__)


def _gather(futures: List[Future]) -> Future:
    """Combine per-node removal futures into one future of the total count."""
    combined: Future = Future()
    pending = len(futures)
    if pending == 0:
        combined.set_result(0)
        return combined

    lock = threading.Lock()

    def on_done(_: Future) -> None:
        nonlocal pending
        with lock:
            pending -= 1
            finished = pending == 0
        if not finished:
            return
        try:
            combined.set_result(sum(f.result() for f in futures))
        except Exception as e:
            combined.set_exception(e)

    for future in futures:
        future.add_done_callback(on_done)
    return combined


class ClusterCoordinator:
    """
    Fans broadcast removal out to every registered node.

    The origin's cache is only touched when the caller asks to remove
    the broadcast from the origin as well.

    Usage:
        coordinator = ClusterCoordinator()
        coordinator.register(origin_cache, is_origin=True)
        coordinator.register(worker_cache)

        # Drop worker copies, wait for acknowledgement
        coordinator.remove_broadcast(7, remove_from_origin=False, blocking=True)
    """

    def __init__(self, max_workers: int = 4):
        self._caches: Dict[str, BlockCache] = {}
        self._origin_id: Optional[str] = None
        self._lock = threading.Lock()
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="relaycast-remove")

    def register(self, cache: BlockCache, is_origin: bool = False) -> None:
        """Register a node's cache."""
        with self._lock:
            self._caches[cache.node_id] = cache
            if is_origin:
                self._origin_id = cache.node_id
        logger.info(f"Registered node {cache.node_id} (origin={is_origin})")

    def unregister(self, node_id: str) -> None:
        with self._lock:
            self._caches.pop(node_id, None)
            if self._origin_id == node_id:
                self._origin_id = None

    def nodes(self) -> List[str]:
        with self._lock:
            return list(self._caches)

    def _targets(self, remove_from_origin: bool) -> List[BlockCache]:
        with self._lock:
            return [
                cache for node_id, cache in self._caches.items()
                if remove_from_origin or node_id != self._origin_id
            ]

    def remove_broadcast(
        self,
        broadcast_id: int,
        remove_from_origin: bool,
        blocking: bool,
        timeout: Optional[float] = None,
    ) -> Union[int, Future]:
        """
        Remove a broadcast's blocks from every node.

        Args:
            broadcast_id: Broadcast to remove
            remove_from_origin: Also remove the origin node's copy
            blocking: Wait for every node to acknowledge
            timeout: Max seconds to wait when blocking

        Returns:
            Number of blocks removed when blocking, else a Future for it
        """
        targets = self._targets(remove_from_origin)
        futures = [self._pool.submit(cache.remove_broadcast, broadcast_id) for cache in targets]

        logger.debug(
            f"Removing broadcast {broadcast_id} from {len(targets)} node(s) "
            f"(remove_from_origin={remove_from_origin}, blocking={blocking})"
        )

        if blocking:
            done, not_done = wait(futures, timeout=timeout)
            if not_done:
                raise TimeoutError(
                    f"{len(not_done)} node(s) did not acknowledge removal of broadcast {broadcast_id}"
                )
            return sum(f.result() for f in done)

        return _gather(futures)

    def shutdown(self) -> None:
        self._pool.shutdown(wait=True)
