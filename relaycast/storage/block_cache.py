"""
Node-local block cache.

Each node keeps its own copy of every broadcast value it has created or
fetched, so repeated dereferences never go back to the network. Entries
are never reported to any coordinator unless a put asks for it.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

BROADCAST_PREFIX = "broadcast_"


class StorageLevel(Enum):
    """Storage tier hint for a cached block."""
    MEMORY_ONLY = "memory_only"
    MEMORY_AND_DISK = "memory_and_disk"
    DISK_ONLY = "disk_only"


@dataclass(frozen=True)
class BroadcastBlockId:
    """
    Block id of a broadcast value.

    ``name`` doubles as the on-disk file name on the origin node and as
    the URL path segment served by its broadcast server.
    """
    broadcast_id: int

    @property
    def name(self) -> str:
        return f"{BROADCAST_PREFIX}{self.broadcast_id}"

    @classmethod
    def parse(cls, name: str) -> Optional["BroadcastBlockId"]:
        """Parse a block name, or return None if it is not a broadcast block."""
        if not name.startswith(BROADCAST_PREFIX):
            return None
        suffix = name[len(BROADCAST_PREFIX):]
        if not suffix.isdigit():
            return None
        return cls(int(suffix))

    def __str__(self) -> str:
        return self.name


@dataclass
class CacheEntry:
    """A cached value and its bookkeeping."""
    value: Any
    level: StorageLevel
    tell_master: bool = False
    stored_at: float = field(default_factory=time.time)


class BlockCache:
    """
    In-process block store for one node.

    Thread-safe via RLock.

    Usage:
        cache = BlockCache(node_id="worker-1")
        cache.put_single(BroadcastBlockId(3), value, StorageLevel.MEMORY_AND_DISK)
        cached = cache.get_single(BroadcastBlockId(3))
        cache.remove_broadcast(3)
    """

    def __init__(self, node_id: str = "local"):
        self.node_id = node_id
        self._entries: Dict[BroadcastBlockId, CacheEntry] = {}
        self._lock = threading.RLock()

    def put_single(
        self,
        block_id: BroadcastBlockId,
        value: Any,
        level: StorageLevel = StorageLevel.MEMORY_AND_DISK,
        tell_master: bool = False,
    ) -> None:
        """Store a single value under ``block_id``, replacing any existing one."""
        with self._lock:
            self._entries[block_id] = CacheEntry(value=value, level=level, tell_master=tell_master)
        logger.debug(f"[{self.node_id}] put {block_id} ({level.value}, tell_master={tell_master})")

    def get_single(self, block_id: BroadcastBlockId) -> Optional[Any]:
        """Return the cached value, or None on miss."""
        with self._lock:
            entry = self._entries.get(block_id)
        return entry.value if entry is not None else None

    def contains(self, block_id: BroadcastBlockId) -> bool:
        with self._lock:
            return block_id in self._entries

    def remove_block(self, block_id: BroadcastBlockId) -> bool:
        with self._lock:
            return self._entries.pop(block_id, None) is not None

    def remove_broadcast(self, broadcast_id: int) -> int:
        """Remove every block belonging to a broadcast. Returns the count removed."""
        with self._lock:
            doomed = [b for b in self._entries if b.broadcast_id == broadcast_id]
            for block_id in doomed:
                del self._entries[block_id]

        if doomed:
            logger.debug(f"[{self.node_id}] removed {len(doomed)} block(s) of broadcast {broadcast_id}")
        return len(doomed)

    def block_ids(self) -> List[BroadcastBlockId]:
        with self._lock:
            return list(self._entries)

    def reported_blocks(self) -> List[BroadcastBlockId]:
        """Blocks that were put with tell_master=True."""
        with self._lock:
            return [b for b, e in self._entries.items() if e.tell_master]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
