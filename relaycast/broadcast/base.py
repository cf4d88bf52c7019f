"""
Broadcast variables.

A broadcast variable is a read-only value created once on the origin
node and dereferenced on many worker nodes. Handles are cheap to pickle:
they carry the broadcast id, never the payload.
"""

import logging
import threading
import traceback
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from ..errors import InvalidBroadcastError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BroadcastState(Enum):
    """Lifecycle state of a broadcast handle on one node."""
    CREATED = "created"
    CACHED_LOCALLY = "cached_locally"
    PUBLISHED_REMOTELY = "published_remotely"
    UNPERSISTED = "unpersisted"
    DESTROYED = "destroyed"


def _call_site() -> str:
    """Describe the caller of the public API method that invoked us."""
    frames = traceback.extract_stack(limit=3)
    frame = frames[0]
    return f"{frame.name} at {frame.filename}:{frame.lineno}"


class Broadcast(ABC, Generic[T]):
    """
    Base class for broadcast variables.

    Subclasses implement how the value is fetched and how persisted
    copies are removed. Unpersist and destroy are idempotent.
    """

    def __init__(self, broadcast_id: int):
        self.id = broadcast_id
        self.state = BroadcastState.CREATED
        self._destroy_site: Optional[str] = None
        self._state_lock = threading.Lock()

    @property
    def value(self) -> T:
        """The broadcast value, fetched on first access on a node that lacks it."""
        self.assert_valid()
        return self._get_value()

    @property
    def is_valid(self) -> bool:
        return self.state is not BroadcastState.DESTROYED

    def assert_valid(self) -> None:
        if not self.is_valid:
            raise InvalidBroadcastError(
                self.id,
                f"Attempted to use {self!r} after it was destroyed ({self._destroy_site})",
            )

    def unpersist(self, blocking: bool = False) -> None:
        """
        Delete cached copies of this broadcast on every node.

        The origin keeps its published file, so the value is fetched
        again on next use.
        """
        with self._state_lock:
            if self.state in (BroadcastState.UNPERSISTED, BroadcastState.DESTROYED):
                return
            self._do_unpersist(blocking)
            self.state = BroadcastState.UNPERSISTED

    def destroy(self, blocking: bool = False) -> None:
        """
        Destroy all data and metadata related to this broadcast.

        Once destroyed the handle cannot be used again, and fetches of
        its id fail on every node.
        """
        with self._state_lock:
            if self.state is BroadcastState.DESTROYED:
                return
            site = _call_site()
            self._do_destroy(blocking)
            self._destroy_site = site
            self.state = BroadcastState.DESTROYED
        logger.info(f"Destroyed {self!r}")

    @abstractmethod
    def _get_value(self) -> T:
        ...

    @abstractmethod
    def _do_unpersist(self, blocking: bool) -> None:
        ...

    @abstractmethod
    def _do_destroy(self, blocking: bool) -> None:
        ...

    def __getstate__(self) -> dict:
        self.assert_valid()
        return {"id": self.id}

    def __setstate__(self, state: dict) -> None:
        self.id = state["id"]
        self.state = BroadcastState.CREATED
        self._destroy_site = None
        self._state_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"Broadcast({self.id})"

    def __eq__(self, other: Any) -> bool:
        return isinstance(other, Broadcast) and other.id == self.id

    def __hash__(self) -> int:
        return hash(self.id)
