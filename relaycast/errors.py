"""
Exceptions raised by relaycast.

Every failure that a caller is expected to handle derives from
BroadcastError. Failed file deletions are not errors: the sweep and
destroy paths log them and carry on (see delete_broadcast_file).
"""


class BroadcastError(Exception):
    """Base class for broadcast failures."""


class InitializationError(BroadcastError):
    """The broadcast file server could not be started."""


class SerializationFault(BroadcastError):
    """A value could not be encoded on write or decoded on read."""


class TransferError(BroadcastError):
    """A fetch from the origin node failed."""

    def __init__(self, message: str, url: str = None):
        super().__init__(message)
        self.url = url


class TransferTimeout(TransferError):
    """The connect or read timeout elapsed during a fetch."""


class BroadcastNotFoundError(BroadcastError):
    """The broadcast does not exist (never published, or destroyed)."""

    def __init__(self, broadcast_id: int, message: str = None):
        super().__init__(message or f"Broadcast {broadcast_id} not found")
        self.broadcast_id = broadcast_id


class InvalidBroadcastError(BroadcastNotFoundError):
    """A broadcast handle was used after destroy()."""

