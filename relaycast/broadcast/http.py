"""
HTTP broadcast.

The origin node serializes each broadcast value once into a file in a
private directory and serves that directory over HTTP. The first time a
worker dereferences a broadcast handle it fetches the file from the
origin and keeps the value in its block cache, so later accesses on
that node never touch the network.

Compression and buffer size are fixed when the service is initialized.
Files carry no header describing how they were written, so every node
of a cluster must use the same settings.
"""

import io
import logging
import shutil
import tempfile
import threading
import time
from contextlib import ExitStack
from pathlib import Path
from typing import Any, Iterator, List, Optional

import httpx

from ..auth.security import SecurityManager
from ..config import BroadcastConfig, DEFAULT_BUFFER_SIZE
from ..errors import (
    BroadcastError,
    BroadcastNotFoundError,
    InitializationError,
    SerializationFault,
    TransferError,
    TransferTimeout,
)
from ..io.compression import CompressionCodec, create_codec
from ..io.serializer import PickleSerializer, Serializer
from ..server.http_server import HttpFileServer
from ..storage.block_cache import BlockCache, BroadcastBlockId, StorageLevel
from ..storage.coordinator import ClusterCoordinator
from .base import Broadcast, BroadcastState, T
from .cleaner import MetadataCleaner
from .registry import TimeStampedFileRegistry, delete_broadcast_file

logger = logging.getLogger(__name__)

# Connect and read timeout for fetches from the origin
HTTP_READ_TIMEOUT = 5 * 60.0


class _ResponseStream(io.RawIOBase):
    """Read-only file object over the body of a streaming httpx response."""

    def __init__(self, chunks: Iterator[bytes]):
        self._chunks = chunks
        self._pending = b""

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        while not self._pending:
            try:
                self._pending = next(self._chunks)
            except StopIteration:
                return 0
        n = min(len(buffer), len(self._pending))
        buffer[:n] = self._pending[:n]
        self._pending = self._pending[n:]
        return n


class HttpBroadcastService:
    """
    Per-node broadcast machinery: file server, transfer protocol,
    file registry, cleanup sweeper and cluster-wide removal.

    ``lock`` guards initialize/stop, sweeps and origin-side removal. It
    is never held while bytes move over the network or onto disk.

    Usage:
        service = HttpBroadcastService(BlockCache("origin"), coordinator)
        service.initialize(is_origin=True, config=config)

        service.write(0, value)          # origin
        value = service.read(0)          # any node

        service.unpersist(0, remove_from_origin=True, blocking=True)
        service.stop()
    """

    def __init__(
        self,
        block_cache: BlockCache,
        coordinator: Optional[ClusterCoordinator] = None,
        serializer: Optional[Serializer] = None,
    ):
        self.block_cache = block_cache
        self.coordinator = coordinator
        self.serializer = serializer or PickleSerializer()
        self.registry = TimeStampedFileRegistry()
        self.lock = threading.RLock()

        self.is_origin = False
        self.broadcast_dir: Optional[Path] = None
        self.compress = False
        self.buffer_size = DEFAULT_BUFFER_SIZE
        self.server_uri: Optional[str] = None
        self.security = SecurityManager()

        self._initialized = False
        self._server: Optional[HttpFileServer] = None
        self._codec: Optional[CompressionCodec] = None
        self._cleaner: Optional[MetadataCleaner] = None

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def cleaner(self) -> Optional[MetadataCleaner]:
        return self._cleaner

    # ==================== Lifecycle ====================

    def initialize(
        self,
        is_origin: bool,
        config: BroadcastConfig,
        security: Optional[SecurityManager] = None,
    ) -> None:
        """
        Set up the node. Only the first call has any effect.

        On the origin this starts the file server and publishes its URI
        as ``config.server_uri`` for workers to read.

        Raises:
            InitializationError: The file server could not be started, or
                authentication is required but no cluster key was given
        """
        with self.lock:
            if self._initialized:
                return

            security = security or SecurityManager()
            if config.authenticate and not security.is_authentication_enabled():
                raise InitializationError("Authentication is enabled but no cluster key was given")

            self.buffer_size = config.buffer_size
            self.compress = config.compress
            self.security = security
            self.is_origin = is_origin

            if is_origin:
                self._create_server(config)
                config.server_uri = self._server.uri

            self.server_uri = config.server_uri
            if not self.server_uri:
                logger.warning("No broadcast server URI configured; remote fetches will fail")

            self._codec = create_codec(config.compression_codec, config.compression_level)
            if is_origin:
                self._cleaner = MetadataCleaner(
                    "http-broadcast",
                    self.cleanup,
                    ttl_seconds=config.cleaner_ttl,
                    period_seconds=config.cleaner_period,
                )

            self._initialized = True
            logger.debug(
                f"HTTP broadcast initialized (origin={is_origin}, compress={self.compress}, "
                f"buffer_size={self.buffer_size}, uri={self.server_uri})"
            )

    def _create_server(self, config: BroadcastConfig) -> None:
        local_dir = Path(config.local_dir)
        local_dir.mkdir(parents=True, exist_ok=True)
        self.broadcast_dir = Path(tempfile.mkdtemp(prefix="broadcast-", dir=local_dir))
        logger.info(f"broadcastDir: {self.broadcast_dir}")

        server = HttpFileServer(
            self.broadcast_dir,
            self.security,
            host=config.bind_host,
            port=config.broadcast_port,
            name="HTTP broadcast server",
        )
        try:
            server.start()
        except BroadcastError:
            shutil.rmtree(self.broadcast_dir, ignore_errors=True)
            self.broadcast_dir = None
            raise

        self._server = server
        logger.info(f"Broadcast server started at {server.uri}")

    def stop(self) -> None:
        """Tear the node down. Safe to call even if never initialized."""
        with self.lock:
            if self._server is not None:
                self._server.stop()
                self._server = None
            if self._cleaner is not None:
                self._cleaner.cancel(wait=False)
                self._cleaner = None
            if self.broadcast_dir is not None:
                shutil.rmtree(self.broadcast_dir, ignore_errors=True)
                self.broadcast_dir = None

            self.registry.clear()
            self._codec = None
            self.server_uri = None
            self._initialized = False

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise BroadcastError("HTTP broadcast service is not initialized")

    # ==================== Transfer Protocol ====================

    def file_for(self, broadcast_id: int) -> Path:
        """Path of the file backing a broadcast on the origin."""
        if self.broadcast_dir is None:
            raise BroadcastError("Broadcast files only exist on an initialized origin node")
        return self.broadcast_dir / BroadcastBlockId(broadcast_id).name

    def write(self, broadcast_id: int, value: Any) -> Path:
        """
        Serialize ``value`` into the file for ``broadcast_id`` and register it.

        Raises:
            SerializationFault: The value could not be written; no file
                or registry entry is left behind
        """
        self._require_initialized()
        path = self.file_for(broadcast_id)
        started = time.perf_counter()

        try:
            with ExitStack() as stack:
                raw = stack.enter_context(open(path, "wb", buffering=0))
                if self.compress:
                    out = self._codec.compressed_output_stream(raw)
                else:
                    out = io.BufferedWriter(raw, self.buffer_size)
                # Closes before the raw file so buffered bytes reach it
                ser_out = stack.enter_context(self.serializer.serialize_stream(out))
                ser_out.write_object(value)
        except Exception as e:
            delete_broadcast_file(path)
            raise SerializationFault(f"Failed to write broadcast {broadcast_id}: {e}") from e

        with self.lock:
            self.registry.add(path)

        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(f"Wrote broadcast {broadcast_id} to {path.name} ({path.stat().st_size} bytes, {elapsed_ms:.1f} ms)")
        return path

    def read(self, broadcast_id: int) -> Any:
        """
        Fetch and deserialize a broadcast from the origin. Never retries.

        Raises:
            BroadcastNotFoundError: The origin has no file for this id
            TransferTimeout: Connect or read exceeded HTTP_READ_TIMEOUT
            TransferError: Any other HTTP or network failure
            SerializationFault: The body could not be decoded
        """
        self._require_initialized()
        if not self.server_uri:
            raise TransferError(f"No broadcast server URI to fetch broadcast {broadcast_id} from")

        base_url = f"{self.server_uri}/{BroadcastBlockId(broadcast_id).name}"
        logger.debug(f"Fetching broadcast {broadcast_id} from {base_url}")

        if self.security.is_authentication_enabled():
            url = self.security.authenticate(base_url)
        else:
            url = base_url

        client_kwargs = self.security.secure({
            "timeout": httpx.Timeout(HTTP_READ_TIMEOUT, connect=HTTP_READ_TIMEOUT),
        })

        try:
            with httpx.Client(**client_kwargs) as client:
                with client.stream("GET", url) as response:
                    if response.status_code == 404:
                        raise BroadcastNotFoundError(broadcast_id)
                    response.raise_for_status()

                    raw = _ResponseStream(response.iter_bytes())
                    if self.compress:
                        inp = self._codec.compressed_input_stream(raw)
                    else:
                        inp = io.BufferedReader(raw, self.buffer_size)

                    with self.serializer.deserialize_stream(inp) as ser_in:
                        return ser_in.read_object()
        except BroadcastError:
            raise
        except httpx.TimeoutException as e:
            raise TransferTimeout(f"Timed out fetching broadcast {broadcast_id}: {e}", url=base_url) from e
        except httpx.HTTPStatusError as e:
            raise TransferError(
                f"Origin answered {e.response.status_code} for broadcast {broadcast_id}", url=base_url
            ) from e
        except httpx.HTTPError as e:
            raise TransferError(f"Failed to fetch broadcast {broadcast_id}: {e}", url=base_url) from e
        except Exception as e:
            raise SerializationFault(f"Failed to decode broadcast {broadcast_id}: {e}") from e

    def fetch(self, broadcast_id: int) -> Any:
        """Return a broadcast value from the block cache, reading it remotely on a miss."""
        block_id = BroadcastBlockId(broadcast_id)
        cached = self.block_cache.get_single(block_id)
        if cached is not None:
            return cached

        logger.info(f"Started reading broadcast variable {broadcast_id}")
        started = time.perf_counter()
        value = self.read(broadcast_id)
        logger.info(f"HttpBroadcast.read() variable {broadcast_id} took {(time.perf_counter() - started) * 1000:.1f} ms")

        # Only this node uses the copy, so the coordinator is not told
        self.block_cache.put_single(block_id, value, StorageLevel.MEMORY_AND_DISK, tell_master=False)
        logger.info(f"Reading broadcast variable {broadcast_id} took {time.perf_counter() - started:.3f} s")
        return value

    # ==================== Removal ====================

    def unpersist(self, broadcast_id: int, remove_from_origin: bool, blocking: bool) -> None:
        """
        Remove cached copies of a broadcast from every node. If
        ``remove_from_origin`` is set, also drop the origin's copy and
        delete its broadcast file.

        Raises:
            BroadcastError: ``remove_from_origin`` was requested on a node
                other than the origin, which holds no broadcast files
        """
        if remove_from_origin and not self.is_origin:
            raise BroadcastError(
                f"Broadcast {broadcast_id} can only be destroyed on the origin node"
            )

        logger.info(f"Unpersisting broadcast {broadcast_id} (remove_from_origin={remove_from_origin})")
        with self.lock:
            if self.coordinator is not None:
                self.coordinator.remove_broadcast(broadcast_id, remove_from_origin, blocking)
            elif remove_from_origin or not self.is_origin:
                self.block_cache.remove_broadcast(broadcast_id)

            # A stopped origin already removed its directory
            if remove_from_origin and self.broadcast_dir is not None:
                path = self.file_for(broadcast_id)
                self.registry.remove(path)
                delete_broadcast_file(path)

    def cleanup(self, cutoff: float) -> List[Path]:
        """Remove registry entries stamped before ``cutoff`` and delete their files."""
        with self.lock:
            expired = self.registry.clear_older_than(cutoff)
            for path in expired:
                delete_broadcast_file(path)

        if expired:
            logger.info(f"Cleaned up {len(expired)} broadcast file(s) older than {cutoff:.0f}")
        return expired


class HttpBroadcast(Broadcast[T]):
    """
    A broadcast variable distributed over HTTP.

    Created on the origin with the value in hand; unpickled elsewhere as
    an empty handle that must be bound to a node's service (see
    BroadcastManager.attach) before its value is read.
    """

    def __init__(self, value: T, is_local: bool, broadcast_id: int, service: HttpBroadcastService):
        super().__init__(broadcast_id)
        self.is_local = is_local
        self._service = service
        self._value = value
        self._has_value = True
        self._load_lock = threading.Lock()

        # The origin keeps a copy too; the coordinator does not need to know about it
        service.block_cache.put_single(
            self.block_id, value, StorageLevel.MEMORY_AND_DISK, tell_master=False
        )
        self.state = BroadcastState.CACHED_LOCALLY

        if not is_local:
            service.write(broadcast_id, value)
            self.state = BroadcastState.PUBLISHED_REMOTELY

    @property
    def block_id(self) -> BroadcastBlockId:
        return BroadcastBlockId(self.id)

    @property
    def bound(self) -> bool:
        return self._service is not None

    def bind(self, service: HttpBroadcastService) -> "HttpBroadcast[T]":
        self._service = service
        return self

    def _require_service(self) -> HttpBroadcastService:
        if self._service is None:
            raise BroadcastError(f"{self!r} is not attached to a node")
        return self._service

    def _get_value(self) -> T:
        # Only the origin handle owns its payload. Elsewhere the block cache
        # is the source of truth, so a cluster-wide removal is seen here.
        if self._has_value:
            return self._value

        service = self._require_service()
        with self._load_lock:
            value = service.fetch(self.id)
            if self.state is not BroadcastState.DESTROYED:
                self.state = BroadcastState.CACHED_LOCALLY
        return value

    def _do_unpersist(self, blocking: bool) -> None:
        self._require_service().unpersist(self.id, remove_from_origin=False, blocking=blocking)
        # Off the origin the payload goes too; the next access fetches again
        if not self._require_service().is_origin:
            self._drop_value()

    def _do_destroy(self, blocking: bool) -> None:
        self._require_service().unpersist(self.id, remove_from_origin=True, blocking=blocking)
        self._drop_value()

    def _drop_value(self) -> None:
        self._value = None
        self._has_value = False

    def __getstate__(self) -> dict:
        state = super().__getstate__()
        state["is_local"] = self.is_local
        return state

    def __setstate__(self, state: dict) -> None:
        super().__setstate__(state)
        self.is_local = state.get("is_local", False)
        self._service = None
        self._value = None
        self._has_value = False
        self._load_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"HttpBroadcast({self.id})"
