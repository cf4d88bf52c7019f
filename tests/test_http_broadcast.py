"""
End-to-end tests for HTTP broadcast: a real origin server on an
ephemeral port and worker nodes fetching from it.
"""

import pickle
import socket
import time
from concurrent.futures import ThreadPoolExecutor

import httpx
import pytest

from relaycast.auth.identity import KeyPair
from relaycast.auth.security import SecurityManager
from relaycast.broadcast import http as http_module
from relaycast.broadcast.base import BroadcastState
from relaycast.broadcast.http import HttpBroadcast, HttpBroadcastService
from relaycast.broadcast.manager import BroadcastManager
from relaycast.errors import (
    BroadcastError,
    BroadcastNotFoundError,
    InitializationError,
    InvalidBroadcastError,
    SerializationFault,
    TransferError,
    TransferTimeout,
)
from relaycast.io.serializer import JsonSerializer
from relaycast.storage.block_cache import BlockCache


def ship(broadcast):
    """Send a handle to another node the way a task would."""
    return pickle.loads(pickle.dumps(broadcast))


def ship_id(broadcast_id: int) -> HttpBroadcast:
    """A handle for an id whose origin-side handle no longer pickles."""
    handle = HttpBroadcast.__new__(HttpBroadcast)
    handle.__setstate__({"id": broadcast_id, "is_local": False})
    return handle


class TestServiceLifecycle:
    """Tests for HttpBroadcastService initialize/stop."""

    def test_origin_publishes_uri(self, config):
        service = HttpBroadcastService(BlockCache("origin"))
        service.initialize(is_origin=True, config=config)
        try:
            assert config.server_uri.startswith("http://127.0.0.1:")
            assert service.server_uri == config.server_uri
            assert service.broadcast_dir.is_dir()

            response = httpx.get(f"{config.server_uri}/health")
            assert response.status_code == 200
            assert response.json()["status"] == "ok"
        finally:
            service.stop()

    def test_initialize_is_idempotent(self, config):
        service = HttpBroadcastService(BlockCache("origin"))
        service.initialize(is_origin=True, config=config)
        try:
            uri = config.server_uri
            broadcast_dir = service.broadcast_dir

            service.initialize(is_origin=True, config=config.copy(compress=False))

            assert service.server_uri == uri
            assert service.broadcast_dir == broadcast_dir
            assert service.compress is True
        finally:
            service.stop()

    def test_stop_without_initialize(self):
        service = HttpBroadcastService(BlockCache("idle"))
        service.stop()
        service.stop()
        assert not service.initialized

    def test_stop_then_reinitialize(self, config):
        service = HttpBroadcastService(BlockCache("origin"))
        service.initialize(is_origin=True, config=config)
        old_dir = service.broadcast_dir
        service.stop()

        assert not old_dir.exists()
        assert service.server_uri is None

        service.initialize(is_origin=True, config=config)
        try:
            assert service.initialized
            assert httpx.get(f"{config.server_uri}/health").status_code == 200
        finally:
            service.stop()

    def test_bind_failure(self, config):
        """A port already in use aborts origin startup."""
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", 0))
        blocker.listen(1)
        try:
            config.broadcast_port = blocker.getsockname()[1]
            service = HttpBroadcastService(BlockCache("origin"))

            with pytest.raises(InitializationError):
                service.initialize(is_origin=True, config=config)

            assert not service.initialized
            assert service.broadcast_dir is None
        finally:
            blocker.close()

    def test_authenticate_flag_requires_key(self, config):
        config.authenticate = True
        service = HttpBroadcastService(BlockCache("origin"))

        with pytest.raises(InitializationError, match="no cluster key"):
            service.initialize(is_origin=True, config=config)

        assert not service.initialized
        assert service.broadcast_dir is None

        service.initialize(
            is_origin=True, config=config, security=SecurityManager(keypair=KeyPair.generate())
        )
        try:
            assert service.security.is_authentication_enabled()
        finally:
            service.stop()

    def test_sweeper_only_on_origin(self, config):
        config.cleaner_ttl = 3600
        origin = HttpBroadcastService(BlockCache("origin"))
        worker = HttpBroadcastService(BlockCache("worker"))
        origin.initialize(is_origin=True, config=config)
        worker.initialize(is_origin=False, config=config.copy())
        try:
            assert origin.cleaner is not None and origin.cleaner.running
            assert worker.cleaner is None
        finally:
            worker.stop()
            origin.stop()

    def test_uninitialized_service_refuses_transfers(self):
        service = HttpBroadcastService(BlockCache("idle"))

        with pytest.raises(BroadcastError):
            service.read(1)
        with pytest.raises(BroadcastError):
            service.write(1, "value")


class TestTransferProtocol:
    """Tests for write/read through the origin's file server."""

    def test_scenario_hello(self, origin, make_worker):
        """Publish, fetch from a fresh node, then expire through sweeps."""
        service = origin.service
        path = service.write(42, "hello")

        assert [p for p, _ in service.registry.items()] == [path]
        assert path.name == "broadcast_42"

        worker = make_worker()
        assert worker.service.read(42) == "hello"

        published_at = service.registry.timestamp_of(path)
        assert service.cleanup(published_at - 1) == []
        assert path.exists()

        assert service.cleanup(published_at + 1) == [path]
        assert not path.exists()
        assert len(service.registry) == 0

    def test_round_trip_without_compression(self, config, coordinator):
        config.compress = False
        config.buffer_size = 1024
        with BroadcastManager(is_origin=True, config=config, coordinator=coordinator) as origin:
            value = {"matrix": [[i * j for j in range(50)] for i in range(50)]}
            b = origin.new_broadcast(value)

            with BroadcastManager(is_origin=False, config=config.copy()) as worker:
                assert worker.attach(ship(b)).value == value

    @pytest.mark.parametrize("codec", ["bz2", "lzma"])
    def test_round_trip_other_codecs(self, config, codec):
        config.compression_codec = codec
        with BroadcastManager(is_origin=True, config=config) as origin:
            b = origin.new_broadcast(list(range(1000)))

            with BroadcastManager(is_origin=False, config=config.copy()) as worker:
                assert worker.attach(ship(b)).value == list(range(1000))

    def test_json_serializer(self, config):
        with BroadcastManager(is_origin=True, config=config, serializer=JsonSerializer()) as origin:
            b = origin.new_broadcast({"labels": ["a", "b"]})

            with BroadcastManager(is_origin=False, config=config.copy(), serializer=JsonSerializer()) as worker:
                assert worker.attach(ship(b)).value == {"labels": ["a", "b"]}

    def test_compression_mismatch_fails(self, origin, config):
        """Settings are not negotiated; a mismatched reader cannot decode."""
        b = origin.new_broadcast({"x": 1})

        with BroadcastManager(is_origin=False, config=config.copy(compress=False)) as worker:
            with pytest.raises(SerializationFault):
                worker.attach(ship(b)).value

    def test_serialization_failure_leaves_nothing(self, origin):
        service = origin.service

        with pytest.raises(SerializationFault):
            service.write(5, lambda: None)

        assert not service.file_for(5).exists()
        assert len(service.registry) == 0

    def test_unknown_id_not_found(self, make_worker):
        worker = make_worker()

        with pytest.raises(BroadcastNotFoundError) as exc_info:
            worker.service.read(999)
        assert exc_info.value.broadcast_id == 999

    def test_unreachable_origin(self, config):
        with socket.socket() as s:
            s.bind(("127.0.0.1", 0))
            port = s.getsockname()[1]

        worker_config = config.copy(server_uri=f"http://127.0.0.1:{port}")
        with BroadcastManager(is_origin=False, config=worker_config) as worker:
            with pytest.raises(TransferError):
                worker.service.read(0)

    def test_silent_origin_times_out(self, config, monkeypatch):
        """An origin that accepts but never answers trips the read timeout."""
        monkeypatch.setattr(http_module, "HTTP_READ_TIMEOUT", 0.2)

        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as silent:
            silent.bind(("127.0.0.1", 0))
            silent.listen(1)
            port = silent.getsockname()[1]

            worker_config = config.copy(server_uri=f"http://127.0.0.1:{port}")
            with BroadcastManager(is_origin=False, config=worker_config) as worker:
                with pytest.raises(TransferTimeout) as exc_info:
                    worker.service.read(3)

        assert exc_info.value.url == f"http://127.0.0.1:{port}/broadcast_3"

    def test_worker_without_uri(self, config):
        with BroadcastManager(is_origin=False, config=config.copy(server_uri=None)) as worker:
            with pytest.raises(TransferError):
                worker.service.read(0)

    def test_concurrent_reads(self, origin, make_worker):
        """Independent workers each reconstruct an equal value."""
        value = {"rows": [list(range(100)) for _ in range(200)]}
        b = origin.new_broadcast(value)
        workers = [make_worker() for _ in range(8)]

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda w: w.attach(ship(b)).value, workers))

        assert all(result == value for result in results)


class TestAuthentication:
    """Tests for authenticated fetches."""

    def test_authenticated_fetch(self, config):
        security = SecurityManager(keypair=KeyPair.generate())
        with BroadcastManager(is_origin=True, config=config, security=security) as origin:
            b = origin.new_broadcast("secret")

            with BroadcastManager(is_origin=False, config=config.copy(), security=security) as worker:
                assert worker.attach(ship(b)).value == "secret"

    def test_unauthenticated_worker_rejected(self, config):
        security = SecurityManager(keypair=KeyPair.generate())
        with BroadcastManager(is_origin=True, config=config, security=security) as origin:
            b = origin.new_broadcast("secret")

            response = httpx.get(f"{config.server_uri}/{b.block_id.name}")
            assert response.status_code == 401

            with BroadcastManager(is_origin=False, config=config.copy()) as worker:
                with pytest.raises(TransferError):
                    worker.attach(ship(b)).value

    def test_foreign_key_rejected(self, config):
        with BroadcastManager(
            is_origin=True, config=config, security=SecurityManager(keypair=KeyPair.generate())
        ) as origin:
            b = origin.new_broadcast("secret")

            with BroadcastManager(
                is_origin=False,
                config=config.copy(),
                security=SecurityManager(keypair=KeyPair.generate()),
            ) as worker:
                with pytest.raises(TransferError) as exc_info:
                    worker.attach(ship(b)).value
                assert "403" in str(exc_info.value)


class TestBroadcastLifecycle:
    """Tests for the broadcast value state machine."""

    def test_creation_caches_and_publishes(self, origin):
        b = origin.new_broadcast([1, 2, 3])

        assert b.state is BroadcastState.PUBLISHED_REMOTELY
        assert origin.block_cache.get_single(b.block_id) == [1, 2, 3]
        assert origin.block_cache.reported_blocks() == []
        assert origin.service.file_for(b.id).exists()

    def test_local_broadcast_is_not_published(self, origin):
        b = origin.new_broadcast("local", is_local=True)

        assert b.state is BroadcastState.CACHED_LOCALLY
        assert b.value == "local"
        assert not origin.service.file_for(b.id).exists()
        assert len(origin.service.registry) == 0

    def test_ids_are_monotonic(self, origin):
        ids = [origin.new_broadcast(i).id for i in range(5)]
        assert ids == sorted(ids)
        assert len(set(ids)) == 5

    def test_failed_publication_cleans_local_copy(self, origin):
        with pytest.raises(SerializationFault):
            origin.new_broadcast(lambda: None)

        assert len(origin.block_cache) == 0

    def test_pickled_handle_carries_no_payload(self, origin):
        b = origin.new_broadcast("x" * 100_000)
        data = pickle.dumps(b)

        assert len(data) < 1000
        handle = pickle.loads(data)
        assert handle.id == b.id
        assert not handle.bound

    def test_unbound_handle(self, origin):
        handle = ship(origin.new_broadcast("value"))

        with pytest.raises(BroadcastError, match="not attached"):
            handle.value

    def test_worker_caches_after_first_fetch(self, origin, make_worker):
        b = origin.new_broadcast({"k": "v"})
        worker = make_worker()
        handle = worker.attach(ship(b))

        assert handle.value == {"k": "v"}
        assert handle.state is BroadcastState.CACHED_LOCALLY
        assert worker.block_cache.get_single(b.block_id) == {"k": "v"}
        assert worker.block_cache.reported_blocks() == []

        # Later handles on the same node never hit the network
        origin.service.file_for(b.id).unlink()
        assert worker.attach(ship(b)).value == {"k": "v"}

    def test_unpersist_keeps_origin_file(self, origin, make_worker):
        b = origin.new_broadcast("keep me")
        first = make_worker()
        first.attach(ship(b)).value

        b.unpersist(blocking=True)

        assert b.state is BroadcastState.UNPERSISTED
        assert first.block_cache.get_single(b.block_id) is None
        assert origin.service.file_for(b.id).exists()
        assert b.value == "keep me"

        late = make_worker()
        assert late.attach(ship(b)).value == "keep me"
        assert first.attach(ship(b)).value == "keep me"

    def test_unpersist_is_idempotent(self, origin):
        b = origin.new_broadcast("v")
        b.unpersist(blocking=True)
        b.unpersist(blocking=True)
        assert b.state is BroadcastState.UNPERSISTED

    def test_destroy_removes_everything(self, origin, make_worker):
        b = origin.new_broadcast("doomed")
        worker = make_worker()
        worker.attach(ship(b)).value
        path = origin.service.file_for(b.id)

        b.destroy(blocking=True)

        assert b.state is BroadcastState.DESTROYED
        assert not path.exists()
        assert path not in origin.service.registry
        assert origin.block_cache.get_single(b.block_id) is None
        assert worker.block_cache.get_single(b.block_id) is None

        with pytest.raises(InvalidBroadcastError):
            b.value

        fresh = make_worker()
        with pytest.raises(BroadcastNotFoundError):
            fresh.attach(ship_id(b.id)).value

    def test_destroy_reaches_loaded_worker_handles(self, origin, make_worker):
        """A worker handle that already read the value sees the destroy."""
        b = origin.new_broadcast("doomed")
        handle = make_worker().attach(ship(b))
        assert handle.value == "doomed"

        b.destroy(blocking=True)

        with pytest.raises(BroadcastNotFoundError):
            handle.value

    def test_worker_cannot_destroy(self, origin, make_worker):
        b = origin.new_broadcast("survivor")
        worker = make_worker()
        handle = worker.attach(ship(b))
        handle.value

        with pytest.raises(BroadcastError, match="only be destroyed on the origin"):
            handle.destroy(blocking=True)
        with pytest.raises(BroadcastError, match="only be destroyed on the origin"):
            worker.unbroadcast(b.id, remove_from_origin=True, blocking=True)

        assert handle.state is BroadcastState.CACHED_LOCALLY
        assert handle.value == "survivor"
        assert origin.service.file_for(b.id).exists()
        assert make_worker().attach(ship(b)).value == "survivor"

    def test_destroy_is_idempotent(self, origin):
        b = origin.new_broadcast("v")
        b.destroy(blocking=True)
        b.destroy(blocking=True)

        assert b.state is BroadcastState.DESTROYED
        with pytest.raises(InvalidBroadcastError, match="after it was destroyed"):
            b.value

    def test_destroyed_handle_cannot_be_shipped(self, origin):
        b = origin.new_broadcast("v")
        b.destroy(blocking=True)

        with pytest.raises(InvalidBroadcastError):
            pickle.dumps(b)

    def test_unbroadcast_from_origin(self, origin, make_worker):
        b = origin.new_broadcast("v")

        origin.unbroadcast(b.id, remove_from_origin=True, blocking=True)

        with pytest.raises(BroadcastNotFoundError):
            make_worker().service.read(b.id)

    def test_sweep_then_fetch_fails(self, origin, make_worker):
        """Expired files are gone for workers that never cached them."""
        b = origin.new_broadcast("short-lived")

        origin.service.cleanup(time.time() + 1)

        with pytest.raises(BroadcastNotFoundError):
            make_worker().attach(ship(b)).value

    def test_sweep_skips_missing_files(self, origin):
        b1 = origin.new_broadcast("a")
        b2 = origin.new_broadcast("b")
        origin.service.file_for(b1.id).unlink()

        expired = origin.service.cleanup(time.time() + 1)

        assert {p.name for p in expired} == {b1.block_id.name, b2.block_id.name}
        assert len(origin.service.registry) == 0

