"""
Pytest fixtures for relaycast tests.
"""

import shutil
import tempfile
from pathlib import Path

import pytest

from relaycast.config import BroadcastConfig
from relaycast.broadcast.manager import BroadcastManager
from relaycast.storage.coordinator import ClusterCoordinator


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    tmp = tempfile.mkdtemp(prefix="relaycast-test-")
    yield Path(tmp)
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def config(temp_dir):
    """Broadcast config writing into the temp directory."""
    return BroadcastConfig(local_dir=temp_dir / "local", data_dir=temp_dir / "data")


@pytest.fixture
def coordinator():
    coordinator = ClusterCoordinator()
    yield coordinator
    coordinator.shutdown()


@pytest.fixture
def origin(config, coordinator):
    """An initialized origin node serving on an ephemeral port."""
    manager = BroadcastManager(is_origin=True, config=config, coordinator=coordinator)
    manager.initialize()
    yield manager
    manager.stop()


@pytest.fixture
def make_worker(origin, config, coordinator):
    """Factory for initialized worker nodes pointed at the origin."""
    workers = []

    def factory(**kwargs):
        kwargs.setdefault("coordinator", coordinator)
        worker = BroadcastManager(is_origin=False, config=config.copy(), **kwargs)
        worker.initialize()
        workers.append(worker)
        return worker

    yield factory

    for worker in workers:
        worker.stop()
