"""
Pytest configuration and shared fixtures for FileVault tests.
"""
import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Generator

import pytest
from fastapi.testclient import TestClient

# Add app to Python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from filevault.api.dependencies import get_facade
from filevault.main import app
from filevault.storage.access import AccessBroker
from filevault.storage.engine import StorageConfig, StorageEngine
from filevault.storage.lifecycle import LifecycleFacade
from filevault.storage.retention import RetentionConfig, RetentionManager
from filevault.storage.tokens import InMemoryTokenStore


class FrozenClock:
    """Controllable UTC clock; starts on a whole second."""

    def __init__(self, now: datetime = None):
        self.now = now or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now += timedelta(**delta)
        return self.now


def set_file_time(engine: StorageEngine, relative_path: str, when: datetime) -> None:
    """Backdate a stored file's access and modification times."""
    ns = int(when.timestamp()) * 1_000_000_000
    os.utime(engine.resolve(relative_path), ns=(ns, ns))


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def storage_config(tmp_path) -> StorageConfig:
    """Storage rooted in a per-test temporary directory."""
    return StorageConfig(base_dir=tmp_path / "storage")


@pytest.fixture
def engine(storage_config: StorageConfig) -> StorageEngine:
    engine = StorageEngine(storage_config)
    engine.ensure_directories()
    return engine


@pytest.fixture
def retention_config() -> RetentionConfig:
    return RetentionConfig(enable_automatic_cleanup=False)


@pytest.fixture
def retention(engine, retention_config, clock) -> Generator[RetentionManager, None, None]:
    """Retention manager on the frozen clock, scheduler not started."""
    manager = RetentionManager(engine, retention_config, clock=clock, start_scheduler=False)
    yield manager
    manager.stop_automatic_cleanup()


@pytest.fixture
def token_store() -> InMemoryTokenStore:
    return InMemoryTokenStore()


@pytest.fixture
def broker(engine, token_store, clock) -> AccessBroker:
    return AccessBroker(engine, token_store=token_store, clock=clock)


@pytest.fixture
def facade(storage_config, clock) -> Generator[LifecycleFacade, None, None]:
    """Facade with automatic cleanup disabled."""
    facade = LifecycleFacade(
        storage_config=storage_config,
        retention_config=RetentionConfig(enable_automatic_cleanup=False),
        token_store=InMemoryTokenStore(),
        clock=clock,
    )
    facade.initialize()
    yield facade
    facade.shutdown()


@pytest.fixture
def client(facade: LifecycleFacade) -> Generator[TestClient, None, None]:
    """Create a test client bound to the per-test facade."""
    app.dependency_overrides[get_facade] = lambda: facade

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def csv_bytes() -> bytes:
    return b"name,email\nAda,ada@example.com\n"
