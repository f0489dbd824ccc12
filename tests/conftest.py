"""
Pytest configuration and fixtures.
"""

import os
from pathlib import Path

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from tests.fakes import FakeRuntimeClient, InMemoryBackend

# Set test environment
os.environ["LOG_LEVEL"] = "WARNING"


@pytest.fixture
def test_settings(tmp_path: Path):
    """Create test settings."""
    from capsule.config import Settings

    return Settings(
        data_dir=tmp_path,
        db_path=tmp_path / "capsule.db",
        port=3601,  # Different port for testing
        host="127.0.0.1",
        log_level="WARNING",
        sync_reconnect_base_delay=0.01,
        sync_reconnect_max_attempts=2,
    )


@pytest_asyncio.fixture
async def test_database(tmp_path: Path):
    """Create a test database."""
    from capsule.db.database import Database

    db = Database(tmp_path / "capsule.db")
    await db.connect()

    yield db

    await db.close()


@pytest.fixture
def backend() -> InMemoryBackend:
    return InMemoryBackend()


@pytest.fixture
def runtime() -> FakeRuntimeClient:
    return FakeRuntimeClient()


@pytest_asyncio.fixture
async def orchestrator(backend, test_database, test_settings):
    from capsule.core.orchestrator import SandboxOrchestrator

    return SandboxOrchestrator(backend, test_database, test_settings)


@pytest_asyncio.fixture
async def runtime_clients(test_database, runtime):
    from capsule.core.runtime_client import RuntimeClientFactory

    return RuntimeClientFactory(test_database, lambda sandbox: runtime)


@pytest_asyncio.fixture
async def chat_store(test_database):
    from capsule.core.chat_store import ChatStore

    return ChatStore(test_database)


@pytest_asyncio.fixture
async def sync_engine(orchestrator, test_database, runtime_clients, test_settings):
    """Sync engine wired to the in-memory backend and fake runtime."""
    from capsule.core.chat_sync import ChatSyncEngine

    engine = ChatSyncEngine(orchestrator, test_database, runtime_clients, test_settings)

    yield engine

    await engine.stop_all()


@pytest_asyncio.fixture
async def running_sandbox(orchestrator):
    """A running sandbox with ID sb-1."""
    from capsule.models.sandbox import SandboxConfig

    return await orchestrator.create_sandbox(SandboxConfig(id="sb-1", name="Test Sandbox"))


@pytest.fixture
def test_client(test_settings, backend, runtime):
    """Create a FastAPI test client backed by the in-memory fakes."""
    from capsule.server import create_app

    app = create_app(
        settings=test_settings,
        backend=backend,
        runtime_client_builder=lambda sandbox: runtime,
    )

    with TestClient(app) as client:
        yield client
