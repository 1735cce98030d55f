"""
Global pytest configuration and fixtures for changerelay tests
"""

import logging
import sys
from pathlib import Path

import pytest
import pytest_asyncio

# Add the src directory to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "src"))

from changerelay.config import RelayConfig
from changerelay.dispatchers import RecordingDispatcher
from changerelay.guard import EventLoopGuard
from changerelay.optimistic import OptimisticUpdater
from changerelay.processor import TriggerProcessor
from changerelay.store import InMemoryObjectStore
from helpers import SELF_ARN, no_sleep

# Configure logging for tests
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)

# Suppress noisy logs during testing
logging.getLogger('aiohttp').setLevel(logging.WARNING)
logging.getLogger('aiosqlite').setLevel(logging.WARNING)


def pytest_configure(config):
    """Configure custom pytest markers"""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "redis: Tests requiring a running Redis server")
    config.addinivalue_line("markers", "slow: Tests that rely on real sleeps")


@pytest.fixture
def config(monkeypatch, tmp_path):
    """Relay config isolated from the developer's environment"""
    for name in (
        "CHANGERELAY_STORE_BACKEND", "CHANGERELAY_SELF_IDENTITY", "BACKEND_ROLE_ARN",
        "CHANGERELAY_GUARD_PATTERNS", "CHANGERELAY_MAX_RETRIES", "CHANGERELAY_MAX_CONCURRENCY",
        "CHANGERELAY_NOTIFICATION_URL", "CHANGERELAY_SCHEDULER_URL",
        "CHANGERELAY_DELETE_TRIGGER_ON_PERSIST_FAILURE", "SQLITE_PATH", "REDIS_URL", "LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    return RelayConfig(
        store_backend="memory",
        sqlite_path=str(tmp_path / "objects.db"),
        filesystem_root=str(tmp_path / "objects"),
        self_identity=SELF_ARN,
        base_delay=0.0,
        store_timeout=5.0,
        collaborator_timeout=5.0,
    )


@pytest_asyncio.fixture
async def store():
    """Initialized in-memory object store"""
    store = InMemoryObjectStore()
    await store.initialize()
    yield store
    await store.shutdown()


@pytest.fixture
def notifier():
    return RecordingDispatcher(name="notification")


@pytest.fixture
def scheduler():
    return RecordingDispatcher(name="scheduler", schedules_resource=True)


@pytest.fixture
def processor(store, notifier, scheduler, config):
    updater = OptimisticUpdater(store, retry=config.retry_policy, sleep=no_sleep)
    return TriggerProcessor(store, [notifier, scheduler], updater, config)


@pytest.fixture
def guard():
    return EventLoopGuard(SELF_ARN)
