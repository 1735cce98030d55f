"""
Test the object store contract on every backend

The Redis backend runs only when a server answers at REDIS_URL
(default redis://localhost:6379).
"""

import asyncio
import os
import uuid

import pytest
import pytest_asyncio

from changerelay.errors import NotFoundError, VersionConflictError
from changerelay.store import (
    FilesystemObjectStore,
    InMemoryObjectStore,
    RedisObjectStore,
    SQLiteObjectStore,
    create_object_store,
)

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379")


async def _redis_store():
    store = RedisObjectStore(REDIS_URL, key_prefix=f"changerelay-test-{uuid.uuid4().hex[:8]}")
    try:
        await store.initialize()
    except Exception as e:
        pytest.skip(f"Redis not available: {e}")
    return store


@pytest_asyncio.fixture(params=["memory", "sqlite", "filesystem", pytest.param("redis", marks=pytest.mark.redis)])
async def backend(request, tmp_path):
    if request.param == "memory":
        store = InMemoryObjectStore()
        await store.initialize()
    elif request.param == "sqlite":
        store = SQLiteObjectStore(str(tmp_path / "objects.db"))
        await store.initialize()
    elif request.param == "filesystem":
        store = FilesystemObjectStore(str(tmp_path / "objects"))
        await store.initialize()
    else:
        store = await _redis_store()

    yield store

    if request.param == "redis":
        for key in await store.list_keys():
            await store.delete(key)
    await store.shutdown()


class TestObjectStoreContract:
    """Conditional read/write semantics shared by all backends"""

    @pytest.mark.asyncio
    async def test_get_missing_raises_not_found(self, backend):
        with pytest.raises(NotFoundError):
            await backend.get("archive/none")

    @pytest.mark.asyncio
    async def test_create_then_get(self, backend):
        version = await backend.put_if_version("archive/R1", b'{"id": "R1"}', None)
        body, observed = await backend.get("archive/R1")
        assert body == b'{"id": "R1"}'
        assert observed == version
        assert await backend.exists("archive/R1")

    @pytest.mark.asyncio
    async def test_create_refuses_existing_key(self, backend):
        await backend.put_if_version("triggers/T1/R1", b"{}", None)
        with pytest.raises(VersionConflictError):
            await backend.put_if_version("triggers/T1/R1", b"{}", None)

    @pytest.mark.asyncio
    async def test_replace_with_current_version(self, backend):
        v1 = await backend.put_if_version("archive/R1", b"one", None)
        v2 = await backend.put_if_version("archive/R1", b"two", v1)
        assert v2 != v1
        assert await backend.get("archive/R1") == (b"two", v2)

    @pytest.mark.asyncio
    async def test_replace_with_stale_version_conflicts(self, backend):
        v1 = await backend.put_if_version("archive/R1", b"one", None)
        await backend.put_if_version("archive/R1", b"two", v1)
        with pytest.raises(VersionConflictError):
            await backend.put_if_version("archive/R1", b"three", v1)
        body, _ = await backend.get("archive/R1")
        assert body == b"two"

    @pytest.mark.asyncio
    async def test_replace_missing_key_conflicts(self, backend):
        with pytest.raises(VersionConflictError):
            await backend.put_if_version("archive/R9", b"x", "some-version")

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, backend):
        await backend.put_if_version("triggers/T1/R1", b"{}", None)
        await backend.delete("triggers/T1/R1")
        await backend.delete("triggers/T1/R1")
        assert not await backend.exists("triggers/T1/R1")

    @pytest.mark.asyncio
    async def test_list_keys_by_prefix(self, backend):
        for key in ("triggers/T1/R1", "triggers/T1/R2", "triggers/T2/R1", "archive/R1"):
            await backend.put_if_version(key, b"{}", None)
        assert await backend.list_keys("triggers/T1/") == ["triggers/T1/R1", "triggers/T1/R2"]
        assert len(await backend.list_keys("triggers/")) == 3

    @pytest.mark.asyncio
    async def test_json_helpers(self, backend):
        version = await backend.put_json_if_version("archive/R1", {"id": "R1"}, None)
        data, observed = await backend.get_json("archive/R1")
        assert data == {"id": "R1"}
        assert observed == version

    @pytest.mark.asyncio
    async def test_concurrent_creates_have_one_winner(self, backend):
        results = await asyncio.gather(
            *(backend.put_if_version("archive/R1", f"{i}".encode(), None) for i in range(5)),
            return_exceptions=True,
        )
        winners = [r for r in results if isinstance(r, str)]
        assert len(winners) == 1
        assert all(isinstance(r, VersionConflictError) for r in results if not isinstance(r, str))


class TestFactory:
    """Test backend selection from config"""

    def test_backends(self, config):
        config.store_backend = "memory"
        assert isinstance(create_object_store(config), InMemoryObjectStore)
        config.store_backend = "sqlite"
        assert isinstance(create_object_store(config), SQLiteObjectStore)
        config.store_backend = "filesystem"
        assert isinstance(create_object_store(config), FilesystemObjectStore)
        config.store_backend = "redis"
        assert isinstance(create_object_store(config), RedisObjectStore)

    def test_unknown_backend(self, config):
        config.store_backend = "s3"
        with pytest.raises(ValueError):
            create_object_store(config)


class TestFilesystemStore:
    """Filesystem specifics"""

    @pytest.mark.asyncio
    async def test_rejects_path_escape(self, tmp_path):
        store = FilesystemObjectStore(str(tmp_path / "objects"))
        await store.initialize()
        with pytest.raises(ValueError):
            await store.get("../secrets")

    @pytest.mark.asyncio
    async def test_version_is_content_hash(self, tmp_path):
        store = FilesystemObjectStore(str(tmp_path / "objects"))
        await store.initialize()
        version = await store.put_if_version("archive/R1", b"hello", None)
        assert version == "5d41402abc4b2a76b9719d911017c592"

    @pytest.mark.asyncio
    async def test_key_locks_released_after_use(self, tmp_path):
        """Test per-key locks do not accumulate across many distinct keys"""
        store = FilesystemObjectStore(str(tmp_path / "objects"))
        await store.initialize()

        for n in range(20):
            version = await store.put_if_version(f"triggers/T{n}/R1", b"{}", None)
            await store.put_if_version(f"triggers/T{n}/R1", b"[]", version)
            await store.delete(f"triggers/T{n}/R1")
        assert store._locks == {}

        results = await asyncio.gather(
            *(store.put_if_version("archive/R1", b"x", None) for _ in range(5)),
            return_exceptions=True,
        )
        assert sum(not isinstance(r, Exception) for r in results) == 1
        assert store._locks == {}
