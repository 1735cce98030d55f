"""
Tests for the optimistic update engine
"""

import asyncio
import json

import pytest

from changerelay.backoff import RetryPolicy
from changerelay.errors import ConflictExhaustedError, NotFoundError, StoreUnavailableError, VersionConflictError
from changerelay.models import ModificationEntry, ModificationKind, archive_key
from changerelay.optimistic import OptimisticUpdater
from changerelay.store import InMemoryObjectStore

from helpers import load, make_record, no_sleep, seed


class YieldingStore(InMemoryObjectStore):
    """Suspends inside every call so concurrent writers interleave"""

    async def get(self, key):
        await asyncio.sleep(0)
        return await super().get(key)

    async def put_if_version(self, key, value, expected_version):
        await asyncio.sleep(0)
        return await super().put_if_version(key, value, expected_version)


class AlwaysConflictingStore(InMemoryObjectStore):
    def __init__(self):
        super().__init__()
        self.puts = 0

    async def put_if_version(self, key, value, expected_version):
        self.puts += 1
        raise VersionConflictError(key, expected_version)


class BrokenStore(InMemoryObjectStore):
    def __init__(self):
        super().__init__()
        self.puts = 0

    async def put_if_version(self, key, value, expected_version):
        self.puts += 1
        raise StoreUnavailableError("disk on fire")


def append_item(item):
    def mutate(body):
        data = json.loads(body) if body is not None else {"items": []}
        data["items"].append(item)
        return json.dumps(data).encode()
    return mutate


class TestUpdateWithRetry:
    """Test read-merge-write with conflict retries"""

    @pytest.mark.asyncio
    async def test_creates_missing_object(self):
        store = InMemoryObjectStore()
        updater = OptimisticUpdater(store, sleep=no_sleep)
        version = await updater.update_with_retry("doc", append_item("a"))
        body, observed = await store.get("doc")
        assert json.loads(body) == {"items": ["a"]}
        assert observed == version

    @pytest.mark.asyncio
    async def test_updates_existing_object(self):
        store = InMemoryObjectStore()
        await store.put_if_version("doc", b'{"items": ["a"]}', None)
        updater = OptimisticUpdater(store, sleep=no_sleep)
        await updater.update_with_retry("doc", append_item("b"))
        body, _ = await store.get("doc")
        assert json.loads(body)["items"] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_concurrent_updates_converge(self):
        """Test N racing writers lose nothing when max_retries >= N"""
        store = YieldingStore()
        await store.put_if_version("doc", b'{"items": []}', None)
        updater = OptimisticUpdater(store, sleep=no_sleep)
        n = 8

        await asyncio.gather(*(
            updater.update_with_retry("doc", append_item(i), max_retries=n) for i in range(n)
        ))

        body, _ = await store.get("doc")
        assert sorted(json.loads(body)["items"]) == list(range(n))

    @pytest.mark.asyncio
    async def test_exhaustion_is_distinguishable(self):
        """Test max_retries + 1 attempts, then ConflictExhaustedError"""
        store = AlwaysConflictingStore()
        waits = []

        async def record_sleep(seconds):
            waits.append(seconds)

        updater = OptimisticUpdater(store, retry=RetryPolicy(), sleep=record_sleep)
        with pytest.raises(ConflictExhaustedError) as exc_info:
            await updater.update_with_retry("doc", append_item("a"), max_retries=3)

        assert store.puts == 4
        assert waits == pytest.approx([0.1, 0.2, 0.4])
        assert exc_info.value.attempts == 4
        assert exc_info.value.key == "doc"
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_other_errors_not_retried(self):
        store = BrokenStore()
        updater = OptimisticUpdater(store, sleep=no_sleep)
        with pytest.raises(StoreUnavailableError):
            await updater.update_with_retry("doc", append_item("a"))
        assert store.puts == 1

    @pytest.mark.asyncio
    async def test_store_timeout(self):
        class SlowStore(InMemoryObjectStore):
            async def get(self, key):
                await asyncio.sleep(1)
                return await super().get(key)

        updater = OptimisticUpdater(SlowStore(), sleep=no_sleep, store_timeout=0.01)
        with pytest.raises(asyncio.TimeoutError):
            await updater.update_with_retry("doc", append_item("a"))


class TestRecordUpdates:
    """Test Record-level helpers"""

    @pytest.mark.asyncio
    async def test_concurrent_appends_keep_every_entry(self):
        store = YieldingStore()
        await seed(store, make_record(), triggers=False)
        updater = OptimisticUpdater(store, sleep=no_sleep)
        entries = [ModificationEntry(kind=ModificationKind.UPDATED, actor=f"user-{i}") for i in range(5)]

        await asyncio.gather(*(
            updater.append_modifications("R1", [entry], max_retries=5) for entry in entries
        ))

        record = await load(store, "R1")
        assert len(record.modifications) == 2 + 5
        assert {e.actor for e in record.modifications[2:]} == {f"user-{i}" for i in range(5)}

    @pytest.mark.asyncio
    async def test_missing_record_without_create(self):
        updater = OptimisticUpdater(InMemoryObjectStore(), sleep=no_sleep)
        with pytest.raises(NotFoundError):
            await updater.update_record("R404", lambda record: record)

    @pytest.mark.asyncio
    async def test_missing_record_with_create(self):
        store = InMemoryObjectStore()
        updater = OptimisticUpdater(store, sleep=no_sleep)
        await updater.update_record("R2", lambda record: record, create=lambda: make_record("R2"))
        assert await store.exists(archive_key("R2"))
