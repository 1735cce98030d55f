"""
Optimistic update engine

Read-merge-write against the object store's conditional write. Concurrent
writers race; the loser re-reads, re-applies its merge and tries again after a
backoff. There is no lock: the conditional write is the only serialization
point.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Optional

from changerelay.backoff import RetryPolicy
from changerelay.errors import ConflictExhaustedError, NotFoundError, VersionConflictError
from changerelay.models import ModificationEntry, Record, archive_key
from changerelay.store.base import ObjectStore

logger = logging.getLogger(__name__)

# mutate_fn receives the current body (None if the key is absent) and returns the new body
MutateFn = Callable[[Optional[bytes]], bytes]
RecordMutateFn = Callable[[Record], Record]


class OptimisticUpdater:
    """Conflict-retrying conditional writer for shared objects"""

    def __init__(
        self,
        store: ObjectStore,
        retry: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        store_timeout: Optional[float] = None,
    ):
        self.store = store
        self.retry = retry or RetryPolicy()
        self._sleep = sleep
        self.store_timeout = store_timeout

    async def _call(self, coro):
        if self.store_timeout is None:
            return await coro
        return await asyncio.wait_for(coro, self.store_timeout)

    async def update_with_retry(
        self,
        key: str,
        mutate_fn: MutateFn,
        max_retries: Optional[int] = None,
    ) -> str:
        """Apply mutate_fn to the object at key; return the new version tag.

        Makes up to ``max_retries + 1`` attempts. Only version conflicts are
        retried; any other error propagates immediately. Raises
        ConflictExhaustedError once attempts run out.
        """
        if max_retries is None:
            max_retries = self.retry.max_retries

        last_conflict: Optional[VersionConflictError] = None
        for attempt in range(max_retries + 1):
            if attempt > 0:
                wait = self.retry.get_delay(attempt)
                logger.debug(f"Retrying update of {key} (attempt {attempt + 1}) after {wait:.3f}s")
                await self._sleep(wait)

            try:
                body, version = await self._call(self.store.get(key))
            except NotFoundError:
                body, version = None, None

            new_body = mutate_fn(body)
            try:
                new_version = await self._call(
                    self.store.put_if_version(key, new_body, version)
                )
            except VersionConflictError as e:
                last_conflict = e
                logger.info(f"Version conflict on {key} (attempt {attempt + 1}/{max_retries + 1})")
                continue

            if attempt > 0:
                logger.info(f"Updated {key} after {attempt + 1} attempts")
            return new_version

        logger.warning(f"Giving up on {key} after {max_retries + 1} conflicting attempts")
        raise ConflictExhaustedError(key, max_retries + 1, cause=last_conflict)

    async def update_record(
        self,
        record_id: str,
        mutate: RecordMutateFn,
        max_retries: Optional[int] = None,
        create: Optional[Callable[[], Record]] = None,
    ) -> str:
        """Read-merge-write a Record.

        ``mutate`` gets a freshly loaded Record on every attempt. If the record
        is absent, ``create`` supplies the starting value; without it the
        update fails with NotFoundError.
        """
        key = archive_key(record_id)

        def apply(body: Optional[bytes]) -> bytes:
            if body is None:
                if create is None:
                    raise NotFoundError(key)
                record = create()
            else:
                record = Record.from_bytes(body)
            return mutate(record).to_bytes()

        return await self.update_with_retry(key, apply, max_retries=max_retries)

    async def append_modifications(
        self,
        record_id: str,
        entries: Iterable[ModificationEntry],
        max_retries: Optional[int] = None,
    ) -> str:
        """Append entries to a record's history, keeping everything already there"""
        entries = list(entries)
        return await self.update_record(
            record_id,
            lambda record: record.merge_modifications(entries),
            max_retries=max_retries,
        )
