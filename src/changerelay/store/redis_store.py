"""
Redis-based object store

Each object is a hash ``{body, version}``. Conditional writes use
WATCH/MULTI so the version check and the write commit atomically; a
``WatchError`` means another writer got there first. A sorted set of keys
(all scores 0) gives lexicographic prefix listing.
"""

import logging
import uuid
from typing import List, Optional, Tuple

from changerelay.errors import NotFoundError, VersionConflictError
from changerelay.store.base import ObjectStore

logger = logging.getLogger(__name__)


class RedisObjectStore(ObjectStore):
    """Redis-based object store"""

    def __init__(self, redis_url: str = "redis://localhost:6379", key_prefix: str = "changerelay"):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.redis = None
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize Redis connection"""
        if self._initialized:
            return

        try:
            import redis.asyncio as redis
            # Bodies are raw bytes, so responses are not decoded
            self.redis = redis.from_url(self.redis_url, decode_responses=False)
            await self.redis.ping()
            self._initialized = True
            logger.info(f"Redis object store initialized: {self.redis_url}")
        except Exception as e:
            logger.error(f"Failed to initialize Redis object store: {e}")
            raise

    async def shutdown(self) -> None:
        """Close Redis connection"""
        if self.redis:
            await self.redis.aclose()
            self.redis = None
            self._initialized = False
            logger.info("Redis object store shut down")

    def _object_key(self, key: str) -> str:
        return f"{self.key_prefix}:object:{key}"

    def _index_key(self) -> str:
        return f"{self.key_prefix}:keys"

    def _client(self):
        if not self.redis:
            raise RuntimeError("Redis object store not initialized")
        return self.redis

    async def get(self, key: str) -> Tuple[bytes, str]:
        body, version = await self._client().hmget(self._object_key(key), "body", "version")
        if version is None:
            raise NotFoundError(key)
        return body, version.decode("utf-8")

    async def put_if_version(
        self, key: str, value: bytes, expected_version: Optional[str]
    ) -> str:
        from redis.exceptions import WatchError

        object_key = self._object_key(key)
        version = uuid.uuid4().hex

        try:
            async with self._client().pipeline(transaction=True) as pipe:
                await pipe.watch(object_key)
                current = await pipe.hget(object_key, "version")
                current = current.decode("utf-8") if current is not None else None

                if expected_version is None and current is not None:
                    raise VersionConflictError(key, None)
                if expected_version is not None and current != expected_version:
                    raise VersionConflictError(key, expected_version)

                pipe.multi()
                pipe.hset(object_key, mapping={"body": value, "version": version})
                pipe.zadd(self._index_key(), {key: 0})
                await pipe.execute()
        except WatchError:
            raise VersionConflictError(key, expected_version)

        logger.debug(f"Stored {key} at version {version}")
        return version

    async def delete(self, key: str) -> None:
        async with self._client().pipeline(transaction=True) as pipe:
            pipe.delete(self._object_key(key))
            pipe.zrem(self._index_key(), key)
            await pipe.execute()

    async def exists(self, key: str) -> bool:
        return bool(await self._client().exists(self._object_key(key)))

    async def list_keys(self, prefix: str = "") -> List[str]:
        start = f"[{prefix}".encode("utf-8") if prefix else b"-"
        stop = f"[{prefix}".encode("utf-8") + b"\xff" if prefix else b"+"
        keys = await self._client().zrangebylex(self._index_key(), start, stop)
        return [k.decode("utf-8") for k in keys]
