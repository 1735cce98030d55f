"""
SQLite-based object store using aiosqlite

Conditional writes are a single ``INSERT`` (create) or
``UPDATE ... WHERE version = ?`` (replace); a rejected statement means the
version tag moved.
"""

import asyncio
import logging
import uuid
from pathlib import Path
from typing import List, Optional, Tuple

import aiosqlite

from changerelay.errors import NotFoundError, VersionConflictError
from changerelay.store.base import ObjectStore

logger = logging.getLogger(__name__)


class SQLiteObjectStore(ObjectStore):
    """SQLite-based object store"""

    def __init__(self, db_path: str = "changerelay.db"):
        """
        Initialize SQLite store

        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        self.db_path = db_path
        self.db: Optional[aiosqlite.Connection] = None
        self._initialized = False
        # One connection is shared, so each statement and its commit run together
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Initialize SQLite connection and create tables"""
        if self._initialized:
            return

        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

            self.db = await aiosqlite.connect(self.db_path)

            # Enable WAL mode for better concurrency
            await self.db.execute("PRAGMA journal_mode=WAL")
            await self.db.execute("""
                CREATE TABLE IF NOT EXISTS objects (
                    key TEXT PRIMARY KEY,
                    body BLOB NOT NULL,
                    version TEXT NOT NULL,
                    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
            """)
            await self.db.commit()

            self._initialized = True
            logger.info(f"SQLite object store initialized: {self.db_path}")

        except Exception as e:
            logger.error(f"Failed to initialize SQLite object store: {e}")
            raise

    async def shutdown(self) -> None:
        """Close SQLite connection"""
        if self.db:
            await self.db.close()
            self.db = None
            self._initialized = False
            logger.info("SQLite object store shut down")

    def _conn(self) -> aiosqlite.Connection:
        if not self.db:
            raise RuntimeError("SQLite object store not initialized")
        return self.db

    async def get(self, key: str) -> Tuple[bytes, str]:
        async with self._conn().execute(
            "SELECT body, version FROM objects WHERE key = ?", (key,)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(key)
        return bytes(row[0]), row[1]

    async def put_if_version(
        self, key: str, value: bytes, expected_version: Optional[str]
    ) -> str:
        db = self._conn()
        version = uuid.uuid4().hex

        async with self._write_lock:
            if expected_version is None:
                try:
                    await db.execute(
                        "INSERT INTO objects (key, body, version) VALUES (?, ?, ?)",
                        (key, value, version),
                    )
                except aiosqlite.IntegrityError:
                    raise VersionConflictError(key, None)
            else:
                cursor = await db.execute(
                    """UPDATE objects SET body = ?, version = ?, updated_at = CURRENT_TIMESTAMP
                       WHERE key = ? AND version = ?""",
                    (value, version, key, expected_version),
                )
                if cursor.rowcount == 0:
                    raise VersionConflictError(key, expected_version)
            await db.commit()

        logger.debug(f"Stored {key} at version {version}")
        return version

    async def delete(self, key: str) -> None:
        db = self._conn()
        async with self._write_lock:
            await db.execute("DELETE FROM objects WHERE key = ?", (key,))
            await db.commit()

    async def exists(self, key: str) -> bool:
        async with self._conn().execute(
            "SELECT 1 FROM objects WHERE key = ?", (key,)
        ) as cursor:
            return await cursor.fetchone() is not None

    async def list_keys(self, prefix: str = "") -> List[str]:
        # substr comparison avoids LIKE wildcard escaping of the prefix
        async with self._conn().execute(
            "SELECT key FROM objects WHERE substr(key, 1, ?) = ? ORDER BY key",
            (len(prefix), prefix),
        ) as cursor:
            rows = await cursor.fetchall()
        return [row[0] for row in rows]
