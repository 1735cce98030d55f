"""
Filesystem object store using aiofiles

Objects are plain files under a root directory; the version tag is the MD5 of
the body, like an object-storage ETag. Compare-and-swap is serialized per key
with an in-process lock, so this backend is for single-process deployments.
"""

import asyncio
import hashlib
import logging
import os
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import aiofiles
import aiofiles.os

from changerelay.errors import NotFoundError, VersionConflictError
from changerelay.store.base import ObjectStore

logger = logging.getLogger(__name__)


def content_version(body: bytes) -> str:
    return hashlib.md5(body).hexdigest()


class FilesystemObjectStore(ObjectStore):
    """Directory-backed object store"""

    def __init__(self, root: str):
        self.root = Path(root)
        # key -> [lock, number of tasks holding or awaiting it]
        self._locks: Dict[str, List[Union[asyncio.Lock, int]]] = {}

    async def initialize(self) -> None:
        await aiofiles.os.makedirs(self.root, exist_ok=True)
        logger.info(f"Filesystem object store initialized: {self.root}")

    async def shutdown(self) -> None:
        self._locks.clear()

    def _path(self, key: str) -> Path:
        parts = key.split("/")
        if not key or any(part in ("", ".", "..") for part in parts):
            raise ValueError(f"Invalid object key: {key!r}")
        return self.root.joinpath(*parts)

    @asynccontextmanager
    async def _lock(self, key: str):
        """Per-key lock; the entry is dropped once no task holds or awaits it"""
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0 and self._locks.get(key) is entry:
                del self._locks[key]

    async def _read(self, path: Path) -> Optional[bytes]:
        try:
            async with aiofiles.open(path, "rb") as f:
                return await f.read()
        except FileNotFoundError:
            return None

    async def get(self, key: str) -> Tuple[bytes, str]:
        body = await self._read(self._path(key))
        if body is None:
            raise NotFoundError(key)
        return body, content_version(body)

    async def put_if_version(
        self, key: str, value: bytes, expected_version: Optional[str]
    ) -> str:
        path = self._path(key)
        async with self._lock(key):
            current = await self._read(path)
            if expected_version is None:
                if current is not None:
                    raise VersionConflictError(key, None)
            elif current is None or content_version(current) != expected_version:
                raise VersionConflictError(key, expected_version)

            await aiofiles.os.makedirs(path.parent, exist_ok=True)
            tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
            async with aiofiles.open(tmp_path, "wb") as f:
                await f.write(value)
            await aiofiles.os.replace(tmp_path, path)

        return content_version(value)

    async def delete(self, key: str) -> None:
        async with self._lock(key):
            try:
                await aiofiles.os.remove(self._path(key))
            except FileNotFoundError:
                pass

    async def exists(self, key: str) -> bool:
        return await aiofiles.os.path.isfile(self._path(key))

    async def list_keys(self, prefix: str = "") -> List[str]:
        return await asyncio.to_thread(self._walk, prefix)

    def _walk(self, prefix: str) -> List[str]:
        keys = []
        for dirpath, _dirnames, filenames in os.walk(self.root):
            for name in filenames:
                if name.startswith(".") and name.endswith(".tmp"):
                    continue
                rel = Path(dirpath, name).relative_to(self.root).as_posix()
                if rel.startswith(prefix):
                    keys.append(rel)
        return sorted(keys)
