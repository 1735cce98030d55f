"""
In-memory object store for tests and single-process runs
"""

import logging
import uuid
from typing import Dict, List, Optional, Tuple

from changerelay.errors import NotFoundError, VersionConflictError
from changerelay.store.base import ObjectStore

logger = logging.getLogger(__name__)


class InMemoryObjectStore(ObjectStore):
    """In-memory object store; each write gets a fresh uuid version tag"""

    def __init__(self):
        self.objects: Dict[str, Tuple[bytes, str]] = {}

    async def initialize(self) -> None:
        """No-op for in-memory store"""
        logger.info("In-memory object store initialized")

    async def shutdown(self) -> None:
        """Clear all data"""
        self.objects.clear()
        logger.info("In-memory object store shut down")

    async def get(self, key: str) -> Tuple[bytes, str]:
        try:
            return self.objects[key]
        except KeyError:
            raise NotFoundError(key)

    async def put_if_version(
        self, key: str, value: bytes, expected_version: Optional[str]
    ) -> str:
        # No await between check and set, so this is atomic on the event loop
        current = self.objects.get(key)
        if expected_version is None:
            if current is not None:
                raise VersionConflictError(key, None)
        elif current is None or current[1] != expected_version:
            raise VersionConflictError(key, expected_version)

        version = uuid.uuid4().hex
        self.objects[key] = (bytes(value), version)
        return version

    async def delete(self, key: str) -> None:
        self.objects.pop(key, None)

    async def exists(self, key: str) -> bool:
        return key in self.objects

    async def list_keys(self, prefix: str = "") -> List[str]:
        return sorted(k for k in self.objects if k.startswith(prefix))
