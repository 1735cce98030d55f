"""
Object store interface

Version-tagged conditional reads and writes. ``put_if_version`` with
``expected_version=None`` fails if the key exists; with a tag it fails if the
stored version differs. Nothing is cached here: callers carry the version tag
they observed.
"""

import json
from abc import ABC, abstractmethod
from typing import Any, List, Optional, Tuple

from changerelay.errors import InvalidRecordError


class ObjectStore(ABC):
    """Abstract interface for object store backends"""

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize the backend"""
        pass

    @abstractmethod
    async def shutdown(self) -> None:
        """Cleanup and close connections"""
        pass

    @abstractmethod
    async def get(self, key: str) -> Tuple[bytes, str]:
        """Return (body, version_tag); raise NotFoundError if absent"""
        pass

    @abstractmethod
    async def put_if_version(
        self, key: str, value: bytes, expected_version: Optional[str]
    ) -> str:
        """Conditionally write; return the new version tag or raise VersionConflictError"""
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove the key; deleting an absent key succeeds"""
        pass

    @abstractmethod
    async def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    async def list_keys(self, prefix: str = "") -> List[str]:
        """Keys starting with prefix, sorted"""
        pass

    async def get_json(self, key: str) -> Tuple[Any, str]:
        body, version = await self.get(key)
        try:
            return json.loads(body), version
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise InvalidRecordError(f"Object {key} is not valid JSON", cause=e)

    async def put_json_if_version(
        self, key: str, data: Any, expected_version: Optional[str]
    ) -> str:
        body = json.dumps(data, sort_keys=True).encode("utf-8")
        return await self.put_if_version(key, body, expected_version)

    async def __aenter__(self) -> "ObjectStore":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()
