"""
Object storage contract consumed by the export and import pipelines.
"""

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Union

from logconfig.logger import get_logger
from migrationkit.exceptions.base_exceptions import StorageError

logger = get_logger()


class ObjectStorage(ABC):
    """Container/key addressed byte store."""

    @abstractmethod
    async def ensure_container(self, container: str) -> None:
        ...

    @abstractmethod
    async def write(self, container: str, key: str, data: bytes, overwrite: bool = True) -> None:
        ...

    @abstractmethod
    async def read(self, container: str, key: str) -> bytes:
        ...

    @abstractmethod
    async def list(self, container: str, prefix: Optional[str] = None) -> List[str]:
        """Return keys under ``prefix`` in lexical order."""

    @abstractmethod
    async def exists(self, container: str, key: str) -> bool:
        ...

    async def close(self) -> None:
        return None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()


class LocalObjectStorage(ObjectStorage):
    """
    Filesystem-backed store: one directory per container, one file per key.

    Used for local dry runs and in tests.
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    def _container_path(self, container: str) -> Path:
        return self.root / container

    def _key_path(self, container: str, key: str) -> Path:
        path = (self._container_path(container) / key).resolve()
        if self._container_path(container).resolve() not in path.parents:
            raise StorageError(f"Key escapes container: {key}", container=container, key=key)
        return path

    async def ensure_container(self, container: str) -> None:
        await asyncio.to_thread(self._container_path(container).mkdir, parents=True, exist_ok=True)

    async def write(self, container: str, key: str, data: bytes, overwrite: bool = True) -> None:
        path = self._key_path(container, key)
        if not path.parent.exists():
            raise StorageError(f"Container '{container}' does not exist", container=container, key=key)
        if not overwrite and path.exists():
            raise StorageError(f"Object '{key}' already exists", container=container, key=key)
        await asyncio.to_thread(path.write_bytes, data)

    async def read(self, container: str, key: str) -> bytes:
        path = self._key_path(container, key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as e:
            raise StorageError(
                f"Object '{key}' not found", container=container, key=key, original_exception=e
            ) from e

    async def list(self, container: str, prefix: Optional[str] = None) -> List[str]:
        base = self._container_path(container)
        if not base.exists():
            return []
        keys = [
            p.relative_to(base).as_posix()
            for p in base.rglob("*")
            if p.is_file()
        ]
        if prefix:
            keys = [k for k in keys if k.startswith(prefix)]
        return sorted(keys)

    async def exists(self, container: str, key: str) -> bool:
        return self._key_path(container, key).is_file()
