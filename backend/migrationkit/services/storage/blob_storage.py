"""
Azure Blob Storage implementation of ``ObjectStorage``.
"""

import asyncio
from typing import List, Optional, Set

from azure.core.exceptions import AzureError, ResourceExistsError, ResourceNotFoundError
from azure.identity.aio import DefaultAzureCredential
from azure.storage.blob.aio import BlobServiceClient

from logconfig.logger import get_logger
from migrationkit.exceptions.base_exceptions import StorageError
from migrationkit.services.storage.object_storage import ObjectStorage

logger = get_logger()


class AzureBlobStorage(ObjectStorage):
    """
    Blob containers addressed by connection string or, with managed
    identity, by account URL.
    """

    def __init__(self, connection_string_or_uri: str, use_managed_identity: bool = False):
        if not connection_string_or_uri:
            raise StorageError("Storage connection string or URI is not configured")
        self._target = connection_string_or_uri
        self._use_managed_identity = use_managed_identity
        self._credential = None
        self._client: Optional[BlobServiceClient] = None
        self._known_containers: Set[str] = set()
        self._connection_lock = asyncio.Lock()

    async def _get_client(self) -> BlobServiceClient:
        async with self._connection_lock:
            if self._client is None:
                if self._use_managed_identity:
                    self._credential = DefaultAzureCredential()
                    self._client = BlobServiceClient(account_url=self._target, credential=self._credential)
                else:
                    self._client = BlobServiceClient.from_connection_string(self._target)
                logger.debug("Blob service client created")
        return self._client

    async def ensure_container(self, container: str) -> None:
        if container in self._known_containers:
            return
        client = await self._get_client()
        container_client = client.get_container_client(container)
        try:
            await container_client.get_container_properties()
            logger.debug(f"Container '{container}' exists")
        except ResourceNotFoundError:
            try:
                await container_client.create_container()
                logger.info(f"Created container '{container}'")
            except ResourceExistsError:
                pass
            except AzureError as e:
                raise StorageError(
                    f"Failed to create container '{container}'", container=container, original_exception=e
                ) from e
        except AzureError as e:
            raise StorageError(
                f"Failed to inspect container '{container}'", container=container, original_exception=e
            ) from e
        self._known_containers.add(container)

    async def write(self, container: str, key: str, data: bytes, overwrite: bool = True) -> None:
        client = await self._get_client()
        try:
            await client.get_blob_client(container=container, blob=key).upload_blob(data, overwrite=overwrite)
        except ResourceExistsError as e:
            raise StorageError(
                f"Blob '{key}' already exists", container=container, key=key, original_exception=e
            ) from e
        except AzureError as e:
            raise StorageError(
                f"Failed to upload blob '{key}'", container=container, key=key, original_exception=e
            ) from e

    async def read(self, container: str, key: str) -> bytes:
        client = await self._get_client()
        try:
            downloader = await client.get_blob_client(container=container, blob=key).download_blob()
            return await downloader.readall()
        except AzureError as e:
            raise StorageError(
                f"Failed to download blob '{key}'", container=container, key=key, original_exception=e
            ) from e

    async def list(self, container: str, prefix: Optional[str] = None) -> List[str]:
        client = await self._get_client()
        container_client = client.get_container_client(container)
        names: List[str] = []
        try:
            async for blob in container_client.list_blobs(name_starts_with=prefix or None):
                names.append(blob.name)
        except AzureError as e:
            raise StorageError(
                f"Failed to list blobs in '{container}'", container=container, original_exception=e
            ) from e
        return sorted(names)

    async def exists(self, container: str, key: str) -> bool:
        client = await self._get_client()
        try:
            return await client.get_blob_client(container=container, blob=key).exists()
        except AzureError as e:
            raise StorageError(
                f"Failed to check blob '{key}'", container=container, key=key, original_exception=e
            ) from e

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
        if self._credential is not None:
            await self._credential.close()
            self._credential = None
