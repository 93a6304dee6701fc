"""
Durable queue used to hand profile-update work to another process.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import List, Optional

from azure.core.exceptions import AzureError, ResourceExistsError
from azure.identity.aio import DefaultAzureCredential
from azure.storage.queue.aio import QueueClient

from logconfig.logger import get_logger
from migrationkit.exceptions.base_exceptions import StorageError

logger = get_logger()


class MessageQueue(ABC):
    @abstractmethod
    async def send(self, body: str) -> str:
        """Enqueue ``body`` and return the message id."""

    async def close(self) -> None:
        return None


class InMemoryMessageQueue(MessageQueue):
    """Queue kept in process memory; used for local runs and tests."""

    def __init__(self):
        self.messages: List[str] = []
        self._lock = asyncio.Lock()

    async def send(self, body: str) -> str:
        async with self._lock:
            self.messages.append(body)
            return str(len(self.messages))


class AzureQueueClient(MessageQueue):
    def __init__(self, connection_string_or_uri: str, queue_name: str, use_managed_identity: bool = False):
        if not connection_string_or_uri:
            raise StorageError("Queue connection string or URI is not configured")
        self.queue_name = queue_name
        self._credential = None
        if use_managed_identity:
            self._credential = DefaultAzureCredential()
            self._client = QueueClient(
                account_url=connection_string_or_uri, queue_name=queue_name, credential=self._credential
            )
        else:
            self._client = QueueClient.from_connection_string(connection_string_or_uri, queue_name)
        self._created = False

    async def _ensure_queue(self) -> None:
        if self._created:
            return
        try:
            await self._client.create_queue()
            logger.info(f"Created queue '{self.queue_name}'")
        except ResourceExistsError:
            pass
        self._created = True

    async def send(self, body: str) -> str:
        try:
            await self._ensure_queue()
            message = await self._client.send_message(body)
        except AzureError as e:
            raise StorageError(
                f"Failed to enqueue message on '{self.queue_name}'",
                container=self.queue_name,
                original_exception=e,
            ) from e
        return message.id

    async def close(self) -> None:
        await self._client.close()
        if self._credential is not None:
            await self._credential.close()
            self._credential = None
