"""
Object storage and queue services package.
"""

from .blob_storage import AzureBlobStorage
from .object_storage import LocalObjectStorage, ObjectStorage
from .queue_client import AzureQueueClient, InMemoryMessageQueue, MessageQueue

__all__ = [
    "AzureBlobStorage",
    "LocalObjectStorage",
    "ObjectStorage",
    "AzureQueueClient",
    "InMemoryMessageQueue",
    "MessageQueue",
]
