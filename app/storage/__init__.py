from app.storage.base import ObjectStorageBackend, StorageError
from app.storage.resolver import StorageLocation, StorageResolver, get_storage_resolver

__all__ = [
    "ObjectStorageBackend",
    "StorageError",
    "StorageLocation",
    "StorageResolver",
    "get_storage_resolver",
]
