"""
Object storage interface shared by the internal store and user providers.
"""
from abc import ABC, abstractmethod
from typing import Optional


class StorageError(Exception):
    """Storage operation failed."""

    def __init__(self, message: str, backend: str = "", key: Optional[str] = None):
        self.backend = backend
        self.key = key
        super().__init__(message)


class StorageObjectNotFound(StorageError):
    """Requested key does not exist in the backend."""
    pass


class ObjectStorageBackend(ABC):
    """
    Minimal capability set the signing engine needs from a store.

    Keys are logical paths such as "documents/{id}/signed.pdf"; each backend
    maps them onto its own namespace (bucket prefix, user folder, ...).
    """

    name: str = "abstract"

    @abstractmethod
    async def upload(self, data: bytes, key: str, content_type: str) -> str:
        """Store bytes under key. Returns the backend-specific location."""

    @abstractmethod
    async def download(self, key: str) -> bytes:
        """Raises StorageObjectNotFound if the key is missing."""

    @abstractmethod
    async def get_signed_url(self, key: str, ttl_seconds: int, filename: Optional[str] = None) -> str:
        """Time-limited download URL. `filename` names the download where supported."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        ...

    async def delete(self, key: str) -> None:
        raise StorageError(f"{self.name} does not support delete", backend=self.name, key=key)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"
