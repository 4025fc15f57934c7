"""
In-process per-document locks.

Serializes "validate -> mark signer done -> finalize" for one document inside a
single worker. Cross-instance safety comes from the persistence layer (unique
spot keys and the conditional completed-status update).
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict

logger = logging.getLogger(__name__)


@dataclass
class _LockEntry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


class DocumentLockRegistry:
    """
    Registry of asyncio locks keyed by document id.

    Entries are reference counted and dropped once nobody holds or waits on
    them, so the registry does not grow with the number of documents served.
    """

    def __init__(self):
        self._entries: Dict[str, _LockEntry] = {}

    @asynccontextmanager
    async def hold(self, document_id: str) -> AsyncIterator[None]:
        entry = self._entries.get(document_id)
        if entry is None:
            entry = _LockEntry()
            self._entries[document_id] = entry
        entry.holders += 1

        if entry.lock.locked():
            logger.info(f"Waiting for document lock on {document_id}")

        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0 and self._entries.get(document_id) is entry:
                del self._entries[document_id]

    def is_locked(self, document_id: str) -> bool:
        entry = self._entries.get(document_id)
        return bool(entry and entry.lock.locked())

    def __len__(self) -> int:
        return len(self._entries)


_document_locks = DocumentLockRegistry()


def get_document_locks() -> DocumentLockRegistry:
    """Get the process-wide document lock registry."""
    return _document_locks
