"""
Off-chain index: a fast, advisory mirror of ledger state.

Entries are reachable by content locator or by digest. The pair is bound
when the entry is created and never changes afterwards. Nothing read from
here is enough on its own to call a proof verified.
"""

import asyncio
import threading
import structlog
from datetime import datetime, timezone
from typing import Dict, List, Optional

from proofsnap.core.errors import StorageError
from proofsnap.core.utils import looks_like_digest
from proofsnap.models.proof import IndexEntry, RecordStatus

logger = structlog.get_logger()

__all__ = ["OffChainIndex", "InMemoryIndex", "normalize_key", "check_binding"]


def normalize_key(key: str) -> str:
    """Digests are matched as 0x + lowercase hex; locators verbatim."""
    key = key.strip()
    if looks_like_digest(key):
        key = key.lower()
        return key if key.startswith("0x") else "0x" + key
    return key


def check_binding(existing: IndexEntry, entry: IndexEntry) -> None:
    if existing.digest != entry.digest or existing.locator != entry.locator:
        raise StorageError(
            "Index entry digest/locator binding cannot change",
            details={"id": existing.id, "digest": existing.digest, "locator": existing.locator},
        )


class OffChainIndex:
    """Index contract. Blocking backends implement the ``_sync`` methods."""

    name = "base"

    async def upsert(self, entry: IndexEntry) -> IndexEntry:
        return await asyncio.to_thread(self._upsert_sync, entry)

    async def get(self, key: str) -> Optional[IndexEntry]:
        return await asyncio.to_thread(self._get_sync, normalize_key(key))

    async def remove(self, record_id: str) -> bool:
        return await asyncio.to_thread(self._remove_sync, record_id)

    async def list_for_creator(self, creator: str, limit: int = 50) -> List[IndexEntry]:
        return await asyncio.to_thread(self._list_for_creator_sync, creator, limit)

    def _upsert_sync(self, entry: IndexEntry) -> IndexEntry:
        raise NotImplementedError

    def _get_sync(self, key: str) -> Optional[IndexEntry]:
        raise NotImplementedError

    def _remove_sync(self, record_id: str) -> bool:
        raise NotImplementedError

    def _list_for_creator_sync(self, creator: str, limit: int) -> List[IndexEntry]:
        raise NotImplementedError

    def health_check(self) -> bool:
        return True


class InMemoryIndex(OffChainIndex):
    """Process-local index with the same semantics as the Postgres one."""

    name = "memory"

    def __init__(self):
        self._entries: Dict[str, IndexEntry] = {}
        # The _sync methods run on worker threads
        self._lock = threading.RLock()

    def _find_by_digest(self, digest: str) -> Optional[IndexEntry]:
        with self._lock:
            for entry in self._entries.values():
                if entry.digest == digest:
                    return entry
        return None

    def _upsert_sync(self, entry: IndexEntry) -> IndexEntry:
        entry = entry.model_copy(update={"digest": normalize_key(entry.digest)})
        with self._lock:
            existing = self._entries.get(entry.id) or self._find_by_digest(entry.digest)
            if existing is not None:
                check_binding(existing, entry)
                entry = entry.model_copy(update={"id": existing.id, "created_at": existing.created_at})
            self._entries[entry.id] = entry
        logger.debug("Index entry upserted", record_id=entry.id, digest=entry.digest)
        return entry

    def _get_sync(self, key: str) -> Optional[IndexEntry]:
        for entry in self._newest_first():
            if entry.removed:
                continue
            if entry.digest == key or entry.locator == key:
                return entry
        return None

    def _remove_sync(self, record_id: str) -> bool:
        with self._lock:
            entry = self._entries.get(record_id)
            if entry is None or entry.removed:
                return False
            self._entries[record_id] = entry.model_copy(update={
                "removed_at": datetime.now(timezone.utc),
                "status": RecordStatus.REMOVED,
            })
        logger.info("Index entry removed", record_id=record_id)
        return True

    def _list_for_creator_sync(self, creator: str, limit: int) -> List[IndexEntry]:
        creator = creator.lower()
        matches = [e for e in self._newest_first() if e.creator.lower() == creator and not e.removed]
        return matches[:limit]

    def _newest_first(self) -> List[IndexEntry]:
        # Insertion order breaks created_at ties, later inserts first
        with self._lock:
            entries = list(self._entries.values())
        entries.reverse()
        return sorted(entries, key=lambda e: e.created_at, reverse=True)
