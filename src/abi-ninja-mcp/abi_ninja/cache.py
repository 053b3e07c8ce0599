from __future__ import annotations

import asyncio
import time
import weakref
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .chains import RegistryChange
from .logging import get_logger
from .sources import AbiSourceKind
from .store import ABI_INDEX_KEY, ABI_KEY_PREFIX, KeyValueStore, read_or_default

logger = get_logger("cache")


def cache_key(address: str, chain_id: int) -> str:
    return f"{address.lower()}_{int(chain_id)}"


@dataclass(frozen=True)
class AbiCacheEntry:
    address: str
    chain_id: int
    abi: List[Dict[str, Any]]
    source: AbiSourceKind
    fetched_at: float = field(default_factory=time.time)

    @property
    def key(self) -> str:
        return cache_key(self.address, self.chain_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "chain_id": self.chain_id,
            "abi": self.abi,
            "source": self.source.value,
            "fetched_at": self.fetched_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AbiCacheEntry":
        return cls(
            address=str(data["address"]).lower(),
            chain_id=int(data["chain_id"]),
            abi=list(data["abi"]),
            source=AbiSourceKind(data["source"]),
            fetched_at=float(data.get("fetched_at") or 0.0),
        )


class AbiCache:
    """
    Resolved ABIs keyed by lower-cased address and chain id, kept in the store.

    A separate index of known keys allows purging every entry of one chain.
    Writes to one key are serialized so a check-then-write cannot interleave
    with a manual override.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store
        self._index_lock = asyncio.Lock()
        self._key_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _store_key(self, key: str) -> str:
        return f"{ABI_KEY_PREFIX}{key}"

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._key_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._key_locks[key] = lock
        return lock

    async def get(self, address: str, chain_id: int) -> Optional[AbiCacheEntry]:
        key = cache_key(address, chain_id)
        raw = await read_or_default(self._store, self._store_key(key))
        if raw is None:
            return None
        try:
            return AbiCacheEntry.from_dict(raw)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Ignoring malformed cache entry %s: %s", key, exc)
            return None

    async def set(self, entry: AbiCacheEntry) -> None:
        """Store ``entry``, replacing any previous entry for the same key."""
        async with self._lock_for(entry.key):
            await self._put(entry)

    async def set_unless_user_provided(self, entry: AbiCacheEntry) -> AbiCacheEntry:
        """
        Store an automatically sourced ``entry`` unless a user-provided ABI is
        already cached for its key. Returns whichever entry ends up cached.
        """
        async with self._lock_for(entry.key):
            existing = await self.get(entry.address, entry.chain_id)
            if existing is not None and existing.source is AbiSourceKind.USER_PROVIDED:
                logger.debug("Keeping user-provided ABI for %s.", entry.key)
                return existing
            await self._put(entry)
        return entry

    async def remove(self, address: str, chain_id: int) -> bool:
        key = cache_key(address, chain_id)
        async with self._lock_for(key):
            removed = await self._store.delete(self._store_key(key))
            async with self._index_lock:
                keys = await self._read_index()
                if key in keys:
                    keys.remove(key)
                    await self._store.set(ABI_INDEX_KEY, keys)
        return removed

    async def keys(self) -> List[str]:
        keys = await read_or_default(self._store, ABI_INDEX_KEY, [])
        return [str(key) for key in keys] if isinstance(keys, list) else []

    async def purge_chain(self, chain_id: int) -> int:
        suffix = f"_{int(chain_id)}"
        async with self._index_lock:
            keys = await self._read_index()
            doomed = [key for key in keys if key.endswith(suffix)]
            for key in doomed:
                await self._store.delete(self._store_key(key))
            if doomed:
                await self._store.set(ABI_INDEX_KEY, [key for key in keys if key not in doomed])
        if doomed:
            logger.info("Purged %d cached ABI(s) for chain %s.", len(doomed), chain_id)
        return len(doomed)

    async def on_registry_changed(self, change: RegistryChange) -> None:
        if change.kind == "removed":
            await self.purge_chain(change.network.id)

    async def _put(self, entry: AbiCacheEntry) -> None:
        await self._store.set(self._store_key(entry.key), entry.to_dict())
        async with self._index_lock:
            keys = await self._read_index()
            if entry.key not in keys:
                keys.append(entry.key)
                await self._store.set(ABI_INDEX_KEY, keys)

    async def _read_index(self) -> List[str]:
        # read errors propagate: rewriting the index from an empty default drops every other key
        keys = await self._store.get(ABI_INDEX_KEY)
        return [str(key) for key in keys] if isinstance(keys, list) else []
