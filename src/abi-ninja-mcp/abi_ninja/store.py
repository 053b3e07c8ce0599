"""
Persistent key-value store used for cached ABIs and custom networks.

Values are JSON-serializable. Every access is async and may fail; callers
read through :func:`read_or_default` so that a broken store degrades to
"absent" instead of breaking resolution.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from abc import ABC, abstractmethod
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Optional

from .logging import get_logger

logger = get_logger("store")

ABI_KEY_PREFIX = "abi:"
CUSTOM_NETWORKS_KEY = "networks:custom"
ABI_INDEX_KEY = "abi:index"


class KeyValueStore(ABC):
    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the stored value or None when absent."""

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a key. Returns True if it existed."""


class InMemoryStore(KeyValueStore):
    """Dict-backed store. Data is lost when the process ends."""

    def __init__(self) -> None:
        self._data: Dict[str, Any] = {}

    async def get(self, key: str) -> Optional[Any]:
        value = self._data.get(key)
        return deepcopy(value) if value is not None else None

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = deepcopy(value)

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None


class JsonFileStore(KeyValueStore):
    """
    Store backed by a single JSON object on disk.

    The file is rewritten atomically (temp file + rename) on every mutation so a
    crash never leaves a truncated document behind.
    """

    def __init__(self, path: str) -> None:
        candidate = (path or "").strip()
        if not candidate:
            raise ValueError("store path must be a non-empty string.")
        self.path = Path(candidate).expanduser()
        self._lock = asyncio.Lock()

    def _read_all(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        with open(self.path, encoding="utf-8") as handle:
            data = json.load(handle)
        if not isinstance(data, dict):
            raise ValueError(f"Store file {self.path} does not contain a JSON object.")
        return data

    def _write_all(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), prefix=".abi-ninja-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2, sort_keys=True)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    async def get(self, key: str) -> Optional[Any]:
        data = await asyncio.to_thread(self._read_all)
        return data.get(key)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._read_all)
            data[key] = value
            await asyncio.to_thread(self._write_all, data)

    async def delete(self, key: str) -> bool:
        async with self._lock:
            data = await asyncio.to_thread(self._read_all)
            if key not in data:
                return False
            del data[key]
            await asyncio.to_thread(self._write_all, data)
            return True


async def read_or_default(store: KeyValueStore, key: str, default: Any = None) -> Any:
    try:
        value = await store.get(key)
    except Exception as exc:  # pylint: disable=broad-except
        logger.warning("Store read failed for %s, treating as absent: %s", key, exc)
        return default
    return default if value is None else value


def get_store(path: Optional[str] = None) -> KeyValueStore:
    """File-backed store when a path is configured, in-memory otherwise."""
    if path:
        return JsonFileStore(path)
    return InMemoryStore()
