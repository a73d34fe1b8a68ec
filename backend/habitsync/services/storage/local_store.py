"""
Local Store - String key/value storage used for caches and the sync queue
The store has no semantics of its own; callers serialize their data
"""
import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Optional, Protocol

from habitsync.core.exceptions import StorageError

logger = logging.getLogger(__name__)


class LocalStore(Protocol):
    """Persistent string key/value store"""

    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(self, key: str, value: str) -> None:
        ...

    async def remove(self, key: str) -> None:
        ...

    async def clear(self) -> None:
        ...


class InMemoryStore:
    """
    Dict-backed store

    Holds values for the lifetime of the process only.
    """

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    async def clear(self) -> None:
        self._data.clear()

    def keys(self):
        return list(self._data.keys())


class JsonFileStore:
    """
    Store persisted as a single JSON object on disk

    Every write rewrites the whole file through a temporary file and
    os.replace, so a crash leaves either the old or the new contents.
    """

    def __init__(self, path):
        self.path = Path(path)
        self._data: Optional[Dict[str, str]] = None

    def _read_file(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"[STORE] Could not read {self.path}, starting empty: {e}")
            return {}
        if not isinstance(data, dict):
            logger.error(f"[STORE] Unexpected contents in {self.path}, starting empty")
            return {}
        return {str(k): v for k, v in data.items() if isinstance(v, str)}

    def _write_file(self, data: Dict[str, str]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".store-", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2, sort_keys=True)
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            logger.error(f"[STORE] Failed to write {self.path}: {e}")
            raise StorageError(f"Failed to write local store: {e}")

    async def _load(self) -> Dict[str, str]:
        if self._data is None:
            self._data = await asyncio.to_thread(self._read_file)
        return self._data

    async def _flush(self) -> None:
        snapshot = dict(self._data or {})
        await asyncio.to_thread(self._write_file, snapshot)

    async def get(self, key: str) -> Optional[str]:
        data = await self._load()
        return data.get(key)

    async def set(self, key: str, value: str) -> None:
        data = await self._load()
        data[key] = value
        await self._flush()

    async def remove(self, key: str) -> None:
        data = await self._load()
        if key in data:
            del data[key]
            await self._flush()

    async def clear(self) -> None:
        self._data = {}
        await self._flush()
