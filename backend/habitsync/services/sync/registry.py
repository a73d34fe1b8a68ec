"""
Sync Engine Registry - One engine per user session
Engines are created lazily on a user's first request and share the remote
service and the local store; their queues and id maps live under per-user keys
"""
import asyncio
import logging
from typing import Any, Dict

from habitsync.services.remote.base import RemoteService
from habitsync.services.storage.local_store import LocalStore
from .engine import SyncEngine

logger = logging.getLogger(__name__)


class SyncEngineRegistry:
    """
    Lazily built SyncEngine per user

    Args:
        remote: Remote service shared by every engine
        store: Local store shared by every engine
        **engine_options: Passed to each SyncEngine (today, max_attempts, timeout)
    """

    def __init__(self, remote: RemoteService, store: LocalStore, **engine_options: Any):
        self.remote = remote
        self.store = store
        self.engine_options = engine_options
        self._engines: Dict[str, SyncEngine] = {}
        self._lock = asyncio.Lock()

    async def get(self, user_id: str) -> SyncEngine:
        """
        The started engine for a user, creating it on first use

        Starting an engine drains whatever that user left in the queue.
        """
        engine = self._engines.get(user_id)
        if engine is not None:
            return engine

        created = False
        async with self._lock:
            engine = self._engines.get(user_id)
            if engine is None:
                engine = SyncEngine(self.remote, self.store, session_id=user_id, **self.engine_options)
                self._engines[user_id] = engine
                created = True
                logger.info(f"[SYNC] Opened session for {user_id}")
        if created:
            await engine.start()
        return engine

    @property
    def is_online(self) -> bool:
        return getattr(self.remote, "is_online", True)

    async def stop_all(self) -> None:
        for engine in list(self._engines.values()):
            await engine.stop()
        logger.info(f"[SYNC] Closed {len(self._engines)} session(s)")
        self._engines.clear()

    def __len__(self) -> int:
        return len(self._engines)
