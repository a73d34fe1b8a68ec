"""
Remote Service contract
CRUD over habits and completions plus an online/offline notification channel
"""
import logging
from typing import Any, Awaitable, Callable, Dict, List, Protocol

from habitsync.models.sync import ApiResponse

logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], Awaitable[None]]


class RemoteService(Protocol):
    """
    Remote persistence used by the sync engine

    Every call returns an ApiResponse instead of raising.
    """
    is_online: bool

    async def get_habits(self, user_id: str) -> ApiResponse: ...

    async def get_completions(self, user_id: str) -> ApiResponse: ...

    async def create_habit(self, data: Dict[str, Any]) -> ApiResponse: ...

    async def update_habit(self, habit_id: str, updates: Dict[str, Any]) -> ApiResponse: ...

    async def delete_habit(self, habit_id: str) -> ApiResponse: ...

    async def create_completion(self, data: Dict[str, Any]) -> ApiResponse: ...

    async def delete_completion(self, completion_id: str) -> ApiResponse: ...

    async def ping(self) -> ApiResponse: ...

    def subscribe_connectivity(self, listener: ConnectivityListener) -> None: ...

    def unsubscribe_connectivity(self, listener: ConnectivityListener) -> None: ...


class ConnectivityChannel:
    """
    Online/offline state with listeners notified on transitions only
    """

    def __init__(self, is_online: bool = True):
        self.is_online = is_online
        self._listeners: List[ConnectivityListener] = []

    def subscribe_connectivity(self, listener: ConnectivityListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe_connectivity(self, listener: ConnectivityListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def set_online(self, is_online: bool) -> bool:
        """
        Record the current connectivity

        Returns:
            True if the state changed and listeners were notified
        """
        if is_online == self.is_online:
            return False

        self.is_online = is_online
        logger.info(f"[CONNECTIVITY] Now {'online' if is_online else 'offline'}")
        for listener in list(self._listeners):
            try:
                await listener(is_online)
            except Exception as e:
                logger.error(f"[CONNECTIVITY] Listener failed: {e}", exc_info=True)
        return True
