"""
Supabase Remote Service - habits and habit_completions tables
The Supabase client is synchronous; calls run in a worker thread
"""
import asyncio
import logging
from typing import Any, Callable, Dict, Optional

from postgrest.exceptions import APIError
from supabase import Client

from habitsync.core.constants import HABITS_TABLE, COMPLETIONS_TABLE
from habitsync.models.sync import ApiResponse
from .base import ConnectivityChannel

logger = logging.getLogger(__name__)


# PostgREST group 0 (PGRST0xx) are connection errors, served as 503
TRANSIENT_POSTGREST_PREFIX = "PGRST0"

# SQLSTATE classes: connection exception, insufficient resources,
# operator intervention (incl. statement timeout), system error
TRANSIENT_SQLSTATE_CLASSES = ("08", "53", "57", "58")

SERVICE_UNAVAILABLE = 503


def _status_from_api_error(error: APIError) -> int:
    """
    HTTP-like status for a PostgREST error

    A three digit code is an HTTP status passed through. Connection, resource
    and timeout failures map to 503 so the change is retried. Any other
    PostgREST ('PGRST...') or SQLSTATE code means the request was refused.
    """
    code = str(getattr(error, "code", "") or "")
    if len(code) == 3 and code.isdigit():
        return int(code)
    if code.startswith(TRANSIENT_POSTGREST_PREFIX):
        return SERVICE_UNAVAILABLE
    if len(code) == 5 and code[:2] in TRANSIENT_SQLSTATE_CLASSES:
        return SERVICE_UNAVAILABLE
    return 400


class SupabaseRemoteService(ConnectivityChannel):
    """
    Remote service backed by a Supabase project
    """

    def __init__(self, client: Client, is_online: bool = True):
        super().__init__(is_online)
        self.client = client

    async def _call(self, description: str, fn: Callable[[], Any]) -> ApiResponse:
        try:
            data = await asyncio.to_thread(fn)
            return ApiResponse.ok(data)
        except APIError as e:
            status = _status_from_api_error(e)
            logger.error(f"Remote error during {description} ({status}): {e.message}")
            return ApiResponse.fail(str(e.message), status)
        except Exception as e:
            logger.error(f"Remote error during {description}: {e}")
            return ApiResponse.fail(str(e))

    @staticmethod
    def _first(rows) -> Optional[Dict[str, Any]]:
        return rows[0] if rows else None

    async def get_habits(self, user_id: str) -> ApiResponse:
        def query():
            result = self.client.table(HABITS_TABLE)\
                .select("*")\
                .eq("user_id", user_id)\
                .order("created_at", desc=True)\
                .execute()
            return result.data or []

        return await self._call(f"fetch habits for {user_id}", query)

    async def get_completions(self, user_id: str) -> ApiResponse:
        def query():
            result = self.client.table(COMPLETIONS_TABLE)\
                .select("*")\
                .eq("user_id", user_id)\
                .order("completed_at", desc=True)\
                .execute()
            return result.data or []

        return await self._call(f"fetch completions for {user_id}", query)

    async def create_habit(self, data: Dict[str, Any]) -> ApiResponse:
        def query():
            result = self.client.table(HABITS_TABLE).insert(data).execute()
            return self._first(result.data)

        response = await self._call("create habit", query)
        if response.success and response.data is None:
            return ApiResponse.fail("Habit insert returned no row", 500)
        return response

    async def update_habit(self, habit_id: str, updates: Dict[str, Any]) -> ApiResponse:
        def query():
            result = self.client.table(HABITS_TABLE).update(updates).eq("id", habit_id).execute()
            return self._first(result.data)

        response = await self._call(f"update habit {habit_id}", query)
        if response.success and response.data is None:
            return ApiResponse.fail(f"Habit {habit_id} not found", 404)
        return response

    async def delete_habit(self, habit_id: str) -> ApiResponse:
        def query():
            self.client.table(HABITS_TABLE).delete().eq("id", habit_id).execute()
            return None

        return await self._call(f"delete habit {habit_id}", query)

    async def create_completion(self, data: Dict[str, Any]) -> ApiResponse:
        def query():
            result = self.client.table(COMPLETIONS_TABLE).insert(data).execute()
            return self._first(result.data)

        response = await self._call("create completion", query)
        if response.success and response.data is None:
            return ApiResponse.fail("Completion insert returned no row", 500)
        return response

    async def delete_completion(self, completion_id: str) -> ApiResponse:
        def query():
            self.client.table(COMPLETIONS_TABLE).delete().eq("id", completion_id).execute()
            return None

        return await self._call(f"delete completion {completion_id}", query)

    async def ping(self) -> ApiResponse:
        def query():
            self.client.table(HABITS_TABLE).select("id").limit(1).execute()
            return True

        return await self._call("connectivity check", query)
