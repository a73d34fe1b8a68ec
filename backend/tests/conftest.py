"""Pytest configuration and shared fixtures for habitsync tests.

Provides an in-memory fake of the remote service (with failure injection and
a connectivity switch), fixed reference dates, and model factories so the
engine can be exercised without a network or a Supabase project.
"""

import asyncio
from collections import defaultdict
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

import pytest

from habitsync.models.habit import Habit, HabitCompletion
from habitsync.models.sync import ApiResponse
from habitsync.services.remote.base import ConnectivityChannel
from habitsync.services.storage import InMemoryStore
from habitsync.services.sync import SyncEngine

# Wednesday
TODAY = date(2024, 6, 12)


def days_ago(n: int) -> date:
    return TODAY - timedelta(days=n)


def run(coro):
    """Run a coroutine on a fresh event loop"""
    return asyncio.run(coro)


class FakeRemoteService(ConnectivityChannel):
    """In-memory remote service with injectable failures"""

    def __init__(self, is_online: bool = True):
        super().__init__(is_online)
        self.habits: Dict[str, Dict[str, Any]] = {}
        self.completions: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        self.delay: float = 0
        self._failures: Dict[str, List[Optional[int]]] = defaultdict(list)
        self._counter = 0

    def fail(self, method: str, status: Optional[int] = None, times: int = 1) -> None:
        """Make the next `times` calls of a method fail with the given status"""
        self._failures[method].extend([status] * times)

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}-{self._counter}"

    async def _enter(self, method: str, *args) -> Optional[ApiResponse]:
        self.calls.append((method,) + args)
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.is_online:
            return ApiResponse.fail("network unreachable")
        if self._failures[method]:
            status = self._failures[method].pop(0)
            return ApiResponse.fail(f"{method} failed", status)
        return None

    def call_names(self) -> List[str]:
        return [c[0] for c in self.calls]

    async def get_habits(self, user_id: str) -> ApiResponse:
        failure = await self._enter("get_habits", user_id)
        if failure:
            return failure
        return ApiResponse.ok([dict(h) for h in self.habits.values() if h["user_id"] == user_id])

    async def get_completions(self, user_id: str) -> ApiResponse:
        failure = await self._enter("get_completions", user_id)
        if failure:
            return failure
        return ApiResponse.ok([dict(c) for c in self.completions.values() if c["user_id"] == user_id])

    async def create_habit(self, data: Dict[str, Any]) -> ApiResponse:
        failure = await self._enter("create_habit", data)
        if failure:
            return failure
        row = {**data, "id": self._next_id("habit"), "created_at": "2024-06-01T00:00:00+00:00"}
        self.habits[row["id"]] = row
        return ApiResponse.ok(dict(row))

    async def update_habit(self, habit_id: str, updates: Dict[str, Any]) -> ApiResponse:
        failure = await self._enter("update_habit", habit_id, updates)
        if failure:
            return failure
        if habit_id not in self.habits:
            return ApiResponse.fail(f"Habit {habit_id} not found", 404)
        self.habits[habit_id].update(updates)
        return ApiResponse.ok(dict(self.habits[habit_id]))

    async def delete_habit(self, habit_id: str) -> ApiResponse:
        failure = await self._enter("delete_habit", habit_id)
        if failure:
            return failure
        self.habits.pop(habit_id, None)
        self.completions = {k: c for k, c in self.completions.items() if c["habit_id"] != habit_id}
        return ApiResponse.ok()

    async def create_completion(self, data: Dict[str, Any]) -> ApiResponse:
        failure = await self._enter("create_completion", data)
        if failure:
            return failure
        row = {**data, "id": self._next_id("completion"), "created_at": "2024-06-01T00:00:00+00:00"}
        self.completions[row["id"]] = row
        return ApiResponse.ok(dict(row))

    async def delete_completion(self, completion_id: str) -> ApiResponse:
        failure = await self._enter("delete_completion", completion_id)
        if failure:
            return failure
        self.completions.pop(completion_id, None)
        return ApiResponse.ok()

    async def ping(self) -> ApiResponse:
        failure = await self._enter("ping")
        if failure:
            return failure
        return ApiResponse.ok(True)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def remote():
    return FakeRemoteService()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def make_engine(remote, store):
    """Factory for engines sharing the fake remote and the in-memory store"""

    def _make(**kwargs) -> SyncEngine:
        kwargs.setdefault("today", lambda: TODAY)
        kwargs.setdefault("max_attempts", 3)
        kwargs.setdefault("timeout", 1.0)
        return SyncEngine(remote, store, **kwargs)

    return _make


@pytest.fixture
def habit_factory():
    """Build Habit models with sensible defaults"""

    def _make(**overrides) -> Habit:
        data = {
            "id": "h1",
            "user_id": "u1",
            "title": "Read",
            "frequency": 127,
            "start_date": days_ago(60),
            "is_active": True,
        }
        data.update(overrides)
        return Habit.model_validate(data)

    return _make


@pytest.fixture
def completion_factory():
    """Build HabitCompletion models for a date"""
    counter = {"n": 0}

    def _make(on: date, habit_id: str = "h1", **overrides) -> HabitCompletion:
        counter["n"] += 1
        data = {
            "id": f"c{counter['n']}",
            "habit_id": habit_id,
            "user_id": "u1",
            "completed_at": on.isoformat(),
        }
        data.update(overrides)
        return HabitCompletion.model_validate(data)

    return _make
