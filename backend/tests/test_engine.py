"""Tests for the offline-first sync engine.

These run the engine against the in-memory FakeRemoteService and exercise:
- Direct sends while online and queueing while offline
- Temporary id remapping across the cache, the queue and later operations
- Delete superseding queued changes and never-synced records
- Cache fallback, corrupted storage and restart persistence
- Retry ceiling, rejections, per-habit ordering and timeouts
- Serialization of concurrent operations
"""

from __future__ import annotations

import asyncio
import json

import pytest

from habitsync.core.constants import PENDING_MUTATIONS_KEY
from habitsync.core.exceptions import (
    HabitNotFoundError,
    InvalidHabitDataError,
    PersistentSyncError,
)
from habitsync.models.sync import MutationKind
from habitsync.services.sync import state
from tests.conftest import TODAY, days_ago, run


def seed_habit(remote, habit_id="h1", **overrides):
    row = {
        "id": habit_id,
        "user_id": "u1",
        "title": "Read",
        "frequency": 127,
        "start_date": days_ago(30).isoformat(),
        "is_active": True,
    }
    row.update(overrides)
    remote.habits[habit_id] = row
    return row


def seed_completion(remote, completion_id, on, habit_id="h1"):
    remote.completions[completion_id] = {
        "id": completion_id,
        "habit_id": habit_id,
        "user_id": "u1",
        "completed_at": on.isoformat(),
    }


async def queued_kinds(store):
    return [entry["kind"] for entry in json.loads(await store.get(PENDING_MUTATIONS_KEY) or "[]")]


async def cached_habits(store, user_id="u1"):
    return state.parse_habits(await store.get(f"habits_{user_id}"))


async def start_engine(make_engine, **kwargs):
    engine = make_engine(**kwargs)
    await engine.start()
    return engine


class TestCreate:
    def test_online_create_returns_server_habit(self, make_engine, remote):
        async def scenario():
            engine = await start_engine(make_engine)
            habit = await engine.create_habit({"user_id": "u1", "title": "  Read  ", "frequency": 31})

            assert habit.id == "habit-1"
            assert habit.title == "Read"
            assert habit.start_date == TODAY
            assert engine.get_pending_sync_count() == 0
            assert remote.habits["habit-1"]["frequency"] == 31

            habits = await engine.get_habits_with_completions("u1")
            assert [h.id for h in habits] == ["habit-1"]

        run(scenario())

    @pytest.mark.parametrize("data", [
        {"user_id": "u1", "title": ""},
        {"user_id": "u1", "title": "   "},
        {"user_id": "u1", "title": "x" * 101},
        {"user_id": "u1", "title": "Read", "frequency": 128},
        {"user_id": "u1", "title": "Read", "frequency": -1},
        {"user_id": "u1", "title": "Read", "frequency": "daily"},
        {"user_id": "u1", "title": "Read", "reminder_time": "25:00"},
        {"title": "Read"},
    ])
    def test_invalid_create_fails_before_any_io(self, make_engine, remote, store, data):
        async def scenario():
            engine = make_engine()
            with pytest.raises(InvalidHabitDataError):
                await engine.create_habit(data)

        run(scenario())
        assert remote.calls == []
        assert store.keys() == []

    def test_offline_create_syncs_on_reconnect(self, make_engine, remote):
        remote.is_online = False

        async def scenario():
            engine = await start_engine(make_engine)
            habit = await engine.create_habit({"user_id": "u1", "title": "Stretch"})

            assert state.is_temp_id(habit.id)
            assert engine.get_pending_sync_count() == 1
            assert remote.calls == []
            offline_view = await engine.get_habits_with_completions("u1")
            assert [h.id for h in offline_view] == [habit.id]

            await remote.set_online(True)

            assert engine.get_pending_sync_count() == 0
            assert engine.resolve_id(habit.id) == "habit-1"
            habits = await engine.get_habits_with_completions("u1")
            assert [h.id for h in habits] == ["habit-1"]
            assert not any(state.is_temp_id(h.id) for h in habits)

        run(scenario())

    def test_rejected_create_raises_and_leaves_nothing(self, make_engine, remote, store):
        remote.fail("create_habit", 422)

        async def scenario():
            engine = await start_engine(make_engine)
            with pytest.raises(PersistentSyncError):
                await engine.create_habit({"user_id": "u1", "title": "Read"})
            assert engine.get_pending_sync_count() == 0
            assert await cached_habits(store) == []

        run(scenario())

    def test_timed_out_create_is_queued_and_retried(self, make_engine, remote):
        remote.delay = 0.2

        async def scenario():
            engine = await start_engine(make_engine, timeout=0.05)
            habit = await engine.create_habit({"user_id": "u1", "title": "Read"})
            assert state.is_temp_id(habit.id)
            assert engine.get_pending_sync_count() == 1
            assert remote.habits == {}

            remote.delay = 0
            result = await engine.sync_pending_changes()
            assert result.synced == 1
            assert len(remote.habits) == 1
            assert engine.resolve_id(habit.id) in remote.habits

        run(scenario())


class TestCompletions:
    def test_offline_completion_on_unsynced_habit_follows_the_new_id(self, make_engine, remote):
        remote.is_online = False

        async def scenario():
            engine = await start_engine(make_engine)
            habit = await engine.create_habit({"user_id": "u1", "title": "Stretch"})
            assert await engine.toggle_habit_completion(habit.id, "u1") is True
            assert engine.get_pending_sync_count() == 2

            await remote.set_online(True)

            assert engine.get_pending_sync_count() == 0
            [row] = remote.completions.values()
            assert row["habit_id"] == "habit-1"
            assert row["completed_at"] == TODAY.isoformat()

            [enriched] = await engine.get_habits_with_completions("u1")
            assert enriched.is_completed_today
            assert not state.is_temp_id(enriched.completions[0].id)

        run(scenario())

    def test_double_toggle_offline_sends_nothing(self, make_engine, remote):
        seed_habit(remote)

        async def scenario():
            engine = await start_engine(make_engine)
            await engine.get_habits_with_completions("u1")
            await remote.set_online(False)

            assert await engine.toggle_habit_completion("h1", "u1") is True
            assert await engine.toggle_habit_completion("h1", "u1") is False
            assert engine.get_pending_sync_count() == 0

            await remote.set_online(True)
            [habit] = await engine.get_habits_with_completions("u1")
            assert habit.completions == []

        run(scenario())
        assert "create_completion" not in remote.call_names()
        assert remote.completions == {}

    def test_double_toggle_online_restores_server_state(self, make_engine, remote):
        seed_habit(remote)

        async def scenario():
            engine = await start_engine(make_engine)
            await engine.get_habits_with_completions("u1")
            assert await engine.toggle_habit_completion("h1", "u1") is True
            assert len(remote.completions) == 1
            assert await engine.toggle_habit_completion("h1", "u1") is False
            assert engine.get_pending_sync_count() == 0

        run(scenario())
        assert remote.completions == {}
        assert remote.call_names()[-2:] == ["create_completion", "delete_completion"]

    def test_toggle_updates_streak_optimistically(self, make_engine, remote):
        seed_habit(remote)
        seed_completion(remote, "c-1", days_ago(1))
        seed_completion(remote, "c-2", days_ago(2))

        async def scenario():
            engine = await start_engine(make_engine)
            [before] = await engine.get_habits_with_completions("u1")
            assert before.current_streak == 2
            assert before.is_completed_today is False

            await remote.set_online(False)
            await engine.toggle_habit_completion("h1", "u1")

            [after] = await engine.get_habits_with_completions("u1")
            assert after.current_streak == 3
            assert after.is_completed_today is True
            assert after.last_completed == TODAY.isoformat()

        run(scenario())

    def test_toggle_for_past_date(self, make_engine, remote):
        seed_habit(remote)

        async def scenario():
            engine = await start_engine(make_engine)
            await engine.get_habits_with_completions("u1")
            assert await engine.toggle_habit_completion("h1", "u1", days_ago(3)) is True
            [habit] = await engine.get_habits_with_completions("u1")
            assert habit.is_completed_today is False
            assert habit.last_completed == days_ago(3).isoformat()

        run(scenario())

    def test_offline_uncomplete_of_synced_completion_is_queued(self, make_engine, remote):
        seed_habit(remote)
        seed_completion(remote, "c-1", TODAY)

        async def scenario():
            engine = await start_engine(make_engine)
            await engine.get_habits_with_completions("u1")
            await remote.set_online(False)

            assert await engine.toggle_habit_completion("h1", "u1") is False
            assert engine.get_pending_sync_count() == 1

            await remote.set_online(True)
            assert engine.get_pending_sync_count() == 0

        run(scenario())
        assert remote.completions == {}

    def test_concurrent_toggles_are_serialized(self, make_engine, remote):
        seed_habit(remote)
        remote.delay = 0.01

        async def scenario():
            engine = await start_engine(make_engine)
            await engine.get_habits_with_completions("u1")
            results = await asyncio.gather(
                engine.toggle_habit_completion("h1", "u1"),
                engine.toggle_habit_completion("h1", "u1"),
            )
            assert sorted(results) == [False, True]
            assert engine.get_pending_sync_count() == 0

        run(scenario())
        assert remote.completions == {}


class TestUpdateAndDelete:
    def test_update_online(self, make_engine, remote):
        seed_habit(remote)

        async def scenario():
            engine = await start_engine(make_engine)
            await engine.get_habits_with_completions("u1")
            assert await engine.update_habit("h1", "u1", {"title": "Read more", "frequency": 96}) is True
            habit = await engine.get_habit("h1", "u1")
            assert habit.title == "Read more"
            assert habit.frequency == 96

        run(scenario())
        assert remote.habits["h1"]["title"] == "Read more"

    def test_update_validation(self, make_engine, remote):
        async def scenario():
            engine = await start_engine(make_engine)
            with pytest.raises(InvalidHabitDataError):
                await engine.update_habit("h1", "u1", {})
            with pytest.raises(InvalidHabitDataError):
                await engine.update_habit("h1", "u1", {"frequency": 200})
            for nulls in ({"title": None}, {"frequency": None}, {"start_date": None}, {"is_active": None}):
                with pytest.raises(InvalidHabitDataError):
                    await engine.update_habit("h1", "u1", nulls)
            with pytest.raises(HabitNotFoundError):
                await engine.update_habit("temp_unknown", "u1", {"title": "x"})

        run(scenario())
        assert remote.calls == []

    def test_null_for_required_field_is_rejected_before_queueing(self, make_engine, remote):
        seed_habit(remote)

        async def scenario():
            engine = await start_engine(make_engine)
            await engine.get_habits_with_completions("u1")
            await remote.set_online(False)

            with pytest.raises(InvalidHabitDataError):
                await engine.update_habit("h1", "u1", {"title": None, "start_date": None})
            assert engine.get_pending_sync_count() == 0
            assert (await engine.get_habit("h1", "u1")).title == "Read"

        run(scenario())

    def test_nullable_field_can_be_cleared(self, make_engine, remote):
        seed_habit(remote, description="Ten pages")

        async def scenario():
            engine = await start_engine(make_engine)
            await engine.get_habits_with_completions("u1")
            await engine.update_habit("h1", "u1", {"description": None})
            assert (await engine.get_habit("h1", "u1")).description is None

        run(scenario())
        assert remote.habits["h1"]["description"] is None

    def test_rejected_update_restores_cached_habit(self, make_engine, remote):
        seed_habit(remote)
        remote.fail("update_habit", 400)

        async def scenario():
            engine = await start_engine(make_engine)
            await engine.get_habits_with_completions("u1")
            with pytest.raises(PersistentSyncError):
                await engine.update_habit("h1", "u1", {"title": "Nope"})
            assert (await engine.get_habit("h1", "u1")).title == "Read"
            assert engine.get_pending_sync_count() == 0

        run(scenario())

    def test_delete_supersedes_queued_changes(self, make_engine, remote, store):
        seed_habit(remote)
        seed_habit(remote, "h2", title="Walk")

        async def scenario():
            engine = await start_engine(make_engine)
            await engine.get_habits_with_completions("u1")
            await remote.set_online(False)

            await engine.update_habit("h1", "u1", {"title": "Read more"})
            await engine.toggle_habit_completion("h1", "u1")
            await engine.toggle_habit_completion("h2", "u1")
            assert engine.get_pending_sync_count() == 3

            await engine.delete_habit("h1", "u1")
            assert await queued_kinds(store) == ["complete", "delete"]
            assert [h.id for h in await cached_habits(store)] == ["h2"]

            calls_before = len(remote.calls)
            await remote.set_online(True)
            sent = [c[0] for c in remote.calls[calls_before:]]
            assert sent == ["create_completion", "delete_habit"]

        run(scenario())
        assert list(remote.habits) == ["h2"]

    def test_delete_of_never_synced_habit_leaves_no_trace(self, make_engine, remote, store):
        remote.is_online = False

        async def scenario():
            engine = await start_engine(make_engine)
            habit = await engine.create_habit({"user_id": "u1", "title": "Stretch"})
            await engine.toggle_habit_completion(habit.id, "u1")
            await engine.update_habit(habit.id, "u1", {"title": "Stretch more"})

            assert await engine.delete_habit(habit.id, "u1") is True
            assert engine.get_pending_sync_count() == 0
            assert await queued_kinds(store) == []
            assert await engine.get_habits_with_completions("u1") == []

            await remote.set_online(True)

        run(scenario())
        assert remote.calls == []

    def test_delete_of_missing_habit_counts_as_success(self, make_engine, remote):
        seed_habit(remote)
        remote.fail("delete_habit", 404)

        async def scenario():
            engine = await start_engine(make_engine)
            await engine.get_habits_with_completions("u1")
            assert await engine.delete_habit("h1", "u1") is True
            assert engine.get_pending_sync_count() == 0

        run(scenario())

    def test_rejected_delete_restores_habit(self, make_engine, remote):
        seed_habit(remote)
        remote.fail("delete_habit", 403)

        async def scenario():
            engine = await start_engine(make_engine)
            await engine.get_habits_with_completions("u1")
            with pytest.raises(PersistentSyncError):
                await engine.delete_habit("h1", "u1")
            assert (await engine.get_habit("h1", "u1")).id == "h1"

        run(scenario())

    def test_get_habit_unknown(self, make_engine):
        async def scenario():
            engine = await start_engine(make_engine)
            with pytest.raises(HabitNotFoundError):
                await engine.get_habit("missing", "u1")

        run(scenario())


class TestReads:
    def test_offline_reads_serve_the_cache(self, make_engine, remote):
        seed_habit(remote)

        async def scenario():
            engine = await start_engine(make_engine)
            online = await engine.get_habits_with_completions("u1")
            await remote.set_online(False)
            calls_before = len(remote.calls)

            offline = await engine.get_habits_with_completions("u1")
            assert [h.id for h in offline] == [h.id for h in online]
            assert len(remote.calls) == calls_before

        run(scenario())

    def test_fetch_failure_falls_back_to_cache(self, make_engine, remote):
        seed_habit(remote)

        async def scenario():
            engine = await start_engine(make_engine)
            await engine.get_habits_with_completions("u1")
            remote.fail("get_completions", 500)
            habits = await engine.get_habits_with_completions("u1")
            assert [h.id for h in habits] == ["h1"]

        run(scenario())

    def test_fetch_failure_without_cache_is_empty(self, make_engine, remote):
        seed_habit(remote)
        remote.fail("get_habits")

        async def scenario():
            engine = await start_engine(make_engine)
            assert await engine.get_habits_with_completions("u1") == []

        run(scenario())

    def test_corrupted_storage_reads_as_empty(self, make_engine, remote, store):
        remote.is_online = False

        async def scenario():
            await store.set("habits_u1", "{broken")
            await store.set("completions_u1", "[1, 2")
            await store.set(PENDING_MUTATIONS_KEY, "not json")
            engine = await start_engine(make_engine)
            assert engine.get_pending_sync_count() == 0
            assert await engine.get_habits_with_completions("u1") == []

        run(scenario())

    def test_pending_changes_survive_a_server_refresh(self, make_engine, remote):
        seed_habit(remote)

        async def scenario():
            engine = await start_engine(make_engine)
            await engine.get_habits_with_completions("u1")
            await remote.set_online(False)
            await engine.update_habit("h1", "u1", {"title": "Offline title"})
            await engine.toggle_habit_completion("h1", "u1")

            remote.fail("update_habit")
            await remote.set_online(True)
            assert engine.get_pending_sync_count() == 2

            [habit] = await engine.get_habits_with_completions("u1")
            assert habit.title == "Offline title"
            assert habit.is_completed_today is True

        run(scenario())
        assert remote.habits["h1"]["title"] == "Read"

    def test_handle_remote_change_refetches(self, make_engine, remote):
        seed_habit(remote)

        async def scenario():
            engine = await start_engine(make_engine)
            assert len(await engine.get_habits_with_completions("u1")) == 1
            seed_habit(remote, "h2", title="Walk")
            habits = await engine.handle_remote_change("u1")
            assert sorted(h.id for h in habits) == ["h1", "h2"]

        run(scenario())

    def test_other_users_are_isolated(self, make_engine, remote):
        seed_habit(remote)
        seed_habit(remote, "h2", user_id="u2")

        async def scenario():
            engine = await start_engine(make_engine)
            assert [h.id for h in await engine.get_habits_with_completions("u2")] == ["h2"]

        run(scenario())


class TestQueueDrain:
    def test_transient_failure_blocks_only_that_habit(self, make_engine, remote):
        seed_habit(remote)
        seed_habit(remote, "h2", title="Walk")

        async def scenario():
            engine = await start_engine(make_engine)
            await engine.get_habits_with_completions("u1")
            await remote.set_online(False)
            await engine.update_habit("h1", "u1", {"title": "Read more"})
            await engine.toggle_habit_completion("h1", "u1")
            await engine.update_habit("h2", "u1", {"title": "Walk more"})

            remote.fail("update_habit")
            await remote.set_online(True)

            result = engine.last_sync_result
            assert (result.attempted, result.synced, result.requeued) == (2, 1, 1)
            assert result.remaining == 2
            assert remote.habits["h2"]["title"] == "Walk more"
            assert remote.completions == {}

            result = await engine.sync_pending_changes()
            assert result.synced == 2
            assert result.remaining == 0

        run(scenario())
        assert remote.habits["h1"]["title"] == "Read more"
        assert len(remote.completions) == 1

    def test_retry_ceiling_drops_the_mutation(self, make_engine, remote):
        seed_habit(remote)

        async def scenario():
            engine = await start_engine(make_engine, max_attempts=3)
            await engine.get_habits_with_completions("u1")
            await remote.set_online(False)
            await engine.update_habit("h1", "u1", {"title": "Read more"})

            remote.fail("update_habit", times=5)
            await remote.set_online(True)
            assert engine.last_sync_result.requeued == 1
            assert (await engine.sync_pending_changes()).requeued == 1

            result = await engine.sync_pending_changes()
            assert len(result.failed) == 1
            assert result.failed[0].mutation.kind == MutationKind.UPDATE
            assert "retry limit" in result.failed[0].error
            assert engine.get_pending_sync_count() == 0

        run(scenario())

    def test_server_outage_keeps_the_change_queued(self, make_engine, remote):
        seed_habit(remote)

        async def scenario():
            engine = await start_engine(make_engine)
            await engine.get_habits_with_completions("u1")
            await remote.set_online(False)
            await engine.update_habit("h1", "u1", {"title": "Read more"})

            remote.fail("update_habit", 503)
            await remote.set_online(True)

            result = engine.last_sync_result
            assert result.requeued == 1
            assert result.failed == []
            assert engine.get_pending_sync_count() == 1

            assert (await engine.sync_pending_changes()).synced == 1

        run(scenario())
        assert remote.habits["h1"]["title"] == "Read more"

    def test_rejected_create_drops_dependent_changes(self, make_engine, remote, store):
        remote.is_online = False

        async def scenario():
            engine = await start_engine(make_engine)
            habit = await engine.create_habit({"user_id": "u1", "title": "Stretch"})
            await engine.toggle_habit_completion(habit.id, "u1")

            remote.fail("create_habit", 400)
            await remote.set_online(True)

            result = engine.last_sync_result
            assert [f.mutation.kind for f in result.failed] == [MutationKind.CREATE, MutationKind.COMPLETE]
            assert result.attempted == 1
            assert engine.get_pending_sync_count() == 0
            assert await cached_habits(store) == []

        run(scenario())
        assert "create_completion" not in remote.call_names()

    def test_queued_delete_of_already_deleted_habit(self, make_engine, remote):
        seed_habit(remote)

        async def scenario():
            engine = await start_engine(make_engine)
            await engine.get_habits_with_completions("u1")
            await remote.set_online(False)
            await engine.delete_habit("h1", "u1")

            remote.habits.clear()
            remote.fail("delete_habit", 404)
            await remote.set_online(True)

            result = engine.last_sync_result
            assert result.synced == 1
            assert result.failed == []

        run(scenario())

    def test_sync_while_offline_is_a_no_op(self, make_engine, remote):
        remote.is_online = False

        async def scenario():
            engine = await start_engine(make_engine)
            await engine.create_habit({"user_id": "u1", "title": "Read"})
            result = await engine.sync_pending_changes()
            assert result.attempted == 0
            assert result.remaining == 1

        run(scenario())
        assert remote.calls == []

    def test_queue_survives_restart(self, make_engine, remote, store):
        remote.is_online = False

        async def scenario():
            first = await start_engine(make_engine)
            await first.create_habit({"user_id": "u1", "title": "Read"})
            await first.create_habit({"user_id": "u1", "title": "Walk"})
            await first.stop()

            second = await start_engine(make_engine)
            assert second.get_pending_sync_count() == 2
            await second.create_habit({"user_id": "u1", "title": "Stretch"})
            seqs = [entry["seq"] for entry in json.loads(await store.get(PENDING_MUTATIONS_KEY))]
            assert seqs == [0, 1, 2]

            await remote.set_online(True)
            assert second.get_pending_sync_count() == 0
            habits = await second.get_habits_with_completions("u1")
            assert sorted(h.title for h in habits) == ["Read", "Stretch", "Walk"]

        run(scenario())
        assert len(remote.habits) == 3

    def test_start_drains_a_persisted_queue(self, make_engine, remote):
        remote.is_online = False

        async def scenario():
            first = await start_engine(make_engine)
            await first.create_habit({"user_id": "u1", "title": "Read"})
            await first.stop()

            remote.is_online = True
            second = await start_engine(make_engine)
            assert second.get_pending_sync_count() == 0

        run(scenario())
        assert len(remote.habits) == 1

    def test_synced_temp_id_still_resolves_after_restart(self, make_engine, remote):
        remote.is_online = False

        async def scenario():
            first = await start_engine(make_engine)
            habit = await first.create_habit({"user_id": "u1", "title": "Read"})
            await remote.set_online(True)
            assert first.resolve_id(habit.id) == "habit-1"
            await first.stop()

            second = await start_engine(make_engine)
            # Ids are loaded with the queue, before the first call needs them
            assert (await second.get_habit(habit.id, "u1")).id == "habit-1"
            assert second.resolve_id(habit.id) == "habit-1"
            await second.update_habit(habit.id, "u1", {"title": "Read more"})

        run(scenario())
        assert remote.habits["habit-1"]["title"] == "Read more"

    def test_session_keys_are_scoped_to_the_user(self, make_engine, remote, store):
        remote.is_online = False

        async def scenario():
            alice = await start_engine(make_engine, session_id="alice")
            bob = await start_engine(make_engine, session_id="bob")
            await alice.create_habit({"user_id": "alice", "title": "Read"})

            assert alice.get_pending_sync_count() == 1
            assert bob.get_pending_sync_count() == 0
            assert await store.get("pending_mutations_alice") is not None
            assert await store.get("pending_mutations_bob") is None
            assert await store.get(PENDING_MUTATIONS_KEY) is None

            await remote.set_online(True)
            assert await store.get("temp_id_map_alice") is not None
            assert await store.get("temp_id_map_bob") is None

        run(scenario())
        assert len(remote.habits) == 1

    def test_force_sync_drains_and_refreshes(self, make_engine, remote):
        seed_habit(remote)

        async def scenario():
            engine = await start_engine(make_engine)
            await engine.get_habits_with_completions("u1")
            remote.fail("update_habit")
            await engine.update_habit("h1", "u1", {"title": "Read more"})
            assert engine.get_pending_sync_count() == 1

            result = await engine.force_sync("u1")
            assert result.synced == 1
            assert (await engine.get_habit("h1", "u1")).title == "Read more"

        run(scenario())

    def test_status_reflects_connectivity_and_queue(self, make_engine, remote):
        async def scenario():
            engine = await start_engine(make_engine)
            assert engine.get_status().online is True

            await remote.set_online(False)
            await engine.create_habit({"user_id": "u1", "title": "Read"})
            status = engine.get_status()
            assert status.online is False
            assert status.pending == 1
            assert engine.get_connection_status() is False

        run(scenario())
