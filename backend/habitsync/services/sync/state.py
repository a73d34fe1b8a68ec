"""
Sync State - Pure transitions over the cached snapshot and the pending queue
Nothing in this module performs I/O; the engine composes these with effects
"""
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from habitsync.core.constants import TEMP_ID_PREFIX
from habitsync.models.habit import Habit, HabitCompletion
from habitsync.models.sync import MutationKind, MutationStatus, PendingMutation

logger = logging.getLogger(__name__)


@dataclass
class CacheSnapshot:
    """Habits and completions for one user as last known locally"""
    habits: List[Habit] = field(default_factory=list)
    completions: List[HabitCompletion] = field(default_factory=list)

    def find_habit(self, habit_id: str) -> Optional[Habit]:
        for habit in self.habits:
            if habit.id == habit_id:
                return habit
        return None


# ============================================================================
# IDENTIFIERS
# ============================================================================

def new_temp_id() -> str:
    """Identifier for a record that has not reached the server yet"""
    return f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}"


def is_temp_id(entity_id: Optional[str]) -> bool:
    return bool(entity_id) and entity_id.startswith(TEMP_ID_PREFIX)


# ============================================================================
# SERIALIZATION
# ============================================================================

def _parse_list(raw: Optional[str], model, label: str) -> List[Any]:
    """Parse a JSON list of models; anything unreadable yields an empty list"""
    if not raw:
        return []
    try:
        rows = json.loads(raw)
    except ValueError as e:
        logger.error(f"[CACHE] Corrupted {label}, treating as empty: {e}")
        return []
    if not isinstance(rows, list):
        logger.error(f"[CACHE] Corrupted {label}, expected a list")
        return []
    try:
        return [model.model_validate(row) for row in rows]
    except ValidationError as e:
        logger.error(f"[CACHE] Corrupted {label}, treating as empty: {e}")
        return []


def parse_habits(raw: Optional[str]) -> List[Habit]:
    return _parse_list(raw, Habit, "habit cache")


def parse_completions(raw: Optional[str]) -> List[HabitCompletion]:
    return _parse_list(raw, HabitCompletion, "completion cache")


def parse_queue(raw: Optional[str]) -> List[PendingMutation]:
    """
    Parse the persisted queue

    Entries left in flight by an interrupted drain go back to queued.
    """
    queue = _parse_list(raw, PendingMutation, "pending mutation queue")
    for mutation in queue:
        if mutation.status == MutationStatus.IN_FLIGHT:
            mutation.status = MutationStatus.QUEUED
    return sorted(queue, key=lambda m: m.seq)


def dump_models(models: Iterable[Any]) -> str:
    return json.dumps([m.model_dump(mode="json") for m in models])


def parse_id_map(raw: Optional[str]) -> Dict[str, str]:
    """Parse the persisted temp-id to server-id map; unreadable yields empty"""
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except ValueError as e:
        logger.error(f"[CACHE] Corrupted id map, treating as empty: {e}")
        return {}
    if not isinstance(data, dict):
        logger.error("[CACHE] Corrupted id map, expected an object")
        return {}
    return {str(k): str(v) for k, v in data.items() if isinstance(v, str)}


def dump_id_map(id_map: Dict[str, str]) -> str:
    return json.dumps(id_map, sort_keys=True)


def snapshot_from_rows(habit_rows: List[Dict[str, Any]], completion_rows: List[Dict[str, Any]]) -> CacheSnapshot:
    """
    Build a snapshot from raw server rows

    Raises:
        ValidationError: If a row does not describe a habit or completion
    """
    return CacheSnapshot(
        habits=[Habit.model_validate(row) for row in habit_rows or []],
        completions=[HabitCompletion.model_validate(row) for row in completion_rows or []],
    )


# ============================================================================
# SNAPSHOT TRANSITIONS
# ============================================================================

def add_habit(snapshot: CacheSnapshot, habit: Habit) -> CacheSnapshot:
    """Newest first, replacing any habit with the same id"""
    others = [h for h in snapshot.habits if h.id != habit.id]
    return CacheSnapshot(habits=[habit] + others, completions=list(snapshot.completions))


def merge_habit(snapshot: CacheSnapshot, habit_id: str, updates: Dict[str, Any],
                updated_at: Optional[str] = None) -> CacheSnapshot:
    """Apply a partial update to one habit"""
    habits = []
    for habit in snapshot.habits:
        if habit.id == habit_id:
            data = {**habit.model_dump(), **updates}
            if updated_at:
                data["updated_at"] = updated_at
            habit = Habit.model_validate(data)
        habits.append(habit)
    return CacheSnapshot(habits=habits, completions=list(snapshot.completions))


def remove_habit(snapshot: CacheSnapshot, habit_id: str) -> CacheSnapshot:
    """Drop a habit together with its completions"""
    return CacheSnapshot(
        habits=[h for h in snapshot.habits if h.id != habit_id],
        completions=[c for c in snapshot.completions if c.habit_id != habit_id],
    )


def remap_habit_id(snapshot: CacheSnapshot, old_id: str, new_id: str,
                   server_habit: Optional[Habit] = None) -> CacheSnapshot:
    """
    Swap a temporary habit id for the server id everywhere it is referenced

    Args:
        snapshot: Current snapshot
        old_id: Temporary id
        new_id: Server-assigned id
        server_habit: Optional server record to replace the local one with
    """
    habits = []
    for habit in snapshot.habits:
        if habit.id == old_id:
            habit = server_habit if server_habit is not None else habit.model_copy(update={"id": new_id})
        habits.append(habit)

    completions = [
        c.model_copy(update={"habit_id": new_id}) if c.habit_id == old_id else c
        for c in snapshot.completions
    ]
    return CacheSnapshot(habits=habits, completions=completions)


def find_completions(snapshot: CacheSnapshot, habit_id: str, on: date) -> List[HabitCompletion]:
    """Every completion of a habit on a calendar date (duplicates included)"""
    found = []
    for completion in snapshot.completions:
        if completion.habit_id != habit_id:
            continue
        try:
            if completion.completed_on == on:
                found.append(completion)
        except ValueError:
            continue
    return found


def add_completion(snapshot: CacheSnapshot, completion: HabitCompletion) -> CacheSnapshot:
    others = [c for c in snapshot.completions if c.id != completion.id]
    return CacheSnapshot(habits=list(snapshot.habits), completions=[completion] + others)


def remove_completions(snapshot: CacheSnapshot, completion_ids: Iterable[str]) -> CacheSnapshot:
    ids = set(completion_ids)
    return CacheSnapshot(
        habits=list(snapshot.habits),
        completions=[c for c in snapshot.completions if c.id not in ids],
    )


def remap_completion_id(snapshot: CacheSnapshot, old_id: str,
                        server_completion: HabitCompletion) -> CacheSnapshot:
    """Replace a temporary completion with the server record"""
    completions = [
        server_completion if c.id == old_id else c
        for c in snapshot.completions
    ]
    return CacheSnapshot(habits=list(snapshot.habits), completions=completions)


# ============================================================================
# QUEUE TRANSITIONS
# ============================================================================

def enqueue(queue: List[PendingMutation], mutation: PendingMutation) -> List[PendingMutation]:
    return list(queue) + [mutation]


def pending_for_habit(queue: List[PendingMutation], habit_id: str) -> List[PendingMutation]:
    return [m for m in queue if m.habit_id == habit_id]


def remove_by_seq(queue: List[PendingMutation], seq: int) -> List[PendingMutation]:
    return [m for m in queue if m.seq != seq]


def supersede_for_habit(queue: List[PendingMutation],
                        habit_id: str) -> Tuple[List[PendingMutation], List[PendingMutation]]:
    """
    Cancel every queued mutation of a habit that is about to be deleted

    Returns:
        (remaining queue, superseded mutations)
    """
    kept = [m for m in queue if m.habit_id != habit_id]
    superseded = [m for m in queue if m.habit_id == habit_id]
    return kept, superseded


def cancel_completion(queue: List[PendingMutation],
                      completion_id: str) -> Tuple[List[PendingMutation], List[PendingMutation]]:
    """
    Drop the queued creation of a completion that was undone before syncing

    Returns:
        (remaining queue, cancelled mutations)
    """
    def matches(m: PendingMutation) -> bool:
        return m.kind == MutationKind.COMPLETE and m.completion_id == completion_id

    return [m for m in queue if not matches(m)], [m for m in queue if matches(m)]


def remap_queue_habit_id(queue: List[PendingMutation], old_id: str, new_id: str) -> List[PendingMutation]:
    """Point queued mutations and their payloads at the server habit id"""
    remapped = []
    for mutation in queue:
        if mutation.habit_id == old_id or mutation.payload.get("habit_id") == old_id:
            payload = dict(mutation.payload)
            if payload.get("habit_id") == old_id:
                payload["habit_id"] = new_id
            mutation = mutation.model_copy(update={
                "habit_id": new_id if mutation.habit_id == old_id else mutation.habit_id,
                "payload": payload,
            })
        remapped.append(mutation)
    return remapped


def remap_queue_completion_id(queue: List[PendingMutation], old_id: str, new_id: str) -> List[PendingMutation]:
    return [
        m.model_copy(update={"completion_id": new_id}) if m.completion_id == old_id else m
        for m in queue
    ]


# ============================================================================
# REBASE
# ============================================================================

def apply_mutation(snapshot: CacheSnapshot, mutation: PendingMutation) -> CacheSnapshot:
    """Optimistic effect of one pending mutation"""
    kind = mutation.kind

    if kind == MutationKind.CREATE:
        if snapshot.find_habit(mutation.habit_id) is not None:
            return snapshot
        habit = Habit.model_validate({
            **mutation.payload,
            "id": mutation.habit_id,
            "created_at": mutation.payload.get("created_at") or mutation.enqueued_at,
        })
        return add_habit(snapshot, habit)

    if kind == MutationKind.UPDATE:
        return merge_habit(snapshot, mutation.habit_id, mutation.payload, mutation.enqueued_at)

    if kind == MutationKind.DELETE:
        return remove_habit(snapshot, mutation.habit_id)

    if kind == MutationKind.COMPLETE:
        completion = HabitCompletion.model_validate({
            **mutation.payload,
            "id": mutation.completion_id,
            "created_at": mutation.enqueued_at,
        })
        return add_completion(snapshot, completion)

    if kind == MutationKind.UNCOMPLETE:
        return remove_completions(snapshot, [mutation.completion_id])

    return snapshot


def rebase(snapshot: CacheSnapshot, queue: Iterable[PendingMutation]) -> CacheSnapshot:
    """Replay pending mutations, in order, on top of a server snapshot"""
    for mutation in sorted(queue, key=lambda m: m.seq):
        try:
            snapshot = apply_mutation(snapshot, mutation)
        except ValidationError as e:
            logger.error(f"[CACHE] Could not replay mutation {mutation.seq} ({mutation.kind.value}): {e}")
    return snapshot
