"""
Sync Engine - Offline-first habit operations
Serves cached + enriched habit data, applies user actions optimistically and
keeps a durable queue of mutations that have not reached the remote service

One engine instance serves one user session; SyncEngineRegistry keeps one
per user. Every public operation runs
under a single lock, including its network step, so optimistic writes to
the cache and the queue never interleave.
"""
import asyncio
import logging
from datetime import date
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import ValidationError

from habitsync.core.config import settings
from habitsync.core.constants import (
    HABITS_CACHE_KEY_PREFIX,
    COMPLETIONS_CACHE_KEY_PREFIX,
    PENDING_MUTATIONS_KEY,
    ID_MAP_KEY
)
from habitsync.core.exceptions import (
    HabitNotFoundError,
    InvalidHabitDataError,
    PersistentSyncError,
    StorageError
)
from habitsync.models.habit import (
    Habit,
    HabitCompletion,
    HabitWithCompletions,
    CreateHabitRequest,
    UpdateHabitRequest
)
from habitsync.models.sync import (
    ApiResponse,
    MutationKind,
    MutationStatus,
    PendingMutation,
    SyncFailure,
    SyncResult,
    SyncStatus
)
from habitsync.services.habits.calculator import enrich_habit_with_completions
from habitsync.services.remote.base import RemoteService
from habitsync.services.storage.local_store import LocalStore
from habitsync.utils.timezone import get_local_today_date, get_utc_timestamp
from . import state
from .state import CacheSnapshot

logger = logging.getLogger(__name__)


def _format_validation_error(error: ValidationError) -> str:
    """Flatten pydantic errors into one readable line"""
    parts = []
    for item in error.errors():
        location = ".".join(str(loc) for loc in item.get("loc", ()))
        parts.append(f"{location}: {item.get('msg')}" if location else item.get("msg", ""))
    return "; ".join(parts)


class SyncEngine:
    """
    Offline-first facade over a remote service and a local store

    Args:
        remote: Remote service collaborator (also the connectivity channel)
        store: Local key/value store
        today: Callable returning the reference date for derived fields
        max_attempts: Retry ceiling for a queued mutation
        timeout: Seconds before a remote call counts as failed
        session_id: Namespaces the durable queue and id map in the store
    """

    def __init__(
        self,
        remote: RemoteService,
        store: LocalStore,
        today: Optional[Callable[[], date]] = None,
        max_attempts: Optional[int] = None,
        timeout: Optional[float] = None,
        session_id: Optional[str] = None
    ):
        self.remote = remote
        self.store = store
        self._today = today or get_local_today_date
        self.max_attempts = max_attempts or settings.SYNC_MAX_ATTEMPTS
        self.timeout = timeout if timeout is not None else settings.REMOTE_TIMEOUT_SECONDS
        suffix = f"_{session_id}" if session_id else ""
        self.queue_key = f"{PENDING_MUTATIONS_KEY}{suffix}"
        self.id_map_key = f"{ID_MAP_KEY}{suffix}"

        self._lock = asyncio.Lock()
        self._queue: List[PendingMutation] = []
        self._queue_loaded = False
        self._next_seq = 0
        self._id_map: Dict[str, str] = {}
        self._online: bool = getattr(remote, "is_online", True)
        self._started = False
        self.last_sync_result: Optional[SyncResult] = None

    # ========================================================================
    # LIFECYCLE & CONNECTIVITY
    # ========================================================================

    async def start(self) -> None:
        """Load the durable queue and begin reacting to connectivity changes"""
        if self._started:
            return
        async with self._lock:
            await self._ensure_queue_loaded()
        self._online = getattr(self.remote, "is_online", True)
        self.remote.subscribe_connectivity(self._on_connectivity_change)
        self._started = True
        logger.info(f"[SYNC] Engine started ({'online' if self._online else 'offline'}, "
                    f"{len(self._queue)} pending)")

        if self._online and self._queue:
            await self.sync_pending_changes()

    async def stop(self) -> None:
        """Stop reacting to connectivity changes"""
        if not self._started:
            return
        self.remote.unsubscribe_connectivity(self._on_connectivity_change)
        self._started = False
        logger.info("[SYNC] Engine stopped")

    async def _on_connectivity_change(self, is_online: bool) -> None:
        was_online = self._online
        self._online = is_online
        if is_online and not was_online:
            logger.info("[SYNC] Connection restored, syncing pending changes")
            await self.sync_pending_changes()
        elif not is_online and was_online:
            logger.info("[SYNC] Connection lost, queueing changes locally")

    def get_connection_status(self) -> bool:
        return self._online

    def get_pending_sync_count(self) -> int:
        return len(self._queue)

    def get_status(self) -> SyncStatus:
        return SyncStatus(
            online=self._online,
            pending=len(self._queue),
            last_sync=self.last_sync_result
        )

    def resolve_id(self, habit_id: str) -> str:
        """Server id for a temporary id once its creation has synced"""
        seen = set()
        while habit_id in self._id_map and habit_id not in seen:
            seen.add(habit_id)
            habit_id = self._id_map[habit_id]
        return habit_id

    # ========================================================================
    # STORAGE
    # ========================================================================

    async def _load_snapshot(self, user_id: str) -> CacheSnapshot:
        raw_habits = await self.store.get(f"{HABITS_CACHE_KEY_PREFIX}{user_id}")
        raw_completions = await self.store.get(f"{COMPLETIONS_CACHE_KEY_PREFIX}{user_id}")
        return CacheSnapshot(
            habits=state.parse_habits(raw_habits),
            completions=state.parse_completions(raw_completions)
        )

    async def _save_snapshot(self, user_id: str, snapshot: CacheSnapshot) -> None:
        await self.store.set(f"{HABITS_CACHE_KEY_PREFIX}{user_id}", state.dump_models(snapshot.habits))
        await self.store.set(f"{COMPLETIONS_CACHE_KEY_PREFIX}{user_id}", state.dump_models(snapshot.completions))

    async def _ensure_queue_loaded(self) -> None:
        if self._queue_loaded:
            return
        self._queue = state.parse_queue(await self.store.get(self.queue_key))
        self._id_map = state.parse_id_map(await self.store.get(self.id_map_key))
        self._next_seq = max((m.seq for m in self._queue), default=-1) + 1
        self._queue_loaded = True

    async def _save_queue(self) -> None:
        await self.store.set(self.queue_key, state.dump_models(self._queue))

    # ========================================================================
    # REMOTE CALLS
    # ========================================================================

    async def _call(self, description: str, call: Awaitable[ApiResponse]) -> ApiResponse:
        """Bound a remote call by the timeout; anything but an answer is transient"""
        try:
            return await asyncio.wait_for(call, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[SYNC] Remote call timed out after {self.timeout}s: {description}")
            return ApiResponse.fail(f"Timed out: {description}")
        except Exception as e:
            logger.error(f"[SYNC] Remote call failed: {description}: {e}")
            return ApiResponse.fail(str(e))

    async def _dispatch(self, mutation: PendingMutation) -> ApiResponse:
        """Send one mutation; successful creates carry the parsed server record"""
        kind = mutation.kind
        label = f"{kind.value} {mutation.habit_id}"

        if kind == MutationKind.CREATE:
            response = await self._call(label, self.remote.create_habit(mutation.payload))
            model = Habit
        elif kind == MutationKind.UPDATE:
            return await self._call(label, self.remote.update_habit(mutation.habit_id, mutation.payload))
        elif kind == MutationKind.DELETE:
            return await self._call(label, self.remote.delete_habit(mutation.habit_id))
        elif kind == MutationKind.COMPLETE:
            response = await self._call(label, self.remote.create_completion(mutation.payload))
            model = HabitCompletion
        elif kind == MutationKind.UNCOMPLETE:
            return await self._call(label, self.remote.delete_completion(mutation.completion_id))
        else:
            return ApiResponse.fail(f"Unknown mutation kind: {kind}", 400)

        if not response.success:
            return response
        try:
            return ApiResponse.ok(model.model_validate(response.data))
        except ValidationError as e:
            logger.error(f"[SYNC] Malformed server record for {label}: {e}")
            return ApiResponse.fail(f"Malformed server record: {e}", 422)

    def _make_mutation(
        self,
        kind: MutationKind,
        habit_id: str,
        user_id: str,
        payload: Optional[Dict[str, Any]] = None,
        completion_id: Optional[str] = None
    ) -> PendingMutation:
        mutation = PendingMutation(
            seq=self._next_seq,
            kind=kind,
            habit_id=habit_id,
            completion_id=completion_id,
            user_id=user_id,
            payload=payload or {},
            enqueued_at=get_utc_timestamp()
        )
        self._next_seq += 1
        return mutation

    async def _enqueue(self, mutation: PendingMutation) -> None:
        mutation.status = MutationStatus.QUEUED
        self._queue = state.enqueue(self._queue, mutation)
        await self._save_queue()
        logger.info(f"[SYNC] Queued {mutation.kind.value} for habit {mutation.habit_id} "
                    f"({len(self._queue)} pending)")

    async def _submit(self, mutation: PendingMutation) -> Optional[ApiResponse]:
        """
        Send a mutation now when possible, otherwise queue it

        A mutation is only sent directly when online and nothing is queued
        for the same habit, which keeps per-habit ordering intact.

        Returns:
            The response when the server acknowledged or rejected the
            mutation, None when it was queued
        """
        if self._online and not state.pending_for_habit(self._queue, mutation.habit_id):
            response = await self._dispatch(mutation)
            if response.success:
                await self._acknowledge(mutation, response)
                return response
            if response.is_rejected:
                return response
            mutation.attempts += 1
            mutation.last_error = response.error
            logger.warning(f"[SYNC] {mutation.kind.value} for habit {mutation.habit_id} failed, "
                           f"queueing for retry: {response.error}")

        await self._enqueue(mutation)
        return None

    async def _acknowledge(self, mutation: PendingMutation, response: ApiResponse) -> None:
        """Fold the server's answer back into the cache and the queue"""
        if mutation.kind == MutationKind.CREATE:
            server_habit: Habit = response.data
            temp_id = mutation.habit_id
            self._id_map[temp_id] = server_habit.id
            await self.store.set(self.id_map_key, state.dump_id_map(self._id_map))
            if mutation.user_id:
                snapshot = await self._load_snapshot(mutation.user_id)
                snapshot = state.remap_habit_id(snapshot, temp_id, server_habit.id, server_habit)
                await self._save_snapshot(mutation.user_id, snapshot)
            self._queue = state.remap_queue_habit_id(self._queue, temp_id, server_habit.id)
            logger.info(f"[SYNC] Habit {temp_id} is now {server_habit.id}")

        elif mutation.kind == MutationKind.COMPLETE:
            server_completion: HabitCompletion = response.data
            if mutation.user_id:
                snapshot = await self._load_snapshot(mutation.user_id)
                snapshot = state.remap_completion_id(snapshot, mutation.completion_id, server_completion)
                await self._save_snapshot(mutation.user_id, snapshot)
            self._queue = state.remap_queue_completion_id(
                self._queue, mutation.completion_id, server_completion.id
            )

    def _enrich(self, snapshot: CacheSnapshot) -> List[HabitWithCompletions]:
        today = self._today()
        return [
            enrich_habit_with_completions(habit, snapshot.completions, today)
            for habit in snapshot.habits
        ]

    # ========================================================================
    # READS
    # ========================================================================

    async def get_habits_with_completions(self, user_id: str) -> List[HabitWithCompletions]:
        """
        All habits of a user with derived statistics

        Online, the server snapshot is fetched, pending local changes are
        replayed on top of it and the result is cached. Offline or on any
        fetch failure the cached snapshot is used instead.
        """
        async with self._lock:
            await self._ensure_queue_loaded()
            snapshot = await self._fetch_remote_snapshot(user_id)
            if snapshot is None:
                snapshot = await self._load_snapshot(user_id)
            return self._enrich(snapshot)

    async def _fetch_remote_snapshot(self, user_id: str) -> Optional[CacheSnapshot]:
        if not self._online:
            return None

        habits_response, completions_response = await asyncio.gather(
            self._call(f"get habits {user_id}", self.remote.get_habits(user_id)),
            self._call(f"get completions {user_id}", self.remote.get_completions(user_id))
        )
        if not (habits_response.success and completions_response.success):
            logger.warning(f"[CACHE] Fetch failed for {user_id}, serving cached data: "
                           f"{habits_response.error or completions_response.error}")
            return None

        try:
            snapshot = state.snapshot_from_rows(habits_response.data, completions_response.data)
        except ValidationError as e:
            logger.error(f"[CACHE] Server returned unreadable rows for {user_id}: {e}")
            return None

        pending = [m for m in self._queue if m.user_id == user_id]
        snapshot = state.rebase(snapshot, pending)
        try:
            await self._save_snapshot(user_id, snapshot)
        except StorageError as e:
            logger.error(f"[CACHE] Could not cache snapshot for {user_id}: {e}")
        return snapshot

    async def get_habit(self, habit_id: str, user_id: str) -> HabitWithCompletions:
        """
        One cached habit with derived statistics

        Raises:
            HabitNotFoundError: If the habit is not in the cache
        """
        async with self._lock:
            await self._ensure_queue_loaded()
            habit_id = self.resolve_id(habit_id)
            snapshot = await self._load_snapshot(user_id)
            habit = snapshot.find_habit(habit_id)
            if habit is None:
                raise HabitNotFoundError(f"Habit {habit_id} not found")
            return enrich_habit_with_completions(habit, snapshot.completions, self._today())

    async def handle_remote_change(self, user_id: str) -> List[HabitWithCompletions]:
        """A realtime change notification invalidates the cache and refetches"""
        logger.info(f"[CACHE] Remote change for {user_id}, refreshing")
        return await self.get_habits_with_completions(user_id)

    # ========================================================================
    # MUTATIONS
    # ========================================================================

    async def create_habit(self, data: Union[CreateHabitRequest, Dict[str, Any]]) -> Habit:
        """
        Create a habit

        Returns:
            The server record when the create reached the server, otherwise a
            local record with a temporary id that is remapped once synced

        Raises:
            InvalidHabitDataError: If the data fails validation (before any I/O)
            PersistentSyncError: If the server rejected the habit
        """
        try:
            request = data if isinstance(data, CreateHabitRequest) else CreateHabitRequest.model_validate(data)
        except ValidationError as e:
            raise InvalidHabitDataError(_format_validation_error(e))

        async with self._lock:
            await self._ensure_queue_loaded()
            payload = request.model_dump(mode="json")
            if payload.get("start_date") is None:
                payload["start_date"] = self._today().isoformat()

            temp_id = state.new_temp_id()
            temp_habit = Habit.model_validate({**payload, "id": temp_id, "created_at": get_utc_timestamp()})
            user_id = request.user_id

            snapshot = await self._load_snapshot(user_id)
            await self._save_snapshot(user_id, state.add_habit(snapshot, temp_habit))

            mutation = self._make_mutation(MutationKind.CREATE, temp_id, user_id, payload)
            response = await self._submit(mutation)

            if response is None:
                return temp_habit
            if response.success:
                return response.data

            await self._save_snapshot(user_id, state.remove_habit(await self._load_snapshot(user_id), temp_id))
            raise PersistentSyncError(f"Habit '{request.title}' was rejected: {response.error}", mutation)

    async def toggle_habit_completion(self, habit_id: str, user_id: str, on: Optional[date] = None) -> bool:
        """
        Complete or un-complete a habit for a date (default today)

        Returns:
            True if the habit is now completed on that date, False otherwise

        Raises:
            PersistentSyncError: If the server rejected the change
        """
        async with self._lock:
            await self._ensure_queue_loaded()
            habit_id = self.resolve_id(habit_id)
            on = on or self._today()

            snapshot = await self._load_snapshot(user_id)
            existing = state.find_completions(snapshot, habit_id, on)

            if existing:
                await self._uncomplete(habit_id, user_id, snapshot, existing)
                return False

            await self._complete(habit_id, user_id, snapshot, on)
            return True

    async def _complete(self, habit_id: str, user_id: str, snapshot: CacheSnapshot, on: date) -> None:
        temp_id = state.new_temp_id()
        payload = {"habit_id": habit_id, "user_id": user_id, "completed_at": on.isoformat()}
        completion = HabitCompletion.model_validate({**payload, "id": temp_id, "created_at": get_utc_timestamp()})
        await self._save_snapshot(user_id, state.add_completion(snapshot, completion))

        mutation = self._make_mutation(MutationKind.COMPLETE, habit_id, user_id, payload, completion_id=temp_id)
        response = await self._submit(mutation)
        if response is not None and not response.success:
            snapshot = await self._load_snapshot(user_id)
            await self._save_snapshot(user_id, state.remove_completions(snapshot, [temp_id]))
            raise PersistentSyncError(f"Completion for habit {habit_id} was rejected: {response.error}", mutation)

    async def _uncomplete(self, habit_id: str, user_id: str, snapshot: CacheSnapshot,
                          existing: List[HabitCompletion]) -> None:
        await self._save_snapshot(user_id, state.remove_completions(snapshot, [c.id for c in existing]))

        for completion in existing:
            if state.is_temp_id(completion.id):
                self._queue, cancelled = state.cancel_completion(self._queue, completion.id)
                if cancelled:
                    await self._save_queue()
                    logger.info(f"[SYNC] Cancelled unsynced completion {completion.id}")
                continue

            mutation = self._make_mutation(
                MutationKind.UNCOMPLETE, habit_id, user_id, completion_id=completion.id
            )
            response = await self._submit(mutation)
            if response is not None and not response.success and response.status != 404:
                snapshot = await self._load_snapshot(user_id)
                await self._save_snapshot(user_id, state.add_completion(snapshot, completion))
                raise PersistentSyncError(
                    f"Removing completion {completion.id} was rejected: {response.error}", mutation
                )

    async def update_habit(self, habit_id: str, user_id: str,
                           updates: Union[UpdateHabitRequest, Dict[str, Any]]) -> bool:
        """
        Apply a partial update

        Raises:
            InvalidHabitDataError: If the updates fail validation (before any I/O)
            HabitNotFoundError: If an unsynced habit id is unknown
            PersistentSyncError: If the server rejected the update
        """
        try:
            request = updates if isinstance(updates, UpdateHabitRequest) else UpdateHabitRequest.model_validate(updates)
        except ValidationError as e:
            raise InvalidHabitDataError(_format_validation_error(e))
        changes = request.to_updates()
        if not changes:
            raise InvalidHabitDataError("Must provide at least one field to update")

        async with self._lock:
            await self._ensure_queue_loaded()
            habit_id = self.resolve_id(habit_id)
            snapshot = await self._load_snapshot(user_id)
            previous = snapshot.find_habit(habit_id)
            if previous is None and state.is_temp_id(habit_id) \
                    and not state.pending_for_habit(self._queue, habit_id):
                raise HabitNotFoundError(f"Habit {habit_id} not found")

            await self._save_snapshot(
                user_id, state.merge_habit(snapshot, habit_id, changes, get_utc_timestamp())
            )

            mutation = self._make_mutation(MutationKind.UPDATE, habit_id, user_id, changes)
            response = await self._submit(mutation)
            if response is not None and not response.success:
                if previous is not None:
                    snapshot = await self._load_snapshot(user_id)
                    await self._save_snapshot(
                        user_id, state.merge_habit(snapshot, habit_id, previous.model_dump())
                    )
                raise PersistentSyncError(f"Update of habit {habit_id} was rejected: {response.error}", mutation)
            return True

    async def delete_habit(self, habit_id: str, user_id: str) -> bool:
        """
        Delete a habit and its completions

        Queued mutations for the habit are superseded. A habit that never
        reached the server leaves nothing in the queue.

        Raises:
            PersistentSyncError: If the server rejected the delete
        """
        async with self._lock:
            await self._ensure_queue_loaded()
            habit_id = self.resolve_id(habit_id)
            previous_snapshot = await self._load_snapshot(user_id)
            previous_queue = list(self._queue)

            await self._save_snapshot(user_id, state.remove_habit(previous_snapshot, habit_id))
            self._queue, superseded = state.supersede_for_habit(self._queue, habit_id)
            if superseded:
                await self._save_queue()
                logger.info(f"[SYNC] Delete of habit {habit_id} superseded {len(superseded)} queued change(s)")

            if state.is_temp_id(habit_id):
                return True

            mutation = self._make_mutation(MutationKind.DELETE, habit_id, user_id)
            response = await self._submit(mutation)
            if response is not None and not response.success and response.status != 404:
                await self._save_snapshot(user_id, previous_snapshot)
                self._queue = previous_queue
                await self._save_queue()
                raise PersistentSyncError(f"Delete of habit {habit_id} was rejected: {response.error}", mutation)
            return True

    # ========================================================================
    # QUEUE DRAIN
    # ========================================================================

    async def sync_pending_changes(self) -> SyncResult:
        """
        Replay queued mutations against the remote service

        Entries run in enqueue order. A transient failure requeues the entry
        and holds back the rest of that habit's entries until the next drain;
        other habits carry on. Rejected entries and entries that reach the
        retry ceiling are dropped and reported in SyncResult.failed.
        """
        async with self._lock:
            await self._ensure_queue_loaded()
            result = await self._drain()
            self.last_sync_result = result
            return result

    async def force_sync(self, user_id: str) -> SyncResult:
        """Drain the queue, then refresh the user's cache from the server"""
        result = await self.sync_pending_changes()
        if self._online:
            await self.get_habits_with_completions(user_id)
        return result

    def _find_queued(self, seq: int) -> Optional[PendingMutation]:
        for mutation in self._queue:
            if mutation.seq == seq:
                return mutation
        return None

    async def _drain(self) -> SyncResult:
        result = SyncResult()
        if not self._online:
            result.remaining = len(self._queue)
            return result
        if not self._queue:
            return result

        logger.info(f"[SYNC] Syncing {len(self._queue)} pending change(s)...")
        blocked = set()

        for seq in [m.seq for m in self._queue]:
            if not self._online:
                logger.info("[SYNC] Connection lost during sync, stopping")
                break

            mutation = self._find_queued(seq)
            if mutation is None or mutation.habit_id in blocked:
                continue

            result.attempted += 1
            mutation.status = MutationStatus.IN_FLIGHT
            response = await self._dispatch(mutation)

            if response.success:
                self._queue = state.remove_by_seq(self._queue, seq)
                await self._acknowledge(mutation, response)
                await self._save_queue()
                result.synced += 1
                continue

            mutation.attempts += 1
            mutation.last_error = response.error

            if response.is_rejected or mutation.attempts >= self.max_attempts:
                if mutation.kind in (MutationKind.DELETE, MutationKind.UNCOMPLETE) and response.status == 404:
                    self._queue = state.remove_by_seq(self._queue, seq)
                    await self._save_queue()
                    result.synced += 1
                    continue
                await self._drop(mutation, response, result)
                continue

            mutation.status = MutationStatus.QUEUED
            blocked.add(mutation.habit_id)
            await self._save_queue()
            result.requeued += 1
            logger.warning(f"[SYNC] {mutation.kind.value} for habit {mutation.habit_id} failed "
                           f"(attempt {mutation.attempts}/{self.max_attempts}), will retry: {response.error}")

        result.remaining = len(self._queue)
        logger.info(f"[SYNC] Sync finished: {result.synced} synced, {result.requeued} requeued, "
                    f"{len(result.failed)} failed, {result.remaining} pending")
        return result

    async def _drop(self, mutation: PendingMutation, response: ApiResponse, result: SyncResult) -> None:
        """Remove a persistently failing mutation and undo its optimistic effect"""
        reason = "rejected" if response.is_rejected else "retry limit reached"
        error = f"{reason}: {response.error}"
        mutation.status = MutationStatus.FAILED
        self._queue = state.remove_by_seq(self._queue, mutation.seq)
        result.failed.append(SyncFailure(mutation=mutation, error=error))
        logger.error(f"[SYNC] Dropping {mutation.kind.value} for habit {mutation.habit_id}: {error}")

        if mutation.kind == MutationKind.CREATE:
            # The habit never existed remotely; its other queued changes cannot succeed
            self._queue, orphans = state.supersede_for_habit(self._queue, mutation.habit_id)
            for orphan in orphans:
                orphan.status = MutationStatus.FAILED
                result.failed.append(SyncFailure(mutation=orphan, error="habit was never created"))
            if mutation.user_id:
                snapshot = await self._load_snapshot(mutation.user_id)
                await self._save_snapshot(mutation.user_id, state.remove_habit(snapshot, mutation.habit_id))

        elif mutation.kind == MutationKind.COMPLETE and mutation.user_id:
            snapshot = await self._load_snapshot(mutation.user_id)
            await self._save_snapshot(
                mutation.user_id, state.remove_completions(snapshot, [mutation.completion_id])
            )

        await self._save_queue()
