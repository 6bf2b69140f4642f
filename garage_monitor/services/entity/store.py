"""
Entity Store

Holds one durable actor per entity key and serializes every operation
against a key:

- read()      unguarded snapshot of the last committed value
- update()    atomic replace; waits while another owner holds the key
- signal()    fire-and-forget operation, applied once and in order by the
              key's worker task
- critical_section() / with_lock()
              exclusive access for the duration of a block

An unguarded read() never waits on a critical section, so while one is in
flight it may return a value that the section is about to replace.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, TypeVar

from ...common.config import EntityId
from ...common.exceptions import LockingViolation, EntityOperationError
from ...common.logging_setup import get_service_logger
from ...storage.local_db import LocalDatabase
from .sensor import door_status_entity

logger = get_service_logger("entity")

T = TypeVar("T")

# Signal queue entry: (persisted signal id, operation, value)
_Signal = tuple[int, str, Any]


class LockedEntity:
    """Handle to an entity inside a critical section"""

    def __init__(self, store: "EntityStore", entity_id: EntityId, owner: str):
        self._store = store
        self.entity_id = entity_id
        self.owner = owner
        self.released = False

    def _check_open(self) -> None:
        if self.released:
            raise LockingViolation(
                "critical section already released",
                entity=str(self.entity_id),
                owner=self.owner,
            )

    async def read(self) -> str | None:
        self._check_open()
        return self._store._apply(self.entity_id, "read", None)

    async def update(self, value: str) -> str | None:
        self._check_open()
        return self._store._apply(self.entity_id, "update", value)

    async def call(self, operation: str, value: Any = None) -> Any:
        self._check_open()
        return self._store._apply(self.entity_id, operation, value)


class EntityStore:
    """
    Durable key-value actors with per-key serialization.

    State lives in memory for fast reads and is written through to SQLite on
    every committed change, so a restarted process serves the same values.
    """

    def __init__(self, db: LocalDatabase):
        self._db = db
        self._states: dict[EntityId, str | None] = {}
        self._locks: dict[EntityId, asyncio.Lock] = {}
        self._holders: dict[EntityId, str] = {}
        self._queues: dict[EntityId, asyncio.Queue[_Signal]] = {}
        self._workers: dict[EntityId, asyncio.Task] = {}
        # Signals queued or being applied, per key
        self._outstanding: dict[EntityId, int] = {}

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock_for(self, entity_id: EntityId) -> asyncio.Lock:
        lock = self._locks.get(entity_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[entity_id] = lock
        return lock

    def _current(self, entity_id: EntityId) -> str | None:
        if entity_id in self._states:
            return self._states[entity_id]
        state = self._db.get_entity_state(entity_id.kind, entity_id.name)
        # Misses are not cached
        if state is not None:
            self._states[entity_id] = state
        return state

    def _apply(
        self,
        entity_id: EntityId,
        operation: str,
        value: Any,
        signal_id: int | None = None,
    ) -> str | None:
        """Run one entity operation. Caller must already hold the key's lock."""
        current = self._current(entity_id)
        new_state = door_status_entity(str(entity_id), operation, current, value)
        changed = operation != "read"

        if signal_id is not None:
            self._db.complete_signal(
                signal_id,
                entity_id.kind,
                entity_id.name,
                new_state if changed else None,
            )
        elif changed:
            self._db.set_entity_state(entity_id.kind, entity_id.name, new_state)

        if changed:
            self._states[entity_id] = new_state
            logger.debug(
                f"Entity {entity_id} {operation}: {current!r} -> {new_state!r}",
                extra={"entity": str(entity_id), "operation": operation},
            )
        return new_state

    # ------------------------------------------------------------------
    # Atomic operations
    # ------------------------------------------------------------------

    async def read(self, entity_id: EntityId) -> str | None:
        """Return the last committed value without waiting on any lock"""
        return self._current(entity_id)

    def exists(self, entity_id: EntityId) -> bool:
        return self._current(entity_id) is not None

    async def update(self, entity_id: EntityId, value: str) -> str | None:
        """Replace the stored value, waiting for any in-flight critical section"""
        async with self._lock_for(entity_id):
            return self._apply(entity_id, "update", value)

    async def call(self, entity_id: EntityId, operation: str, value: Any = None, owner: str | None = None) -> Any:
        """
        Run an operation and return its result.

        When owner currently holds the key's critical section the operation
        runs inside it; otherwise it waits for the key like update().
        """
        if owner is not None and self._holders.get(entity_id) == owner:
            return self._apply(entity_id, operation, value)
        async with self._lock_for(entity_id):
            return self._apply(entity_id, operation, value)

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def signal(self, entity_id: EntityId, operation: str, value: Any = None) -> None:
        """
        Queue an operation without waiting for it.

        The signal is applied exactly once, after every signal queued before
        it for the same key. With no signal queued or in flight for the key
        and the key unlocked, it is applied right away; otherwise it is
        persisted and left to the key's worker.
        """
        idle = (
            self._outstanding.get(entity_id, 0) == 0
            and not self._lock_for(entity_id).locked()
        )
        if idle:
            try:
                self._apply(entity_id, operation, value)
            except EntityOperationError as e:
                logger.error(f"Dropping signal for {entity_id}: {e}")
            return

        signal_id = self._db.enqueue_signal(entity_id.kind, entity_id.name, operation, value)
        self._enqueue(entity_id, (signal_id, operation, value))

    def _enqueue(self, entity_id: EntityId, item: _Signal) -> None:
        queue = self._queues.get(entity_id)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[entity_id] = queue
        queue.put_nowait(item)
        self._outstanding[entity_id] = self._outstanding.get(entity_id, 0) + 1

        worker = self._workers.get(entity_id)
        if worker is None or worker.done():
            self._workers[entity_id] = asyncio.create_task(
                self._signal_worker(entity_id, queue),
                name=f"entity-signals-{entity_id}",
            )

    async def _signal_worker(self, entity_id: EntityId, queue: asyncio.Queue[_Signal]) -> None:
        while True:
            signal_id, operation, value = await queue.get()
            try:
                async with self._lock_for(entity_id):
                    self._apply(entity_id, operation, value, signal_id=signal_id)
            except EntityOperationError as e:
                logger.error(f"Dropping signal {signal_id}: {e}")
                self._db.complete_signal(signal_id, entity_id.kind, entity_id.name, None)
            except Exception as e:
                logger.error(f"Failed to apply signal {signal_id} to {entity_id}: {e}", exc_info=True)
            finally:
                self._outstanding[entity_id] -= 1
                queue.task_done()

    def recover_signals(self) -> int:
        """Re-queue signals persisted before a crash. Returns the count recovered."""
        pending = self._db.get_pending_signals()
        for row in pending:
            entity_id = EntityId(row["kind"], row["name"])
            self._enqueue(entity_id, (row["id"], row["operation"], row["value"]))
        if pending:
            logger.info(f"Recovered {len(pending)} pending entity signal(s)")
        return len(pending)

    async def drain(self) -> None:
        """Wait until every queued signal has been applied"""
        for queue in list(self._queues.values()):
            await queue.join()

    async def close(self) -> None:
        """Stop signal workers. Unapplied signals stay persisted."""
        for worker in self._workers.values():
            worker.cancel()
        for worker in self._workers.values():
            try:
                await worker
            except asyncio.CancelledError:
                pass
        self._workers.clear()
        self._queues.clear()
        self._outstanding.clear()

    # ------------------------------------------------------------------
    # Critical sections
    # ------------------------------------------------------------------

    def is_locked(self, entity_id: EntityId) -> bool:
        return entity_id in self._holders

    def holder(self, entity_id: EntityId) -> str | None:
        return self._holders.get(entity_id)

    @asynccontextmanager
    async def critical_section(self, entity_id: EntityId, owner: str):
        """
        Grant owner exclusive access to entity_id for the block.

        A different owner blocks until release. The same owner asking again
        before releasing raises LockingViolation.
        """
        if self._holders.get(entity_id) == owner:
            raise LockingViolation(
                f"{owner} already holds the lock on {entity_id}",
                entity=str(entity_id),
                owner=owner,
            )

        lock = self._lock_for(entity_id)
        await lock.acquire()
        self._holders[entity_id] = owner
        handle = LockedEntity(self, entity_id, owner)
        try:
            yield handle
        finally:
            handle.released = True
            self._holders.pop(entity_id, None)
            lock.release()

    async def with_lock(
        self,
        entity_id: EntityId,
        owner: str,
        fn: Callable[[LockedEntity], Awaitable[T]],
    ) -> T:
        """Acquire the critical section, run fn with the handle, always release"""
        async with self.critical_section(entity_id, owner) as entity:
            return await fn(entity)
