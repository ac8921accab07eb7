"""State store protocol - the persistence contract backends build on.

Public API (the "studs"):
    StateStore: Protocol for stack record, snapshot and history persistence
    MemoryStateStore: In-memory StateStore
"""

from __future__ import annotations

import logging
import threading
from contextlib import AbstractContextManager, nullcontext
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from .errors import AlreadyExistsError, NotFoundError

if TYPE_CHECKING:
    from .models import Snapshot, StackRecord, UpdateInfo
    from .reference import StackReference

_logger = logging.getLogger(__name__)


@runtime_checkable
class StateStore(Protocol):
    """Persistence for stacks, keyed by StackReference.

    Snapshot writes must be atomic: readers observe either the previous or
    the new snapshot, never a partial one.
    """

    async def create_stack(self, record: StackRecord) -> None:
        """Create a stack record; exactly one concurrent caller wins.

        Raises:
            AlreadyExistsError: If the stack already exists
        """
        ...

    async def load_stack(self, ref: StackReference) -> StackRecord | None:
        """Load a stack record, None if absent."""
        ...

    async def save_stack(self, record: StackRecord) -> None:
        """Overwrite an existing stack record."""
        ...

    async def delete_stack(self, ref: StackReference) -> None:
        """Delete a stack with its snapshot and history."""
        ...

    async def rename_stack(self, ref: StackReference, new_ref: StackReference) -> None:
        """Move a stack with its snapshot and history to a new reference."""
        ...

    async def list_stacks(self) -> list[StackRecord]:
        """List every stack record."""
        ...

    async def load_snapshot(self, ref: StackReference) -> Snapshot | None:
        """Load the current snapshot, None for a never-updated stack."""
        ...

    async def save_snapshot(self, ref: StackReference, snapshot: Snapshot) -> None:
        """Atomically replace the current snapshot."""
        ...

    async def append_history(self, ref: StackReference, info: UpdateInfo) -> None:
        """Append one history entry."""
        ...

    async def load_history(self, ref: StackReference) -> list[UpdateInfo]:
        """Load history entries in chronological order."""
        ...

    def lease(self, ref: StackReference) -> AbstractContextManager[None]:
        """Store-level exclusive lease, on top of the in-process lock.

        Raises:
            ConflictError: If another process holds the lease
        """
        ...


class MemoryStateStore:
    """StateStore that keeps everything in process memory.

    Models are deep-copied on the way in and out so callers never share
    mutable state with the store.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._records: dict[str, StackRecord] = {}
        self._snapshots: dict[str, Snapshot] = {}
        self._history: dict[str, list[UpdateInfo]] = {}

    async def create_stack(self, record: StackRecord) -> None:
        with self._guard:
            if record.ref.key in self._records:
                raise AlreadyExistsError("stack already exists", ref=record.ref)
            self._records[record.ref.key] = record.model_copy(deep=True)
        _logger.debug("Created stack record %s", record.ref)

    async def load_stack(self, ref: StackReference) -> StackRecord | None:
        with self._guard:
            record = self._records.get(ref.key)
        return record.model_copy(deep=True) if record else None

    async def save_stack(self, record: StackRecord) -> None:
        with self._guard:
            if record.ref.key not in self._records:
                raise NotFoundError("stack does not exist", ref=record.ref)
            self._records[record.ref.key] = record.model_copy(deep=True)

    async def delete_stack(self, ref: StackReference) -> None:
        with self._guard:
            self._records.pop(ref.key, None)
            self._snapshots.pop(ref.key, None)
            self._history.pop(ref.key, None)

    async def rename_stack(self, ref: StackReference, new_ref: StackReference) -> None:
        with self._guard:
            if new_ref.key in self._records:
                raise AlreadyExistsError("stack already exists", ref=new_ref)
            record = self._records.pop(ref.key, None)
            if record is None:
                raise NotFoundError("stack does not exist", ref=ref)
            self._records[new_ref.key] = record.model_copy(update={"ref": new_ref})
            if ref.key in self._snapshots:
                self._snapshots[new_ref.key] = self._snapshots.pop(ref.key)
            if ref.key in self._history:
                self._history[new_ref.key] = self._history.pop(ref.key)

    async def list_stacks(self) -> list[StackRecord]:
        with self._guard:
            return [r.model_copy(deep=True) for r in self._records.values()]

    async def load_snapshot(self, ref: StackReference) -> Snapshot | None:
        with self._guard:
            snapshot = self._snapshots.get(ref.key)
        return snapshot.model_copy(deep=True) if snapshot else None

    async def save_snapshot(self, ref: StackReference, snapshot: Snapshot) -> None:
        copy = snapshot.model_copy(deep=True)
        with self._guard:
            self._snapshots[ref.key] = copy
        _logger.debug("Saved snapshot v%d for %s", snapshot.version, ref)

    async def append_history(self, ref: StackReference, info: UpdateInfo) -> None:
        with self._guard:
            self._history.setdefault(ref.key, []).append(info.model_copy(deep=True))

    async def load_history(self, ref: StackReference) -> list[UpdateInfo]:
        with self._guard:
            return [h.model_copy(deep=True) for h in self._history.get(ref.key, [])]

    def lease(self, ref: StackReference) -> AbstractContextManager[None]:
        return nullcontext()


__all__ = ["StateStore", "MemoryStateStore"]
