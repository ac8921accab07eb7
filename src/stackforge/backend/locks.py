"""Per-stack exclusive locks.

Locks are keyed by canonical stack reference and acquired without waiting:
contention fails immediately with ConflictError so callers choose their
own retry policy.

Public API (the "studs"):
    StackLockTable: Keyed, non-blocking mutex table
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from .errors import ConflictError
from .models import UpdateKind
from .reference import StackReference

_logger = logging.getLogger(__name__)


class StackLockTable:
    """In-process table of per-stack locks.

    Only held locks have an entry, so the table stays as large as the
    number of in-flight mutations.
    """

    def __init__(self) -> None:
        self._holders: dict[str, str] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._holders)

    def is_locked(self, ref: StackReference) -> bool:
        with self._guard:
            return ref.key in self._holders

    @contextmanager
    def hold(
        self, ref: StackReference, holder: str, kind: UpdateKind | None = None
    ) -> Iterator[None]:
        """Hold the stack's lock for the duration of the block.

        Args:
            ref: Stack to lock
            holder: Description of the lock owner, used in conflict messages
            kind: Operation kind attached to the ConflictError

        Raises:
            ConflictError: If the lock is already held
        """
        with self._guard:
            current = self._holders.get(ref.key)
            if current is None:
                self._holders[ref.key] = holder
        if current is not None:
            raise ConflictError(f"stack is locked by {current}", ref=ref, kind=kind)
        _logger.debug("Acquired lock on %s for %s", ref, holder)
        try:
            yield
        finally:
            with self._guard:
                del self._holders[ref.key]
            _logger.debug("Released lock on %s", ref)


__all__ = ["StackLockTable"]
