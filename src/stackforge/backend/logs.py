"""Log query providers.

Public API (the "studs"):
    LogQueryProvider: Protocol for answering GetLogs queries
    DiagnosticsLogProvider: Provider fed by resource-step diagnostics
"""

from __future__ import annotations

import threading
from collections import deque
from typing import Protocol, runtime_checkable

from .models import LogEntry, LogQuery, StackConfiguration
from .operation import DiagEvent
from .reference import StackReference

DEFAULT_MAX_ENTRIES = 1000


@runtime_checkable
class LogQueryProvider(Protocol):
    """Answers log queries for a stack."""

    async def query(
        self, ref: StackReference, config: StackConfiguration, query: LogQuery
    ) -> list[LogEntry]:
        """Return log entries matching ``query`` in chronological order."""
        ...


class DiagnosticsLogProvider:
    """Keeps the most recent resource-step diagnostics per stack.

    Acts as a DiagnosticsSink (register it as a backend observer) and as a
    LogQueryProvider over what it has seen.
    """

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        self._max_entries = max_entries
        self._entries: dict[str, deque[tuple[int, DiagEvent]]] = {}
        self._seq = 0
        self._guard = threading.Lock()

    def emit(self, event: DiagEvent) -> None:
        if event.urn is None or not event.stack:
            return
        with self._guard:
            self._seq += 1
            bucket = self._entries.setdefault(event.stack, deque(maxlen=self._max_entries))
            bucket.append((self._seq, event))

    def forget(self, ref: StackReference) -> None:
        """Drop everything recorded for a removed stack."""
        with self._guard:
            self._entries.pop(ref.key, None)

    def move(self, ref: StackReference, new_ref: StackReference) -> None:
        """Carry a renamed stack's entries over to its new reference."""
        with self._guard:
            bucket = self._entries.pop(ref.key, None)
            if bucket is not None:
                self._entries[new_ref.key] = bucket

    async def query(
        self, ref: StackReference, config: StackConfiguration, query: LogQuery
    ) -> list[LogEntry]:
        with self._guard:
            events = list(self._entries.get(ref.key, ()))

        results: list[LogEntry] = []
        for seq, event in events:
            if query.start_time is not None and event.timestamp < query.start_time:
                continue
            if query.end_time is not None and event.timestamp > query.end_time:
                continue
            if query.resource_filter and query.resource_filter not in (event.urn or ""):
                continue
            results.append(
                LogEntry(
                    id=str(seq),
                    timestamp=event.timestamp,
                    message=f"{event.urn}: {event.message}",
                )
            )
        return results


__all__ = ["LogQueryProvider", "DiagnosticsLogProvider"]
