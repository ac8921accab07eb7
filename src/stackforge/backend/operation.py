"""Per-invocation inputs for update-style operations.

Public API (the "studs"):
    CancellationToken: Cooperative cancellation signal
    DiagEvent: Structured diagnostic event
    DiagnosticsSink: Protocol for diagnostic consumers
    LoggingSink: Sink that forwards events to stdlib logging
    CollectingSink: Sink that keeps events in memory
    FanoutSink: Sink that forwards to several sinks
    UpdateOptions: Engine execution options
    ResourceGoal, Program: Desired resource set handed to the engine
    load_program: Read a Program from a YAML file
    UpdateOperation: Immutable, single-use bundle of the above
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .models import StackConfiguration, StepOp, utcnow

# Granularity of CancellationToken.wait() polling
_WAIT_POLL_SECONDS = 0.02


class CancellationToken:
    """Cooperative cancellation signal.

    Safe to cancel from any thread (e.g. a signal handler); the operation
    observes it at its next check point.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self, timeout: float | None = None) -> bool:
        """Sleep until cancelled or until ``timeout`` elapses.

        Returns:
            True if the token was cancelled
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self._event.is_set():
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                await asyncio.sleep(min(_WAIT_POLL_SECONDS, remaining))
            else:
                await asyncio.sleep(_WAIT_POLL_SECONDS)
        return self._event.is_set()


class Severity(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class DiagEvent(BaseModel):
    """A structured diagnostic emitted while an operation runs."""

    model_config = ConfigDict(frozen=True)

    severity: Severity = Severity.INFO
    message: str
    kind: str = Field(default="", description="Operation kind")
    stack: str = Field(default="", description="Canonical stack reference")
    urn: str | None = None
    op: StepOp | None = None
    timestamp: datetime = Field(default_factory=utcnow)


@runtime_checkable
class DiagnosticsSink(Protocol):
    """Consumer of diagnostics emitted during an operation."""

    def emit(self, event: DiagEvent) -> None:
        """Accept one diagnostic event."""
        ...


_SEVERITY_LEVELS = {
    Severity.DEBUG: logging.DEBUG,
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
}


class LoggingSink:
    """Forwards diagnostics to stdlib logging."""

    def __init__(self, logger_name: str = "stackforge.diagnostics") -> None:
        self._logger = logging.getLogger(logger_name)

    def emit(self, event: DiagEvent) -> None:
        prefix = f"[{event.stack}] " if event.stack else ""
        if event.urn:
            prefix = f"{prefix}{event.urn}: "
        self._logger.log(_SEVERITY_LEVELS[event.severity], "%s%s", prefix, event.message)


class CollectingSink:
    """Keeps every event in memory, in order."""

    def __init__(self) -> None:
        self.events: list[DiagEvent] = []

    def emit(self, event: DiagEvent) -> None:
        self.events.append(event)

    def step_events(self) -> list[DiagEvent]:
        return [e for e in self.events if e.op is not None]


class FanoutSink:
    """Delivers every event to several sinks in order."""

    def __init__(self, *sinks: DiagnosticsSink) -> None:
        self._sinks = sinks

    def emit(self, event: DiagEvent) -> None:
        for sink in self._sinks:
            sink.emit(event)


class UpdateOptions(BaseModel):
    """Options controlling how the engine runs."""

    model_config = ConfigDict(frozen=True)

    message: str = Field(default="", description="Update message recorded in history")
    targets: list[str] = Field(default_factory=list, description="Restrict to these urns")
    watch_interval: float = Field(default=1.0, gt=0, description="Seconds between watch passes")


class ResourceGoal(BaseModel):
    """Desired state of one resource as declared by the program."""

    model_config = ConfigDict(frozen=True)

    type: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    inputs: dict[str, Any] = Field(default_factory=dict)
    replace_on_changes: list[str] = Field(
        default_factory=list, description="Input keys whose change forces a replacement"
    )

    @property
    def urn(self) -> str:
        return f"urn:stackforge:{self.type}::{self.name}"


class Program(BaseModel):
    """The set of resources a stack should contain."""

    model_config = ConfigDict(frozen=True)

    resources: list[ResourceGoal] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_unique(self) -> Program:
        seen: set[str] = set()
        for goal in self.resources:
            if goal.urn in seen:
                raise ValueError(f"duplicate resource {goal.urn}")
            seen.add(goal.urn)
        return self

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> Program:
        """Build a Program from ``{"resources": {name: {type, properties}}}``."""
        raw = data.get("resources") or {}
        if not isinstance(raw, dict):
            raise ValidationError("'resources' must be a mapping of name -> resource")
        goals = []
        for name, entry in raw.items():
            if not isinstance(entry, dict) or "type" not in entry:
                raise ValidationError(f"resource {name!r} must be a mapping with a 'type'")
            goals.append(
                ResourceGoal(
                    type=entry["type"],
                    name=str(name),
                    inputs=entry.get("properties") or {},
                    replace_on_changes=entry.get("replace_on_changes") or [],
                )
            )
        return cls(resources=goals)


def load_program(path: Path | str) -> Program:
    """Load a Program from a YAML file.

    Raises:
        ValidationError: If the file is missing or not a valid program
    """
    path = Path(path)
    if not path.exists():
        raise ValidationError(f"program file not found: {path}")
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValidationError(f"invalid YAML in program file {path}") from e
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError("program file must contain a YAML mapping")
    try:
        return Program.from_mapping(data)
    except PydanticValidationError as e:
        raise ValidationError(f"invalid program in {path}") from e


@dataclass(frozen=True)
class UpdateOperation:
    """How to run one update-style operation.

    Immutable and single-use: an operation that was already run is refused
    by the next run.
    """

    options: UpdateOptions = field(default_factory=UpdateOptions)
    config: StackConfiguration = field(default_factory=StackConfiguration)
    program: Program | None = None
    sink: DiagnosticsSink = field(default_factory=LoggingSink)
    cancellation: CancellationToken = field(default_factory=CancellationToken)
    _claim: dict[str, bool] = field(default_factory=dict, init=False, repr=False, compare=False)

    def claim(self) -> None:
        """Mark the operation as used.

        Raises:
            ValueError: If it was already claimed by an earlier call
        """
        if self._claim.get("claimed"):
            raise ValueError("UpdateOperation instances are single-use; create a new one per call")
        self._claim["claimed"] = True

    @property
    def claimed(self) -> bool:
        return self._claim.get("claimed", False)


__all__ = [
    "CancellationToken",
    "Severity",
    "DiagEvent",
    "DiagnosticsSink",
    "LoggingSink",
    "CollectingSink",
    "FanoutSink",
    "UpdateOptions",
    "ResourceGoal",
    "Program",
    "load_program",
    "UpdateOperation",
]
