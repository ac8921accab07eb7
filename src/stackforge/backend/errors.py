"""Exceptions for the backend layer.

Public API (the "studs"):
    StackforgeError: Base exception for all stackforge errors
    NotFoundError: Stack or reference absent
    NoPreviousDeploymentError: Stack exists but has never been updated
    AlreadyExistsError: Stack already exists (create or rename race)
    ConflictError: Per-stack lock is held by another operation
    StackNotEmptyError: Removal refused because the stack still has resources
    ParseError: Malformed stack reference
    ValidationError: Rejected payload, tag, or configuration
    EngineError: Resource-graph execution failure
    PersistenceError: Snapshot or record read/write failure
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import UpdateKind
    from .reference import StackReference


class StackforgeError(Exception):
    """Base exception for all stackforge errors.

    Carries the stack reference and operation kind when known so the
    rendered message is actionable on its own.
    """

    def __init__(
        self,
        message: str,
        *,
        ref: StackReference | None = None,
        kind: UpdateKind | None = None,
    ) -> None:
        self.message = message
        self.ref = ref
        self.kind = kind
        super().__init__(message)

    def __str__(self) -> str:
        context = []
        if self.kind is not None:
            context.append(str(getattr(self.kind, "value", self.kind)))
        if self.ref is not None:
            context.append(f"stack {self.ref}")
        text = self.message
        if context:
            text = f"{' '.join(context)}: {text}"
        cause = self.__cause__
        if cause is not None and str(cause) and str(cause) not in text:
            text = f"{text} (caused by: {cause})"
        return text


class NotFoundError(StackforgeError):
    """Stack or reference does not exist."""

    pass


class NoPreviousDeploymentError(NotFoundError):
    """Stack exists but no update has ever completed against it."""

    pass


class AlreadyExistsError(StackforgeError):
    """A stack with this reference already exists."""

    pass


class ConflictError(StackforgeError):
    """Another operation holds the stack's exclusive lock."""

    pass


class StackNotEmptyError(ConflictError):
    """Stack still has resources and removal was not forced."""

    pass


class ParseError(StackforgeError):
    """Malformed stack reference string."""

    pass


class ValidationError(StackforgeError):
    """Payload, tag, or configuration failed validation."""

    pass


class EngineError(StackforgeError):
    """Resource-graph engine failed while executing an operation."""

    pass


class PersistenceError(StackforgeError):
    """Reading or writing persisted stack state failed."""

    pass


__all__ = [
    "StackforgeError",
    "NotFoundError",
    "NoPreviousDeploymentError",
    "AlreadyExistsError",
    "ConflictError",
    "StackNotEmptyError",
    "ParseError",
    "ValidationError",
    "EngineError",
    "PersistenceError",
]
