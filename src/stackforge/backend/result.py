"""Tri-state outcome of update-style operations.

A Result is exactly one of Succeeded, Failed(error) or Bailed. Bailed means
the operation stopped early because it observed cancellation; it is not an
error. Callers dispatch with ``match``.

Public API (the "studs"):
    Succeeded, Failed, Bailed: Result variants
    Result: Union of the three variants
    UpdateOutcome: (changes, result) pair returned by preview/update/refresh/destroy
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import NamedTuple

from .models import ResourceChanges, ResultStatus


@dataclass(frozen=True, slots=True)
class Succeeded:
    """The operation ran to completion."""

    @property
    def status(self) -> ResultStatus:
        return ResultStatus.SUCCEEDED


@dataclass(frozen=True, slots=True)
class Failed:
    """The operation stopped because of an error."""

    error: Exception

    @property
    def status(self) -> ResultStatus:
        return ResultStatus.FAILED


@dataclass(frozen=True, slots=True)
class Bailed:
    """The operation stopped early after observing cancellation."""

    @property
    def status(self) -> ResultStatus:
        return ResultStatus.BAILED


Result = Succeeded | Failed | Bailed


class UpdateOutcome(NamedTuple):
    """Changes applied (even on failure) together with the Result."""

    changes: ResourceChanges
    result: Result


def describe(result: Result) -> str:
    """Short human-readable rendering of a Result."""
    match result:
        case Succeeded():
            return "succeeded"
        case Failed(error=error):
            return f"failed: {error}"
        case Bailed():
            return "cancelled"


__all__ = ["Succeeded", "Failed", "Bailed", "Result", "UpdateOutcome", "describe"]
