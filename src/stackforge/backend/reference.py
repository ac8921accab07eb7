"""Stack references.

A stack reference names one stack within a backend. The canonical string
form is ``organization/project/stack``; shorter forms are accepted by the
parser and completed from backend defaults.

Public API (the "studs"):
    StackReference: Immutable, hashable stack identity
    parse_stack_reference: Parse a reference string (raises ParseError)
    validate_stack_name: Check a single name segment
"""

from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import ParseError

# Same character rules as deployment IDs: alphanumerics, hyphens, underscores, dots
_NAME_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]*")
MAX_NAME_LENGTH = 100


def _check_segment(value: str, what: str) -> str | None:
    """Return an error message for an invalid segment, None if it is valid."""
    if not value:
        return f"{what} must not be empty"
    if len(value) > MAX_NAME_LENGTH:
        return f"{what} {value!r} is longer than {MAX_NAME_LENGTH} characters"
    if not _NAME_PATTERN.fullmatch(value):
        return (
            f"{what} {value!r} contains invalid characters. "
            "Only alphanumerics, hyphens, underscores, and dots are allowed."
        )
    if ".." in value:
        return f"{what} {value!r} must not contain '..'"
    return None


def validate_stack_name(name: str) -> str:
    """Validate a bare stack name.

    Raises:
        ParseError: If the name is empty, too long, or has invalid characters
    """
    problem = _check_segment(name, "stack name")
    if problem:
        raise ParseError(problem)
    return name


class StackReference(BaseModel):
    """Backend-qualified identity of a stack.

    Two references with the same canonical string denote the same stack.
    """

    model_config = ConfigDict(frozen=True)

    organization: str = Field(..., description="Owning organization")
    project: str = Field(..., description="Project the stack belongs to")
    name: str = Field(..., description="Stack name")

    @field_validator("organization", "project", "name")
    @classmethod
    def validate_segment(cls, v: str) -> str:
        problem = _check_segment(v, "segment")
        if problem:
            raise ValueError(problem)
        return v

    def __str__(self) -> str:
        return f"{self.organization}/{self.project}/{self.name}"

    @property
    def key(self) -> str:
        """Canonical string, used for lock and storage keys."""
        return str(self)

    def with_name(self, name: str) -> StackReference:
        """Reference to a sibling stack in the same organization and project."""
        validate_stack_name(name)
        return StackReference(organization=self.organization, project=self.project, name=name)


def parse_stack_reference(
    s: str,
    default_organization: str | None = None,
    default_project: str | None = None,
) -> StackReference:
    """Parse a stack reference string.

    Accepts ``stack``, ``project/stack`` or ``organization/project/stack``.
    Missing segments come from the defaults. Parsing performs no I/O.

    Args:
        s: Reference string
        default_organization: Organization used when ``s`` has fewer than 3 segments
        default_project: Project used when ``s`` has a single segment

    Returns:
        Parsed StackReference

    Raises:
        ParseError: If the string is malformed or a needed default is missing
    """
    if not isinstance(s, str) or not s:
        raise ParseError("stack reference must be a non-empty string")

    parts = s.split("/")
    if len(parts) > 3:
        raise ParseError(f"stack reference {s!r} has too many segments (expected at most 3)")

    if len(parts) == 3:
        organization, project, name = parts
    elif len(parts) == 2:
        organization, (project, name) = default_organization, parts
    else:
        organization, project, name = default_organization, default_project, parts[0]

    if organization is None:
        raise ParseError(f"stack reference {s!r} needs an organization and no default is set")
    if project is None:
        raise ParseError(f"stack reference {s!r} needs a project and no default is set")

    for value, what in ((organization, "organization"), (project, "project"), (name, "stack name")):
        problem = _check_segment(value, what)
        if problem:
            raise ParseError(f"invalid stack reference {s!r}: {problem}")

    return StackReference(organization=organization, project=project, name=name)


__all__ = ["StackReference", "parse_stack_reference", "validate_stack_name", "MAX_NAME_LENGTH"]
