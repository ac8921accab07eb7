"""Backend data models.

Universal models for snapshots, history, deployments and configuration
that every backend implementation shares.
"""

from __future__ import annotations

import hashlib
import json
import re
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .errors import ValidationError
from .reference import StackReference

if TYPE_CHECKING:
    from .crypter import Crypter

# Current (and only importable) UntypedDeployment version tag
DEPLOYMENT_SCHEMA_VERSION = 3

GENERATOR = "stackforge"

_TAG_NAME_PATTERN = re.compile(r"[A-Za-z0-9_.:-]+")
MAX_TAG_NAME_LENGTH = 40
MAX_TAG_VALUE_LENGTH = 256


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


class UpdateKind(str, Enum):
    """The six update-style operations."""

    PREVIEW = "preview"
    UPDATE = "update"
    REFRESH = "refresh"
    DESTROY = "destroy"
    WATCH = "watch"
    QUERY = "query"

    @property
    def mutates_state(self) -> bool:
        """Whether this kind commits snapshots and appends history."""
        return self in (UpdateKind.UPDATE, UpdateKind.REFRESH, UpdateKind.DESTROY)


class StepOp(str, Enum):
    """What the engine did to one resource."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    REPLACE = "replace"
    SAME = "same"


class ResultStatus(str, Enum):
    """Persisted form of an operation Result."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    BAILED = "bailed"


class ResourceState(BaseModel):
    """Last-known state of one provisioned resource."""

    model_config = ConfigDict(frozen=True)

    urn: str = Field(..., min_length=1, description="Unique resource name within the stack")
    type: str = Field(..., min_length=1, description="Resource type token")
    name: str = Field(default="", description="Logical resource name")
    inputs: dict[str, Any] = Field(default_factory=dict, description="Declared inputs")
    outputs: dict[str, Any] = Field(default_factory=dict, description="Provider outputs")


class ResourceStep(BaseModel):
    """One resource-level step performed by the engine."""

    model_config = ConfigDict(frozen=True)

    op: StepOp
    urn: str = Field(..., min_length=1)
    old: ResourceState | None = Field(default=None, description="State before the step")
    new: ResourceState | None = Field(default=None, description="State after the step")

    @model_validator(mode="after")
    def check_states(self) -> ResourceStep:
        if self.op in (StepOp.CREATE, StepOp.UPDATE, StepOp.REPLACE) and self.new is None:
            raise ValueError(f"{self.op.value} step for {self.urn} needs a new state")
        if self.new is not None and self.new.urn != self.urn:
            raise ValueError(f"step urn {self.urn} does not match new state urn {self.new.urn}")
        return self


def compute_checksum(resources: list[ResourceState]) -> str:
    """SHA-256 of the canonical JSON encoding of a resource list."""
    payload = json.dumps(
        [r.model_dump(mode="json") for r in resources],
        sort_keys=True,
        separators=(",", ":"),
    )
    return f"sha256-{hashlib.sha256(payload.encode()).hexdigest()}"


class Manifest(BaseModel):
    """Integrity and provenance information for a snapshot."""

    model_config = ConfigDict(frozen=True)

    time: datetime = Field(default_factory=utcnow, description="When the snapshot was sealed")
    checksum: str = Field(default="", description="Checksum of the resource list")
    generator: str = Field(default=GENERATOR, description="Tool that wrote the snapshot")


class Snapshot(BaseModel):
    """Durable, versioned record of a stack's resources.

    Snapshots are immutable: every change produces a new, re-sealed snapshot
    that replaces the previous one wholesale.
    """

    model_config = ConfigDict(frozen=True)

    version: int = Field(default=0, ge=0, description="Monotonic sequence number")
    resources: list[ResourceState] = Field(default_factory=list)
    manifest: Manifest = Field(default_factory=Manifest)

    @classmethod
    def empty(cls) -> Snapshot:
        return cls().seal()

    def seal(self, version: int | None = None) -> Snapshot:
        """Return a copy with a fresh manifest (and optionally a new version)."""
        manifest = Manifest(checksum=compute_checksum(self.resources))
        update: dict[str, Any] = {"manifest": manifest}
        if version is not None:
            update["version"] = version
        return self.model_copy(update=update)

    def verify(self) -> bool:
        """Check that the manifest checksum matches the resources."""
        return self.manifest.checksum == compute_checksum(self.resources)

    def get(self, urn: str) -> ResourceState | None:
        for resource in self.resources:
            if resource.urn == urn:
                return resource
        return None

    def apply(self, step: ResourceStep) -> Snapshot:
        """Return the sealed successor snapshot after applying one step.

        ``same`` steps leave the snapshot untouched.
        """
        if step.op == StepOp.SAME:
            return self

        resources = list(self.resources)
        index = next((i for i, r in enumerate(resources) if r.urn == step.urn), None)
        if step.op == StepOp.DELETE:
            if index is not None:
                del resources[index]
        elif index is None:
            resources.append(step.new)
        else:
            resources[index] = step.new

        return Snapshot(version=self.version + 1, resources=resources).seal()


class ResourceChanges(BaseModel):
    """Count of steps by kind for one operation."""

    create: int = 0
    update: int = 0
    delete: int = 0
    replace: int = 0
    same: int = 0

    def record(self, op: StepOp) -> None:
        setattr(self, op.value, getattr(self, op.value) + 1)

    @property
    def applied(self) -> int:
        """Number of steps that changed something."""
        return self.create + self.update + self.delete + self.replace

    @property
    def has_changes(self) -> bool:
        return self.applied > 0


class ConfigValue(BaseModel):
    """A single configuration value; secure values hold ciphertext."""

    model_config = ConfigDict(frozen=True)

    value: str
    secure: bool = False


class StackConfiguration(BaseModel):
    """Configuration map for a stack."""

    model_config = ConfigDict(frozen=True)

    values: dict[str, ConfigValue] = Field(default_factory=dict)

    def with_value(
        self, key: str, value: str, crypter: Crypter | None = None
    ) -> StackConfiguration:
        """Return a copy with ``key`` set; encrypted when a crypter is given."""
        if crypter is not None:
            entry = ConfigValue(value=crypter.encrypt(value), secure=True)
        else:
            entry = ConfigValue(value=value)
        return StackConfiguration(values={**self.values, key: entry})

    def decrypt(self, crypter: Crypter | None) -> dict[str, str]:
        """Return plaintext values.

        Raises:
            ValidationError: If a secure value is present and no crypter is given
        """
        plain: dict[str, str] = {}
        for key, entry in self.values.items():
            if not entry.secure:
                plain[key] = entry.value
                continue
            if crypter is None:
                raise ValidationError(f"config value {key!r} is secret but no crypter is available")
            plain[key] = crypter.decrypt(entry.value)
        return plain

    def redacted(self) -> dict[str, str]:
        return {k: "[secret]" if v.secure else v.value for k, v in self.values.items()}


class UpdateInfo(BaseModel):
    """One history entry: a completed update-style operation."""

    version: int = Field(..., ge=1, description="History sequence number")
    kind: UpdateKind
    message: str = Field(default="", description="User-supplied update message")
    start_time: datetime
    end_time: datetime
    result: ResultStatus
    error: str | None = Field(default=None, description="Error message if failed")
    resource_changes: ResourceChanges = Field(default_factory=ResourceChanges)
    config: StackConfiguration = Field(default_factory=StackConfiguration)
    snapshot_version: int | None = Field(default=None, description="Snapshot version afterwards")


class UntypedDeployment(BaseModel):
    """Backend-agnostic serialized snapshot for export and import."""

    version: int = Field(..., description="Deployment schema version tag")
    deployment: dict[str, Any] = Field(default_factory=dict, description="Opaque payload")


class StackRecord(BaseModel):
    """Persisted per-stack metadata (everything except snapshot and history)."""

    ref: StackReference
    created_at: datetime = Field(default_factory=utcnow)
    tags: dict[str, str] = Field(default_factory=dict)
    config: StackConfiguration = Field(default_factory=StackConfiguration)
    secrets_salt: str | None = Field(default=None, description="Base64 salt for the crypter")


class StackSummary(BaseModel):
    """Lightweight listing entry for a stack."""

    ref: StackReference
    last_update: datetime | None = None
    resource_count: int | None = None


class ListStacksFilter(BaseModel):
    """Narrows ListStacks by organization, project and tag."""

    organization: str | None = None
    project: str | None = None
    tag_name: str | None = None
    tag_value: str | None = None

    def matches(self, ref: StackReference, tags: dict[str, str]) -> bool:
        if self.organization is not None and ref.organization != self.organization:
            return False
        if self.project is not None and ref.project != self.project:
            return False
        if self.tag_name is not None:
            if self.tag_name not in tags:
                return False
            if self.tag_value is not None and tags[self.tag_name] != self.tag_value:
                return False
        return True


class CreateStackOptions(BaseModel):
    """Initial state for a new stack."""

    tags: dict[str, str] = Field(default_factory=dict)
    config: StackConfiguration = Field(default_factory=StackConfiguration)


class LogQuery(BaseModel):
    """Filter for GetLogs."""

    start_time: datetime | None = None
    end_time: datetime | None = None
    resource_filter: str | None = Field(default=None, description="Substring of the resource urn")


class LogEntry(BaseModel):
    """One log line attributed to a resource."""

    id: str = ""
    timestamp: datetime
    message: str


def validate_tags(tags: dict[str, str]) -> dict[str, str]:
    """Check tag names and values.

    Raises:
        ValidationError: If a tag name or value is malformed
    """
    for name, value in tags.items():
        if not name or len(name) > MAX_TAG_NAME_LENGTH or not _TAG_NAME_PATTERN.fullmatch(name):
            raise ValidationError(
                f"invalid tag name {name!r}: up to {MAX_TAG_NAME_LENGTH} characters of "
                "alphanumerics, hyphens, underscores, dots, and colons"
            )
        if not isinstance(value, str) or len(value) > MAX_TAG_VALUE_LENGTH:
            raise ValidationError(
                f"invalid value for tag {name!r}: must be a string of at most "
                f"{MAX_TAG_VALUE_LENGTH} characters"
            )
    return tags
