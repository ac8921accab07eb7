"""Backend and Stack - the universal interface every storage target implements.

A Backend owns and persists stacks. Callers resolve a StackReference with
parse_stack_reference(), obtain a Stack with get_stack()/create_stack(),
then run update-style operations, each of which returns a Result.
"""

from __future__ import annotations

import getpass
from abc import ABC, abstractmethod

from .crypter import Crypter
from .errors import NoPreviousDeploymentError
from .models import (
    CreateStackOptions,
    ListStacksFilter,
    LogEntry,
    LogQuery,
    Snapshot,
    StackConfiguration,
    StackSummary,
    UntypedDeployment,
    UpdateInfo,
)
from .operation import UpdateOperation
from .reference import StackReference
from .result import Result, UpdateOutcome


class Backend(ABC):
    """Base class all backends inherit from.

    Administrative operations raise StackforgeError subclasses directly.
    Update-style operations (preview, update, refresh, destroy, watch,
    query) never raise for expected stop conditions: they return Failed
    or Bailed instead.

    Example implementation:
        class S3Backend(StoreBackend):
            name = "s3"

            def __init__(self, bucket: str) -> None:
                super().__init__(store=S3StateStore(bucket))
    """

    # Backend name - shown to users and recorded by callers
    name: str = "base"

    # Whether stack references may name organizations other than the default
    supports_organizations: bool = False

    # =========================================================================
    # REQUIRED: Backends MUST implement these abstract methods
    # =========================================================================

    @property
    @abstractmethod
    def url(self) -> str:
        """Location of the backend, e.g. ``file:///home/me/.stackforge``."""
        ...

    @abstractmethod
    def parse_stack_reference(self, s: str) -> StackReference:
        """Parse a reference string using this backend's defaults.

        Raises:
            ParseError: If the string is malformed
        """
        ...

    @abstractmethod
    async def does_project_exist(self, project: str) -> bool:
        """Whether any stack exists for the project in the default organization."""
        ...

    @abstractmethod
    async def get_stack(self, ref: StackReference) -> Stack:
        """Return an existing stack; never creates one.

        Raises:
            NotFoundError: If the stack does not exist
        """
        ...

    @abstractmethod
    async def create_stack(
        self, ref: StackReference, opts: CreateStackOptions | None = None
    ) -> Stack:
        """Create a new stack atomically.

        Raises:
            AlreadyExistsError: If the stack exists (including a lost create race)
            ValidationError: If the initial tags are invalid
        """
        ...

    @abstractmethod
    async def remove_stack(self, ref: StackReference, force: bool = False) -> bool:
        """Remove a stack.

        Args:
            ref: Stack to remove
            force: Remove even if the stack still has resources

        Returns:
            True if the removed stack still had resources

        Raises:
            NotFoundError: If the stack does not exist
            StackNotEmptyError: If it has resources and ``force`` is False
            ConflictError: If an operation holds the stack's lock
        """
        ...

    @abstractmethod
    async def list_stacks(self, filter: ListStacksFilter | None = None) -> list[StackSummary]:
        """List stacks matching the filter, in a stable order."""
        ...

    @abstractmethod
    async def rename_stack(self, ref: StackReference, new_name: str) -> StackReference:
        """Rename a stack within its organization and project.

        Returns:
            The new reference

        Raises:
            AlreadyExistsError: If ``new_name`` denotes an existing stack
        """
        ...

    @abstractmethod
    async def get_stack_crypter(self, ref: StackReference) -> Crypter:
        """Return a crypter bound to the stack's secrets material."""
        ...

    @abstractmethod
    async def preview(self, ref: StackReference, op: UpdateOperation) -> UpdateOutcome:
        """Compute changes without applying or committing anything."""
        ...

    @abstractmethod
    async def update(self, ref: StackReference, op: UpdateOperation) -> UpdateOutcome:
        """Converge the stack onto its program and commit the new snapshot."""
        ...

    @abstractmethod
    async def refresh(self, ref: StackReference, op: UpdateOperation) -> UpdateOutcome:
        """Reconcile the snapshot with the live state of its resources."""
        ...

    @abstractmethod
    async def destroy(self, ref: StackReference, op: UpdateOperation) -> UpdateOutcome:
        """Delete every resource in the stack."""
        ...

    @abstractmethod
    async def watch(self, ref: StackReference, op: UpdateOperation) -> Result:
        """Stream program changes until cancelled; never advances the snapshot."""
        ...

    @abstractmethod
    async def query(self, ref: StackReference, op: UpdateOperation) -> Result:
        """Run read-only program logic against the current snapshot."""
        ...

    @abstractmethod
    async def get_history(self, ref: StackReference) -> list[UpdateInfo]:
        """Chronological history of completed mutating operations."""
        ...

    @abstractmethod
    async def get_logs(
        self, ref: StackReference, config: StackConfiguration, query: LogQuery
    ) -> list[LogEntry]:
        """Query logs emitted by the stack's resources."""
        ...

    @abstractmethod
    async def get_latest_configuration(self, ref: StackReference) -> StackConfiguration:
        """Configuration used by the most recent operation.

        Raises:
            NoPreviousDeploymentError: If the stack has no history
        """
        ...

    @abstractmethod
    async def get_stack_tags(self, ref: StackReference) -> dict[str, str]:
        """Return the stack's tags."""
        ...

    @abstractmethod
    async def update_stack_tags(self, ref: StackReference, tags: dict[str, str]) -> None:
        """Replace the stack's tags.

        Raises:
            ValidationError: If a tag is malformed
        """
        ...

    @abstractmethod
    async def export_deployment(self, ref: StackReference) -> UntypedDeployment:
        """Export the stack's snapshot in portable form."""
        ...

    @abstractmethod
    async def import_deployment(
        self, ref: StackReference, deployment: UntypedDeployment
    ) -> None:
        """Replace the stack's snapshot with an exported deployment.

        Raises:
            ValidationError: If the version tag or payload is rejected; the
                existing snapshot is left untouched
        """
        ...

    # =========================================================================
    # OPTIONAL: Backends can override these with custom implementations
    # =========================================================================

    async def current_user(self) -> str:
        """Name of the user the backend acts as. Defaults to the OS user."""
        return getpass.getuser()

    async def logout(self) -> None:
        """Drop any credentials held by the backend. No-op by default."""
        return None

    async def get_snapshot(self, ref: StackReference) -> Snapshot | None:
        """Current snapshot, None for a never-updated stack.

        Default implementation goes through export_deployment().
        """
        deployment = await self.export_deployment(ref)
        snapshot = Snapshot.model_validate(deployment.deployment)
        return snapshot if snapshot.version > 0 else None

    async def get_stack_config(self, ref: StackReference) -> StackConfiguration:
        """Current stack configuration.

        Default implementation returns the latest operation's configuration.
        """
        try:
            return await self.get_latest_configuration(ref)
        except NoPreviousDeploymentError:
            return StackConfiguration()


class Stack(ABC):
    """A single resolved stack bound to its Backend.

    The stack-scoped operations mirror the Backend's, pre-bound to ``ref``.
    """

    @property
    @abstractmethod
    def ref(self) -> StackReference: ...

    @abstractmethod
    def backend(self) -> Backend:
        """The owning backend."""
        ...

    @abstractmethod
    async def config(self) -> StackConfiguration: ...

    @abstractmethod
    async def snapshot(self) -> Snapshot | None:
        """Current durable state, None for a never-updated stack."""
        ...

    @abstractmethod
    async def preview(self, op: UpdateOperation) -> UpdateOutcome: ...

    @abstractmethod
    async def update(self, op: UpdateOperation) -> UpdateOutcome: ...

    @abstractmethod
    async def refresh(self, op: UpdateOperation) -> UpdateOutcome: ...

    @abstractmethod
    async def destroy(self, op: UpdateOperation) -> UpdateOutcome: ...

    @abstractmethod
    async def watch(self, op: UpdateOperation) -> Result: ...

    @abstractmethod
    async def query(self, op: UpdateOperation) -> Result: ...

    @abstractmethod
    async def remove(self, force: bool = False) -> bool: ...

    @abstractmethod
    async def rename(self, new_name: str) -> StackReference: ...

    @abstractmethod
    async def get_logs(self, config: StackConfiguration, query: LogQuery) -> list[LogEntry]: ...

    @abstractmethod
    async def export_deployment(self) -> UntypedDeployment: ...

    @abstractmethod
    async def import_deployment(self, deployment: UntypedDeployment) -> None: ...


class BoundStack(Stack):
    """Stack that delegates every operation to its backend.

    The backend is a back-reference: backends never keep BoundStack
    instances, so a stack object is only as long-lived as its caller wants.
    Config is fetched on first use and refreshed after a successful update.
    """

    def __init__(
        self,
        backend: Backend,
        ref: StackReference,
        config: StackConfiguration | None = None,
    ) -> None:
        self._backend = backend
        self._ref = ref
        self._config = config

    def __repr__(self) -> str:
        return f"BoundStack({self._ref}, backend={self._backend.name!r})"

    @property
    def ref(self) -> StackReference:
        return self._ref

    def backend(self) -> Backend:
        return self._backend

    async def config(self) -> StackConfiguration:
        if self._config is None:
            self._config = await self._backend.get_stack_config(self._ref)
        return self._config

    async def snapshot(self) -> Snapshot | None:
        return await self._backend.get_snapshot(self._ref)

    async def preview(self, op: UpdateOperation) -> UpdateOutcome:
        return await self._backend.preview(self._ref, op)

    async def update(self, op: UpdateOperation) -> UpdateOutcome:
        outcome = await self._backend.update(self._ref, op)
        self._config = None
        return outcome

    async def refresh(self, op: UpdateOperation) -> UpdateOutcome:
        return await self._backend.refresh(self._ref, op)

    async def destroy(self, op: UpdateOperation) -> UpdateOutcome:
        return await self._backend.destroy(self._ref, op)

    async def watch(self, op: UpdateOperation) -> Result:
        return await self._backend.watch(self._ref, op)

    async def query(self, op: UpdateOperation) -> Result:
        return await self._backend.query(self._ref, op)

    async def remove(self, force: bool = False) -> bool:
        return await self._backend.remove_stack(self._ref, force)

    async def rename(self, new_name: str) -> StackReference:
        self._ref = await self._backend.rename_stack(self._ref, new_name)
        return self._ref

    async def get_logs(self, config: StackConfiguration, query: LogQuery) -> list[LogEntry]:
        return await self._backend.get_logs(self._ref, config, query)

    async def export_deployment(self) -> UntypedDeployment:
        return await self._backend.export_deployment(self._ref)

    async def import_deployment(self, deployment: UntypedDeployment) -> None:
        await self._backend.import_deployment(self._ref, deployment)

    async def get_history(self) -> list[UpdateInfo]:
        return await self._backend.get_history(self._ref)

    async def get_tags(self) -> dict[str, str]:
        return await self._backend.get_stack_tags(self._ref)

    async def update_tags(self, tags: dict[str, str]) -> None:
        await self._backend.update_stack_tags(self._ref, tags)

    async def get_crypter(self) -> Crypter:
        return await self._backend.get_stack_crypter(self._ref)


__all__ = ["Backend", "Stack", "BoundStack"]
