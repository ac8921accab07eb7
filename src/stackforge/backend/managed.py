"""Backends built on a StateStore and an Engine.

Public API (the "studs"):
    StoreBackend: Complete Backend implementation over any StateStore
    LocalBackend: StoreBackend persisting to the local filesystem
    MemoryBackend: StoreBackend keeping state in process memory
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import SecretStr
from pydantic import ValidationError as PydanticValidationError

from .base import Backend, BoundStack, Stack
from .crypter import Crypter, PassphraseCrypter, new_salt
from .engine import DiffEngine, Engine
from .errors import (
    NoPreviousDeploymentError,
    NotFoundError,
    ParseError,
    StackforgeError,
    StackNotEmptyError,
    ValidationError,
)
from .file_store import FileStateStore
from .locks import StackLockTable
from .logs import DiagnosticsLogProvider, LogQueryProvider
from .models import (
    DEPLOYMENT_SCHEMA_VERSION,
    CreateStackOptions,
    ListStacksFilter,
    LogEntry,
    LogQuery,
    Snapshot,
    StackConfiguration,
    StackRecord,
    StackSummary,
    UntypedDeployment,
    UpdateInfo,
    UpdateKind,
    validate_tags,
)
from .operation import DiagnosticsSink, UpdateOperation
from .reference import StackReference, parse_stack_reference
from .result import Result, UpdateOutcome
from .store import MemoryStateStore, StateStore
from .update import UpdateRunner

_logger = logging.getLogger(__name__)

DEFAULT_ORGANIZATION = "organization"


class StoreBackend(Backend):
    """Backend implemented over a StateStore and an Engine.

    Concrete storage targets only supply the store; the stack directory,
    locking, the update state machine, history, tags, secrets and
    import/export all live here, so every target behaves identically.
    """

    name = "store"

    def __init__(
        self,
        store: StateStore,
        engine: Engine | None = None,
        *,
        url: str = "store://",
        organization: str = DEFAULT_ORGANIZATION,
        project: str | None = None,
        passphrase: str | SecretStr | None = None,
        log_provider: LogQueryProvider | None = None,
    ) -> None:
        """Initialize the backend.

        Args:
            store: Persistence for stacks, snapshots and history
            engine: Resource-graph engine. Defaults to DiffEngine()
            url: Location reported by ``url``
            organization: Default organization for short references
            project: Current project for single-segment references
            passphrase: Secrets passphrase for stack crypters
            log_provider: Answers get_logs(). Defaults to a
                DiagnosticsLogProvider fed by every run
        """
        self._store = store
        self._engine = engine if engine is not None else DiffEngine()
        self._url = url
        self._organization = organization
        self._project = project
        if isinstance(passphrase, str):
            passphrase = SecretStr(passphrase)
        self._passphrase = passphrase
        self._log_provider = log_provider if log_provider is not None else DiagnosticsLogProvider()
        self._locks = StackLockTable()
        self._crypters: dict[tuple[str, str], Crypter] = {}

        observers: list[DiagnosticsSink] = []
        if isinstance(self._log_provider, DiagnosticsSink):
            observers.append(self._log_provider)
        self._runner = UpdateRunner(self._store, self._engine, self._locks, observers)

    @property
    def url(self) -> str:
        return self._url

    @property
    def store(self) -> StateStore:
        return self._store

    # =========================================================================
    # Stack directory
    # =========================================================================

    def parse_stack_reference(self, s: str) -> StackReference:
        ref = parse_stack_reference(s, self._organization, self._project)
        if not self.supports_organizations and ref.organization != self._organization:
            raise ParseError(
                f"the {self.name} backend does not support organizations; "
                f"use {self._organization!r} or omit it"
            )
        return ref

    async def does_project_exist(self, project: str) -> bool:
        records = await self._store.list_stacks()
        return any(
            r.ref.organization == self._organization and r.ref.project == project for r in records
        )

    async def _require_record(self, ref: StackReference) -> StackRecord:
        record = await self._store.load_stack(ref)
        if record is None:
            raise NotFoundError("stack does not exist", ref=ref)
        return record

    async def get_stack(self, ref: StackReference) -> Stack:
        record = await self._require_record(ref)
        return BoundStack(self, ref, record.config)

    async def create_stack(
        self, ref: StackReference, opts: CreateStackOptions | None = None
    ) -> Stack:
        opts = opts or CreateStackOptions()
        validate_tags(opts.tags)
        record = StackRecord(
            ref=ref,
            tags=dict(opts.tags),
            config=opts.config,
            secrets_salt=new_salt(),
        )
        await self._store.create_stack(record)
        _logger.info("Created stack %s", ref)
        return BoundStack(self, ref, record.config)

    async def remove_stack(self, ref: StackReference, force: bool = False) -> bool:
        with self._locks.hold(ref, "remove"):
            await self._require_record(ref)
            with self._store.lease(ref):
                snapshot = await self._store.load_snapshot(ref)
                has_resources = snapshot is not None and len(snapshot.resources) > 0
                if has_resources and not force:
                    raise StackNotEmptyError(
                        f"stack still has {len(snapshot.resources)} resource(s); "
                        "destroy them first or remove with force",
                        ref=ref,
                    )
                await self._store.delete_stack(ref)
        if isinstance(self._log_provider, DiagnosticsLogProvider):
            self._log_provider.forget(ref)
        _logger.info("Removed stack %s (had resources: %s)", ref, has_resources)
        return has_resources

    async def list_stacks(self, filter: ListStacksFilter | None = None) -> list[StackSummary]:
        filter = filter or ListStacksFilter()
        summaries: list[StackSummary] = []
        for record in await self._store.list_stacks():
            if not filter.matches(record.ref, record.tags):
                continue
            summaries.append(await self._summarize(record))
        summaries.sort(key=lambda s: s.ref.key)
        return summaries

    async def _summarize(self, record: StackRecord) -> StackSummary:
        try:
            snapshot = await self._store.load_snapshot(record.ref)
            history = await self._store.load_history(record.ref)
        except StackforgeError:
            _logger.warning("Failed to read state for %s", record.ref, exc_info=True)
            return StackSummary(ref=record.ref)
        return StackSummary(
            ref=record.ref,
            last_update=history[-1].end_time if history else None,
            resource_count=len(snapshot.resources) if snapshot is not None else None,
        )

    async def rename_stack(self, ref: StackReference, new_name: str) -> StackReference:
        new_ref = ref.with_name(new_name)
        with self._locks.hold(ref, "rename"):
            await self._require_record(ref)
            with self._store.lease(ref):
                await self._store.rename_stack(ref, new_ref)
        if isinstance(self._log_provider, DiagnosticsLogProvider):
            self._log_provider.move(ref, new_ref)
        _logger.info("Renamed stack %s to %s", ref, new_ref)
        return new_ref

    async def get_stack_crypter(self, ref: StackReference) -> Crypter:
        record = await self._require_record(ref)
        if self._passphrase is None:
            raise ValidationError("no secrets passphrase is configured", ref=ref)
        if not record.secrets_salt:
            raise ValidationError("stack has no secrets salt", ref=ref)
        key = (ref.key, record.secrets_salt)
        if key not in self._crypters:
            self._crypters[key] = PassphraseCrypter(
                self._passphrase.get_secret_value(), record.secrets_salt
            )
        return self._crypters[key]

    # =========================================================================
    # Update-style operations
    # =========================================================================

    async def preview(self, ref: StackReference, op: UpdateOperation) -> UpdateOutcome:
        return await self._runner.run(UpdateKind.PREVIEW, ref, op)

    async def update(self, ref: StackReference, op: UpdateOperation) -> UpdateOutcome:
        return await self._runner.run(UpdateKind.UPDATE, ref, op)

    async def refresh(self, ref: StackReference, op: UpdateOperation) -> UpdateOutcome:
        return await self._runner.run(UpdateKind.REFRESH, ref, op)

    async def destroy(self, ref: StackReference, op: UpdateOperation) -> UpdateOutcome:
        return await self._runner.run(UpdateKind.DESTROY, ref, op)

    async def watch(self, ref: StackReference, op: UpdateOperation) -> Result:
        outcome = await self._runner.run(UpdateKind.WATCH, ref, op)
        return outcome.result

    async def query(self, ref: StackReference, op: UpdateOperation) -> Result:
        outcome = await self._runner.run(UpdateKind.QUERY, ref, op)
        return outcome.result

    # =========================================================================
    # History, configuration, tags, logs
    # =========================================================================

    async def get_history(self, ref: StackReference) -> list[UpdateInfo]:
        await self._require_record(ref)
        return await self._store.load_history(ref)

    async def get_logs(
        self, ref: StackReference, config: StackConfiguration, query: LogQuery
    ) -> list[LogEntry]:
        await self._require_record(ref)
        return await self._log_provider.query(ref, config, query)

    async def get_latest_configuration(self, ref: StackReference) -> StackConfiguration:
        history = await self.get_history(ref)
        if not history:
            raise NoPreviousDeploymentError("stack has no previous deployment", ref=ref)
        return history[-1].config

    async def get_stack_config(self, ref: StackReference) -> StackConfiguration:
        record = await self._require_record(ref)
        return record.config

    async def get_snapshot(self, ref: StackReference) -> Snapshot | None:
        await self._require_record(ref)
        return await self._store.load_snapshot(ref)

    async def get_stack_tags(self, ref: StackReference) -> dict[str, str]:
        record = await self._require_record(ref)
        return dict(record.tags)

    async def update_stack_tags(self, ref: StackReference, tags: dict[str, str]) -> None:
        validate_tags(tags)
        with self._locks.hold(ref, "tag update"):
            record = await self._require_record(ref)
            await self._store.save_stack(record.model_copy(update={"tags": dict(tags)}))

    # =========================================================================
    # Deployment import/export
    # =========================================================================

    async def export_deployment(self, ref: StackReference) -> UntypedDeployment:
        await self._require_record(ref)
        snapshot = await self._store.load_snapshot(ref)
        if snapshot is None:
            snapshot = Snapshot.empty()
        return UntypedDeployment(
            version=DEPLOYMENT_SCHEMA_VERSION,
            deployment=snapshot.model_dump(mode="json"),
        )

    async def import_deployment(
        self, ref: StackReference, deployment: UntypedDeployment
    ) -> None:
        imported = _validate_deployment(deployment, ref)
        with self._locks.hold(ref, "import"):
            await self._require_record(ref)
            with self._store.lease(ref):
                existing = await self._store.load_snapshot(ref)
                if existing is not None and imported.version <= existing.version:
                    imported = imported.model_copy(update={"version": existing.version + 1})
                await self._store.save_snapshot(ref, imported)
        _logger.info("Imported deployment into %s (snapshot v%d)", ref, imported.version)


def _validate_deployment(deployment: UntypedDeployment, ref: StackReference) -> Snapshot:
    """Check an UntypedDeployment before anything is written.

    Raises:
        ValidationError: On an unsupported version, a malformed payload or
            a checksum mismatch
    """
    if deployment.version != DEPLOYMENT_SCHEMA_VERSION:
        raise ValidationError(
            f"unsupported deployment version {deployment.version}; "
            f"expected {DEPLOYMENT_SCHEMA_VERSION}",
            ref=ref,
        )
    try:
        snapshot = Snapshot.model_validate(deployment.deployment)
    except PydanticValidationError as e:
        raise ValidationError("malformed deployment payload", ref=ref) from e
    if not snapshot.verify():
        raise ValidationError("deployment checksum does not match its resources", ref=ref)
    return snapshot


class LocalBackend(StoreBackend):
    """Backend persisting stacks under a local directory."""

    name = "local"

    def __init__(self, root: Path | None = None, engine: Engine | None = None, **kwargs) -> None:
        store = FileStateStore(root)
        super().__init__(store, engine, url=f"file://{store.root}", **kwargs)


class MemoryBackend(StoreBackend):
    """Backend keeping stacks in process memory; state ends with the process."""

    name = "memory"
    supports_organizations = True

    def __init__(self, engine: Engine | None = None, **kwargs) -> None:
        super().__init__(MemoryStateStore(), engine, url="memory://", **kwargs)


__all__ = ["StoreBackend", "LocalBackend", "MemoryBackend", "DEFAULT_ORGANIZATION"]
