"""Test doubles for Backend and Stack.

Every operation is backed by an optional callable attribute named after it
with an ``_f`` suffix. Callables may be plain functions or coroutine
functions. Calling an operation whose callable is unset raises
NotImplementedError, so a test only wires what it exercises:

    backend = MockBackend(get_stack_f=lambda ref: MockStack(ref_f=lambda: ref))
"""

from __future__ import annotations

import inspect
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .base import Backend, Stack
from .crypter import Crypter
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

Fn = Callable[..., Any] | None


def _require(fn: Fn) -> Callable[..., Any]:
    if fn is None:
        raise NotImplementedError("not implemented")
    return fn


async def _call(fn: Fn, *args: Any) -> Any:
    result = _require(fn)(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


@dataclass(eq=False)
class MockBackend(Backend):
    """Backend whose behavior is supplied per test."""

    name_f: Fn = None
    url_f: Fn = None
    supports_organizations_f: Fn = None
    parse_stack_reference_f: Fn = None
    does_project_exist_f: Fn = None
    get_stack_f: Fn = None
    create_stack_f: Fn = None
    remove_stack_f: Fn = None
    list_stacks_f: Fn = None
    rename_stack_f: Fn = None
    get_stack_crypter_f: Fn = None
    preview_f: Fn = None
    update_f: Fn = None
    refresh_f: Fn = None
    destroy_f: Fn = None
    watch_f: Fn = None
    query_f: Fn = None
    get_history_f: Fn = None
    get_logs_f: Fn = None
    get_latest_configuration_f: Fn = None
    get_stack_tags_f: Fn = None
    update_stack_tags_f: Fn = None
    export_deployment_f: Fn = None
    import_deployment_f: Fn = None
    logout_f: Fn = None
    current_user_f: Fn = None

    # name and supports_organizations are plain attributes on Backend;
    # here they are computed so an unset callable still raises.
    @property
    def name(self) -> str:  # type: ignore[override]
        return _require(self.name_f)()

    @property
    def supports_organizations(self) -> bool:  # type: ignore[override]
        return _require(self.supports_organizations_f)()

    @property
    def url(self) -> str:
        return _require(self.url_f)()

    def parse_stack_reference(self, s: str) -> StackReference:
        return _require(self.parse_stack_reference_f)(s)

    async def does_project_exist(self, project: str) -> bool:
        return await _call(self.does_project_exist_f, project)

    async def get_stack(self, ref: StackReference) -> Stack:
        return await _call(self.get_stack_f, ref)

    async def create_stack(
        self, ref: StackReference, opts: CreateStackOptions | None = None
    ) -> Stack:
        return await _call(self.create_stack_f, ref, opts)

    async def remove_stack(self, ref: StackReference, force: bool = False) -> bool:
        return await _call(self.remove_stack_f, ref, force)

    async def list_stacks(self, filter: ListStacksFilter | None = None) -> list[StackSummary]:
        return await _call(self.list_stacks_f, filter)

    async def rename_stack(self, ref: StackReference, new_name: str) -> StackReference:
        return await _call(self.rename_stack_f, ref, new_name)

    async def get_stack_crypter(self, ref: StackReference) -> Crypter:
        return await _call(self.get_stack_crypter_f, ref)

    async def preview(self, ref: StackReference, op: UpdateOperation) -> UpdateOutcome:
        return await _call(self.preview_f, ref, op)

    async def update(self, ref: StackReference, op: UpdateOperation) -> UpdateOutcome:
        return await _call(self.update_f, ref, op)

    async def refresh(self, ref: StackReference, op: UpdateOperation) -> UpdateOutcome:
        return await _call(self.refresh_f, ref, op)

    async def destroy(self, ref: StackReference, op: UpdateOperation) -> UpdateOutcome:
        return await _call(self.destroy_f, ref, op)

    async def watch(self, ref: StackReference, op: UpdateOperation) -> Result:
        return await _call(self.watch_f, ref, op)

    async def query(self, ref: StackReference, op: UpdateOperation) -> Result:
        return await _call(self.query_f, ref, op)

    async def get_history(self, ref: StackReference) -> list[UpdateInfo]:
        return await _call(self.get_history_f, ref)

    async def get_logs(
        self, ref: StackReference, config: StackConfiguration, query: LogQuery
    ) -> list[LogEntry]:
        return await _call(self.get_logs_f, ref, config, query)

    async def get_latest_configuration(self, ref: StackReference) -> StackConfiguration:
        return await _call(self.get_latest_configuration_f, ref)

    async def get_stack_tags(self, ref: StackReference) -> dict[str, str]:
        return await _call(self.get_stack_tags_f, ref)

    async def update_stack_tags(self, ref: StackReference, tags: dict[str, str]) -> None:
        await _call(self.update_stack_tags_f, ref, tags)

    async def export_deployment(self, ref: StackReference) -> UntypedDeployment:
        return await _call(self.export_deployment_f, ref)

    async def import_deployment(
        self, ref: StackReference, deployment: UntypedDeployment
    ) -> None:
        await _call(self.import_deployment_f, ref, deployment)

    async def logout(self) -> None:
        await _call(self.logout_f)

    async def current_user(self) -> str:
        return await _call(self.current_user_f)


@dataclass(eq=False)
class MockStack(Stack):
    """Stack whose behavior is supplied per test."""

    ref_f: Fn = None
    config_f: Fn = None
    snapshot_f: Fn = None
    backend_f: Fn = None
    preview_f: Fn = None
    update_f: Fn = None
    refresh_f: Fn = None
    destroy_f: Fn = None
    watch_f: Fn = None
    query_f: Fn = None
    remove_f: Fn = None
    rename_f: Fn = None
    get_logs_f: Fn = None
    export_deployment_f: Fn = None
    import_deployment_f: Fn = None

    @property
    def ref(self) -> StackReference:
        return _require(self.ref_f)()

    def backend(self) -> Backend:
        return _require(self.backend_f)()

    async def config(self) -> StackConfiguration:
        return await _call(self.config_f)

    async def snapshot(self) -> Snapshot | None:
        return await _call(self.snapshot_f)

    async def preview(self, op: UpdateOperation) -> UpdateOutcome:
        return await _call(self.preview_f, op)

    async def update(self, op: UpdateOperation) -> UpdateOutcome:
        return await _call(self.update_f, op)

    async def refresh(self, op: UpdateOperation) -> UpdateOutcome:
        return await _call(self.refresh_f, op)

    async def destroy(self, op: UpdateOperation) -> UpdateOutcome:
        return await _call(self.destroy_f, op)

    async def watch(self, op: UpdateOperation) -> Result:
        return await _call(self.watch_f, op)

    async def query(self, op: UpdateOperation) -> Result:
        return await _call(self.query_f, op)

    async def remove(self, force: bool = False) -> bool:
        return await _call(self.remove_f, force)

    async def rename(self, new_name: str) -> StackReference:
        return await _call(self.rename_f, new_name)

    async def get_logs(self, config: StackConfiguration, query: LogQuery) -> list[LogEntry]:
        return await _call(self.get_logs_f, config, query)

    async def export_deployment(self) -> UntypedDeployment:
        return await _call(self.export_deployment_f)

    async def import_deployment(self, deployment: UntypedDeployment) -> None:
        await _call(self.import_deployment_f, deployment)


__all__ = ["MockBackend", "MockStack"]
