"""Resource-graph engine interface and the in-tree diff engine.

The engine performs resource operations and reports each one as a
ResourceStep. It never writes state: the update protocol records every
step it receives.

Public API (the "studs"):
    Engine: Protocol for resource-graph execution engines
    DiffEngine: Engine that diffs a Program against the current snapshot
    plan_update: Pure diff of a Program against a Snapshot
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Protocol

from .errors import EngineError
from .models import ResourceState, ResourceStep, Snapshot, StepOp, UpdateKind
from .operation import Program, UpdateOperation

_logger = logging.getLogger(__name__)

ResourceReader = Callable[[ResourceState], Awaitable[ResourceState | None]]


class Engine(Protocol):
    """Executes one update-style operation resource by resource."""

    def execute(
        self, kind: UpdateKind, operation: UpdateOperation, snapshot: Snapshot
    ) -> AsyncIterator[ResourceStep]:
        """Yield one step per resource operation performed.

        Args:
            kind: Which operation to run
            operation: Options, program, sink and cancellation signal
            snapshot: Current durable state (empty for a new stack)

        Yields:
            Steps in execution order
        """
        ...


def plan_update(
    program: Program, snapshot: Snapshot, targets: list[str] | None = None
) -> list[ResourceStep]:
    """Diff a program against a snapshot.

    Declared resources come first in program order (create, update,
    replace or same), followed by deletes of undeclared resources in
    reverse creation order.
    """
    wanted = set(targets or [])
    steps: list[ResourceStep] = []
    declared: set[str] = set()

    for goal in program.resources:
        declared.add(goal.urn)
        if wanted and goal.urn not in wanted:
            continue
        old = snapshot.get(goal.urn)
        new = ResourceState(
            urn=goal.urn,
            type=goal.type,
            name=goal.name,
            inputs=dict(goal.inputs),
            outputs=dict(goal.inputs),
        )
        if old is None:
            steps.append(ResourceStep(op=StepOp.CREATE, urn=goal.urn, new=new))
        elif old.inputs == goal.inputs:
            steps.append(ResourceStep(op=StepOp.SAME, urn=goal.urn, old=old, new=old))
        elif any(old.inputs.get(k) != goal.inputs.get(k) for k in goal.replace_on_changes):
            steps.append(ResourceStep(op=StepOp.REPLACE, urn=goal.urn, old=old, new=new))
        else:
            steps.append(ResourceStep(op=StepOp.UPDATE, urn=goal.urn, old=old, new=new))

    for resource in reversed(snapshot.resources):
        if resource.urn in declared:
            continue
        if wanted and resource.urn not in wanted:
            continue
        steps.append(ResourceStep(op=StepOp.DELETE, urn=resource.urn, old=resource))

    return steps


class DiffEngine:
    """Engine that converges a stack onto its declared Program.

    Args:
        reader: Async callable returning the live state of a resource, or
            None if it no longer exists. Used by refresh; without one,
            refresh reports every resource unchanged.
        program_source: Callable re-read on every watch pass. Defaults to
            the operation's static program.
    """

    def __init__(
        self,
        reader: ResourceReader | None = None,
        program_source: Callable[[], Program] | None = None,
    ) -> None:
        self._reader = reader
        self._program_source = program_source

    def execute(
        self, kind: UpdateKind, operation: UpdateOperation, snapshot: Snapshot
    ) -> AsyncIterator[ResourceStep]:
        if kind in (UpdateKind.UPDATE, UpdateKind.PREVIEW):
            return self._converge(operation, snapshot)
        if kind == UpdateKind.DESTROY:
            return self._destroy(operation, snapshot)
        if kind == UpdateKind.REFRESH:
            return self._refresh(snapshot)
        if kind == UpdateKind.WATCH:
            return self._watch(operation, snapshot)
        return self._query(snapshot)

    def _program(self, operation: UpdateOperation) -> Program:
        if self._program_source is not None:
            return self._program_source()
        if operation.program is None:
            raise EngineError("no program was supplied to the engine")
        return operation.program

    async def _converge(
        self, operation: UpdateOperation, snapshot: Snapshot
    ) -> AsyncIterator[ResourceStep]:
        steps = plan_update(self._program(operation), snapshot, operation.options.targets)
        for step in steps:
            await asyncio.sleep(0)
            yield step

    async def _destroy(
        self, operation: UpdateOperation, snapshot: Snapshot
    ) -> AsyncIterator[ResourceStep]:
        wanted = set(operation.options.targets)
        for resource in reversed(snapshot.resources):
            if wanted and resource.urn not in wanted:
                continue
            await asyncio.sleep(0)
            yield ResourceStep(op=StepOp.DELETE, urn=resource.urn, old=resource)

    async def _refresh(self, snapshot: Snapshot) -> AsyncIterator[ResourceStep]:
        for resource in snapshot.resources:
            actual = resource if self._reader is None else await self._reader(resource)
            await asyncio.sleep(0)
            if actual is None:
                yield ResourceStep(op=StepOp.DELETE, urn=resource.urn, old=resource)
            elif actual != resource:
                yield ResourceStep(op=StepOp.UPDATE, urn=resource.urn, old=resource, new=actual)
            else:
                yield ResourceStep(op=StepOp.SAME, urn=resource.urn, old=resource, new=resource)

    async def _watch(
        self, operation: UpdateOperation, snapshot: Snapshot
    ) -> AsyncIterator[ResourceStep]:
        baseline = snapshot
        passes = 0
        while True:
            passes += 1
            for step in plan_update(self._program(operation), baseline, operation.options.targets):
                if step.op == StepOp.SAME:
                    continue
                yield step
                baseline = baseline.apply(step)
            _logger.debug("Watch pass %d complete", passes)
            if await operation.cancellation.wait(operation.options.watch_interval):
                return

    async def _query(self, snapshot: Snapshot) -> AsyncIterator[ResourceStep]:
        for resource in snapshot.resources:
            await asyncio.sleep(0)
            yield ResourceStep(op=StepOp.SAME, urn=resource.urn, old=resource, new=resource)


__all__ = ["Engine", "DiffEngine", "plan_update", "ResourceReader"]
