"""Update-operation state machine.

Every update-style operation walks the same phases:

    IDLE -> LOCKING -> RUNNING -> COMMITTING -> DONE
                               -> CANCELLING -> BAILED
                               -> FAILING    -> FAILED

Query skips LOCKING. Mutating kinds (update, refresh, destroy) write a new
snapshot after every step that changed a resource, so state on disk always
reflects the steps that were performed, and append one history entry per
run whatever the outcome.

Public API (the "studs"):
    UpdatePhase: Phases of the state machine
    UpdateRun: Bookkeeping for one run (phase trace, changes)
    UpdateRunner: Executes operations against a store and an engine
"""

from __future__ import annotations

import logging
from contextlib import ExitStack
from datetime import datetime
from enum import Enum

from .engine import Engine
from .errors import EngineError, NotFoundError, PersistenceError, StackforgeError
from .locks import StackLockTable
from .models import (
    ResourceChanges,
    ResourceStep,
    ResultStatus,
    Snapshot,
    StepOp,
    UpdateInfo,
    UpdateKind,
    utcnow,
)
from .operation import DiagEvent, DiagnosticsSink, FanoutSink, Severity, UpdateOperation
from .reference import StackReference
from .result import Bailed, Failed, Succeeded, UpdateOutcome
from .store import StateStore

_logger = logging.getLogger(__name__)


class UpdatePhase(str, Enum):
    IDLE = "idle"
    LOCKING = "locking"
    RUNNING = "running"
    COMMITTING = "committing"
    DONE = "done"
    CANCELLING = "cancelling"
    BAILED = "bailed"
    FAILING = "failing"
    FAILED = "failed"


_TRANSITIONS: dict[UpdatePhase, set[UpdatePhase]] = {
    UpdatePhase.IDLE: {UpdatePhase.LOCKING, UpdatePhase.RUNNING, UpdatePhase.FAILING},
    UpdatePhase.LOCKING: {UpdatePhase.RUNNING, UpdatePhase.FAILING},
    UpdatePhase.RUNNING: {UpdatePhase.COMMITTING, UpdatePhase.CANCELLING, UpdatePhase.FAILING},
    UpdatePhase.COMMITTING: {UpdatePhase.DONE, UpdatePhase.FAILING},
    UpdatePhase.CANCELLING: {UpdatePhase.BAILED},
    UpdatePhase.FAILING: {UpdatePhase.FAILED},
    UpdatePhase.DONE: set(),
    UpdatePhase.BAILED: set(),
    UpdatePhase.FAILED: set(),
}


class UpdateRun:
    """State of a single update-style operation while it runs."""

    def __init__(self, ref: StackReference, kind: UpdateKind, sink: DiagnosticsSink) -> None:
        self.ref = ref
        self.kind = kind
        self.sink = sink
        self.phase = UpdatePhase.IDLE
        self.trace: list[UpdatePhase] = [UpdatePhase.IDLE]
        self.changes = ResourceChanges()
        self.start_time: datetime = utcnow()

    def advance(self, phase: UpdatePhase) -> None:
        """Move to ``phase``.

        Raises:
            RuntimeError: If the transition is not allowed
        """
        if phase not in _TRANSITIONS[self.phase]:
            raise RuntimeError(f"illegal update transition {self.phase.value} -> {phase.value}")
        _logger.info("%s %s: %s -> %s", self.kind.value, self.ref, self.phase.value, phase.value)
        self.phase = phase
        self.trace.append(phase)
        self.emit(f"{self.kind.value} {phase.value}", severity=Severity.DEBUG)

    def emit(
        self,
        message: str,
        severity: Severity = Severity.INFO,
        step: ResourceStep | None = None,
    ) -> None:
        self.sink.emit(
            DiagEvent(
                severity=severity,
                message=message,
                kind=self.kind.value,
                stack=str(self.ref),
                urn=step.urn if step else None,
                op=step.op if step else None,
            )
        )


def _wrap(
    exc: Exception, error_type: type[StackforgeError], message: str, run: UpdateRun
) -> StackforgeError:
    """Translate a foreign exception into a StackforgeError for this run."""
    error = error_type(message, ref=run.ref, kind=run.kind)
    error.__cause__ = exc
    return error


class UpdateRunner:
    """Runs update-style operations for one backend.

    Args:
        store: Persistence for snapshots, records and history
        engine: Resource-graph engine
        locks: Per-stack lock table shared by every mutation in the backend
        observers: Sinks that see every run's diagnostics in addition to
            the operation's own sink
    """

    def __init__(
        self,
        store: StateStore,
        engine: Engine,
        locks: StackLockTable,
        observers: list[DiagnosticsSink] | None = None,
    ) -> None:
        self._store = store
        self._engine = engine
        self._locks = locks
        self._observers = list(observers or [])

    async def run(
        self, kind: UpdateKind, ref: StackReference, operation: UpdateOperation
    ) -> UpdateOutcome:
        """Run one operation to completion, cancellation or failure.

        Expected stop conditions never raise: lock contention, a missing
        stack, engine and persistence failures all come back as Failed.

        Raises:
            ValueError: If ``operation`` was already used
        """
        operation.claim()
        run = UpdateRun(ref, kind, FanoutSink(operation.sink, *self._observers))

        try:
            record = await self._store.load_stack(ref)
        except StackforgeError as e:
            return self._fail_early(run, e)
        except Exception as exc:
            error = _wrap(exc, PersistenceError, "failed to load stack", run)
            return self._fail_early(run, error)
        if record is None:
            return self._fail_early(run, NotFoundError("stack does not exist", ref=ref, kind=kind))

        if kind == UpdateKind.QUERY:
            run.advance(UpdatePhase.RUNNING)
            return await self._execute(run, operation)

        run.advance(UpdatePhase.LOCKING)
        with ExitStack() as held:
            try:
                held.enter_context(self._locks.hold(ref, kind.value, kind))
                held.enter_context(self._store.lease(ref))
            except StackforgeError as e:
                return self._fail_early(run, e)
            except Exception as exc:
                error = _wrap(exc, PersistenceError, "failed to lease stack", run)
                return self._fail_early(run, error)
            run.advance(UpdatePhase.RUNNING)
            return await self._execute(run, operation)

    async def _execute(self, run: UpdateRun, operation: UpdateOperation) -> UpdateOutcome:
        try:
            loaded = await self._store.load_snapshot(run.ref)
        except StackforgeError as e:
            return await self._fail(run, operation, e)
        except Exception as exc:
            error = _wrap(exc, PersistenceError, "failed to load snapshot", run)
            return await self._fail(run, operation, error)

        current = loaded if loaded is not None else Snapshot.empty()
        try:
            steps = self._engine.execute(run.kind, operation, current)
        except StackforgeError as e:
            return await self._fail(run, operation, e, current)
        except Exception as exc:
            error = _wrap(exc, EngineError, "resource-graph engine failed", run)
            return await self._fail(run, operation, error, current)
        try:
            while True:
                if operation.cancellation.cancelled:
                    return await self._bail(run, operation, current)
                try:
                    step = await anext(steps)
                except StopAsyncIteration:
                    break
                except StackforgeError:
                    raise
                except Exception as exc:
                    raise _wrap(exc, EngineError, "resource-graph engine failed", run) from None
                current = await self._record_step(run, step, current)
        except StackforgeError as e:
            return await self._fail(run, operation, e, current)
        except Exception as exc:
            error = _wrap(exc, PersistenceError, "failed to record step", run)
            return await self._fail(run, operation, error, current)
        finally:
            aclose = getattr(steps, "aclose", None)
            if aclose is not None:
                await aclose()

        if operation.cancellation.cancelled:
            return await self._bail(run, operation, current)
        return await self._commit(run, operation, loaded, current)

    async def _record_step(
        self, run: UpdateRun, step: ResourceStep, current: Snapshot
    ) -> Snapshot:
        """Record one engine step; mutating kinds persist it before counting it."""
        if run.kind == UpdateKind.QUERY and step.op != StepOp.SAME:
            raise EngineError(f"query attempted to {step.op.value} {step.urn}")

        if run.kind.mutates_state and step.op != StepOp.SAME:
            current = current.apply(step)
            await self._store.save_snapshot(run.ref, current)

        run.changes.record(step.op)
        severity = Severity.DEBUG if step.op == StepOp.SAME else Severity.INFO
        run.emit(f"{step.op.value} {step.urn}", severity=severity, step=step)
        return current

    async def _commit(
        self,
        run: UpdateRun,
        operation: UpdateOperation,
        loaded: Snapshot | None,
        current: Snapshot,
    ) -> UpdateOutcome:
        run.advance(UpdatePhase.COMMITTING)
        if run.kind.mutates_state:
            try:
                if loaded is None and current.version == 0:
                    # First run on a new stack always leaves a snapshot behind
                    current = current.seal(version=1)
                    await self._store.save_snapshot(run.ref, current)
                if run.kind == UpdateKind.UPDATE:
                    record = await self._store.load_stack(run.ref)
                    if record is not None:
                        record = record.model_copy(update={"config": operation.config})
                        await self._store.save_stack(record)
                await self._append_history(run, operation, ResultStatus.SUCCEEDED, current)
            except StackforgeError as e:
                return await self._fail(run, operation, e, current)
            except Exception as exc:
                error = _wrap(exc, PersistenceError, "failed to commit", run)
                return await self._fail(run, operation, error, current)
        run.advance(UpdatePhase.DONE)
        return UpdateOutcome(run.changes, Succeeded())

    async def _bail(
        self, run: UpdateRun, operation: UpdateOperation, current: Snapshot
    ) -> UpdateOutcome:
        run.advance(UpdatePhase.CANCELLING)
        run.emit(
            f"{run.kind.value} cancelled after {run.changes.applied} change(s)", Severity.WARNING
        )
        if run.kind.mutates_state:
            await self._append_history_quietly(run, operation, ResultStatus.BAILED, current)
        run.advance(UpdatePhase.BAILED)
        return UpdateOutcome(run.changes, Bailed())

    async def _fail(
        self,
        run: UpdateRun,
        operation: UpdateOperation,
        error: StackforgeError,
        current: Snapshot | None = None,
    ) -> UpdateOutcome:
        if error.ref is None:
            error.ref = run.ref
        if error.kind is None:
            error.kind = run.kind
        run.advance(UpdatePhase.FAILING)
        run.emit(str(error), Severity.ERROR)
        if run.kind.mutates_state:
            await self._append_history_quietly(run, operation, ResultStatus.FAILED, current, error)
        run.advance(UpdatePhase.FAILED)
        return UpdateOutcome(run.changes, Failed(error))

    def _fail_early(self, run: UpdateRun, error: StackforgeError) -> UpdateOutcome:
        """Fail before RUNNING: nothing ran, so nothing is recorded."""
        if error.ref is None:
            error.ref = run.ref
        if error.kind is None:
            error.kind = run.kind
        run.advance(UpdatePhase.FAILING)
        run.emit(str(error), Severity.ERROR)
        run.advance(UpdatePhase.FAILED)
        return UpdateOutcome(run.changes, Failed(error))

    async def _append_history(
        self,
        run: UpdateRun,
        operation: UpdateOperation,
        status: ResultStatus,
        current: Snapshot | None,
        error: Exception | None = None,
    ) -> None:
        history = await self._store.load_history(run.ref)
        info = UpdateInfo(
            version=len(history) + 1,
            kind=run.kind,
            message=operation.options.message,
            start_time=run.start_time,
            end_time=utcnow(),
            result=status,
            error=str(error) if error is not None else None,
            resource_changes=run.changes.model_copy(),
            config=operation.config,
            snapshot_version=current.version if current is not None else None,
        )
        await self._store.append_history(run.ref, info)

    async def _append_history_quietly(
        self,
        run: UpdateRun,
        operation: UpdateOperation,
        status: ResultStatus,
        current: Snapshot | None,
        error: Exception | None = None,
    ) -> None:
        """Append history on the bail/fail paths without masking the outcome."""
        try:
            await self._append_history(run, operation, status, current, error)
        except Exception:
            _logger.warning(
                "Failed to record %s history for %s", status.value, run.ref, exc_info=True
            )


__all__ = ["UpdatePhase", "UpdateRun", "UpdateRunner"]
