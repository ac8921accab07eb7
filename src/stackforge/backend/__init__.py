"""Backend and stack orchestration.

This package defines the universal Backend/Stack interface, the update
state machine every update-style operation walks, and the storage targets
that implement them.
"""

from .base import Backend, BoundStack, Stack
from .crypter import Crypter, PassphraseCrypter
from .engine import DiffEngine, Engine
from .errors import (
    AlreadyExistsError,
    ConflictError,
    EngineError,
    NoPreviousDeploymentError,
    NotFoundError,
    ParseError,
    PersistenceError,
    StackforgeError,
    StackNotEmptyError,
    ValidationError,
)
from .managed import LocalBackend, MemoryBackend, StoreBackend
from .mock import MockBackend, MockStack
from .models import (
    CreateStackOptions,
    ListStacksFilter,
    LogEntry,
    LogQuery,
    ResourceChanges,
    ResourceState,
    ResourceStep,
    Snapshot,
    StackConfiguration,
    StackSummary,
    StepOp,
    UntypedDeployment,
    UpdateInfo,
    UpdateKind,
)
from .operation import (
    CancellationToken,
    CollectingSink,
    LoggingSink,
    Program,
    ResourceGoal,
    UpdateOperation,
    UpdateOptions,
    load_program,
)
from .reference import StackReference, parse_stack_reference
from .result import Bailed, Failed, Result, Succeeded, UpdateOutcome

__all__ = [
    # Contracts
    "Backend",
    "Stack",
    "BoundStack",
    "Engine",
    "Crypter",
    # Implementations
    "StoreBackend",
    "LocalBackend",
    "MemoryBackend",
    "DiffEngine",
    "PassphraseCrypter",
    "MockBackend",
    "MockStack",
    # References
    "StackReference",
    "parse_stack_reference",
    # Models
    "CreateStackOptions",
    "ListStacksFilter",
    "LogEntry",
    "LogQuery",
    "ResourceChanges",
    "ResourceState",
    "ResourceStep",
    "Snapshot",
    "StackConfiguration",
    "StackSummary",
    "StepOp",
    "UntypedDeployment",
    "UpdateInfo",
    "UpdateKind",
    # Operations
    "CancellationToken",
    "CollectingSink",
    "LoggingSink",
    "Program",
    "ResourceGoal",
    "UpdateOperation",
    "UpdateOptions",
    "load_program",
    # Results
    "Result",
    "Succeeded",
    "Failed",
    "Bailed",
    "UpdateOutcome",
    # Exceptions
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
