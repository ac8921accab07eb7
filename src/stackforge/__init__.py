"""Stackforge - stack and backend orchestration for infrastructure state.

Stackforge keeps named stacks of resources, each with a versioned snapshot
of its durable state, and runs update-style operations (preview, update,
refresh, destroy, watch, query) against them one at a time per stack.

Key components:
    - Backend / Stack: Universal interface every storage target implements
    - LocalBackend / MemoryBackend: The built-in storage targets
    - UpdateOperation: Everything one operation needs (program, config, sink)
    - CLI: Stack management and update commands

Quick start:
    stackforge stack init dev
    stackforge up dev --program program.yaml
    stackforge stack history dev
    stackforge destroy dev
    stackforge stack rm dev
"""

from .backend import (
    Backend,
    LocalBackend,
    MemoryBackend,
    Stack,
    StackforgeError,
    StackReference,
    UpdateOperation,
)
from .config import BackendConfig
from .factory import create_backend

__version__ = "0.1.0"

__all__ = [
    "Backend",
    "Stack",
    "LocalBackend",
    "MemoryBackend",
    "StackReference",
    "UpdateOperation",
    "StackforgeError",
    "BackendConfig",
    "create_backend",
    "__version__",
]
