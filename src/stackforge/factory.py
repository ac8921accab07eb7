"""Factory function for creating backends.

Public API (the "studs"):
    create_backend: Build the backend a BackendConfig describes
"""

from stackforge.backend.managed import LocalBackend, MemoryBackend, StoreBackend
from stackforge.config import BackendConfig


def create_backend(config: BackendConfig) -> StoreBackend:
    """Create a backend based on configuration.

    Args:
        config: BackendConfig naming the backend URL and defaults

    Returns:
        StoreBackend: LocalBackend for ``file://``, MemoryBackend for ``memory://``

    Raises:
        ValueError: If the URL scheme is unknown

    Example:
        >>> backend = create_backend(BackendConfig(url="memory://"))
        >>> backend.name
        'memory'
    """
    options = {
        "organization": config.organization,
        "project": config.project,
        "passphrase": config.passphrase,
    }
    if config.scheme == "file":
        return LocalBackend(config.local_root, **options)
    elif config.scheme == "memory":
        return MemoryBackend(**options)
    else:
        raise ValueError(f"Unknown backend scheme: {config.scheme}")


__all__ = ["create_backend"]
