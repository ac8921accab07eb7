"""Backend configuration.

Public API (the "studs"):
    BackendConfig: Which backend to use and its defaults
"""

import os
import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, SecretStr, field_validator

_SCHEMES = ("file", "memory")

_SEGMENT_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]*")

# config field -> environment variable
_ENV_MAP: dict[str, str] = {
    "url": "STACKFORGE_BACKEND_URL",
    "organization": "STACKFORGE_ORGANIZATION",
    "project": "STACKFORGE_PROJECT",
    "passphrase": "STACKFORGE_CONFIG_PASSPHRASE",
}


class BackendConfig(BaseModel):
    """Configuration for creating a backend.

    Attributes:
        url: ``file://<path>`` for a local backend (``file://`` alone uses
            ``~/.stackforge/stacks``) or ``memory://``
        organization: Default organization for short stack references
        project: Current project for bare stack names
        passphrase: Passphrase protecting stack secrets
    """

    url: str = Field("file://", description="Backend URL")
    organization: str = Field("organization", description="Default organization")
    project: str | None = Field(None, description="Current project")
    passphrase: SecretStr | None = Field(None, description="Secrets passphrase")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate the URL uses a supported scheme."""
        scheme, sep, rest = v.partition("://")
        if not sep or scheme not in _SCHEMES:
            raise ValueError(f"unsupported backend url {v!r}; expected file://<path> or memory://")
        if scheme == "memory" and rest:
            raise ValueError(f"memory:// takes no path: {v!r}")
        return v

    @field_validator("organization", "project")
    @classmethod
    def validate_segment(cls, v: str | None) -> str | None:
        """Validate names use the same characters as stack names."""
        if v is not None and not _SEGMENT_PATTERN.fullmatch(v):
            raise ValueError(f"invalid name {v!r}")
        return v

    @property
    def scheme(self) -> str:
        return self.url.partition("://")[0]

    @property
    def local_root(self) -> Path | None:
        """Directory for a ``file://`` backend, None for the default location."""
        if self.scheme != "file":
            return None
        path = self.url.partition("://")[2]
        return Path(path).expanduser() if path else None

    @classmethod
    def from_env(cls) -> "BackendConfig":
        """Create BackendConfig from environment variables.

        Environment variables:
            STACKFORGE_BACKEND_URL: Backend URL (default: file://)
            STACKFORGE_ORGANIZATION: Default organization
            STACKFORGE_PROJECT: Current project
            STACKFORGE_CONFIG_PASSPHRASE: Secrets passphrase

        Raises:
            pydantic.ValidationError: If a variable holds an invalid value
        """
        kwargs: dict[str, Any] = {}
        for field, env_var in _ENV_MAP.items():
            value = os.environ.get(env_var)
            if value:
                kwargs[field] = value
        return cls(**kwargs)


__all__ = ["BackendConfig"]
