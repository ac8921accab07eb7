"""File-based StateStore implementation.

Stores each stack as a directory of JSON files on the local filesystem:

    <root>/<organization>/<project>/<stack>/
        stack.json          StackRecord
        snapshot.json       current Snapshot
        history/00000001.json ...
        .lock               cross-process lease

Public API (the "studs"):
    FileStateStore: Concrete StateStore using local files
"""

from __future__ import annotations

import contextlib
import fcntl
import logging
import os
import re
import shutil
import tempfile
from collections.abc import Iterator
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from .errors import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    ParseError,
    PersistenceError,
)
from .models import Snapshot, StackRecord, UpdateInfo
from .reference import StackReference

_logger = logging.getLogger(__name__)

_SAFE_SEGMENT_PATTERN = re.compile(r"[a-zA-Z0-9][a-zA-Z0-9._-]*")

_RECORD_FILE = "stack.json"
_SNAPSHOT_FILE = "snapshot.json"
_HISTORY_DIR = "history"
_LEASE_FILE = ".lock"


def _sanitize_segment(segment: str) -> str:
    """Sanitize one path segment to prevent path traversal.

    Raises:
        ValueError: If the segment is empty or contains path traversal
    """
    if not segment:
        raise ValueError("path segment must not be empty")

    if "/" in segment or "\\" in segment:
        raise ValueError(f"path segment contains path separators: {segment!r}")

    if ".." in segment:
        raise ValueError(f"path segment contains path traversal: {segment!r}")

    if not _SAFE_SEGMENT_PATTERN.fullmatch(segment):
        raise ValueError(
            f"path segment contains invalid characters: {segment!r}. "
            "Only alphanumeric, hyphens, underscores, and dots are allowed."
        )

    return segment


def _atomic_write(path: Path, content: str) -> None:
    """Write text to disk atomically via tempfile + os.replace."""
    fd = None
    tmp_path: str | None = None
    try:
        fd, tmp_path = tempfile.mkstemp(
            dir=str(path.parent), suffix=".tmp", prefix=f".{path.name}_"
        )
        os.write(fd, content.encode("utf-8"))
        os.fsync(fd)
        os.close(fd)
        fd = None
        os.replace(tmp_path, str(path))
        tmp_path = None
    except OSError as exc:
        raise PersistenceError(f"failed to write {path}") from exc
    finally:
        if fd is not None:
            os.close(fd)
        if tmp_path is not None:
            with contextlib.suppress(OSError):
                os.unlink(tmp_path)


class FileStateStore:
    """StateStore backed by JSON files under a root directory.

    Suitable for local development and single-host use; the lease file
    serializes mutation across processes sharing the directory.
    """

    def __init__(self, root: Path | None = None) -> None:
        """Initialize FileStateStore.

        Args:
            root: Directory for state files. Defaults to ~/.stackforge/stacks/
        """
        if root is None:
            root = Path.home() / ".stackforge" / "stacks"
        self._root = root
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def _stack_dir(self, ref: StackReference) -> Path:
        try:
            return (
                self._root
                / _sanitize_segment(ref.organization)
                / _sanitize_segment(ref.project)
                / _sanitize_segment(ref.name)
            )
        except ValueError as exc:
            raise ParseError(str(exc), ref=ref) from None

    def _read_model(self, path: Path, model: type, ref: StackReference):
        try:
            return model.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, PydanticValidationError) as exc:
            raise PersistenceError(f"failed to read {path.name}", ref=ref) from exc

    async def create_stack(self, record: StackRecord) -> None:
        stack_dir = self._stack_dir(record.ref)
        stack_dir.parent.mkdir(parents=True, exist_ok=True)
        try:
            # mkdir is atomic: exactly one concurrent creator succeeds
            stack_dir.mkdir()
        except FileExistsError:
            raise AlreadyExistsError("stack already exists", ref=record.ref) from None
        try:
            (stack_dir / _HISTORY_DIR).mkdir()
            _atomic_write(stack_dir / _RECORD_FILE, record.model_dump_json(indent=2))
        except PersistenceError:
            shutil.rmtree(stack_dir, ignore_errors=True)
            raise
        except OSError as exc:
            shutil.rmtree(stack_dir, ignore_errors=True)
            raise PersistenceError("failed to create stack directory", ref=record.ref) from exc
        _logger.debug("Created stack directory %s", stack_dir)

    async def load_stack(self, ref: StackReference) -> StackRecord | None:
        path = self._stack_dir(ref) / _RECORD_FILE
        if not path.exists():
            _logger.debug("No stack record found at %s", path)
            return None
        return self._read_model(path, StackRecord, ref)

    async def save_stack(self, record: StackRecord) -> None:
        stack_dir = self._stack_dir(record.ref)
        if not stack_dir.is_dir():
            raise NotFoundError("stack does not exist", ref=record.ref)
        _atomic_write(stack_dir / _RECORD_FILE, record.model_dump_json(indent=2))

    async def delete_stack(self, ref: StackReference) -> None:
        stack_dir = self._stack_dir(ref)
        try:
            shutil.rmtree(stack_dir)
        except FileNotFoundError:
            return
        except OSError as exc:
            raise PersistenceError("failed to delete stack directory", ref=ref) from exc
        _logger.debug("Deleted stack directory %s", stack_dir)

    async def rename_stack(self, ref: StackReference, new_ref: StackReference) -> None:
        old_dir = self._stack_dir(ref)
        new_dir = self._stack_dir(new_ref)
        record = await self.load_stack(ref)
        if record is None:
            raise NotFoundError("stack does not exist", ref=ref)
        new_dir.parent.mkdir(parents=True, exist_ok=True)
        try:
            new_dir.mkdir()
        except FileExistsError:
            raise AlreadyExistsError("stack already exists", ref=new_ref) from None
        try:
            # Replaces the empty placeholder claimed above
            os.replace(old_dir, new_dir)
        except OSError as exc:
            with contextlib.suppress(OSError):
                new_dir.rmdir()
            raise PersistenceError(f"failed to rename stack to {new_ref}", ref=ref) from exc
        renamed = record.model_copy(update={"ref": new_ref})
        _atomic_write(new_dir / _RECORD_FILE, renamed.model_dump_json(indent=2))
        _logger.debug("Renamed %s to %s", old_dir, new_dir)

    async def list_stacks(self) -> list[StackRecord]:
        results: list[StackRecord] = []
        for record_file in sorted(self._root.glob(f"*/*/*/{_RECORD_FILE}")):
            try:
                raw = record_file.read_text(encoding="utf-8")
                results.append(StackRecord.model_validate_json(raw))
            except (OSError, PydanticValidationError):
                _logger.warning("Failed to read stack record %s", record_file, exc_info=True)
        return results

    async def load_snapshot(self, ref: StackReference) -> Snapshot | None:
        path = self._stack_dir(ref) / _SNAPSHOT_FILE
        if not path.exists():
            return None
        snapshot = self._read_model(path, Snapshot, ref)
        if not snapshot.verify():
            raise PersistenceError("snapshot checksum mismatch; the file is corrupt", ref=ref)
        return snapshot

    async def save_snapshot(self, ref: StackReference, snapshot: Snapshot) -> None:
        stack_dir = self._stack_dir(ref)
        if not stack_dir.is_dir():
            raise NotFoundError("stack does not exist", ref=ref)
        _atomic_write(stack_dir / _SNAPSHOT_FILE, snapshot.model_dump_json(indent=2))
        _logger.debug("Saved snapshot v%d to %s", snapshot.version, stack_dir)

    async def append_history(self, ref: StackReference, info: UpdateInfo) -> None:
        history_dir = self._stack_dir(ref) / _HISTORY_DIR
        if not history_dir.is_dir():
            raise NotFoundError("stack does not exist", ref=ref)
        path = history_dir / f"{info.version:08d}.json"
        if path.exists():
            raise PersistenceError(f"history entry {info.version} already exists", ref=ref)
        _atomic_write(path, info.model_dump_json(indent=2))

    async def load_history(self, ref: StackReference) -> list[UpdateInfo]:
        history_dir = self._stack_dir(ref) / _HISTORY_DIR
        if not history_dir.is_dir():
            return []
        return [self._read_model(p, UpdateInfo, ref) for p in sorted(history_dir.glob("*.json"))]

    @contextlib.contextmanager
    def lease(self, ref: StackReference) -> Iterator[None]:
        stack_dir = self._stack_dir(ref)
        if not stack_dir.is_dir():
            raise NotFoundError("stack does not exist", ref=ref)
        try:
            lease_file = open(stack_dir / _LEASE_FILE, "w")
        except OSError as exc:
            raise PersistenceError("failed to open stack lease", ref=ref) from exc
        with lease_file as lease_fd:
            try:
                fcntl.flock(lease_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                raise ConflictError("stack is locked by another process", ref=ref) from None
            try:
                yield
            finally:
                fcntl.flock(lease_fd, fcntl.LOCK_UN)


__all__ = ["FileStateStore"]
