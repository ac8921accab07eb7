"""Tests for FileStateStore - file-based stack persistence."""

import asyncio
import json

import pytest

from stackforge.backend import file_store
from stackforge.backend.errors import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    ParseError,
    PersistenceError,
)
from stackforge.backend.file_store import FileStateStore, _sanitize_segment
from stackforge.backend.models import (
    ResourceState,
    ResultStatus,
    Snapshot,
    StackRecord,
    UpdateInfo,
    UpdateKind,
    utcnow,
)
from stackforge.backend.reference import StackReference
from stackforge.backend.store import StateStore

REF = StackReference(organization="acme", project="web", name="dev")


def _run(coro):
    """Helper to run async coroutines in tests."""
    return asyncio.run(coro)


def _snapshot(*names: str, version: int = 1) -> Snapshot:
    resources = [ResourceState(urn=f"urn:{n}", type="test:Thing", name=n) for n in names]
    return Snapshot(resources=resources).seal(version=version)


def _info(version: int) -> UpdateInfo:
    now = utcnow()
    return UpdateInfo(
        version=version,
        kind=UpdateKind.UPDATE,
        start_time=now,
        end_time=now,
        result=ResultStatus.SUCCEEDED,
    )


@pytest.fixture
def store(tmp_path):
    s = FileStateStore(root=tmp_path)
    _run(s.create_stack(StackRecord(ref=REF, tags={"owner": "me"})))
    return s


class TestSanitizeSegment:
    """Tests for path segment sanitization."""

    def test_valid_segment(self):
        assert _sanitize_segment("dev-1.2_x") == "dev-1.2_x"

    def test_rejects_empty_string(self):
        with pytest.raises(ValueError, match="must not be empty"):
            _sanitize_segment("")

    def test_rejects_path_separators(self):
        with pytest.raises(ValueError, match="path separators"):
            _sanitize_segment("../etc")

    def test_rejects_dotdot_without_slash(self):
        with pytest.raises(ValueError, match="path traversal"):
            _sanitize_segment("..evil")

    def test_rejects_leading_dot(self):
        with pytest.raises(ValueError, match="invalid characters"):
            _sanitize_segment(".hidden")

    def test_rejects_trailing_newline(self):
        with pytest.raises(ValueError, match="invalid characters"):
            _sanitize_segment("dev\n")


class TestFileStateStoreRecords:
    """Tests for stack records."""

    def test_satisfies_protocol(self, tmp_path):
        assert isinstance(FileStateStore(root=tmp_path), StateStore)

    def test_create_lays_out_directory(self, store, tmp_path):
        stack_dir = tmp_path / "acme" / "web" / "dev"
        assert (stack_dir / "stack.json").exists()
        assert (stack_dir / "history").is_dir()

    def test_load_roundtrip(self, store):
        record = _run(store.load_stack(REF))
        assert record.ref == REF
        assert record.tags == {"owner": "me"}

    def test_load_missing_returns_none(self, store):
        assert _run(store.load_stack(REF.with_name("missing"))) is None

    def test_create_twice_fails(self, store):
        with pytest.raises(AlreadyExistsError):
            _run(store.create_stack(StackRecord(ref=REF)))

    def test_save_updates_record(self, store):
        record = _run(store.load_stack(REF))
        _run(store.save_stack(record.model_copy(update={"tags": {}})))
        assert _run(store.load_stack(REF)).tags == {}

    def test_save_missing_stack_fails(self, store):
        with pytest.raises(NotFoundError):
            _run(store.save_stack(StackRecord(ref=REF.with_name("missing"))))

    def test_corrupt_record_raises(self, store, tmp_path):
        (tmp_path / "acme" / "web" / "dev" / "stack.json").write_text("{not json")
        with pytest.raises(PersistenceError):
            _run(store.load_stack(REF))

    def test_traversal_reference_raises_parse_error(self, store, tmp_path):
        bad = StackReference.model_construct(organization="acme", project="web", name="a..b")
        with pytest.raises(ParseError, match="path traversal") as exc_info:
            _run(store.load_stack(bad))
        assert exc_info.value.ref == bad
        with pytest.raises(ParseError):
            _run(store.create_stack(StackRecord(ref=bad)))
        assert not (tmp_path / "acme" / "web" / "a..b").exists()

    def test_failed_create_leaves_no_directory(self, store, tmp_path, monkeypatch):
        other = REF.with_name("prod")

        def failing_write(path, content):
            raise PersistenceError(f"failed to write {path}")

        monkeypatch.setattr(file_store, "_atomic_write", failing_write)
        with pytest.raises(PersistenceError):
            _run(store.create_stack(StackRecord(ref=other)))
        assert not (tmp_path / "acme" / "web" / "prod").exists()

        monkeypatch.undo()
        _run(store.create_stack(StackRecord(ref=other)))
        assert _run(store.load_stack(other)).ref == other

    def test_delete(self, store, tmp_path):
        _run(store.delete_stack(REF))
        assert not (tmp_path / "acme" / "web" / "dev").exists()
        assert _run(store.load_stack(REF)) is None

    def test_delete_missing_is_noop(self, store):
        _run(store.delete_stack(REF.with_name("missing")))


class TestFileStateStoreRename:
    """Tests for renaming stacks on disk."""

    def test_rename_moves_everything(self, store):
        _run(store.save_snapshot(REF, _snapshot("a")))
        _run(store.append_history(REF, _info(1)))
        new_ref = REF.with_name("prod")

        _run(store.rename_stack(REF, new_ref))

        assert _run(store.load_stack(REF)) is None
        record = _run(store.load_stack(new_ref))
        assert record.ref == new_ref
        assert record.tags == {"owner": "me"}
        assert len(_run(store.load_snapshot(new_ref)).resources) == 1
        assert len(_run(store.load_history(new_ref))) == 1

    def test_rename_onto_existing_fails(self, store):
        other = REF.with_name("prod")
        _run(store.create_stack(StackRecord(ref=other)))
        with pytest.raises(AlreadyExistsError):
            _run(store.rename_stack(REF, other))
        assert _run(store.load_stack(REF)) is not None

    def test_rename_missing_fails(self, store):
        with pytest.raises(NotFoundError):
            _run(store.rename_stack(REF.with_name("missing"), REF.with_name("other")))


class TestFileStateStoreListStacks:
    """Tests for listing stacks."""

    def test_lists_across_projects(self, store):
        api = StackReference(organization="acme", project="api", name="dev")
        _run(store.create_stack(StackRecord(ref=api)))
        keys = [r.ref.key for r in _run(store.list_stacks())]
        assert keys == ["acme/api/dev", "acme/web/dev"]

    def test_skips_corrupt_records(self, store, tmp_path, caplog):
        _run(store.create_stack(StackRecord(ref=REF.with_name("broken"))))
        (tmp_path / "acme" / "web" / "broken" / "stack.json").write_text("garbage")
        records = _run(store.list_stacks())
        assert [r.ref for r in records] == [REF]
        assert "Failed to read stack record" in caplog.text


class TestFileStateStoreSnapshots:
    """Tests for snapshot persistence."""

    def test_never_updated_stack_has_no_snapshot(self, store):
        assert _run(store.load_snapshot(REF)) is None

    def test_save_and_load(self, store):
        _run(store.save_snapshot(REF, _snapshot("a", "b", version=2)))
        loaded = _run(store.load_snapshot(REF))
        assert loaded.version == 2
        assert [r.name for r in loaded.resources] == ["a", "b"]

    def test_save_leaves_no_temp_files(self, store, tmp_path):
        _run(store.save_snapshot(REF, _snapshot("a")))
        _run(store.save_snapshot(REF, _snapshot("a", "b", version=2)))
        leftovers = list((tmp_path / "acme" / "web" / "dev").glob("*.tmp"))
        assert leftovers == []

    def test_checksum_mismatch_raises(self, store, tmp_path):
        _run(store.save_snapshot(REF, _snapshot("a")))
        path = tmp_path / "acme" / "web" / "dev" / "snapshot.json"
        data = json.loads(path.read_text())
        data["resources"][0]["name"] = "tampered"
        path.write_text(json.dumps(data))
        with pytest.raises(PersistenceError, match="checksum"):
            _run(store.load_snapshot(REF))

    def test_save_to_missing_stack_fails(self, store):
        with pytest.raises(NotFoundError):
            _run(store.save_snapshot(REF.with_name("missing"), _snapshot("a")))


class TestFileStateStoreHistory:
    """Tests for history persistence."""

    def test_append_and_load_in_order(self, store):
        for version in (1, 2, 3):
            _run(store.append_history(REF, _info(version)))
        assert [h.version for h in _run(store.load_history(REF))] == [1, 2, 3]

    def test_duplicate_entry_rejected(self, store):
        _run(store.append_history(REF, _info(1)))
        with pytest.raises(PersistenceError, match="already exists"):
            _run(store.append_history(REF, _info(1)))

    def test_missing_stack_has_empty_history(self, store):
        assert _run(store.load_history(REF.with_name("missing"))) == []


class TestFileStateStoreLease:
    """Tests for the cross-process lease."""

    def test_lease_is_exclusive(self, store, tmp_path):
        other = FileStateStore(root=tmp_path)
        with store.lease(REF):
            with pytest.raises(ConflictError, match="another process"):
                with other.lease(REF):
                    pass

    def test_lease_released_after_block(self, store, tmp_path):
        other = FileStateStore(root=tmp_path)
        with store.lease(REF):
            pass
        with other.lease(REF):
            pass

    def test_lease_on_missing_stack(self, store):
        with pytest.raises(NotFoundError):
            with store.lease(REF.with_name("missing")):
                pass

    def test_unopenable_lease_file_raises_persistence_error(self, store, tmp_path):
        (tmp_path / "acme" / "web" / "dev" / ".lock").mkdir()
        with pytest.raises(PersistenceError, match="failed to open stack lease"):
            with store.lease(REF):
                pass
