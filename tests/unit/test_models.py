"""Tests for backend data models."""

from datetime import timedelta

import pytest
from pydantic import ValidationError as PydanticValidationError

from stackforge.backend.crypter import PassphraseCrypter, new_salt
from stackforge.backend.errors import ValidationError
from stackforge.backend.models import (
    ListStacksFilter,
    ResourceChanges,
    ResourceState,
    ResourceStep,
    ResultStatus,
    Snapshot,
    StackConfiguration,
    StepOp,
    UpdateInfo,
    UpdateKind,
    compute_checksum,
    utcnow,
    validate_tags,
)
from stackforge.backend.reference import StackReference


def _resource(name: str, **inputs) -> ResourceState:
    urn = f"urn:stackforge:test:Thing::{name}"
    return ResourceState(urn=urn, type="test:Thing", name=name, inputs=inputs, outputs=inputs)


class TestUpdateKind:
    """Tests for UpdateKind."""

    def test_mutating_kinds(self):
        assert UpdateKind.UPDATE.mutates_state
        assert UpdateKind.REFRESH.mutates_state
        assert UpdateKind.DESTROY.mutates_state

    def test_non_mutating_kinds(self):
        assert not UpdateKind.PREVIEW.mutates_state
        assert not UpdateKind.WATCH.mutates_state
        assert not UpdateKind.QUERY.mutates_state


class TestResourceStep:
    """Tests for ResourceStep validation."""

    def test_create_requires_new_state(self):
        with pytest.raises(PydanticValidationError, match="needs a new state"):
            ResourceStep(op=StepOp.CREATE, urn="urn:x")

    def test_delete_needs_no_new_state(self):
        step = ResourceStep(op=StepOp.DELETE, urn="urn:x")
        assert step.new is None

    def test_urn_must_match_new_state(self):
        with pytest.raises(PydanticValidationError, match="does not match"):
            ResourceStep(op=StepOp.CREATE, urn="urn:other", new=_resource("a"))


class TestSnapshot:
    """Tests for Snapshot sealing and step application."""

    def test_empty_snapshot_is_sealed(self):
        snap = Snapshot.empty()
        assert snap.version == 0
        assert snap.resources == []
        assert snap.verify()

    def test_checksum_is_prefixed_sha256(self):
        checksum = compute_checksum([_resource("a", size=1)])
        assert checksum.startswith("sha256-")
        assert len(checksum) == len("sha256-") + 64

    def test_checksum_ignores_key_order(self):
        a = ResourceState(urn="u", type="t", inputs={"x": 1, "y": 2})
        b = ResourceState(urn="u", type="t", inputs={"y": 2, "x": 1})
        assert compute_checksum([a]) == compute_checksum([b])

    def test_verify_detects_tampering(self):
        snap = Snapshot(resources=[_resource("a", size=1)]).seal()
        tampered = snap.model_copy(update={"resources": [_resource("a", size=2)]})
        assert snap.verify()
        assert not tampered.verify()

    def test_seal_with_version(self):
        snap = Snapshot.empty().seal(version=1)
        assert snap.version == 1
        assert snap.verify()

    def test_apply_create_bumps_version(self):
        snap = Snapshot.empty()
        step = ResourceStep(op=StepOp.CREATE, urn=_resource("a").urn, new=_resource("a"))
        after = snap.apply(step)
        assert after.version == 1
        assert [r.name for r in after.resources] == ["a"]
        assert after.verify()
        assert snap.resources == []

    def test_apply_update_replaces_in_place(self):
        snap = Snapshot(resources=[_resource("a", size=1), _resource("b")]).seal()
        new = _resource("a", size=2)
        step = ResourceStep(op=StepOp.UPDATE, urn=new.urn, old=snap.resources[0], new=new)
        after = snap.apply(step)
        assert [r.name for r in after.resources] == ["a", "b"]
        assert after.get(new.urn).inputs == {"size": 2}

    def test_apply_delete_removes(self):
        a = _resource("a")
        snap = Snapshot(resources=[a]).seal()
        after = snap.apply(ResourceStep(op=StepOp.DELETE, urn=a.urn, old=a))
        assert after.resources == []
        assert after.version == snap.version + 1

    def test_apply_same_returns_same_snapshot(self):
        a = _resource("a")
        snap = Snapshot(resources=[a]).seal()
        assert snap.apply(ResourceStep(op=StepOp.SAME, urn=a.urn, old=a, new=a)) is snap

    def test_get_missing_returns_none(self):
        assert Snapshot.empty().get("urn:missing") is None


class TestResourceChanges:
    """Tests for ResourceChanges counters."""

    def test_record_and_applied(self):
        changes = ResourceChanges()
        for op in (StepOp.CREATE, StepOp.CREATE, StepOp.DELETE, StepOp.SAME):
            changes.record(op)
        assert changes.create == 2
        assert changes.delete == 1
        assert changes.same == 1
        assert changes.applied == 3
        assert changes.has_changes

    def test_no_changes(self):
        changes = ResourceChanges(same=4)
        assert changes.applied == 0
        assert not changes.has_changes


class TestStackConfiguration:
    """Tests for configuration values and secrets."""

    def test_plain_values(self):
        cfg = StackConfiguration().with_value("region", "eu-west-1")
        assert cfg.decrypt(None) == {"region": "eu-west-1"}
        assert cfg.redacted() == {"region": "eu-west-1"}

    def test_with_value_returns_copy(self):
        base = StackConfiguration()
        cfg = base.with_value("region", "eu-west-1")
        assert base.values == {}
        assert "region" in cfg.values

    def test_secret_values_are_encrypted(self):
        crypter = PassphraseCrypter("passphrase", new_salt())
        cfg = StackConfiguration().with_value("token", "s3cret", crypter)
        assert cfg.values["token"].secure
        assert cfg.values["token"].value != "s3cret"
        assert cfg.redacted() == {"token": "[secret]"}
        assert cfg.decrypt(crypter) == {"token": "s3cret"}

    def test_decrypt_secret_without_crypter(self):
        crypter = PassphraseCrypter("passphrase", new_salt())
        cfg = StackConfiguration().with_value("token", "s3cret", crypter)
        with pytest.raises(ValidationError, match="no crypter"):
            cfg.decrypt(None)


class TestUpdateInfo:
    """Tests for UpdateInfo."""

    def test_version_must_be_positive(self):
        now = utcnow()
        with pytest.raises(PydanticValidationError):
            UpdateInfo(
                version=0,
                kind=UpdateKind.UPDATE,
                start_time=now,
                end_time=now,
                result=ResultStatus.SUCCEEDED,
            )

    def test_json_roundtrip_keeps_enums(self):
        now = utcnow()
        info = UpdateInfo(
            version=1,
            kind=UpdateKind.DESTROY,
            start_time=now,
            end_time=now + timedelta(seconds=3),
            result=ResultStatus.BAILED,
            resource_changes=ResourceChanges(delete=2),
        )
        loaded = UpdateInfo.model_validate_json(info.model_dump_json())
        assert loaded.kind == UpdateKind.DESTROY
        assert loaded.result == ResultStatus.BAILED
        assert loaded.resource_changes.delete == 2


class TestListStacksFilter:
    """Tests for ListStacksFilter.matches()."""

    REF = StackReference(organization="acme", project="web", name="dev")

    def test_empty_filter_matches_everything(self):
        assert ListStacksFilter().matches(self.REF, {})

    def test_project_filter(self):
        assert ListStacksFilter(project="web").matches(self.REF, {})
        assert not ListStacksFilter(project="api").matches(self.REF, {})

    def test_organization_filter(self):
        assert not ListStacksFilter(organization="other").matches(self.REF, {})

    def test_tag_name_filter(self):
        assert ListStacksFilter(tag_name="owner").matches(self.REF, {"owner": "me"})
        assert not ListStacksFilter(tag_name="owner").matches(self.REF, {})

    def test_tag_value_filter(self):
        f = ListStacksFilter(tag_name="owner", tag_value="me")
        assert f.matches(self.REF, {"owner": "me"})
        assert not f.matches(self.REF, {"owner": "you"})


class TestValidateTags:
    """Tests for validate_tags()."""

    def test_valid_tags(self):
        tags = {"owner": "platform", "cost:center": "42", "a.b_c-d": ""}
        assert validate_tags(tags) == tags

    def test_rejects_empty_name(self):
        with pytest.raises(ValidationError, match="invalid tag name"):
            validate_tags({"": "x"})

    def test_rejects_bad_characters(self):
        with pytest.raises(ValidationError, match="invalid tag name"):
            validate_tags({"has space": "x"})

    def test_rejects_trailing_newline(self):
        with pytest.raises(ValidationError, match="invalid tag name"):
            validate_tags({"owner\n": "x"})

    def test_rejects_long_name(self):
        with pytest.raises(ValidationError, match="invalid tag name"):
            validate_tags({"x" * 41: "x"})

    def test_rejects_long_value(self):
        with pytest.raises(ValidationError):
            validate_tags({"owner": "x" * 257})
