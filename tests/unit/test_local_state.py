"""Tests for the local file state backend and state documents."""

import json

import pytest

from driftless.exceptions import LockHeldError, StateCorruptError
from driftless.models import ResourceId, StateRecord
from driftless.state import (
    STATE_VERSION,
    LocalStateStore,
    decode_state,
    encode_state,
    locked,
    open_state_store,
)
from driftless.values import Sealed, Secret


def record(name="main", **kwargs):
    return StateRecord(
        id=ResourceId("aws.ec2.Vpc", name),
        external_id=f"vpc-{name}",
        config_hash="sha256:abc",
        **kwargs,
    )


@pytest.fixture
def local_store(tmp_path):
    return LocalStateStore(tmp_path / "nested" / "review.json")


class TestLocalStateStore:
    """Tests for LocalStateStore."""

    @pytest.mark.asyncio
    async def test_load_missing_file_is_empty(self, local_store):
        assert await local_store.load() == {}

    @pytest.mark.asyncio
    async def test_save_and_load(self, local_store):
        """Saved records load back keyed by state key."""
        vpc = record(outputs={"id": "vpc-main", "cidr": "10.0.0.0/16"})
        deposed = record(deposed=True)
        await local_store.save({vpc.key: vpc, deposed.key: deposed})

        loaded = await local_store.load()

        assert set(loaded) == {"aws.ec2.Vpc/main", "aws.ec2.Vpc/main~deposed"}
        assert loaded["aws.ec2.Vpc/main"] == vpc
        assert loaded["aws.ec2.Vpc/main~deposed"].deposed

    @pytest.mark.asyncio
    async def test_save_replaces_previous_document(self, local_store):
        first = record("first")
        second = record("second")
        await local_store.save({first.key: first})
        await local_store.save({second.key: second})
        assert set(await local_store.load()) == {second.key}

    @pytest.mark.asyncio
    async def test_save_leaves_no_temporary_files(self, local_store):
        await local_store.save({})
        await local_store.save({})
        assert [p.name for p in local_store.path.parent.iterdir()] == ["review.json"]

    @pytest.mark.asyncio
    async def test_failed_save_keeps_previous_document(self, local_store, monkeypatch):
        """A crash while writing leaves the committed state readable."""
        vpc = record()
        await local_store.save({vpc.key: vpc})

        def crash(*args):
            raise OSError("disk full")

        monkeypatch.setattr("driftless.state.local.os.replace", crash)
        with pytest.raises(OSError):
            await local_store.save({})

        assert set(await local_store.load()) == {vpc.key}
        assert [p.name for p in local_store.path.parent.iterdir()] == ["review.json"]

    @pytest.mark.asyncio
    async def test_secrets_are_sealed(self, local_store):
        vpc = record(outputs={"password": Secret("hunter2")})
        await local_store.save({vpc.key: vpc})

        assert "hunter2" not in local_store.path.read_text()
        loaded = await local_store.load()
        password = loaded[vpc.key].outputs["password"]
        assert isinstance(password, Sealed)
        assert password == Secret("hunter2")

    @pytest.mark.asyncio
    async def test_corrupt_document(self, local_store):
        local_store.path.parent.mkdir(parents=True)
        local_store.path.write_text("{not json")
        with pytest.raises(StateCorruptError) as exc_info:
            await local_store.load()
        assert exc_info.value.location == str(local_store.path)


class TestLocalLocking:
    """Tests for the sidecar lock file."""

    @pytest.mark.asyncio
    async def test_lock_and_unlock(self, local_store):
        info = await local_store.lock("run-1")
        assert info.run_id == "run-1"
        assert local_store.lock_path.exists()

        await local_store.unlock("run-1")
        assert not local_store.lock_path.exists()

    @pytest.mark.asyncio
    async def test_second_lock_is_refused(self, local_store):
        await local_store.lock("run-1")
        with pytest.raises(LockHeldError) as exc_info:
            await local_store.lock("run-2")
        assert exc_info.value.info.run_id == "run-1"
        assert "run-1" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_unlock_by_other_run_is_ignored(self, local_store):
        await local_store.lock("run-1")
        await local_store.unlock("run-2")
        assert local_store.lock_path.exists()

    @pytest.mark.asyncio
    async def test_force_unlock(self, local_store):
        await local_store.lock("run-1")
        info = await local_store.force_unlock()
        assert info is not None
        assert info.run_id == "run-1"
        assert not local_store.lock_path.exists()
        assert await local_store.force_unlock() is None

    @pytest.mark.asyncio
    async def test_unreadable_lock_file_still_blocks(self, local_store):
        local_store.lock_path.parent.mkdir(parents=True)
        local_store.lock_path.write_text("garbage")
        with pytest.raises(LockHeldError) as exc_info:
            await local_store.lock("run-1")
        assert exc_info.value.info is None

    @pytest.mark.asyncio
    async def test_locked_releases_on_error(self, local_store):
        with pytest.raises(RuntimeError):
            async with locked(local_store, "run-1"):
                raise RuntimeError("boom")
        assert not local_store.lock_path.exists()


class TestStateDocument:
    """Tests for encode_state/decode_state."""

    def test_document_is_versioned_and_sorted(self):
        b = record("b")
        a = record("a")
        document = json.loads(encode_state({b.key: b, a.key: a}))
        assert document["version"] == STATE_VERSION
        assert [r["name"] for r in document["resources"]] == ["a", "b"]

    def test_unsupported_version(self):
        with pytest.raises(StateCorruptError) as exc_info:
            decode_state(json.dumps({"version": 99, "resources": []}), "mem")
        assert "version" in exc_info.value.reason

    def test_not_an_object(self):
        with pytest.raises(StateCorruptError):
            decode_state("[]", "mem")

    def test_malformed_record(self):
        document = {"version": STATE_VERSION, "resources": [{"type": "aws.ec2.Vpc"}]}
        with pytest.raises(StateCorruptError) as exc_info:
            decode_state(json.dumps(document), "mem")
        assert "malformed" in exc_info.value.reason

    def test_invalid_dependency_id(self):
        raw = record().to_dict()
        raw["dependencies"] = ["not-an-id"]
        document = {"version": STATE_VERSION, "resources": [raw]}
        with pytest.raises(StateCorruptError) as exc_info:
            decode_state(json.dumps(document), "mem")
        assert "not-an-id" in exc_info.value.reason


class TestOpenStateStore:
    """Tests for open_state_store."""

    def test_local_path(self, tmp_path):
        store = open_state_store(str(tmp_path / "state.json"))
        assert isinstance(store, LocalStateStore)

    def test_s3_location(self, monkeypatch):
        from driftless.state.s3 import S3StateStore

        monkeypatch.delenv("DRIFTLESS_LOCK_TABLE", raising=False)
        store = open_state_store("s3://bucket/env/review.json", region="us-east-1")
        assert isinstance(store, S3StateStore)
        assert store.bucket == "bucket"
        assert store.key == "env/review.json"
        assert store.lock_table == "driftless-locks"
        assert store.location == "s3://bucket/env/review.json"

    def test_s3_location_without_key(self):
        with pytest.raises(ValueError):
            open_state_store("s3://bucket")
