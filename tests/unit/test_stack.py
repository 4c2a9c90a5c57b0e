"""Tests for Stack plan/apply/destroy/refresh."""

import json
from pathlib import Path

import pytest

from driftless import (
    LockHeldError,
    NodeStatus,
    Operation,
    Outcome,
    ProviderNotFoundError,
    RunOptions,
    Stack,
    StackManifest,
)
from driftless.exceptions import ProviderError
from driftless.models import ResourceId
from driftless.secrets import SecretResolver
from driftless.state import LocalStateStore
from driftless.values import Sealed, Secret

VPC = "fake.ec2.Vpc/main"
SUBNET = "fake.ec2.Subnet/a"
INSTANCE = "fake.ec2.Instance/web"

DATABASE_MANIFEST = """
resources:
  - type: fake.db.Instance
    name: db
    properties:
      name: db
      password: ${secret:DB_PASSWORD}
  - type: fake.app.Service
    name: api
    properties:
      name: api
      db_password: ${fake.db.Instance/db.password}
      replicas: 1
exports:
  db_password: ${fake.db.Instance/db.password}
"""


@pytest.fixture
def database_stack(store, registry, options):
    """Build stacks from a manifest whose database password is a secret."""
    resolver = SecretResolver(environ={"DB_PASSWORD": "hunter2"})

    def _make(yaml_str=DATABASE_MANIFEST):
        manifest = StackManifest.from_yaml(yaml_str, resolver)
        return Stack(manifest, store, registry, options)

    return _make


class TestPlan:
    """Tests for Stack.plan."""

    @pytest.mark.asyncio
    async def test_plan_calls_no_provider(self, make_stack, provider, store, network):
        plan = await make_stack(network).plan()

        assert plan.has_changes
        assert [c.operation for c in plan.change_set] == [Operation.CREATE] * 3
        assert len(plan.schedule.waves) == 3
        assert provider.calls == []
        assert await store.load() == {}

    @pytest.mark.asyncio
    async def test_plan_releases_lock(self, make_stack, store, network):
        await make_stack(network).plan()
        assert not store.lock_path.exists()


class TestApply:
    """Tests for Stack.apply."""

    @pytest.mark.asyncio
    async def test_fresh_network_created_in_dependency_order(
        self, make_stack, provider, store, network
    ):
        """Vpc, Subnet and Instance are created one after another."""
        report = await make_stack(network).apply()

        assert report.ok
        assert provider.ops("create") == ["vpc", "subnet", "instance"]
        for key in (VPC, SUBNET, INSTANCE):
            assert report.nodes[key].outcome is Outcome.SUCCEEDED
            assert report.nodes[key].status is NodeStatus.CREATED

        state = await store.load()
        assert set(state) == {VPC, SUBNET, INSTANCE}
        assert state[SUBNET].dependencies == (ResourceId.parse(VPC),)
        assert state[SUBNET].outputs["vpc_id"] == state[VPC].external_id
        assert state[INSTANCE].outputs["subnet_id"] == state[SUBNET].external_id

    @pytest.mark.asyncio
    async def test_second_apply_is_unchanged(self, make_stack, provider, network):
        """Applying an unchanged manifest again calls no provider."""
        await make_stack(network).apply()
        provider.calls.clear()

        report = await make_stack(network).apply()

        assert report.ok
        assert all(n.outcome is Outcome.UNCHANGED for n in report.nodes.values())
        assert all(n.operation is Operation.NOOP for n in report.nodes.values())
        assert provider.calls == []
        assert not (await make_stack(network).plan()).has_changes

    @pytest.mark.asyncio
    async def test_dry_run_only_plans(self, make_stack, provider, store, network):
        report = await make_stack(network, dry_run=True).apply()

        assert report.dry_run
        assert report.ok
        assert set(report.nodes) == {VPC, SUBNET, INSTANCE}
        assert all(n.outcome is Outcome.PLANNED for n in report.nodes.values())
        assert provider.calls == []
        assert await store.load() == {}

    @pytest.mark.asyncio
    async def test_exports_resolved_from_outputs(self, make_stack, store, network):
        report = await make_stack(network).apply()
        instance = (await store.load())[INSTANCE]
        assert report.exports == {"instance_arn": f"arn:fake:{instance.external_id}"}

    @pytest.mark.asyncio
    async def test_exports_resolved_from_state_when_unchanged(self, make_stack, network):
        first = await make_stack(network).apply()
        second = await make_stack(network).apply()
        assert second.exports == first.exports

    @pytest.mark.asyncio
    async def test_removed_resources_deleted_consumers_first(self, make_stack, provider, network):
        await make_stack(network).apply()
        provider.calls.clear()

        vpc_only = network.split("  - type: fake.ec2.Subnet")[0]
        report = await make_stack(vpc_only).apply()

        assert report.ok
        assert provider.ops("delete") == ["instance", "subnet"]
        assert report.nodes[INSTANCE].operation is Operation.DELETE
        assert report.nodes[VPC].outcome is Outcome.UNCHANGED

    @pytest.mark.asyncio
    async def test_lock_held_by_other_run(self, make_stack, provider, store, network):
        """A concurrent run on the same environment is refused before any provider call."""
        await store.lock("other-run")

        with pytest.raises(LockHeldError) as exc_info:
            await make_stack(network).apply()

        assert exc_info.value.info is not None
        assert exc_info.value.info.run_id == "other-run"
        assert provider.calls == []
        await store.unlock("other-run")

    @pytest.mark.asyncio
    async def test_missing_provider_fails_before_any_call(self, make_stack, provider, store):
        manifest = """
resources:
  - type: fake.s3.Bucket
    name: logs
    properties:
      name: bucket
  - type: other.queue.Queue
    name: jobs
"""
        with pytest.raises(ProviderNotFoundError) as exc_info:
            await make_stack(manifest).apply()

        assert exc_info.value.resource_type == "other.queue.Queue"
        assert provider.calls == []
        assert not store.lock_path.exists()

    @pytest.mark.asyncio
    async def test_cancel_before_apply_starts_nothing(self, make_stack, provider, network):
        stack = make_stack(network)
        stack.cancel()

        report = await stack.apply()

        assert provider.calls == []
        assert all(n.outcome is Outcome.CANCELLED for n in report.nodes.values())
        assert not report.ok


class TestSecrets:
    """Tests for secret handling across runs."""

    @pytest.mark.asyncio
    async def test_plaintext_never_written_to_state(self, database_stack, store):
        report = await database_stack().apply()

        assert report.ok
        assert "hunter2" not in store.path.read_text()
        assert "hunter2" not in json.dumps(report.as_dict())
        assert isinstance(report.exports["db_password"], Secret)

        state = await store.load()
        assert isinstance(state["fake.db.Instance/db"].outputs["password"], Sealed)

    @pytest.mark.asyncio
    async def test_provider_receives_plaintext(self, database_stack, provider, store):
        await database_stack().apply()
        state = await store.load()
        api = provider.resources[state["fake.app.Service/api"].external_id]
        assert api["db_password"] == "hunter2"

    @pytest.mark.asyncio
    async def test_sealed_output_read_back_for_consumer_update(
        self, database_stack, provider, store
    ):
        """A consumer updated in a later run gets the secret read back from its producer."""
        await database_stack().apply()
        provider.calls.clear()

        scaled = DATABASE_MANIFEST.replace("replicas: 1", "replicas: 2")
        report = await database_stack(scaled).apply()

        assert report.ok
        assert provider.ops("read") == ["db"]
        assert provider.ops("update") == ["api"]
        state = await store.load()
        api = provider.resources[state["fake.app.Service/api"].external_id]
        assert api["db_password"] == "hunter2"
        assert api["replicas"] == 2
        assert "hunter2" not in store.path.read_text()

    @pytest.mark.asyncio
    async def test_sealed_output_read_back_is_retried(self, database_stack, provider, store):
        await database_stack().apply()
        provider.calls.clear()
        provider.fail("read", "db", ProviderError("throttled", retryable=True))

        scaled = DATABASE_MANIFEST.replace("replicas: 1", "replicas: 2")
        report = await database_stack(scaled).apply()

        assert report.ok
        assert provider.ops("read") == ["db", "db"]
        assert provider.ops("update") == ["api"]

    @pytest.mark.asyncio
    async def test_unchanged_secret_is_noop(self, database_stack, provider):
        await database_stack().apply()
        provider.calls.clear()

        report = await database_stack().apply()

        assert all(n.outcome is Outcome.UNCHANGED for n in report.nodes.values())
        assert provider.calls == []


class TestDestroy:
    """Tests for Stack.destroy."""

    @pytest.mark.asyncio
    async def test_destroy_deletes_consumers_first(self, make_stack, provider, store, network):
        await make_stack(network).apply()
        provider.calls.clear()

        report = await make_stack(network).destroy()

        assert report.ok
        assert provider.ops("delete") == ["instance", "subnet", "vpc"]
        assert all(n.status is NodeStatus.DELETED for n in report.nodes.values())
        assert await store.load() == {}
        assert provider.resources == {}

    @pytest.mark.asyncio
    async def test_destroy_dry_run(self, make_stack, provider, store, network):
        await make_stack(network).apply()
        provider.calls.clear()

        report = await make_stack(network, dry_run=True).destroy()

        assert provider.calls == []
        assert all(n.operation is Operation.DELETE for n in report.nodes.values())
        assert len(await store.load()) == 3

    @pytest.mark.asyncio
    async def test_destroy_with_empty_state(self, make_stack, provider, network):
        report = await make_stack(network).destroy()
        assert report.ok
        assert report.nodes == {}
        assert provider.calls == []


class TestRefresh:
    """Tests for Stack.refresh and apply --refresh."""

    @pytest.mark.asyncio
    async def test_refresh_drops_missing_resources(self, make_stack, provider, store, network):
        await make_stack(network).apply()
        instance = (await store.load())[INSTANCE]
        del provider.resources[instance.external_id]

        records = await make_stack(network).refresh()

        assert set(records) == {VPC, SUBNET}
        assert set(await store.load()) == {VPC, SUBNET}

    @pytest.mark.asyncio
    async def test_refresh_updates_outputs(self, make_stack, provider, store, network):
        await make_stack(network).apply()
        vpc = (await store.load())[VPC]
        provider.resources[vpc.external_id]["tag"] = "drifted"

        records = await make_stack(network).refresh()

        assert records[VPC].outputs["tag"] == "drifted"
        assert records[VPC].outputs["id"] == vpc.external_id
        assert records[VPC].config_hash == vpc.config_hash

    @pytest.mark.asyncio
    async def test_apply_with_refresh_recreates_missing_resource(
        self, make_stack, provider, store, network
    ):
        """A resource deleted out of band is created again."""
        await make_stack(network).apply()
        instance = (await store.load())[INSTANCE]
        del provider.resources[instance.external_id]
        provider.calls.clear()

        report = await make_stack(network, refresh=True).apply()

        assert report.ok
        assert report.nodes[INSTANCE].operation is Operation.CREATE
        assert provider.ops("create") == ["instance"]

    @pytest.mark.asyncio
    async def test_refreshed_secret_stays_sealed(self, database_stack, store):
        await database_stack().apply()
        stack = database_stack()

        records = await stack.refresh()

        assert isinstance(records["fake.db.Instance/db"].outputs["password"], Secret)
        assert "hunter2" not in store.path.read_text()


class TestDefaults:
    """Tests for Stack defaults."""

    @pytest.mark.asyncio
    async def test_default_registry_has_null_provider(self, tmp_path):
        manifest = StackManifest.from_yaml(
            """
environment: review
resources:
  - type: null.Resource
    name: a
    properties:
      value: 1
  - type: null.Resource
    name: b
    properties:
      copied: ${null.Resource/a.value}
"""
        )
        store = LocalStateStore(tmp_path / "review.json")
        async with Stack(manifest, store) as stack:
            assert stack.options.environment == "review"
            report = await stack.apply()

        assert report.ok
        state = await store.load()
        assert state["null.Resource/b"].outputs["copied"] == 1


class TestReviewExample:
    """The bundled review manifest applies end to end with the null provider."""

    @pytest.fixture
    def review(self):
        path = Path(__file__).parents[2] / "examples" / "review.yaml"
        resolver = SecretResolver(environ={"DB_USER": "scorer", "DB_PASSWORD": "hunter2"})
        return StackManifest.from_file(str(path), resolver)

    @pytest.mark.asyncio
    async def test_apply_and_reapply(self, review, tmp_path):
        store = LocalStateStore(tmp_path / "review.json")
        stack = Stack(review, store, options=RunOptions(environment="review", base_delay=0.0))

        report = await stack.apply()

        assert report.ok, [n.error for n in report.failed]
        assert len(report.succeeded) == len(review.resources)
        assert report.exports["rdsEndpoint"] == "scorer-db.review.internal"
        assert isinstance(report.exports["rdsConnectionUrl"], Secret)
        assert "hunter2" not in store.path.read_text()

        again = await stack.apply()
        assert all(n.outcome is Outcome.UNCHANGED for n in again.nodes.values())

    @pytest.mark.asyncio
    async def test_protected_database_survives_destroy(self, review, tmp_path):
        store = LocalStateStore(tmp_path / "review.json")
        stack = Stack(review, store, options=RunOptions(environment="review", base_delay=0.0))
        await stack.apply()

        report = await stack.destroy()

        assert report.nodes["null.rds.Instance/scorer-db"].outcome is Outcome.FAILED
        assert set(await store.load()) == {
            "null.ec2.Vpc/scorer",
            "null.ec2.SecurityGroup/scorer-db-secgrp",
            "null.rds.SubnetGroup/scorer-db-subnet",
            "null.rds.Instance/scorer-db",
        }
