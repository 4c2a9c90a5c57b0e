"""Unit test fixtures: in-memory provider and moto-backed AWS."""

import asyncio
from collections.abc import Awaitable
from typing import Any
from unittest.mock import patch

import pytest
from moto import mock_aws

from driftless import (
    ProviderCapabilities,
    ProviderError,
    ProviderRegistry,
    RequiresReplacement,
    ResourceNotFoundError,
    RunOptions,
    Stack,
    StackManifest,
)
from driftless.state import LocalStateStore
from driftless.values import reveal_all


class FakeProvider:
    """
    In-memory provider recording every call.

    Resources are identified in ``calls`` by their ``name`` property, so
    manifests used with this provider give every resource one.
    """

    def __init__(
        self,
        force_replacement: tuple[str, ...] = (),
        create_before_delete: bool = False,
        supports_abort: bool = False,
    ) -> None:
        self.caps = ProviderCapabilities(
            force_replacement=frozenset(force_replacement),
            create_before_delete=create_before_delete,
            supports_abort=supports_abort,
        )
        self.resources: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[tuple[str, str], list[BaseException]] = {}
        self.requires_replacement: set[str] = set()
        self.delay = 0.0
        self.gate: asyncio.Event | None = None
        self.entered = asyncio.Event()
        self.running = 0
        self.max_running = 0
        self._counter = 0

    def fail(self, op: str, name: str, *errors: BaseException) -> None:
        """Queue errors raised by the next calls of ``op`` for ``name``."""
        self.failures.setdefault((op, name), []).extend(errors)

    def ops(self, op: str) -> list[str]:
        return [name for call_op, name in self.calls if call_op == op]

    def capabilities(self, resource_type: str) -> ProviderCapabilities:
        return self.caps

    async def _enter(self, op: str, name: str) -> None:
        self.calls.append((op, name))
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        self.entered.set()
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            queued = self.failures.get((op, name))
            if queued:
                raise queued.pop(0)
        finally:
            self.running -= 1

    def _name(self, external_id: str) -> str:
        resource = self.resources.get(external_id)
        if resource is None:
            return external_id
        return str(resource.get("name", external_id))

    async def create(
        self, resource_type: str, config: dict[str, Any]
    ) -> tuple[str, dict[str, Any]]:
        name = str(config.get("name", resource_type))
        await self._enter("create", name)
        self._counter += 1
        external_id = f"{resource_type.rsplit('.', 1)[-1].lower()}-{self._counter}"
        self.resources[external_id] = reveal_all(config)
        return external_id, {**config, "arn": f"arn:fake:{external_id}"}

    async def read(self, resource_type: str, external_id: str) -> dict[str, Any]:
        await self._enter("read", self._name(external_id))
        if external_id not in self.resources:
            raise ResourceNotFoundError(external_id, resource_type)
        return {**self.resources[external_id], "arn": f"arn:fake:{external_id}"}

    async def update(
        self, resource_type: str, external_id: str, config: dict[str, Any]
    ) -> dict[str, Any]:
        name = self._name(external_id)
        await self._enter("update", name)
        if name in self.requires_replacement:
            raise RequiresReplacement(external_id, ["immutable"])
        if external_id not in self.resources:
            raise ResourceNotFoundError(external_id, resource_type)
        self.resources[external_id] = reveal_all(config)
        return {**config, "arn": f"arn:fake:{external_id}"}

    async def delete(self, resource_type: str, external_id: str) -> None:
        await self._enter("delete", self._name(external_id))
        if self.resources.pop(external_id, None) is None:
            raise ResourceNotFoundError(external_id, resource_type)


def transient(message: str = "throttled") -> ProviderError:
    return ProviderError(message, retryable=True)


NETWORK_MANIFEST = """
environment: review
resources:
  - type: fake.ec2.Vpc
    name: main
    properties:
      name: vpc
      cidr: 10.0.0.0/16
  - type: fake.ec2.Subnet
    name: a
    properties:
      name: subnet
      vpc_id: ${fake.ec2.Vpc/main.id}
      cidr: 10.0.1.0/24
  - type: fake.ec2.Instance
    name: web
    properties:
      name: instance
      subnet_id: ${fake.ec2.Subnet/a.id}
      size: small
exports:
  instance_arn: ${fake.ec2.Instance/web.arn}
"""


@pytest.fixture
def provider():
    """Fake provider registered for every ``fake.*`` type."""
    return FakeProvider()


@pytest.fixture
def registry(provider):
    registry = ProviderRegistry()
    registry.register("fake", provider)
    return registry


@pytest.fixture
def options():
    return RunOptions(environment="review", base_delay=0.0, max_delay=0.0)


@pytest.fixture
def store(tmp_path):
    return LocalStateStore(tmp_path / "state" / "review.json")


@pytest.fixture
def make_stack(store, registry, options):
    """Build a stack from YAML against the shared store and provider."""

    def _make(yaml_str: str, **overrides: Any) -> Stack:
        run_options = RunOptions(
            **{
                "environment": options.environment,
                "base_delay": options.base_delay,
                "max_delay": options.max_delay,
                **overrides,
            }
        )
        return Stack(StackManifest.from_yaml(yaml_str), store, registry, run_options)

    return _make


@pytest.fixture
def aws_credentials(monkeypatch):
    """Mock AWS credentials for moto."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
    # moto cannot read aiobotocore's async aws-chunked bodies
    monkeypatch.setenv("AWS_REQUEST_CHECKSUM_CALCULATION", "when_required")
    # Unset AWS_ENDPOINT_URL to ensure moto intercepts requests
    monkeypatch.delenv("AWS_ENDPOINT_URL", raising=False)


@pytest.fixture
def mock_aws_services(aws_credentials):
    """Mock S3, DynamoDB and Secrets Manager."""
    with mock_aws():
        yield


def _patch_aiobotocore_response():
    """
    Patch aiobotocore to work with moto's sync responses.

    Moto returns botocore.awsrequest.AWSResponse which has sync content,
    but aiobotocore expects async content. This patch wraps the response
    handling to convert sync content to async.

    See: https://github.com/aio-libs/aiobotocore/discussions/1300
    """
    from aiobotocore import endpoint

    original_convert = endpoint.convert_to_response_dict

    async def patched_convert(http_response, operation_model):
        # If content is not awaitable (moto's sync response), wrap it
        if hasattr(http_response, "_content") and not isinstance(http_response._content, Awaitable):
            fut: asyncio.Future[bytes] = asyncio.Future()
            fut.set_result(http_response.content)
            http_response._content = fut
        return await original_convert(http_response, operation_model)

    return patch.object(endpoint, "convert_to_response_dict", patched_convert)


@pytest.fixture
def patched_aiobotocore():
    with _patch_aiobotocore_response():
        yield


@pytest.fixture
def network():
    """Vpc -> Subnet -> Instance manifest for the fake provider."""
    return NETWORK_MANIFEST
