"""Secret and environment value sourcing for manifests.

Supported sources:

- ``env:NAME``: a plain (non-secret) value from the process environment
- ``secret:NAME``: a secret value from the process environment
- ``secret:aws:<secret-id>``: the SecretString of an AWS Secrets Manager secret
- ``secret:aws:<secret-id>#<key>``: one key of a JSON SecretString
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from typing import Any

import boto3
from botocore.exceptions import ClientError

from .exceptions import SecretResolutionError
from .values import Secret

logger = logging.getLogger(__name__)

AWS_PREFIX = "aws:"


class SecretResolver:
    """
    Resolves ``env:`` and ``secret:`` manifest tokens.

    AWS Secrets Manager lookups are cached per secret id for the lifetime
    of the resolver.

    Args:
        environ: Environment mapping (default: ``os.environ``)
        region: AWS region for Secrets Manager (default: boto3 defaults)
        endpoint_url: Optional endpoint URL (for LocalStack)
        client: Optional boto3 Secrets Manager client (injected for testing)
    """

    def __init__(
        self,
        environ: Mapping[str, str] | None = None,
        region: str | None = None,
        endpoint_url: str | None = None,
        client: Any | None = None,
    ) -> None:
        self._environ = environ if environ is not None else os.environ
        self.region = region
        self.endpoint_url = endpoint_url
        self._client = client
        self._cache: dict[str, str] = {}

    def env(self, name: str) -> str:
        """Return a plain value from the environment."""
        value = self._environ.get(name)
        if value is None:
            raise SecretResolutionError(f"env:{name}", "environment variable is not set")
        return value

    def secret(self, spec: str) -> Secret:
        """Resolve a ``secret:`` token body into a :class:`Secret`."""
        if spec.startswith(AWS_PREFIX):
            secret_id, _, key = spec[len(AWS_PREFIX) :].partition("#")
            return Secret(self._aws_secret(secret_id, key or None), source=f"secret:{spec}")

        value = self._environ.get(spec)
        if value is None:
            raise SecretResolutionError(f"secret:{spec}", "environment variable is not set")
        return Secret(value, source=f"secret:{spec}")

    def _get_client(self) -> Any:
        if self._client is None:
            kwargs: dict[str, Any] = {}
            if self.region:
                kwargs["region_name"] = self.region
            if self.endpoint_url:
                kwargs["endpoint_url"] = self.endpoint_url
            self._client = boto3.client("secretsmanager", **kwargs)
        return self._client

    def _aws_secret(self, secret_id: str, key: str | None) -> str:
        source = f"secret:aws:{secret_id}"
        if not secret_id:
            raise SecretResolutionError(source, "secret id is empty")

        if secret_id not in self._cache:
            logger.debug("Fetching secret %s from Secrets Manager", secret_id)
            try:
                response = self._get_client().get_secret_value(SecretId=secret_id)
            except ClientError as e:
                code = e.response["Error"]["Code"]
                raise SecretResolutionError(source, code) from e
            if "SecretString" not in response:
                raise SecretResolutionError(source, "binary secrets are not supported")
            self._cache[secret_id] = response["SecretString"]

        raw = self._cache[secret_id]
        if key is None:
            return raw

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise SecretResolutionError(f"{source}#{key}", "secret is not a JSON object") from e
        if not isinstance(data, dict) or key not in data:
            raise SecretResolutionError(f"{source}#{key}", f"key '{key}' not found")
        return str(data[key])
