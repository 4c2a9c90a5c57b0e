"""Naming utilities.

Centralized validation for resource names, resource types and environment
names, plus resolution of defaults from environment variables.

- Resource names: alphanumerics, hyphens and underscores, starting with a letter.
  Periods and slashes are reserved for references (``type/name.output``).
- Resource types: dotted segments, first segment lowercase (``aws.ec2.Vpc``).
- Environment names: same rules as resource names.
"""

import os
import re

from .exceptions import ValidationError

ENV_PREFIX = "DRIFTLESS_"
"""Prefix for all environment variables read by driftless."""

ENVIRONMENT_ENV_VAR = f"{ENV_PREFIX}ENVIRONMENT"
"""Environment variable for overriding the target environment name."""

STATE_ENV_VAR = f"{ENV_PREFIX}STATE"
"""Environment variable for overriding the state backend location."""

LOCK_TABLE_ENV_VAR = f"{ENV_PREFIX}LOCK_TABLE"
"""Environment variable naming the DynamoDB lock table for S3 state."""

DEFAULT_ENVIRONMENT = "default"
DEFAULT_LOCK_TABLE = "driftless-locks"

MAX_NAME_LENGTH = 128

NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_-]*$")
TYPE_PATTERN = re.compile(r"^[a-z][a-z0-9_]*(\.[A-Za-z][A-Za-z0-9_]*)+$")


def validate_name(name: str, field: str = "name") -> None:
    """
    Validate a resource or environment name.

    Args:
        name: The user-provided identifier
        field: Field name used in error messages

    Raises:
        ValidationError: If the name contains invalid characters
    """
    if not name:
        raise ValidationError(field, name, "Name cannot be empty")

    if "." in name:
        raise ValidationError(
            field,
            name,
            "Contains period. Periods separate output paths in references.",
        )
    if "/" in name:
        raise ValidationError(
            field,
            name,
            "Contains slash. Slashes separate the type from the name in references.",
        )
    if " " in name:
        raise ValidationError(
            field,
            name,
            "Contains spaces. Use hyphens instead (e.g., 'my-db' not 'my db')",
        )

    if not NAME_PATTERN.match(name):
        raise ValidationError(
            field,
            name,
            "Must start with a letter and contain only alphanumerics, hyphens and underscores.",
        )

    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError(
            field,
            name,
            f"Too long. Name exceeds {MAX_NAME_LENGTH} character limit.",
        )


def validate_type(resource_type: str) -> None:
    """
    Validate a resource type such as ``aws.rds.Instance``.

    Raises:
        ValidationError: If the type is not a dotted identifier
    """
    if not resource_type or not TYPE_PATTERN.match(resource_type):
        raise ValidationError(
            "type",
            resource_type,
            "Expected dotted segments with a lowercase provider prefix (e.g., 'aws.ec2.Vpc').",
        )


def resolve_environment(environment: str | None) -> str:
    """Resolve the environment name from explicit arg, env var, or default.

    Resolution order: ``environment`` arg → ``DRIFTLESS_ENVIRONMENT`` → ``"default"``.
    """
    name = environment or os.environ.get(ENVIRONMENT_ENV_VAR) or DEFAULT_ENVIRONMENT
    validate_name(name, "environment")
    return name


def resolve_state_location(location: str | None, environment: str) -> str:
    """Resolve the state backend location.

    Resolution order: ``location`` arg → ``DRIFTLESS_STATE`` →
    ``.driftless/<environment>.json``.
    """
    return location or os.environ.get(STATE_ENV_VAR) or f".driftless/{environment}.json"


def resolve_lock_table(lock_table: str | None) -> str:
    """Resolve the DynamoDB lock table name for S3 state."""
    return lock_table or os.environ.get(LOCK_TABLE_ENV_VAR) or DEFAULT_LOCK_TABLE
