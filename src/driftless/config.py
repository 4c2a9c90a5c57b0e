"""Run configuration."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, fields
from typing import Any

from .naming import DEFAULT_ENVIRONMENT, ENV_PREFIX, validate_name

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


@dataclass(frozen=True)
class RunOptions:
    """
    Options for one plan/apply/destroy run.

    Attributes:
        environment: Target environment name (e.g., "review")
        concurrency: Maximum provider operations in flight at once
        dry_run: Produce the change set and schedule without executing
        max_attempts: Attempts per provider call for retryable errors
        base_delay: First retry delay in seconds (doubles each retry)
        max_delay: Upper bound for a single retry delay in seconds
        refresh: Read every recorded resource from its provider before diffing
    """

    environment: str = DEFAULT_ENVIRONMENT
    concurrency: int = 10
    dry_run: bool = False
    max_attempts: int = 5
    base_delay: float = 0.5
    max_delay: float = 30.0
    refresh: bool = False

    def __post_init__(self) -> None:
        validate_name(self.environment, "environment")
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be non-negative")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")

    def retry_delay(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based)."""
        return float(min(self.base_delay * (2 ** (attempt - 1)), self.max_delay))

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        **overrides: Any,
    ) -> RunOptions:
        """
        Build options from ``DRIFTLESS_*`` environment variables.

        Explicit ``overrides`` that are not None take precedence, e.g.
        ``DRIFTLESS_CONCURRENCY=4`` is overridden by ``concurrency=8``.
        """
        environ = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for f in fields(cls):
            raw = environ.get(f"{ENV_PREFIX}{f.name.upper()}")
            if raw is None:
                continue
            values[f.name] = _coerce(f.name, raw, f.default)
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


def _coerce(name: str, raw: str, default: Any) -> Any:
    if isinstance(default, bool):
        lowered = raw.strip().lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
        raise ValueError(f"{ENV_PREFIX}{name.upper()} must be a boolean, got {raw!r}")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw
