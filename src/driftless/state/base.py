"""State store protocol and state document encoding."""

from __future__ import annotations

import getpass
import json
import socket
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from ..exceptions import StateCorruptError, ValidationError
from ..models import LockInfo, StateRecord

STATE_VERSION = 1


@runtime_checkable
class StateStore(Protocol):
    """
    Protocol for state backends.

    ``save`` must be atomic: a crash while saving leaves the previously
    committed document readable. ``lock`` serializes runs against the same
    location and raises ``LockHeldError`` when another run holds it.
    """

    @property
    def location(self) -> str:
        """Human-readable backend location."""
        ...

    async def load(self) -> dict[str, StateRecord]:
        """Load all records keyed by state key (empty if none saved yet)."""
        ...

    async def save(self, records: dict[str, StateRecord]) -> None:
        """Atomically replace the stored records."""
        ...

    async def lock(self, run_id: str) -> LockInfo:
        """Acquire the run lock or raise ``LockHeldError``."""
        ...

    async def unlock(self, run_id: str) -> None:
        """Release the lock if held by ``run_id``."""
        ...

    async def force_unlock(self) -> LockInfo | None:
        """Remove any lock regardless of holder; returns the removed lock info."""
        ...

    async def close(self) -> None:
        """Release backend clients."""
        ...


def new_lock_info(run_id: str) -> LockInfo:
    """Lock info describing the current process."""
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return LockInfo(
        run_id=run_id,
        holder=f"{user}@{socket.gethostname()}",
        acquired_at=datetime.now(UTC).isoformat(),
    )


@asynccontextmanager
async def locked(store: StateStore, run_id: str) -> AsyncIterator[LockInfo]:
    """Hold the store lock for the duration of the block."""
    info = await store.lock(run_id)
    try:
        yield info
    finally:
        await store.unlock(run_id)


def encode_state(records: dict[str, StateRecord]) -> bytes:
    """Serialize records into a versioned JSON state document."""
    document = {
        "version": STATE_VERSION,
        "serial_at": datetime.now(UTC).isoformat(),
        "resources": [records[key].to_dict() for key in sorted(records)],
    }
    return json.dumps(document, indent=2, sort_keys=False).encode()


def decode_state(data: bytes | str, location: str) -> dict[str, StateRecord]:
    """
    Parse a state document.

    Raises:
        StateCorruptError: If the document is not valid state JSON
    """
    try:
        document: Any = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise StateCorruptError(location, f"invalid JSON: {e}") from e

    if not isinstance(document, dict):
        raise StateCorruptError(location, "document is not an object")
    version = document.get("version")
    if version != STATE_VERSION:
        raise StateCorruptError(location, f"unsupported state version {version!r}")

    records: dict[str, StateRecord] = {}
    try:
        for raw in document.get("resources", []):
            record = StateRecord.from_dict(raw)
            records[record.key] = record
    except (KeyError, TypeError, ValueError, ValidationError) as e:
        raise StateCorruptError(location, f"malformed resource record: {e}") from e
    return records
