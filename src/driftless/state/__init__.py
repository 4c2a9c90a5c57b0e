"""State stores: persisted last-applied state plus the cross-run lock."""

from __future__ import annotations

from ..naming import resolve_lock_table
from .base import STATE_VERSION, StateStore, decode_state, encode_state, locked
from .local import LocalStateStore


def open_state_store(
    location: str,
    lock_table: str | None = None,
    region: str | None = None,
    endpoint_url: str | None = None,
) -> StateStore:
    """
    Create the state store for a location.

    ``s3://bucket/key`` selects :class:`~driftless.state.s3.S3StateStore`;
    anything else is a local file path.
    """
    if location.startswith("s3://"):
        from .s3 import S3StateStore

        bucket, _, key = location[len("s3://") :].partition("/")
        if not bucket or not key:
            raise ValueError(f"Expected s3://<bucket>/<key>, got {location!r}")
        return S3StateStore(
            bucket=bucket,
            key=key,
            lock_table=resolve_lock_table(lock_table),
            region=region,
            endpoint_url=endpoint_url,
        )
    return LocalStateStore(location)


__all__ = [
    "STATE_VERSION",
    "LocalStateStore",
    "StateStore",
    "decode_state",
    "encode_state",
    "locked",
    "open_state_store",
]
