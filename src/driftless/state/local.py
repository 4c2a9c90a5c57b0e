"""Local JSON file state backend."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path

from ..exceptions import LockHeldError
from ..models import LockInfo, StateRecord
from .base import decode_state, encode_state, new_lock_info

logger = logging.getLogger(__name__)


class LocalStateStore:
    """
    State stored in a JSON file, locked by a sidecar ``.lock`` file.

    Saves write a temporary file in the same directory, fsync it and rename
    it over the state file, so readers only ever see a complete document.

    Args:
        path: Path of the state file (parent directories are created)
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")

    @property
    def location(self) -> str:
        return str(self.path)

    async def load(self) -> dict[str, StateRecord]:
        if not self.path.exists():
            return {}
        data = await asyncio.to_thread(self.path.read_bytes)
        return decode_state(data, self.location)

    async def save(self, records: dict[str, StateRecord]) -> None:
        await asyncio.to_thread(self._write_atomic, encode_state(records))
        logger.debug("Saved %d record(s) to %s", len(records), self.path)

    def _write_atomic(self, payload: bytes) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=self.path.parent)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def lock(self, run_id: str) -> LockInfo:
        info = new_lock_info(run_id)
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            raise LockHeldError(self.location, self._read_lock()) from None
        with os.fdopen(fd, "w") as f:
            json.dump(info.to_dict(), f)
        logger.debug("Acquired lock %s for run %s", self.lock_path, run_id)
        return info

    def _read_lock(self) -> LockInfo | None:
        try:
            return LockInfo.from_dict(json.loads(self.lock_path.read_text()))
        except (OSError, ValueError):
            return None

    async def unlock(self, run_id: str) -> None:
        current = self._read_lock()
        if current is not None and current.run_id != run_id:
            logger.warning(
                "Not releasing lock %s: held by run %s, not %s",
                self.lock_path,
                current.run_id,
                run_id,
            )
            return
        self.lock_path.unlink(missing_ok=True)

    async def force_unlock(self) -> LockInfo | None:
        current = self._read_lock()
        self.lock_path.unlink(missing_ok=True)
        return current

    async def close(self) -> None:
        return None
