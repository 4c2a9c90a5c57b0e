"""Configuration value types: references, secrets and interpolations.

Declared configuration is a tree of plain JSON-like values plus three
markers:

- :class:`Reference` points at another resource's output and becomes a graph edge.
- :class:`Secret` wraps a sensitive string. It never prints its value and is
  stored as a digest (:class:`Sealed`) in state.
- :class:`Interpolation` is a string template mixing literals, references and
  secrets.

Hashing goes through :func:`fingerprint`, which only ever sees secret digests.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .exceptions import SecretResolutionError

if TYPE_CHECKING:
    from .models import ResourceId

REDACTED = "[secret]"

# JSON markers used for sealed values in state documents and fingerprints
SECRET_MARKER = "$secret"
REF_MARKER = "$ref"
INTERP_MARKER = "$interp"


def _digest(value: str) -> str:
    return "sha256:" + hashlib.sha256(value.encode()).hexdigest()


class Secret:
    """A sensitive string value.

    ``str()`` and ``repr()`` are redacted. Providers call :meth:`reveal`
    only at the point where the plaintext is needed.
    """

    __slots__ = ("_value", "source")

    def __init__(self, value: str, source: str | None = None) -> None:
        self._value = value
        self.source = source

    def reveal(self) -> str:
        return self._value

    @property
    def digest(self) -> str:
        return _digest(self._value)

    def __str__(self) -> str:
        return REDACTED

    def __repr__(self) -> str:
        return f"Secret({REDACTED})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, (Secret, Sealed)):
            return self.digest == other.digest
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.digest)


class Sealed:
    """A secret loaded back from state: only its digest is known."""

    __slots__ = ("digest",)

    def __init__(self, digest: str) -> None:
        self.digest = digest

    def reveal(self) -> str:
        raise SecretResolutionError(
            "sealed state value", "plaintext is not stored; read it back from the provider"
        )

    def __str__(self) -> str:
        return REDACTED

    def __repr__(self) -> str:
        return f"Sealed({self.digest[:15]}...)"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, (Secret, Sealed)):
            return self.digest == other.digest
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.digest)


@dataclass(frozen=True)
class Reference:
    """Reference to an output of another resource.

    Attributes:
        producer: Id of the resource that produces the value
        path: Output property path (``("endpoint",)`` or ``("options", "0", "name")``)
    """

    producer: ResourceId
    path: tuple[str, ...]

    @property
    def path_str(self) -> str:
        return ".".join(self.path)

    def __str__(self) -> str:
        return f"${{{self.producer}.{self.path_str}}}"

    def lookup(self, outputs: Mapping[str, Any]) -> Any:
        """Walk ``path`` through ``outputs``; list segments are indices.

        Raises:
            KeyError: If the path does not exist in the outputs
        """
        current: Any = outputs
        for segment in self.path:
            if isinstance(current, Mapping) and segment in current:
                current = current[segment]
            elif isinstance(current, (list, tuple)) and segment.isdigit():
                index = int(segment)
                if index >= len(current):
                    raise KeyError(self.path_str)
                current = current[index]
            else:
                raise KeyError(self.path_str)
        return current


@dataclass(frozen=True)
class Interpolation:
    """String template made of literal, :class:`Reference` and :class:`Secret` parts."""

    parts: tuple[Any, ...]

    @property
    def is_secret(self) -> bool:
        return any(isinstance(p, (Secret, Sealed)) for p in self.parts)

    def __str__(self) -> str:
        return "".join(str(p) for p in self.parts)


# ---------------------------------------------------------------------------
# Tree helpers
# ---------------------------------------------------------------------------


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every reference in a configuration tree, depth first."""
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, Interpolation):
        for part in value.parts:
            yield from iter_references(part)
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_references(item)


def resolve(value: Any, lookup: Callable[[Reference], Any]) -> Any:
    """Replace references with their values; secrets stay wrapped.

    An interpolation with a secret part resolves to a :class:`Secret`.
    """
    if isinstance(value, Reference):
        return lookup(value)
    if isinstance(value, Interpolation):
        resolved = [resolve(part, lookup) for part in value.parts]
        if any(isinstance(p, Sealed) for p in resolved):
            # Cannot build the plaintext; keep a stable digest of the parts
            return Sealed(_digest(json.dumps([_canonical(p) for p in resolved])))
        if any(isinstance(p, Secret) for p in resolved):
            text = "".join(p.reveal() if isinstance(p, Secret) else _text(p) for p in resolved)
            return Secret(text)
        return "".join(_text(p) for p in resolved)
    if isinstance(value, Mapping):
        return {k: resolve(v, lookup) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve(v, lookup) for v in value]
    return value


def substitute(value: Any, lookup: Callable[[Reference], Any]) -> Any:
    """Replace references with their values but keep interpolations structured.

    Fingerprints of the result do not depend on whether a secret is held as
    plaintext or only as a sealed digest.
    """
    if isinstance(value, Reference):
        return lookup(value)
    if isinstance(value, Interpolation):
        return Interpolation(tuple(substitute(part, lookup) for part in value.parts))
    if isinstance(value, Mapping):
        return {k: substitute(v, lookup) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [substitute(v, lookup) for v in value]
    return value


def rewrap(stored: Any, fresh: Any) -> Any:
    """Wrap plaintext in ``fresh`` wherever ``stored`` held a secret.

    Providers reading a resource back may return sensitive outputs as plain
    strings; this keeps them secret when merged over recorded outputs.
    """
    if isinstance(stored, (Secret, Sealed)) and isinstance(fresh, str):
        return Secret(fresh)
    if isinstance(stored, Mapping) and isinstance(fresh, Mapping):
        return {k: rewrap(stored.get(k), v) for k, v in fresh.items()}
    if isinstance(stored, (list, tuple)) and isinstance(fresh, (list, tuple)):
        return [rewrap(stored[i] if i < len(stored) else None, v) for i, v in enumerate(fresh)]
    return fresh


def contains_sealed(value: Any) -> bool:
    """True if any leaf is a :class:`Sealed` value."""
    if isinstance(value, Sealed):
        return True
    if isinstance(value, Mapping):
        return any(contains_sealed(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_sealed(v) for v in value)
    return False


def reveal_all(value: Any) -> Any:
    """Return a copy with every secret replaced by its plaintext."""
    if isinstance(value, (Secret, Sealed)):
        return value.reveal()
    if isinstance(value, Mapping):
        return {k: reveal_all(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [reveal_all(v) for v in value]
    return value


def redact(value: Any) -> Any:
    """Return a JSON-friendly copy with secrets replaced by ``[secret]``."""
    if isinstance(value, (Secret, Sealed)):
        return REDACTED
    if isinstance(value, (Reference, Interpolation)):
        return str(value)
    if isinstance(value, Mapping):
        return {k: redact(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact(v) for v in value]
    return value


def _text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value)


# ---------------------------------------------------------------------------
# Sealing (state serialization) and fingerprints
# ---------------------------------------------------------------------------


def seal(value: Any) -> Any:
    """Convert a value to JSON with secrets reduced to their digests."""
    if isinstance(value, (Secret, Sealed)):
        return {SECRET_MARKER: value.digest}
    if isinstance(value, Mapping):
        return {k: seal(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [seal(v) for v in value]
    return value


def unseal(value: Any) -> Any:
    """Inverse of :func:`seal`; secrets come back as :class:`Sealed`."""
    if isinstance(value, dict):
        if set(value) == {SECRET_MARKER}:
            return Sealed(value[SECRET_MARKER])
        return {k: unseal(v) for k, v in value.items()}
    if isinstance(value, list):
        return [unseal(v) for v in value]
    return value


def _canonical(value: Any) -> Any:
    if isinstance(value, (Secret, Sealed)):
        return {SECRET_MARKER: value.digest}
    if isinstance(value, Reference):
        return {REF_MARKER: f"{value.producer}.{value.path_str}"}
    if isinstance(value, Interpolation):
        return {INTERP_MARKER: [_canonical(p) for p in value.parts]}
    if isinstance(value, Mapping):
        return {str(k): _canonical(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_canonical(v) for v in value]
    return value


def fingerprint(value: Any) -> str:
    """Stable SHA-256 of a configuration value (secrets contribute digests only)."""
    encoded = json.dumps(_canonical(value), sort_keys=True, separators=(",", ":"), default=str)
    return _digest(encoded)


def property_hashes(config: Mapping[str, Any]) -> dict[str, str]:
    """Fingerprint each top-level property of a configuration."""
    return {name: fingerprint(value) for name, value in config.items()}


def config_hash(hashes: Mapping[str, str]) -> str:
    """Combine per-property hashes into a single configuration hash."""
    return fingerprint(dict(sorted(hashes.items())))
