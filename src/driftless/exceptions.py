"""Exceptions for driftless."""

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .models import LockInfo, ResourceId


# ---------------------------------------------------------------------------
# Base Exception
# ---------------------------------------------------------------------------


class DriftlessError(Exception):
    """
    Base exception for all driftless errors.

    All exceptions raised by this library inherit from this class,
    allowing callers to catch all library-specific errors with a single
    except clause.
    """

    pass


# ---------------------------------------------------------------------------
# Category Exceptions
# ---------------------------------------------------------------------------


class GraphError(DriftlessError):
    """
    Base exception for errors found while building the resource graph.

    These are raised before any state is touched or any provider is called.
    """

    pass


class StateError(DriftlessError):
    """
    Base exception for state store errors.

    This includes lock contention and unreadable state documents.
    """

    pass


class ExecutionError(DriftlessError):
    """
    Base exception for scheduling and execution errors.

    Node-local execution errors are recorded in the run report instead of
    aborting the run.
    """

    pass


# ---------------------------------------------------------------------------
# Validation Exceptions
# ---------------------------------------------------------------------------


class ValidationError(DriftlessError):
    """
    Raised when a manifest value, name or option is invalid.

    Attributes:
        field: Name of the field that failed validation
        value: The offending value
        reason: Human-readable explanation
    """

    def __init__(self, field: str, value: Any, reason: str) -> None:
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {field} {value!r}: {reason}")


class SecretResolutionError(DriftlessError):
    """Raised when a secret cannot be sourced or revealed."""

    def __init__(self, source: str, reason: str) -> None:
        self.source = source
        self.reason = reason
        super().__init__(f"Cannot resolve secret {source}: {reason}")


# ---------------------------------------------------------------------------
# Graph Exceptions
# ---------------------------------------------------------------------------


class CycleError(GraphError):
    """
    Raised when the declared resources reference each other in a cycle.

    Attributes:
        cycle: Resource ids along the cycle, first element repeated at the end
    """

    def __init__(self, cycle: list["ResourceId"]) -> None:
        self.cycle = cycle
        path = " -> ".join(str(rid) for rid in cycle)
        super().__init__(f"Dependency cycle detected: {path}")


class DuplicateIdentifierError(GraphError):
    """Raised when two declarations share a (type, name) pair."""

    def __init__(self, resource_id: "ResourceId") -> None:
        self.resource_id = resource_id
        super().__init__(f"Resource declared more than once: {resource_id}")


class UnknownReferenceError(GraphError):
    """Raised when a declaration references a resource that is not declared."""

    def __init__(self, consumer: "ResourceId", producer: "ResourceId") -> None:
        self.consumer = consumer
        self.producer = producer
        super().__init__(f"{consumer} references undeclared resource {producer}")


# ---------------------------------------------------------------------------
# State Exceptions
# ---------------------------------------------------------------------------


class LockHeldError(StateError):
    """
    Raised when another run holds the state lock.

    Attributes:
        location: State location that is locked
        info: Lock info recorded by the holder, if readable
    """

    def __init__(self, location: str, info: "LockInfo | None" = None) -> None:
        self.location = location
        self.info = info
        msg = f"State {location} is locked"
        if info is not None:
            msg += f" by run {info.run_id} ({info.holder}, since {info.acquired_at})"
        super().__init__(msg)


class StateCorruptError(StateError):
    """Raised when a state document cannot be parsed."""

    def __init__(self, location: str, reason: str) -> None:
        self.location = location
        self.reason = reason
        super().__init__(f"State {location} is unreadable: {reason}")


# ---------------------------------------------------------------------------
# Provider Exceptions
# ---------------------------------------------------------------------------


class ProviderError(DriftlessError):
    """
    Raised by providers when a resource operation fails.

    Attributes:
        retryable: Whether the engine may retry the operation with backoff
        resource_type: Resource type the provider was acting on (if known)
    """

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = False,
        resource_type: str | None = None,
    ) -> None:
        self.retryable = retryable
        self.resource_type = resource_type
        super().__init__(message)


class ResourceNotFoundError(ProviderError):
    """Raised by read/delete when the external resource no longer exists."""

    def __init__(self, external_id: str, resource_type: str | None = None) -> None:
        self.external_id = external_id
        super().__init__(
            f"Resource not found: {external_id}",
            retryable=False,
            resource_type=resource_type,
        )


class RequiresReplacement(ProviderError):  # noqa: N818
    """
    Raised by update when the change cannot be applied in place.

    The engine answers by replacing the resource.
    """

    def __init__(self, external_id: str, properties: list[str] | None = None) -> None:
        self.external_id = external_id
        self.properties = properties or []
        detail = f" ({', '.join(self.properties)})" if self.properties else ""
        super().__init__(f"Update of {external_id} requires replacement{detail}")


class ProviderNotFoundError(DriftlessError):
    """Raised when no provider is registered for a resource type."""

    def __init__(self, resource_type: str) -> None:
        self.resource_type = resource_type
        super().__init__(f"No provider registered for resource type '{resource_type}'")


# ---------------------------------------------------------------------------
# Execution Exceptions
# ---------------------------------------------------------------------------


class DependencyFailedError(ExecutionError):
    """
    Recorded when a node cannot run because a producer did not succeed.

    Never retried: the node can only run once its producers succeed.
    """

    def __init__(self, resource_id: "ResourceId", producers: list["ResourceId"]) -> None:
        self.resource_id = resource_id
        self.producers = producers
        names = ", ".join(str(p) for p in producers)
        super().__init__(f"{resource_id} skipped: dependency failed ({names})")


class UnschedulableError(ExecutionError):
    """Raised when ordering constraints between steps are contradictory."""

    def __init__(self, steps: list[str]) -> None:
        self.steps = steps
        super().__init__(f"Cannot schedule steps with contradictory ordering: {', '.join(steps)}")


class ProtectedResourceError(ExecutionError):
    """Raised instead of deleting a resource marked as protected."""

    def __init__(self, resource_id: "ResourceId") -> None:
        self.resource_id = resource_id
        super().__init__(
            f"{resource_id} is protected; set protect: false and apply before deleting it"
        )
