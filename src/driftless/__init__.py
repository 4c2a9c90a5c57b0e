"""
driftless - Declarative infrastructure provisioning.

Resources are declared in a manifest, ordered by the references between
them, and reconciled against the last-applied state through pluggable
providers.

Example:
    from driftless import Stack, StackManifest, open_state_store

    manifest = StackManifest.from_file("driftless.yaml")
    async with Stack(manifest, open_state_store(".driftless/review.json")) as stack:
        report = await stack.apply()
"""

from .config import RunOptions
from .engine import Executor
from .exceptions import (
    CycleError,
    DependencyFailedError,
    DriftlessError,
    DuplicateIdentifierError,
    ExecutionError,
    GraphError,
    LockHeldError,
    ProtectedResourceError,
    ProviderError,
    ProviderNotFoundError,
    RequiresReplacement,
    ResourceNotFoundError,
    SecretResolutionError,
    StateCorruptError,
    StateError,
    UnknownReferenceError,
    UnschedulableError,
    ValidationError,
)
from .graph import ResourceGraph, build_graph
from .manifest import StackManifest
from .models import (
    Change,
    ChangeSet,
    NodeReport,
    NodeStatus,
    Operation,
    Outcome,
    ResourceDeclaration,
    ResourceId,
    RunReport,
    StateRecord,
    Timeouts,
)
from .providers import NullProvider, Provider, ProviderCapabilities, ProviderRegistry
from .scheduler import Schedule, Step, StepAction, schedule
from .secrets import SecretResolver
from .stack import Plan, Stack
from .state import LocalStateStore, StateStore, open_state_store
from .values import Interpolation, Reference, Secret

try:
    from ._version import __version__  # type: ignore[import-not-found]
except ImportError:
    __version__ = "0.0.0+unknown"

__all__ = [
    # Version
    "__version__",
    # Orchestration
    "Stack",
    "Plan",
    "StackManifest",
    "RunOptions",
    "Executor",
    # Graph and scheduling
    "ResourceGraph",
    "build_graph",
    "Schedule",
    "Step",
    "StepAction",
    "schedule",
    # Models
    "Change",
    "ChangeSet",
    "NodeReport",
    "NodeStatus",
    "Operation",
    "Outcome",
    "ResourceDeclaration",
    "ResourceId",
    "RunReport",
    "StateRecord",
    "Timeouts",
    # Values
    "Interpolation",
    "Reference",
    "Secret",
    "SecretResolver",
    # Providers
    "Provider",
    "ProviderCapabilities",
    "ProviderRegistry",
    "NullProvider",
    # State
    "StateStore",
    "LocalStateStore",
    "open_state_store",
    # Exceptions
    "DriftlessError",
    "GraphError",
    "StateError",
    "ExecutionError",
    "ValidationError",
    "SecretResolutionError",
    "CycleError",
    "DuplicateIdentifierError",
    "UnknownReferenceError",
    "LockHeldError",
    "StateCorruptError",
    "ProviderError",
    "ResourceNotFoundError",
    "RequiresReplacement",
    "ProviderNotFoundError",
    "DependencyFailedError",
    "UnschedulableError",
    "ProtectedResourceError",
]
