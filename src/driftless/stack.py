"""Stack orchestration: plan, apply, destroy and refresh one environment."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any

from ulid import ULID

from .config import RunOptions
from .differ import compute_changes, compute_destroy
from .engine import Executor
from .exceptions import ResourceNotFoundError
from .graph import ResourceGraph, build_graph
from .manifest import StackManifest
from .models import ChangeSet, NodeReport, RunReport, StateRecord, state_key
from .providers.registry import ProviderRegistry
from .scheduler import Schedule, schedule
from .state.base import StateStore, locked
from .values import Reference, resolve, rewrap

logger = logging.getLogger(__name__)


def new_run_id() -> str:
    """Unique, time-sortable run identifier."""
    return str(ULID())


@dataclass
class Plan:
    """Result of planning: the change set and its execution order."""

    change_set: ChangeSet
    schedule: Schedule
    graph: ResourceGraph

    @property
    def has_changes(self) -> bool:
        return self.change_set.has_changes


class Stack:
    """
    Declared resources of one environment bound to a state store.

    Run-level errors (graph errors, lock contention, missing providers,
    unschedulable changes) are raised before any provider is called.
    Node-level failures end up in the returned :class:`RunReport`.

    Example:
        async with Stack(StackManifest.from_file("stack.yaml"), store) as stack:
            report = await stack.apply()
    """

    def __init__(
        self,
        manifest: StackManifest,
        store: StateStore,
        registry: ProviderRegistry | None = None,
        options: RunOptions | None = None,
    ) -> None:
        self.manifest = manifest
        self.store = store
        self.registry = registry or ProviderRegistry.default()
        if options is None:
            options = RunOptions.from_env(environment=manifest.environment)
        self.options = options
        self._executor: Executor | None = None
        self._cancel_requested = False

    async def __aenter__(self) -> Stack:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self.store.close()

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def plan(self) -> Plan:
        """Compute changes and their order without calling any provider."""
        graph = build_graph(self.manifest.resources)
        async with locked(self.store, new_run_id()):
            state = await self.store.load()
        return self._plan(graph, state)

    async def apply(self) -> RunReport:
        """
        Reconcile the environment with the manifest.

        With ``options.dry_run`` only the plan is computed and every node is
        reported Planned.
        """
        graph = build_graph(self.manifest.resources)
        run_id = new_run_id()
        report = self._new_report(run_id)

        async with locked(self.store, run_id):
            state = await self.store.load()
            if self.options.refresh:
                state = await self._refresh_records(state)
                if not self.options.dry_run:
                    await self.store.save(state)
            plan = self._plan(graph, state)
            logger.info("Plan for %s: %s", self.options.environment, _summary(plan.change_set))

            if self.options.dry_run:
                report.nodes = _planned_reports(plan.change_set)
            else:
                executor = self._start(plan, state)
                report.nodes = await executor.run()
                report.exports = self._resolve_exports(executor)

        return self._finish(report, "Apply")

    async def destroy(self) -> RunReport:
        """Delete every recorded resource, consumers before producers."""
        graph = build_graph(self.manifest.resources)
        run_id = new_run_id()
        report = self._new_report(run_id)

        async with locked(self.store, run_id):
            state = await self.store.load()
            self._check_providers(record.id.type for record in state.values())
            change_set = compute_destroy(state)
            plan = Plan(
                change_set=change_set,
                schedule=schedule(change_set, graph, state, self.registry.capabilities_for),
                graph=graph,
            )
            if self.options.dry_run:
                report.nodes = _planned_reports(change_set)
            else:
                report.nodes = await self._start(plan, state).run()

        return self._finish(report, "Destroy")

    async def refresh(self) -> dict[str, StateRecord]:
        """
        Read every recorded resource back from its provider.

        Records whose resource no longer exists are dropped; the others get
        fresh outputs. The refreshed state is saved and returned.
        """
        async with locked(self.store, new_run_id()):
            state = await self.store.load()
            refreshed = await self._refresh_records(state)
            await self.store.save(refreshed)
        return refreshed

    def cancel(self) -> None:
        """Stop starting new operations in the current run."""
        self._cancel_requested = True
        if self._executor is not None:
            self._executor.cancel()

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _check_providers(self, resource_types: Iterable[str]) -> None:
        for resource_type in sorted(set(resource_types)):
            self.registry.get(resource_type)

    def _plan(self, graph: ResourceGraph, state: dict[str, StateRecord]) -> Plan:
        self._check_providers(
            [node.id.type for node in graph] + [record.id.type for record in state.values()]
        )
        change_set = compute_changes(graph, state, self.registry.capabilities_for)
        return Plan(
            change_set=change_set,
            schedule=schedule(change_set, graph, state, self.registry.capabilities_for),
            graph=graph,
        )

    def _start(self, plan: Plan, state: dict[str, StateRecord]) -> Executor:
        self._executor = Executor(
            graph=plan.graph,
            change_set=plan.change_set,
            schedule=plan.schedule,
            state=state,
            store=self.store,
            registry=self.registry,
            options=self.options,
        )
        if self._cancel_requested:
            self._executor.cancel()
        return self._executor

    async def _refresh_records(self, state: dict[str, StateRecord]) -> dict[str, StateRecord]:
        self._check_providers(record.id.type for record in state.values())
        semaphore = asyncio.Semaphore(self.options.concurrency)

        async def read(record: StateRecord) -> StateRecord | None:
            provider = self.registry.get(record.id.type)
            async with semaphore:
                try:
                    outputs = await provider.read(record.id.type, record.external_id)
                except ResourceNotFoundError:
                    logger.warning("%s no longer exists; removing it from state", record.key)
                    return None
            merged = {**record.outputs, **rewrap(record.outputs, outputs)}
            merged.setdefault("id", record.external_id)
            return replace(record, outputs=merged)

        records = await asyncio.gather(*(read(state[key]) for key in sorted(state)))
        return {record.key: record for record in records if record is not None}

    def _resolve_exports(self, executor: Executor) -> dict[str, Any]:
        exports: dict[str, Any] = {}

        def lookup(ref: Reference) -> Any:
            outputs = executor.outputs.get(ref.producer)
            if outputs is None:
                record = executor.state.get(state_key(ref.producer))
                if record is None:
                    raise KeyError(str(ref.producer))
                outputs = record.outputs
            return ref.lookup(outputs)

        for name, value in self.manifest.exports.items():
            try:
                exports[name] = resolve(value, lookup)
            except KeyError as e:
                logger.warning("Export %s is unavailable: missing %s", name, e)
        return exports

    def _new_report(self, run_id: str) -> RunReport:
        return RunReport(
            run_id=run_id,
            environment=self.options.environment,
            dry_run=self.options.dry_run,
            started_at=datetime.now(UTC),
        )

    def _finish(self, report: RunReport, verb: str) -> RunReport:
        report.finished_at = datetime.now(UTC)
        self._executor = None
        self._cancel_requested = False
        logger.info(
            "%s %s finished: %d succeeded, %d failed, %d skipped",
            verb,
            report.run_id,
            len(report.succeeded),
            len(report.failed),
            len(report.skipped),
        )
        return report


def _planned_reports(change_set: ChangeSet) -> dict[str, NodeReport]:
    return {
        change.key: NodeReport(key=change.key, operation=change.operation, reason=change.reason)
        for change in change_set
    }


def _summary(change_set: ChangeSet) -> str:
    counts = change_set.summary()
    return ", ".join(f"{count} to {op}" for op, count in counts.items() if count) or "no changes"


__all__ = ["Plan", "Stack", "new_run_id"]
