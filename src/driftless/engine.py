"""Execution engine.

Runs a :class:`~driftless.scheduler.Schedule` against providers. Each step
is an asyncio task that waits for its predecessor steps, so independent
branches never wait on each other while wave order is still respected.
An :class:`asyncio.Semaphore` bounds the number of provider calls in flight.

Failures are node-local: a failed node's dependents are skipped (they stay
Planned) and every other branch runs to completion. State is saved after
every successful provider operation, so a later run resumes from whatever
was already applied.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

from .config import RunOptions
from .exceptions import (
    DependencyFailedError,
    ProtectedResourceError,
    ProviderError,
    RequiresReplacement,
    ResourceNotFoundError,
    ValidationError,
)
from .graph import ResourceGraph
from .models import (
    ChangeSet,
    NodeReport,
    NodeStatus,
    Operation,
    Outcome,
    ResourceId,
    ResourceNode,
    StateRecord,
    state_key,
)
from .providers.registry import ProviderRegistry
from .scheduler import Schedule, Step, StepAction
from .state.base import StateStore
from .values import (
    Reference,
    config_hash,
    contains_sealed,
    fingerprint,
    property_hashes,
    resolve,
    rewrap,
    substitute,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StepResult(Enum):
    OK = "ok"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


def _now() -> datetime:
    return datetime.now(UTC)


class Executor:
    """
    Applies a schedule for one run.

    Args:
        graph: Declared resources
        change_set: Changes the schedule was built from
        schedule: Ordered steps
        state: Current records; updated in place as operations succeed
        store: State store receiving a save after each successful operation
        registry: Provider lookup
        options: Run options (concurrency, retry policy)
    """

    def __init__(
        self,
        graph: ResourceGraph,
        change_set: ChangeSet,
        schedule: Schedule,
        state: dict[str, StateRecord],
        store: StateStore,
        registry: ProviderRegistry,
        options: RunOptions,
    ) -> None:
        self._graph = graph
        self._schedule = schedule
        self._state = state
        self._store = store
        self._registry = registry
        self._options = options

        self._semaphore = asyncio.Semaphore(options.concurrency)
        self._save_lock = asyncio.Lock()
        self._cancelled = asyncio.Event()
        self._done: dict[Step, asyncio.Event] = {}
        self._results: dict[Step, StepResult] = {}
        self._tasks: dict[Step, asyncio.Task[None]] = {}
        self._running: set[Step] = set()
        self._aborting: set[Step] = set()
        self._pending: Counter[str] = Counter(step.owner for step in schedule.steps)

        self.outputs: dict[ResourceId, dict[str, Any]] = {}
        self.reports: dict[str, NodeReport] = {
            change.key: NodeReport(key=change.key, operation=change.operation, reason=change.reason)
            for change in change_set
        }

    @property
    def state(self) -> dict[str, StateRecord]:
        return self._state

    # -------------------------------------------------------------------------
    # Run control
    # -------------------------------------------------------------------------

    async def run(self) -> dict[str, NodeReport]:
        """Execute every step; returns the per-node reports."""
        steps = self._schedule.steps
        self._done = {step: asyncio.Event() for step in steps}
        for step in steps:
            self._tasks[step] = asyncio.create_task(self._run_step(step), name=step.key)
        await asyncio.gather(*self._tasks.values())
        return self.reports

    def cancel(self) -> None:
        """
        Stop starting new steps.

        In-flight provider calls run to completion unless the provider
        declares ``supports_abort``, in which case they are cancelled.
        Records saved so far are kept.
        """
        if self._cancelled.is_set():
            return
        logger.warning("Cancellation requested; no new operations will start")
        self._cancelled.set()
        for step in list(self._running):
            if self._registry.capabilities_for(step.id.type).supports_abort:
                self._aborting.add(step)
                self._tasks[step].cancel()

    async def _run_step(self, step: Step) -> None:
        report = self.reports[step.owner]
        predecessors = self._schedule.predecessors.get(step, frozenset())
        try:
            for pred in predecessors:
                await self._done[pred].wait()

            blocked = [
                p
                for p in predecessors
                if self._results[p] in (StepResult.FAILED, StepResult.SKIPPED)
            ]
            if blocked:
                self._skip(step, report, sorted({p.id for p in blocked}))
                return
            if self._cancelled.is_set() or any(
                self._results[p] is StepResult.CANCELLED for p in predecessors
            ):
                self._mark_cancelled(step, report, "run cancelled before start")
                return

            async with self._semaphore:
                if self._cancelled.is_set():
                    self._mark_cancelled(step, report, "run cancelled before start")
                    return
                self._running.add(step)
                try:
                    await self._execute(step, report)
                finally:
                    self._running.discard(step)

            self._results[step] = StepResult.OK
            self._pending[step.owner] -= 1
            if self._pending[step.owner] == 0 and report.outcome is Outcome.PLANNED:
                report.outcome = Outcome.SUCCEEDED
        except asyncio.CancelledError:
            if step not in self._aborting:
                raise
            task = asyncio.current_task()
            if task is not None:
                task.uncancel()
            self._mark_cancelled(step, report, "aborted in flight")
            report.status = NodeStatus.FAILED
        except Exception as e:
            logger.warning("%s %s failed: %s", step.action.value, step.owner, e)
            self._results[step] = StepResult.FAILED
            report.outcome = Outcome.FAILED
            report.error = str(e)
            self._set_status(step, report, NodeStatus.FAILED)
        finally:
            if report.started_at is not None:
                report.finished_at = _now()
            self._done[step].set()

    def _skip(self, step: Step, report: NodeReport, producers: list[ResourceId]) -> None:
        self._results[step] = StepResult.SKIPPED
        if report.outcome in (Outcome.PLANNED, Outcome.SUCCEEDED):
            error = DependencyFailedError(step.id, producers)
            report.outcome = Outcome.SKIPPED
            report.error = str(error)
            logger.info("%s", error)

    def _mark_cancelled(self, step: Step, report: NodeReport, reason: str) -> None:
        self._results[step] = StepResult.CANCELLED
        if report.outcome in (Outcome.PLANNED, Outcome.SUCCEEDED):
            report.outcome = Outcome.CANCELLED
            report.error = reason

    def _set_status(self, step: Step, report: NodeReport, status: NodeStatus) -> None:
        report.status = status
        node = self._graph.nodes.get(step.id)
        if node is not None and not step.deposed:
            node.status = status

    # -------------------------------------------------------------------------
    # Step execution
    # -------------------------------------------------------------------------

    async def _execute(self, step: Step, report: NodeReport) -> None:
        if report.started_at is None:
            report.started_at = _now()
        if step.action is StepAction.NOOP:
            await self._noop(step, report)
        elif step.action is StepAction.CREATE:
            await self._create(step, report)
        elif step.action is StepAction.UPDATE:
            await self._update(step, report)
        else:
            await self._delete(step, report)

    async def _noop(self, step: Step, report: NodeReport) -> None:
        node = self._graph.nodes[step.id]
        record = self._state[state_key(step.id)]
        if record.inputs_hash and self._inputs_hash(node) != record.inputs_hash:
            logger.info("%s: upstream outputs changed, updating", step.id)
            report.operation = Operation.UPDATE
            report.reason = "upstream outputs changed"
            await self._update(step, report)
            return

        if record.protect != node.declaration.protect:
            self._state[record.key] = replace(record, protect=node.declaration.protect)
            await self._save()
        self._publish(node, record.outputs)
        report.outcome = Outcome.UNCHANGED
        self._set_status(step, report, NodeStatus.UNCHANGED)

    async def _create(self, step: Step, report: NodeReport) -> None:
        node = self._graph.nodes[step.id]
        existing = self._state.get(state_key(step.id))
        if existing is not None:
            # Create-before-delete replacement: keep the old object as deposed
            if existing.protect:
                raise ProtectedResourceError(step.id)
            await self._depose(step.id)
        await self._create_resource(step, node, report)

    async def _update(self, step: Step, report: NodeReport) -> None:
        node = self._graph.nodes[step.id]
        record = self._state[state_key(step.id)]
        provider = self._registry.get(step.id.type)
        self._set_status(step, report, NodeStatus.UPDATING)
        config = await self._provider_config(node, report)
        try:
            outputs = await self._call(
                report,
                provider.update,
                step.id.type,
                record.external_id,
                config,
                timeout=node.declaration.timeouts.update,
            )
        except RequiresReplacement as e:
            logger.info("%s: %s", step.id, e)
            report.operation = Operation.REPLACE
            report.reason = str(e)
            await self._replace_inline(step, node, report)
            return

        await self._commit(node, record.external_id, outputs)
        self._set_status(step, report, NodeStatus.UPDATED)

    async def _replace_inline(self, step: Step, node: ResourceNode, report: NodeReport) -> None:
        caps = self._registry.capabilities_for(step.id.type)
        deposed_key = state_key(step.id, deposed=True)
        if self._state[state_key(step.id)].protect:
            raise ProtectedResourceError(step.id)
        if caps.create_before_delete and deposed_key not in self._state:
            await self._depose(step.id)
            await self._create_resource(step, node, report)
            await self._delete_record(self._state[deposed_key], report)
        else:
            await self._delete_record(self._state[state_key(step.id)], report)
            await self._create_resource(step, node, report)

    async def _delete(self, step: Step, report: NodeReport) -> None:
        record = self._state.get(state_key(step.id, step.deposed))
        if record is None:
            logger.debug("%s: no record to delete", step.key)
            self._set_status(step, report, NodeStatus.DELETED)
            return
        if record.protect:
            raise ProtectedResourceError(step.id)
        await self._delete_record(record, report)
        self._set_status(step, report, NodeStatus.DELETED)

    # -------------------------------------------------------------------------
    # Provider operations
    # -------------------------------------------------------------------------

    async def _create_resource(self, step: Step, node: ResourceNode, report: NodeReport) -> None:
        provider = self._registry.get(node.id.type)
        self._set_status(step, report, NodeStatus.CREATING)
        config = await self._provider_config(node, report)
        external_id, outputs = await self._call(
            report,
            provider.create,
            node.id.type,
            config,
            timeout=node.declaration.timeouts.create,
        )
        await self._commit(node, external_id, outputs)
        self._set_status(step, report, NodeStatus.CREATED)

    async def _delete_record(self, record: StateRecord, report: NodeReport) -> None:
        provider = self._registry.get(record.id.type)
        node = self._graph.nodes.get(record.id)
        timeout = node.declaration.timeouts.delete if node is not None else None
        report.status = NodeStatus.DELETING
        try:
            await self._call(
                report, provider.delete, record.id.type, record.external_id, timeout=timeout
            )
        except ResourceNotFoundError:
            logger.debug("%s already gone", record.key)
        self._state.pop(record.key, None)
        await self._save()

    async def _call(
        self,
        report: NodeReport,
        fn: Callable[..., Awaitable[T]],
        *args: Any,
        timeout: float | None = None,
    ) -> T:
        """Call a provider method with timeout and bounded exponential backoff."""
        attempt = 0
        while True:
            attempt += 1
            report.attempts += 1
            try:
                if timeout is None:
                    return await fn(*args)
                try:
                    return await asyncio.wait_for(fn(*args), timeout)
                except TimeoutError as e:
                    raise ProviderError(
                        f"{getattr(fn, '__name__', 'call')} timed out after {timeout:g}s",
                        resource_type=str(args[0]) if args else None,
                    ) from e
            except ProviderError as e:
                if not e.retryable or attempt >= self._options.max_attempts:
                    raise
                delay = self._options.retry_delay(attempt)
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                    report.key,
                    attempt,
                    self._options.max_attempts,
                    delay,
                    e,
                )
                await self._backoff(delay)

    async def _backoff(self, delay: float) -> None:
        # The concurrency slot is free while waiting to retry
        self._semaphore.release()
        try:
            await asyncio.sleep(delay)
        finally:
            await self._semaphore.acquire()

    # -------------------------------------------------------------------------
    # Values and state
    # -------------------------------------------------------------------------

    def _producer_outputs(self, resource_id: ResourceId) -> dict[str, Any]:
        if resource_id in self.outputs:
            return self.outputs[resource_id]
        record = self._state.get(state_key(resource_id))
        if record is None:
            raise DependencyFailedError(resource_id, [resource_id])
        return record.outputs

    def _lookup(self, ref: Reference) -> Any:
        try:
            return ref.lookup(self._producer_outputs(ref.producer))
        except KeyError:
            raise ValidationError(
                "reference", str(ref), f"{ref.producer} has no output '{ref.path_str}'"
            ) from None

    def _inputs_hash(self, node: ResourceNode) -> str:
        return fingerprint(substitute(node.config, self._lookup))

    async def _provider_config(self, node: ResourceNode, report: NodeReport) -> dict[str, Any]:
        """Resolved configuration for a provider call.

        Producer outputs holding sealed secrets are read back from their
        provider first, since state never stores the plaintext.
        """
        config: dict[str, Any] = resolve(node.config, self._lookup)
        if not contains_sealed(config):
            return config
        for producer in sorted(self._graph.producers(node.id)):
            if contains_sealed(self._producer_outputs(producer)):
                record = self._state[state_key(producer)]
                provider = self._registry.get(producer.type)
                fresh = await self._call(
                    report, provider.read, producer.type, record.external_id
                )
                self.outputs[producer] = {**record.outputs, **rewrap(record.outputs, fresh)}
        return resolve(node.config, self._lookup)

    def _publish(self, node: ResourceNode, outputs: dict[str, Any]) -> None:
        node.outputs = outputs
        self.outputs[node.id] = outputs

    async def _commit(self, node: ResourceNode, external_id: str, outputs: dict[str, Any]) -> None:
        outputs = dict(outputs)
        outputs.setdefault("id", external_id)
        hashes = property_hashes(node.config)
        record = StateRecord(
            id=node.id,
            external_id=external_id,
            config_hash=config_hash(hashes),
            property_hashes=hashes,
            inputs_hash=self._inputs_hash(node),
            outputs=outputs,
            dependencies=tuple(sorted(self._graph.producers(node.id))),
            protect=node.declaration.protect,
            updated_at=_now().isoformat(),
        )
        self._state[record.key] = record
        self._publish(node, outputs)
        await self._save()

    async def _depose(self, resource_id: ResourceId) -> None:
        record = self._state.pop(state_key(resource_id))
        deposed = replace(record, deposed=True)
        self._state[deposed.key] = deposed
        await self._save()

    async def _save(self) -> None:
        async with self._save_lock:
            await self._store.save(dict(self._state))
