"""
Plan, run report and graph formatters.

Plain-text tables for the CLI. JSON output goes through
:meth:`RunReport.as_dict` instead.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from .models import Operation, Outcome

if TYPE_CHECKING:
    from .graph import ResourceGraph
    from .models import RunReport, StateRecord
    from .stack import Plan

WIDTH = 100


def _fit(text: str, width: int) -> str:
    if len(text) > width:
        return text[: width - 3] + "..."
    return text


def format_plan(plan: Plan) -> str:
    """
    Render a plan as a change table followed by its waves.

    Args:
        plan: Plan returned by :meth:`Stack.plan`

    Returns:
        Table-formatted string
    """
    lines: list[str] = []
    lines.append("")
    lines.append("Plan")
    lines.append("=" * WIDTH)
    lines.append(f"    {'Resource':<50} {'Operation':<10} Reason")
    lines.append("-" * WIDTH)
    for change in plan.change_set:
        lines.append(
            f"{change.operation.symbol:<3} {_fit(change.key, 48):<50} "
            f"{change.operation.value:<10} {change.reason}"
        )

    lines.append("")
    for index, wave in enumerate(plan.schedule.waves, start=1):
        steps = ", ".join(step.key for step in wave)
        lines.append(f"Wave {index}: {steps}")

    counts = plan.change_set.summary()
    lines.append("")
    lines.append(
        f"{counts[Operation.CREATE.value]} to create, "
        f"{counts[Operation.UPDATE.value]} to update, "
        f"{counts[Operation.REPLACE.value]} to replace, "
        f"{counts[Operation.DELETE.value]} to delete, "
        f"{counts[Operation.NOOP.value]} unchanged"
    )
    return "\n".join(lines)


def format_report(report: RunReport) -> str:
    """Render a run report, one row per node."""
    lines: list[str] = []
    lines.append("")
    title = f"Run {report.run_id} ({report.environment})"
    if report.dry_run:
        title += " [dry run]"
    lines.append(title)
    lines.append("=" * WIDTH)
    lines.append(
        f"{'Resource':<44} {'Operation':<10} {'Outcome':<10} {'Status':<10} {'Tries':>5}  Error"
    )
    lines.append("-" * WIDTH)

    for node in report.nodes.values():
        error = node.error or ""
        lines.append(
            f"{_fit(node.key, 42):<44} {node.operation.value:<10} {node.outcome.value:<10} "
            f"{node.status.value:<10} {node.attempts:>5}  {error}"
        )

    if report.exports:
        lines.append("")
        lines.append("Exports")
        lines.append("-" * WIDTH)
        # str() keeps secrets redacted
        for name, value in sorted(report.exports.items()):
            lines.append(f"  {name} = {value}")

    counts = {outcome: len(report.with_outcome(outcome)) for outcome in Outcome}
    lines.append("")
    lines.append(
        ", ".join(f"{count} {outcome.value}" for outcome, count in counts.items() if count)
        or "nothing to do"
    )
    return "\n".join(lines)


def format_graph(graph: ResourceGraph) -> str:
    """Render resources in dependency order with the outputs each one consumes."""
    lines: list[str] = []
    for node in graph.topological_order():
        lines.append(str(node.id))
        for edge in sorted(node.incoming, key=lambda e: (str(e.producer), e.path)):
            via = f".{edge.path}" if edge.path else " (depends_on)"
            lines.append(f"  <- {edge.producer}{via}")
    return "\n".join(lines)


def format_records(records: dict[str, StateRecord]) -> str:
    """Render state records as a table."""
    if not records:
        return "No resources in state"
    lines: list[str] = []
    lines.append(f"{'Resource':<50} {'External ID':<32} Updated")
    lines.append("-" * WIDTH)
    for key in sorted(records):
        record = records[key]
        lines.append(
            f"{_fit(key, 48):<50} {_fit(record.external_id, 30):<32} {record.updated_at}"
        )
    return "\n".join(lines)
