"""Command-line interface for driftless."""

import asyncio
import json
import logging
import signal
import sys
from collections.abc import Callable, Coroutine
from functools import wraps
from typing import Any, NoReturn, TypeVar

import click

from .config import RunOptions
from .exceptions import DriftlessError
from .graph import build_graph
from .manifest import StackManifest
from .models import ResourceId, RunReport, state_key
from .naming import resolve_environment, resolve_state_location
from .report import format_graph, format_plan, format_records, format_report
from .secrets import SecretResolver
from .stack import Stack
from .state import open_state_store
from .state.base import StateStore
from .values import redact

F = TypeVar("F", bound=Callable[..., Any])
T = TypeVar("T")


@click.group()
@click.version_option()
@click.option("-v", "--verbose", count=True, help="Increase log verbosity (-v info, -vv debug)")
def cli(verbose: int) -> None:
    """driftless: declarative infrastructure provisioning."""
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _state_options(func: F) -> F:
    """Options locating the environment's state backend."""
    options = [
        click.option(
            "--environment",
            "-e",
            help=(
                "Target environment "
                "(default: manifest value, DRIFTLESS_ENVIRONMENT or 'default')"
            ),
        ),
        click.option(
            "--state",
            "state_location",
            help="State location: file path or s3://bucket/key "
            "(default: DRIFTLESS_STATE or .driftless/<environment>.json)",
        ),
        click.option(
            "--lock-table",
            help="DynamoDB lock table for S3 state (default: DRIFTLESS_LOCK_TABLE)",
        ),
        click.option(
            "--region",
            help="AWS region (default: use boto3 defaults)",
        ),
        click.option(
            "--endpoint-url",
            help=(
                "AWS endpoint URL "
                "(e.g., http://localhost:4566 for LocalStack, or other AWS-compatible services)"
            ),
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _run_options(func: F) -> F:
    """Options shared by commands that execute a run."""
    options = [
        click.option(
            "--file",
            "-f",
            "manifest_path",
            default="driftless.yaml",
            show_default=True,
            type=click.Path(exists=True, dir_okay=False),
            help="Manifest file",
        ),
        click.option(
            "--concurrency",
            type=click.IntRange(min=1),
            help="Maximum provider operations in flight (default: 10)",
        ),
        click.option(
            "--max-attempts",
            type=click.IntRange(min=1),
            help="Attempts per provider call for retryable errors (default: 5)",
        ),
        click.option(
            "--dry-run",
            is_flag=True,
            help="Compute the plan without executing it",
        ),
        click.option(
            "--refresh",
            is_flag=True,
            help="Read recorded resources from their providers before planning",
        ),
        click.option("--json", "as_json", is_flag=True, help="Output the run report as JSON"),
    ]
    for option in reversed(options):
        func = option(func)
    return _state_options(func)


def _fail(message: str) -> NoReturn:
    click.echo(f"✗ {message}", err=True)
    sys.exit(1)


def _run(coro: Coroutine[Any, Any, T]) -> T:
    try:
        return asyncio.run(coro)
    except DriftlessError as e:
        _fail(str(e))
    except ValueError as e:
        _fail(f"Invalid option: {e}")


def _open_store(
    environment: str,
    state_location: str | None,
    lock_table: str | None,
    region: str | None,
    endpoint_url: str | None,
) -> StateStore:
    location = resolve_state_location(state_location, environment)
    return open_state_store(location, lock_table, region, endpoint_url)


def _load_stack(
    manifest_path: str,
    environment: str | None,
    state_location: str | None,
    lock_table: str | None,
    region: str | None,
    endpoint_url: str | None,
    **run_options: Any,
) -> Stack:
    resolver = SecretResolver(region=region, endpoint_url=endpoint_url)
    manifest = StackManifest.from_file(manifest_path, resolver)
    env_name = resolve_environment(environment or manifest.environment)
    options = RunOptions.from_env(environment=env_name, **run_options)
    store = _open_store(env_name, state_location, lock_table, region, endpoint_url)
    return Stack(manifest, store, options=options)


def _stack_command(func: Callable[..., Coroutine[Any, Any, RunReport]]) -> Callable[..., None]:
    """Wrap an async ``(stack) -> RunReport`` body as a click command callback."""

    @wraps(func)
    def command(
        manifest_path: str,
        environment: str | None,
        state_location: str | None,
        lock_table: str | None,
        region: str | None,
        endpoint_url: str | None,
        concurrency: int | None,
        max_attempts: int | None,
        dry_run: bool,
        refresh: bool,
        as_json: bool,
    ) -> None:
        async def _main() -> RunReport:
            stack = _load_stack(
                manifest_path,
                environment,
                state_location,
                lock_table,
                region,
                endpoint_url,
                concurrency=concurrency,
                max_attempts=max_attempts,
                dry_run=dry_run or None,
                refresh=refresh or None,
            )
            loop = asyncio.get_running_loop()
            try:
                loop.add_signal_handler(signal.SIGINT, stack.cancel)
            except (NotImplementedError, RuntimeError):
                pass  # no signal support (e.g., Windows, non-main thread)
            try:
                async with stack:
                    return await func(stack)
            finally:
                try:
                    loop.remove_signal_handler(signal.SIGINT)
                except (NotImplementedError, RuntimeError):
                    pass

        report = _run(_main())
        if as_json:
            click.echo(json.dumps(report.as_dict(), indent=2))
        else:
            click.echo(format_report(report))
        if not report.ok:
            sys.exit(1)

    return command


@cli.command()
@click.option(
    "--file",
    "-f",
    "manifest_path",
    default="driftless.yaml",
    show_default=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Manifest file",
)
@_state_options
@click.option("--json", "as_json", is_flag=True, help="Output the change set as JSON")
def plan(
    manifest_path: str,
    environment: str | None,
    state_location: str | None,
    lock_table: str | None,
    region: str | None,
    endpoint_url: str | None,
    as_json: bool,
) -> None:
    """Show the changes apply would make."""

    async def _plan() -> Any:
        stack = _load_stack(
            manifest_path, environment, state_location, lock_table, region, endpoint_url
        )
        async with stack:
            return await stack.plan()

    result = _run(_plan())
    if as_json:
        payload = {
            "changes": [
                {
                    "resource": change.key,
                    "operation": change.operation.value,
                    "reason": change.reason,
                }
                for change in result.change_set
            ],
            "waves": [[step.key for step in wave] for wave in result.schedule.waves],
        }
        click.echo(json.dumps(payload, indent=2))
    else:
        click.echo(format_plan(result))


@cli.command()
@_run_options
@_stack_command
async def apply(stack: Stack) -> RunReport:
    """Create, update and delete resources to match the manifest."""
    return await stack.apply()


@cli.command()
@_run_options
@_stack_command
async def destroy(stack: Stack) -> RunReport:
    """Delete every resource recorded in state."""
    return await stack.destroy()


@cli.command()
@click.option(
    "--file",
    "-f",
    "manifest_path",
    default="driftless.yaml",
    show_default=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Manifest file",
)
@_state_options
def refresh(
    manifest_path: str,
    environment: str | None,
    state_location: str | None,
    lock_table: str | None,
    region: str | None,
    endpoint_url: str | None,
) -> None:
    """Read every recorded resource back from its provider."""

    async def _refresh() -> int:
        stack = _load_stack(
            manifest_path, environment, state_location, lock_table, region, endpoint_url
        )
        async with stack:
            return len(await stack.refresh())

    count = _run(_refresh())
    click.echo(f"✓ Refreshed state: {count} resource(s)")


@cli.command()
@click.option(
    "--file",
    "-f",
    "manifest_path",
    default="driftless.yaml",
    show_default=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Manifest file",
)
def graph(manifest_path: str) -> None:
    """Print declared resources in dependency order."""
    try:
        manifest = StackManifest.from_file(manifest_path)
        click.echo(format_graph(build_graph(manifest.resources)))
    except DriftlessError as e:
        _fail(str(e))


# ---------------------------------------------------------------------------
# State commands
# ---------------------------------------------------------------------------


@cli.group()
def state() -> None:
    """Inspect and repair recorded state."""
    pass


@state.command("list")
@_state_options
def state_list(
    environment: str | None,
    state_location: str | None,
    lock_table: str | None,
    region: str | None,
    endpoint_url: str | None,
) -> None:
    """List recorded resources."""

    async def _list() -> Any:
        store = _open_store(
            resolve_environment(environment), state_location, lock_table, region, endpoint_url
        )
        try:
            return await store.load()
        finally:
            await store.close()

    click.echo(format_records(_run(_list())))


@state.command("show")
@click.argument("resource")
@_state_options
def state_show(
    resource: str,
    environment: str | None,
    state_location: str | None,
    lock_table: str | None,
    region: str | None,
    endpoint_url: str | None,
) -> None:
    """Show one recorded resource (RESOURCE is type/name)."""

    async def _show() -> Any:
        store = _open_store(
            resolve_environment(environment), state_location, lock_table, region, endpoint_url
        )
        try:
            return await store.load()
        finally:
            await store.close()

    try:
        resource_id = ResourceId.parse(resource)
    except DriftlessError as e:
        _fail(str(e))
    records = _run(_show())
    record = records.get(state_key(resource_id))
    if record is None:
        _fail(f"{resource} is not in state")
    click.echo(json.dumps(redact(record.to_dict()), indent=2))


@state.command("unlock")
@_state_options
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
def state_unlock(
    environment: str | None,
    state_location: str | None,
    lock_table: str | None,
    region: str | None,
    endpoint_url: str | None,
    yes: bool,
) -> None:
    """Release a state lock left behind by a crashed run."""
    if not yes:
        click.confirm("Force-release the state lock?", abort=True)

    async def _unlock() -> Any:
        store = _open_store(
            resolve_environment(environment), state_location, lock_table, region, endpoint_url
        )
        try:
            return await store.force_unlock()
        finally:
            await store.close()

    info = _run(_unlock())
    if info is None:
        click.echo("State was not locked")
    else:
        click.echo(f"✓ Released lock held by run {info.run_id} ({info.holder})")


if __name__ == "__main__":
    cli()
