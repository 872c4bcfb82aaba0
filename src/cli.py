#!/usr/bin/env python3
"""
CLI tool for converge
Plans and applies resource specifications against an environment
"""

import asyncio
import dataclasses
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional

import click
import yaml
from tabulate import tabulate

from config import Config, DatabaseConfig, get_config
from diff import ChangeKind
from engine import Engine, EnvironmentContext
from errors import ConvergeError
from events import ApplyEvent, EventType
from executor import ApplyResult
from plugins.registry import PluginRegistry, register_builtin_plugins
from scheduler import ExecutionPlan
from spec_loader import load_specification
from state import FileStateStore, StateStore

logger = logging.getLogger(__name__)

_SYMBOLS = {
    ChangeKind.CREATE: "+",
    ChangeKind.UPDATE: "~",
    ChangeKind.REPLACE: "-/+",
    ChangeKind.DELETE: "-",
    ChangeKind.NOOP: " ",
}


class ConvergeCLI:
    """Builds the state store, registry and engine for one CLI invocation."""

    def __init__(self, config: Config, environment: str, state_dir: Optional[str]):
        self.config = config
        self.environment = environment
        self.state_dir = Path(state_dir or config.state.directory)

    async def _open_store(self) -> StateStore:
        if self.config.state.backend == "postgres":
            from db import PostgresStateStore

            db_config = self.config.database or DatabaseConfig.from_env()
            store = PostgresStateStore(
                host=db_config.host,
                port=db_config.port,
                database=db_config.database,
                user=db_config.user,
                password=db_config.password,
                min_pool_size=db_config.min_pool_size,
                max_pool_size=db_config.max_pool_size,
            )
            await store.connect()
            await store.initialize_schema()
            return store
        return FileStateStore(self.state_dir)

    async def _open_registry(self) -> PluginRegistry:
        registry = register_builtin_plugins(
            PluginRegistry(), enabled=self.config.plugins.enabled_provider_plugins
        )
        for name in registry.list_provider_plugins():
            plugin_config = dict(self.config.plugins.get_plugin_config(name))
            if name == "memory" and not registry.get_provider_plugin_config(name).get(
                "path"
            ):
                # Keep in-memory objects between invocations
                plugin_config.setdefault(
                    "path", str(self.state_dir / "memory" / f"{self.environment}.json")
                )
            if plugin_config:
                await registry.get_provider_plugin(name, plugin_config)
        return registry

    def run(
        self,
        func: Callable[..., Awaitable[Any]],
        executor_config: Optional[Any] = None,
    ) -> Any:
        """Run ``func(engine)`` with resources opened and closed around it."""

        async def runner():
            store = await self._open_store()
            registry = await self._open_registry()
            try:
                context = EnvironmentContext(
                    name=self.environment,
                    state_store=store,
                    registry=registry,
                    executor_config=executor_config or self.config.executor,
                )
                return await func(Engine(context))
            finally:
                await registry.close()
                await store.close()

        try:
            return asyncio.run(runner())
        except ConvergeError as e:
            click.echo(f"Error: {e.message}", err=True)
            sys.exit(1)
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)


def _plan_rows(plan: ExecutionPlan, include_noop: bool = False) -> List[List[Any]]:
    rows = []
    for index, batch in enumerate(plan.batches, start=1):
        for entry in batch:
            if entry.kind == ChangeKind.NOOP and not include_noop:
                continue
            rows.append(
                [
                    index,
                    _SYMBOLS[entry.kind],
                    entry.label,
                    entry.resource_type,
                    ", ".join(entry.changed_attributes),
                    entry.reason,
                ]
            )
    return rows


def _show_plan(plan: ExecutionPlan, include_noop: bool = False) -> None:
    rows = _plan_rows(plan, include_noop)
    if rows:
        headers = ["Batch", "", "Step", "Type", "Changed", "Reason"]
        click.echo(tabulate(rows, headers=headers, tablefmt="simple"))
    summary = plan.summary()
    click.echo(
        f"\nPlan: {summary['create']} to create, {summary['update']} to update, "
        f"{summary['replace']} to replace, {summary['delete']} to delete, "
        f"{summary['noop']} unchanged."
    )


def _show_event(event: ApplyEvent) -> None:
    if event.event_type == EventType.ENTRY_STARTED:
        click.echo(f"  {event.logical_id}: {event.operation} started")
    elif event.event_type == EventType.ENTRY_APPLIED and event.operation != "noop":
        click.echo(f"✓ {event.logical_id}: {event.operation} complete")
    elif event.event_type == EventType.ENTRY_RETRYING:
        click.echo(f"  {event.logical_id}: retrying ({event.message})")
    elif event.event_type == EventType.ENTRY_FAILED:
        click.echo(f"✗ {event.logical_id}: {event.message}", err=True)
    elif event.event_type == EventType.ENTRY_ROLLED_BACK:
        click.echo(f"↺ {event.logical_id}: rolled back")


def _show_result(result: ApplyResult) -> None:
    counts = result.counts()
    click.echo(
        f"\nApply {'complete' if result.success else 'incomplete'}! "
        f"{counts['created']} created, {counts['updated']} updated, "
        f"{counts['replaced']} replaced, {counts['deleted']} deleted, "
        f"{counts['failed']} failed."
    )
    if result.cancelled:
        click.echo("Apply was cancelled; remaining steps were not started.")
    if result.rolled_back:
        click.echo(f"Rolled back: {', '.join(result.rolled_back)}")


@click.group()
@click.option(
    "--environment", "-e", default=None, help="Target environment (CONVERGE_ENVIRONMENT)"
)
@click.option("--state-dir", default=None, help="Directory of the file state backend")
@click.pass_context
def cli(ctx, environment, state_dir):
    """converge - declarative resource reconciliation"""
    config = get_config()
    logging.basicConfig(level=config.logging.level, format=config.logging.format)
    ctx.obj = ConvergeCLI(config, environment or config.environment, state_dir)


@cli.command()
@click.argument("filename", type=click.Path(exists=True))
@click.option("--output", "-o", type=click.Choice(["table", "json", "yaml"]), default="table")
@click.pass_obj
def plan(client, filename, output):
    """Show the changes needed to converge FILENAME"""

    async def run(engine: Engine):
        return await engine.plan(load_specification(filename))

    result = client.run(run)
    if output == "json":
        click.echo(json.dumps(result.to_dict(), indent=2))
    elif output == "yaml":
        click.echo(yaml.safe_dump(result.to_dict(), default_flow_style=False, sort_keys=False))
    else:
        _show_plan(result)


@cli.command()
@click.argument("filename", type=click.Path(exists=True))
@click.option("--yes", "-y", is_flag=True, help="Apply without asking for confirmation")
@click.option("--concurrency", "-c", type=int, default=None, help="Max concurrent operations")
@click.option("--rollback", is_flag=True, help="Roll back the failing batch before halting")
@click.option("--events-json", is_flag=True, help="Print apply events as JSON lines")
@click.pass_obj
def apply(client, filename, yes, concurrency, rollback, events_json):
    """Apply the changes needed to converge FILENAME"""
    overrides = {}
    if concurrency is not None:
        overrides["max_concurrency"] = concurrency
    if rollback:
        overrides["failure_policy"] = "rollback"
    executor_config = dataclasses.replace(client.config.executor, **overrides)

    async def run(engine: Engine):
        execution_plan = await engine.plan(load_specification(filename))
        _show_plan(execution_plan)
        if not execution_plan.has_changes:
            click.echo("No changes. Infrastructure is up to date.")
            return None
        if not yes and not click.confirm("\nApply these changes?"):
            click.echo("Apply cancelled.")
            return None

        cancel_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, cancel_event.set)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handlers not supported; Ctrl-C aborts immediately")

        if events_json:
            engine.event_bus.add_listener(lambda event: click.echo(event.to_json()))
        else:
            engine.event_bus.add_listener(_show_event)
        try:
            return await engine.apply(execution_plan, cancel_event=cancel_event)
        finally:
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except (NotImplementedError, RuntimeError):
                pass

    result = client.run(run, executor_config=executor_config)
    if result is None:
        return
    _show_result(result)
    if not result.success:
        sys.exit(1)


@cli.command()
@click.argument("filename", type=click.Path(exists=True))
@click.pass_obj
def graph(client, filename):
    """Print the dependency graph of FILENAME in DOT format"""

    async def run(engine: Engine):
        return engine.build_graph(load_specification(filename))

    click.echo(client.run(run).to_dot())


@cli.group()
def state():
    """Inspect stored state"""
    pass


@state.command("list")
@click.pass_obj
def state_list(client):
    """List resources recorded in the environment"""

    async def run(engine: Engine):
        return await engine.context.state_store.load(engine.context.name)

    records = client.run(run)
    if not records:
        click.echo(f"No resources in environment '{client.environment}'")
        return

    headers = ["Logical ID", "Type", "Physical ID", "Status", "Updated"]
    rows = [
        [
            record.logical_id,
            record.resource_type,
            record.physical_id or "-",
            record.status.value + (" (deposed)" if record.deposed else ""),
            record.updated_at or "-",
        ]
        for record in (records[lid] for lid in sorted(records))
    ]
    click.echo(tabulate(rows, headers=headers, tablefmt="grid"))


@state.command("show")
@click.argument("logical_id")
@click.option("--output", "-o", type=click.Choice(["json", "yaml"]), default="yaml")
@click.pass_obj
def state_show(client, logical_id, output):
    """Show the stored record of a resource"""

    async def run(engine: Engine):
        return await engine.context.state_store.load(engine.context.name)

    records = client.run(run)
    record = records.get(logical_id)
    if record is None:
        click.echo(f"Error: no resource '{logical_id}' in '{client.environment}'", err=True)
        sys.exit(1)

    if output == "json":
        click.echo(json.dumps(record.to_dict(), indent=2))
    else:
        click.echo(yaml.safe_dump(record.to_dict(), default_flow_style=False))


@state.command("environments")
@click.pass_obj
def state_environments(client):
    """List environments with stored state"""

    async def run(engine: Engine):
        return await engine.context.state_store.list_environments()

    environments = client.run(run)
    if not environments:
        click.echo("No environments found")
        return
    for name in environments:
        click.echo(name)


@cli.command()
@click.option("--limit", "-n", type=int, default=10, help="Number of runs to show")
@click.option("--output", "-o", type=click.Choice(["table", "json"]), default="table")
@click.pass_obj
def history(client, limit, output):
    """Show recent apply runs of the environment"""

    async def run(engine: Engine):
        return await engine.context.state_store.get_apply_history(
            engine.context.name, limit=limit
        )

    runs = client.run(run)
    if output == "json":
        click.echo(json.dumps(runs, indent=2, default=str))
        return
    if not runs:
        click.echo(f"No apply history for environment '{client.environment}'")
        return

    headers = ["Applied", "Result", "Created", "Updated", "Replaced", "Deleted", "Failed"]
    rows = [
        [
            row.get("applied_at"),
            "success"
            if row.get("success")
            else ("cancelled" if row.get("cancelled") else "failed"),
            row.get("resources_created", 0),
            row.get("resources_updated", 0),
            row.get("resources_replaced", 0),
            row.get("resources_deleted", 0),
            row.get("resources_failed", 0),
        ]
        for row in runs
    ]
    click.echo(tabulate(rows, headers=headers, tablefmt="grid"))


@cli.command()
@click.pass_obj
def drift(client):
    """Compare stored outputs with what providers report (exit 2 on drift)"""

    async def run(engine: Engine):
        return await engine.detect_drift()

    results = client.run(run)
    drifted = [r for r in results if r.drifted or r.error]
    if not drifted:
        click.echo(f"No drift detected ({len(results)} resources checked)")
        return

    headers = ["Logical ID", "Type", "Physical ID", "Drift"]
    rows = []
    for result in drifted:
        if result.missing:
            detail = "missing"
        elif result.changed_attributes:
            detail = ", ".join(result.changed_attributes)
        else:
            detail = f"error: {result.error}"
        rows.append([result.logical_id, result.resource_type, result.physical_id, detail])
    click.echo(tabulate(rows, headers=headers, tablefmt="grid"))

    if any(r.drifted for r in drifted):
        sys.exit(2)


if __name__ == "__main__":
    cli()
