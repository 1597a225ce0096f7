"""Command line interface for inspecting flowdebug caches, snapshots and scenarios."""

from __future__ import annotations

import asyncio
import sys
from importlib import import_module
from importlib.util import module_from_spec, spec_from_file_location
from pathlib import Path
from typing import Optional

import typer

from flowdebug.config import load_config
from flowdebug.orchestrator import WorkflowFunction
from flowdebug.system import DebugSystem

app = typer.Typer(help="CLI for flowdebug workflow debugging")

# Command groups
cache_app = typer.Typer(help="Commands for the LLM response cache")
snapshot_app = typer.Typer(help="Commands for database snapshots")
scenario_app = typer.Typer(help="Commands for test scenarios")

app.add_typer(cache_app, name="cache")
app.add_typer(snapshot_app, name="snapshot")
app.add_typer(scenario_app, name="scenario")


@app.callback()
def main() -> None:
    """flowdebug CLI entry point."""
    pass


def _system() -> DebugSystem:
    return DebugSystem(load_config())


def _load_workflow(target: str) -> WorkflowFunction:
    """Resolve ``module:function`` or ``path/to/file.py:function``."""
    module_ref, sep, attr = target.rpartition(":")
    if not sep or not module_ref or not attr:
        raise ValueError(f"Expected <module>:<function>, got '{target}'")

    if module_ref.endswith(".py"):
        path = Path(module_ref).expanduser().resolve()
        spec = spec_from_file_location(path.stem, path)
        if spec is None or spec.loader is None:
            raise ValueError(f"Cannot load workflow file {path}")
        module_obj = module_from_spec(spec)
        sys.modules[path.stem] = module_obj
        spec.loader.exec_module(module_obj)
    else:
        module_obj = import_module(module_ref)

    if not hasattr(module_obj, attr):
        raise ValueError(f"Workflow '{attr}' not found in {module_ref}")
    return getattr(module_obj, attr)


# ----------------------------------------------------------------------
# cache
@cache_app.command("stats")
def cache_stats() -> None:
    """
    Show persisted cache entries grouped by workflow.

    Example:
        flowdebug cache stats
        # Output: Entries: 3 (max 1000)
        #         research_workflow: 2
        #         summary_workflow: 1
    """
    system = _system()
    asyncio.run(system.cache.load())
    stats = system.cache.get_stats()
    typer.echo(f"Entries: {stats.cache_size} (max {stats.max_size})")

    counts: dict[str, int] = {}
    for entry in system.cache.entries():
        counts[entry.workflow_name] = counts.get(entry.workflow_name, 0) + 1
    for workflow_name, count in sorted(counts.items()):
        typer.echo(f"{workflow_name}: {count}")


@cache_app.command("clear")
def cache_clear(
    workflow: Optional[str] = typer.Option(None, help="Only clear this workflow"),
    step: Optional[str] = typer.Option(None, help="Only clear this step (needs --workflow)"),
) -> None:
    """Delete cached responses, in memory and on disk."""
    if step and not workflow:
        typer.secho("--step requires --workflow", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    system = _system()

    async def _clear() -> int:
        await system.cache.load()
        if workflow and step:
            return await system.cache.clear_step(workflow, step)
        if workflow:
            return await system.cache.clear_workflow(workflow)
        count = len(system.cache.entries())
        await system.cache.clear()
        return count

    removed = asyncio.run(_clear())
    typer.echo(f"Cleared {removed} cache entries")


# ----------------------------------------------------------------------
# snapshot
@snapshot_app.command("list")
def snapshot_list() -> None:
    """List stored database snapshots, oldest first."""
    system = _system()
    snapshots = asyncio.run(system.environment.list_snapshots())
    if not snapshots:
        typer.echo("No snapshots found")
        return
    for snapshot in snapshots:
        typer.echo(
            f"{snapshot.id}\t{snapshot.name}\t{snapshot.created_at.isoformat()}\t"
            f"{snapshot.metadata.row_count} rows"
        )


@snapshot_app.command("show")
def snapshot_show(snapshot_id: str) -> None:
    """Show metadata and per-table row counts for one snapshot."""
    system = _system()
    snapshot = asyncio.run(system.environment.get_snapshot(snapshot_id))
    if snapshot is None:
        typer.echo("Snapshot not found")
        raise typer.Exit(code=1)
    typer.echo(f"Snapshot {snapshot.id}: {snapshot.name}")
    if snapshot.metadata.description:
        typer.echo(f"Description: {snapshot.metadata.description}")
    typer.echo(f"Created: {snapshot.created_at.isoformat()}")
    typer.echo(f"Size: {snapshot.metadata.total_size} bytes")
    for table, rows in snapshot.tables.items():
        typer.echo(f"- {table}: {len(rows)} rows")


# ----------------------------------------------------------------------
# scenario
@scenario_app.command("list")
def scenario_list(scenario_file: Path) -> None:
    """List the scenarios defined in a JSON file."""
    system = _system()
    try:
        system.scenarios.load_scenarios_from_file(scenario_file)
    except (OSError, ValueError) as exc:
        typer.secho(f"Could not load {scenario_file}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    scenarios = system.scenarios.list_scenarios()
    if not scenarios:
        typer.echo("No scenarios found")
        return
    for scenario in scenarios:
        tags = f" [{', '.join(scenario.tags)}]" if scenario.tags else ""
        typer.echo(f"{scenario.id}\t{scenario.name}\t{scenario.workflow_name}{tags}")


@scenario_app.command("run")
def scenario_run(
    scenario_file: Path,
    workflow: str,
    parallel: bool = typer.Option(False, help="Run all scenarios concurrently"),
    timeout: float = typer.Option(30000, help="Per-scenario timeout in milliseconds"),
) -> None:
    """
    Run every scenario in a JSON file against a workflow function.

    Exits with code 1 when any scenario fails.

    Example:
        flowdebug scenario run scenarios.json my_app.workflows:research
        flowdebug scenario run scenarios.json ./workflow.py:research --parallel
    """
    system = _system()
    try:
        system.scenarios.load_scenarios_from_file(scenario_file)
        workflow_fn = _load_workflow(workflow)
    except (OSError, ValueError, ImportError) as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)

    async def _run():
        await system.start()
        return await system.run_test_suite(workflow_fn, parallel=parallel, timeout=timeout)

    report = asyncio.run(_run())
    for result in report.results:
        status = "PASS" if result.success else "FAIL"
        typer.echo(f"{status}\t{result.scenario.name}\t{result.duration:.1f}ms")
        if result.error is not None:
            typer.echo(f"  error: {result.error}")
        for failure in result.failures:
            typer.echo(f"  {failure.message}")

    summary = report.summary
    typer.echo(
        f"{summary.passed}/{summary.total} passed ({summary.pass_rate:.1f}%) "
        f"in {summary.total_duration:.1f}ms"
    )
    if summary.failed:
        raise typer.Exit(code=1)
