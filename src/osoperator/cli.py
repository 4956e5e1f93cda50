"""OpenStack operator CLI (osop).

Usage:
    osop plan --spec cluster.yaml      # Show what a run would change
    osop apply --spec cluster.yaml     # Reconcile the cluster
    osop graph --spec cluster.yaml     # Print tasks in dependency order
    osop name 1 nodes                  # Derive an instance name
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import click

from .config import DEFAULT_MAX_CONCURRENCY, Config, ConfigurationError
from .dependency import DependencyError, build_dependency_graph
from .errors import OperatorError
from .main import setup_logging
from .model_builder import build_tasks, make_instance_name
from .reconciler import Reconciler, ReconcileResult
from .spec_loader import SpecLoadError, load_cluster_spec
from .task import TaskState

STATE_COLORS = {
    TaskState.RENDERED: "green",
    TaskState.RECONCILED: None,
    TaskState.PLANNED: "yellow",
    TaskState.FAILED: "red",
    TaskState.SKIPPED: "red",
}


def spec_option(fn):  # type: ignore[no-untyped-def]
    return click.option(
        "--spec",
        "spec_path",
        envvar="CLUSTER_SPEC",
        required=True,
        type=click.Path(exists=True, dir_okay=False, path_type=Path),
        help="Cluster spec YAML",
    )(fn)


def cloud_options(fn):  # type: ignore[no-untyped-def]
    fn = click.option(
        "--cloud",
        envvar="OS_CLOUD",
        required=True,
        help="Cloud entry in clouds.yaml",
    )(fn)
    fn = click.option(
        "--max-concurrency",
        envvar="MAX_CONCURRENCY",
        default=DEFAULT_MAX_CONCURRENCY,
        show_default=True,
        type=int,
        help="Tasks rendered in parallel",
    )(fn)
    fn = click.option(
        "--fail-fast",
        is_flag=True,
        help="Stop starting new tasks after the first failure",
    )(fn)
    return fn


def _reconcile(
    spec_path: Path, cloud: str, max_concurrency: int, fail_fast: bool, dry_run: bool
) -> ReconcileResult:
    try:
        config = Config(
            cloud_name=cloud,
            cluster_spec_path=spec_path,
            max_concurrency=max_concurrency,
            dry_run=dry_run,
            continue_on_error=not fail_fast,
        )
        reconciler = Reconciler.from_config(config)
    except (ConfigurationError, OperatorError) as e:
        raise click.ClickException(str(e)) from e

    return asyncio.run(reconciler.reconcile_once())


def _print_result(result: ReconcileResult) -> None:
    for key in sorted(result.tasks):
        task_result = result.tasks[key]
        line = f"{task_result.state.value:<10} {key}"
        if task_result.action.value != "none":
            line += f" ({task_result.action.value})"
        if task_result.changed_fields:
            line += f" [{', '.join(task_result.changed_fields)}]"
        if task_result.error is not None:
            line += f": {task_result.error}"
        click.secho(line, fg=STATE_COLORS.get(task_result.state))

    if result.error is not None:
        raise click.ClickException(str(result.error))
    if result.failed:
        raise click.ClickException(
            f"{len(result.failed)} task(s) failed; the run was partially applied"
        )


@click.group()
@click.version_option(version="0.1.0", prog_name="osop")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def cli(verbose: bool) -> None:
    """OpenStack Operator CLI.

    Reconciles a cluster's instances, ports, floating IPs, server groups and
    API load balancer against its spec.
    """
    setup_logging(logging.DEBUG if verbose else logging.WARNING)


@cli.command()
@spec_option
@cloud_options
def plan(spec_path: Path, cloud: str, max_concurrency: int, fail_fast: bool) -> None:
    """Show the changes a run would make, without rendering any."""
    result = _reconcile(spec_path, cloud, max_concurrency, fail_fast, dry_run=True)
    _print_result(result)


@cli.command()
@spec_option
@cloud_options
def apply(spec_path: Path, cloud: str, max_concurrency: int, fail_fast: bool) -> None:
    """Reconcile the cluster."""
    result = _reconcile(spec_path, cloud, max_concurrency, fail_fast, dry_run=False)
    _print_result(result)
    click.secho(f"✓ {result.changes_applied} change(s) applied", fg="green")


@cli.command()
@spec_option
def graph(spec_path: Path) -> None:
    """Print tasks in dependency order with their producers."""
    try:
        tasks = build_tasks(load_cluster_spec(spec_path))
        task_graph = build_dependency_graph(tasks)
        order = task_graph.topological_sort()
    except (SpecLoadError, DependencyError, OperatorError) as e:
        raise click.ClickException(str(e)) from e

    for key in order:
        deps = task_graph.dependencies_of(key)
        click.echo(f"{key}" + (f" <- {', '.join(sorted(deps))}" if deps else ""))


@cli.command()
@click.argument("index", type=click.IntRange(min=1))
@click.argument("group")
@click.option("--ig-generation", default=0, show_default=True, type=int)
@click.option("--cluster-generation", default=0, show_default=True, type=int)
def name(index: int, group: str, ig_generation: int, cluster_generation: int) -> None:
    """Derive the instance name for replica INDEX of instance group GROUP."""
    click.echo(make_instance_name(index, group, ig_generation, cluster_generation))


if __name__ == "__main__":
    cli()
