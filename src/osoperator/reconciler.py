"""Reconciliation engine: runs a task graph against the cloud.

One reconciliation run:
1. Build and validate the dependency graph (cycles fail before any render)
2. Dispatch every task whose producers have completed to a worker thread
3. Record per-task outcomes; dependents of a task that failed or was left
   unrendered are skipped
4. Repeat until no task is ready

Cloud calls are blocking and may sleep through a whole backoff schedule, so
tasks run on a thread pool bounded by ``max_concurrency``. The event loop
only schedules; it never touches the cloud itself.

A failed run is partially applied. Every render is safe to repeat, so the
remedy is to run again from the top.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .cloud import OpenstackCloud, connect
from .config import DEFAULT_MAX_CONCURRENCY, Config
from .dependency import DependencyError, DependencyGraph, build_dependency_graph
from .errors import ConvergenceTimeout
from .model_builder import build_tasks
from .spec_loader import load_cluster_spec
from .task import Action, Context, Task, TaskState, run_task

logger = logging.getLogger(__name__)

# States that let dependents proceed; PLANNED only counts in dry run
COMPLETED_STATES = frozenset({TaskState.RENDERED, TaskState.RECONCILED})
DRY_RUN_COMPLETED_STATES = COMPLETED_STATES | {TaskState.PLANNED}


@dataclass
class TaskResult:
    """Outcome of a single task within a run."""

    key: str
    state: TaskState
    action: Action = Action.NONE
    changed_fields: list[str] = field(default_factory=list)
    error: Exception | None = None
    duration_seconds: float = 0.0


@dataclass
class ReconcileResult:
    """Result of a single reconciliation run."""

    cluster: str
    dry_run: bool = False
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    tasks: dict[str, TaskResult] = field(default_factory=dict)
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    def keys_in_state(self, state: TaskState) -> list[str]:
        return sorted(k for k, r in self.tasks.items() if r.state == state)

    @property
    def failed(self) -> list[str]:
        return self.keys_in_state(TaskState.FAILED)

    @property
    def changes_applied(self) -> int:
        return len(self.keys_in_state(TaskState.RENDERED))

    @property
    def timed_out(self) -> bool:
        """True if any task failed because the cloud never converged."""
        return any(isinstance(r.error, ConvergenceTimeout) for r in self.tasks.values())

    @property
    def success(self) -> bool:
        """Check if reconciliation succeeded."""
        return self.error is None and not self.failed


class Reconciler:
    """Runs a set of tasks in dependency order with bounded concurrency.

    Args:
        cloud: Resource facade shared by every task.
        tasks: Tasks keyed by ``Kind/name``.
        cluster_name: Used in logs and results only.
        max_concurrency: Number of worker threads.
        dry_run: Plan only; no render is performed.
        continue_on_error: Keep running tasks that do not depend on a failed
            one. When False, nothing new is started after the first failure.
    """

    def __init__(
        self,
        cloud: OpenstackCloud,
        tasks: Mapping[str, Task],
        *,
        cluster_name: str = "",
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        dry_run: bool = False,
        continue_on_error: bool = True,
    ) -> None:
        self._cloud = cloud
        self._tasks = dict(tasks)
        self._cluster_name = cluster_name
        self._max_concurrency = max_concurrency
        self._dry_run = dry_run
        self._continue_on_error = continue_on_error

    @classmethod
    def from_config(cls, config: Config, cloud: OpenstackCloud | None = None) -> Reconciler:
        """Load the cluster spec, build its tasks and connect to the cloud.

        Raises:
            SpecLoadError: If the cluster spec is invalid.
            ModelBuildError: If the spec cannot be turned into tasks.
        """
        cluster = load_cluster_spec(config.cluster_spec_path)
        tasks = build_tasks(cluster)
        return cls(
            cloud or connect(config),
            tasks,
            cluster_name=cluster.name,
            max_concurrency=config.max_concurrency,
            dry_run=config.dry_run,
            continue_on_error=config.continue_on_error,
        )

    @property
    def tasks(self) -> dict[str, Task]:
        return self._tasks

    def graph(self) -> DependencyGraph:
        """Build and validate the dependency graph of the tasks."""
        return build_dependency_graph(self._tasks)

    async def reconcile_once(self) -> ReconcileResult:
        """Run every task once, in dependency order."""
        result = ReconcileResult(cluster=self._cluster_name, dry_run=self._dry_run)
        logger.info(
            "Starting reconciliation",
            extra={
                "cluster": self._cluster_name,
                "task_count": len(self._tasks),
                "max_concurrency": self._max_concurrency,
                "dry_run": self._dry_run,
            },
        )

        try:
            graph = self.graph()
        except DependencyError as e:
            result.error = e
            result.end_time = datetime.now(UTC)
            self._log_result(result)
            return result

        ctx = Context(cloud=self._cloud, tasks=self._tasks, dry_run=self._dry_run)
        loop = asyncio.get_running_loop()
        pending: dict[asyncio.Future[TaskResult], str] = {}
        satisfied: set[str] = set()
        completed = DRY_RUN_COMPLETED_STATES if self._dry_run else COMPLETED_STATES
        stopped = False

        with ThreadPoolExecutor(
            max_workers=self._max_concurrency, thread_name_prefix="task"
        ) as executor:
            while True:
                if not stopped:
                    exclude = set(result.tasks) | set(pending.values())
                    for key in graph.get_ready(satisfied, exclude):
                        future = loop.run_in_executor(executor, self._run_one, key, ctx)
                        pending[future] = key

                if not pending:
                    break

                done, _ = await asyncio.wait(set(pending), return_when=asyncio.FIRST_COMPLETED)
                for future in done:
                    key = pending.pop(future)
                    task_result = future.result()
                    result.tasks[key] = task_result

                    if task_result.state in completed:
                        satisfied.add(key)
                        continue

                    self._skip_dependents(graph, key, result)
                    if not self._continue_on_error:
                        stopped = True

        # Tasks never started because the run stopped early
        for key in graph.nodes:
            if key not in result.tasks:
                result.tasks[key] = TaskResult(key=key, state=TaskState.SKIPPED)

        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    def _run_one(self, key: str, ctx: Context) -> TaskResult:
        """Run one task on a worker thread, capturing its failure."""
        task = self._tasks[key]
        started = time.monotonic()
        try:
            outcome = run_task(task, ctx)
        except Exception as e:
            logger.error(
                "Task failed",
                extra={"task": key, "error": str(e), "error_type": type(e).__name__},
            )
            return TaskResult(
                key=key,
                state=TaskState.FAILED,
                error=e,
                duration_seconds=time.monotonic() - started,
            )

        return TaskResult(
            key=key,
            state=outcome.state,
            action=outcome.action,
            changed_fields=outcome.changed_fields,
            duration_seconds=time.monotonic() - started,
        )

    def _skip_dependents(self, graph: DependencyGraph, key: str, result: ReconcileResult) -> None:
        for dependent in graph.dependents_of(key):
            if dependent in result.tasks:
                continue
            result.tasks[dependent] = TaskResult(key=dependent, state=TaskState.SKIPPED)
            logger.warning(
                "Skipping task, a dependency failed",
                extra={"task": dependent, "failed_dependency": key},
            )

    def _log_result(self, result: ReconcileResult) -> None:
        """Log reconciliation result with structured data."""
        extra: dict[str, Any] = {
            "cluster": result.cluster,
            "dry_run": result.dry_run,
            "duration_seconds": result.duration_seconds,
            "changes_applied": result.changes_applied,
            "planned": len(result.keys_in_state(TaskState.PLANNED)),
            "reconciled": len(result.keys_in_state(TaskState.RECONCILED)),
            "failed": len(result.failed),
            "skipped": len(result.keys_in_state(TaskState.SKIPPED)),
        }

        if result.error is not None:
            extra["error"] = str(result.error)
            logger.error("Reconciliation failed", extra=extra)
        elif result.failed:
            extra["failed_tasks"] = result.failed
            extra["timed_out"] = result.timed_out
            logger.error("Reconciliation partially applied", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)
