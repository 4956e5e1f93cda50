"""Task dependency discovery, ordering and validation.

Edges are discovered structurally: a task depends on every task held in one
of its dataclass fields (directly or in a list), and on every task a
non-task field value declares through ``HasDependencies`` (user data that
embeds another task's address).

The graph is validated with Kahn's algorithm before anything renders, so a
cycle is a configuration error and never a deadlock.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from .errors import OperatorError
from .task import HasDependencies, Task, is_task, task_key

logger = logging.getLogger(__name__)


class DependencyError(OperatorError):
    """Raised when dependency validation fails."""

    pass


class CyclicDependencyError(DependencyError):
    """Raised when a dependency cycle is detected."""

    pass


class MissingDependencyError(DependencyError):
    """Raised when a task references a task outside the graph."""

    pass


def find_dependencies(task: Task, tasks: Mapping[str, Task]) -> list[Task]:
    """Return the tasks ``task`` depends on, in field order, without duplicates."""
    deps: list[Task] = []
    seen: set[int] = set()

    def add(candidate: Task) -> None:
        if candidate is task or id(candidate) in seen:
            return
        seen.add(id(candidate))
        deps.append(candidate)

    for f in dataclasses.fields(task):
        value = getattr(task, f.name)
        if value is None:
            continue
        if is_task(value):
            add(value)
        elif isinstance(value, (list, tuple)):
            for item in value:
                if is_task(item):
                    add(item)
        elif isinstance(value, HasDependencies):
            for dep in value.get_dependencies(tasks):
                add(dep)
    return deps


@dataclass
class TaskNode:
    """A node in the dependency graph."""

    key: str
    task: Task
    depends_on: list[str] = field(default_factory=list)


@dataclass
class DependencyGraph:
    """Directed acyclic graph of tasks, keyed by ``Kind/name``."""

    nodes: dict[str, TaskNode] = field(default_factory=dict)

    def add_node(self, task: Task, depends_on: Iterable[str] = ()) -> None:
        key = task_key(task)
        node = self.nodes.get(key)
        if node is None:
            self.nodes[key] = TaskNode(key=key, task=task, depends_on=list(depends_on))
        else:
            node.depends_on = list(depends_on)

    def dependencies_of(self, key: str) -> list[str]:
        return list(self.nodes[key].depends_on)

    def dependents_of(self, key: str) -> list[str]:
        """Keys of every task that depends on ``key``, directly or transitively."""
        direct: dict[str, list[str]] = {k: [] for k in self.nodes}
        for node in self.nodes.values():
            for dep in node.depends_on:
                direct[dep].append(node.key)

        found: set[str] = set()
        stack = list(direct.get(key, []))
        while stack:
            current = stack.pop()
            if current in found:
                continue
            found.add(current)
            stack.extend(direct[current])
        return sorted(found)

    def validate(self) -> None:
        """Validate the dependency graph.

        Raises:
            MissingDependencyError: If an edge points outside the graph.
            CyclicDependencyError: If a cycle is detected.
        """
        for node in self.nodes.values():
            missing = [dep for dep in node.depends_on if dep not in self.nodes]
            if missing:
                raise MissingDependencyError(
                    f"Task {node.key} depends on tasks that are not part of the model: {missing}"
                )

        # Kahn's algorithm for topological sort / cycle detection
        in_degree: dict[str, int] = {key: len(node.depends_on) for key, node in self.nodes.items()}
        dependents: dict[str, list[str]] = {key: [] for key in self.nodes}
        for node in self.nodes.values():
            for dep in node.depends_on:
                dependents[dep].append(node.key)

        queue = [key for key, degree in in_degree.items() if degree == 0]
        processed = 0

        while queue:
            current = queue.pop(0)
            processed += 1

            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if processed != len(self.nodes):
            cycle_nodes = sorted(key for key, degree in in_degree.items() if degree > 0)
            raise CyclicDependencyError(f"Circular dependency detected involving: {cycle_nodes}")

    def topological_sort(self) -> list[str]:
        """Return task keys in dependency order (producers first).

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        self.validate()

        dependents: dict[str, list[str]] = {key: [] for key in self.nodes}
        in_degree: dict[str, int] = {key: 0 for key in self.nodes}
        for node in self.nodes.values():
            for dep in node.depends_on:
                dependents[dep].append(node.key)
                in_degree[node.key] += 1

        result: list[str] = []
        queue = [key for key, degree in in_degree.items() if degree == 0]

        while queue:
            # Sort for deterministic ordering among nodes with same in_degree
            queue.sort()
            current = queue.pop(0)
            result.append(current)

            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        return result

    def get_ready(self, satisfied: set[str], exclude: set[str] | None = None) -> list[str]:
        """Get tasks whose producers have all completed.

        Args:
            satisfied: Keys of tasks already rendered or reconciled.
            exclude: Keys to leave out (running, failed or skipped).

        Returns:
            Sorted keys of tasks that can run now.
        """
        exclude = exclude or set()
        ready = []
        for node in self.nodes.values():
            if node.key in satisfied or node.key in exclude:
                continue
            if all(dep in satisfied for dep in node.depends_on):
                ready.append(node.key)
        return sorted(ready)


def build_dependency_graph(tasks: Mapping[str, Task]) -> DependencyGraph:
    """Build and validate the graph for a set of tasks keyed by ``task_key``.

    Raises:
        MissingDependencyError: If a task references a task outside ``tasks``.
        CyclicDependencyError: If the references form a cycle.
    """
    graph = DependencyGraph()
    for key, task in tasks.items():
        deps = [task_key(dep) for dep in find_dependencies(task, tasks)]
        graph.add_node(task, deps)
        logger.debug("Discovered task dependencies", extra={"task": key, "depends_on": deps})

    graph.validate()
    return graph
