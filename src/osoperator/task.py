"""Task abstraction and the generic delta run.

A task is the desired state of one cloud resource. Each resource kind has
its own dataclass implementing the same capability set:

- find(ctx): read the actual state, None if the resource does not exist
- check_changes(actual, desired, changes): reject illegal change sets
- should_create(actual, desired, changes): decide whether render runs
- render(ctx, actual, desired, changes): apply the change set

Tasks reference each other through typed fields (an Instance holds its Port
task, not a port name). Those references are the dependency edges; see
``dependency.find_dependencies``.

Fields that are None in the desired task mean "don't care" or "not yet
known" and never produce a change. Fields declared with
``field(compare=False)`` are bookkeeping and are never diffed.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar, Protocol, runtime_checkable

from .errors import ImmutableFieldError, RequiredFieldError

if TYPE_CHECKING:
    from .cloud import OpenstackCloud

logger = logging.getLogger(__name__)


class TaskState(str, Enum):
    """Lifecycle of a task within one reconciliation run."""

    UNRESOLVED = "unresolved"  # Desired only, no cloud counterpart known
    FOUND = "found"  # Actual state fetched
    PLANNED = "planned"  # Change set validated, action decided
    RENDERED = "rendered"  # Mutation applied
    RECONCILED = "reconciled"  # Actual matches desired
    FAILED = "failed"
    SKIPPED = "skipped"  # A producer failed, never attempted


class Action(str, Enum):
    """Mutation decided for a task."""

    NONE = "none"
    CREATE = "create"
    UPDATE = "update"


@runtime_checkable
class Task(Protocol):
    """Capability set shared by every resource kind."""

    kind: ClassVar[str]
    name: str | None

    def find(self, ctx: Context) -> Any: ...

    def check_changes(self, actual: Any, desired: Any, changes: Changes) -> None: ...

    def should_create(self, actual: Any, desired: Any, changes: Changes) -> bool: ...

    def render(self, ctx: Context, actual: Any, desired: Any, changes: Changes) -> None: ...


@runtime_checkable
class HasDependencies(Protocol):
    """Implemented by non-task values (user data) that embed task references."""

    def get_dependencies(self, tasks: Mapping[str, Task]) -> list[Task]: ...


# Field name -> desired value, for every field that differs from actual.
Changes = dict[str, Any]


@dataclass
class Context:
    """Shared state handed to every task operation during a run."""

    cloud: OpenstackCloud
    tasks: Mapping[str, Task] = field(default_factory=dict)
    dry_run: bool = False


@dataclass
class TaskOutcome:
    """What run_task did for a single task."""

    state: TaskState
    action: Action = Action.NONE
    changed_fields: list[str] = field(default_factory=list)


def task_key(task: Task) -> str:
    """Stable identity of a task, independent of the cloud-assigned ID."""
    return f"{task.kind}/{task.name}"


def is_task(value: Any) -> bool:
    return isinstance(value, Task) and dataclasses.is_dataclass(value)


def _reference_identity(task: Any) -> tuple[str, Any]:
    # Compare references by cloud ID once known, otherwise by name.
    task_id = getattr(task, "id", None)
    if task_id is not None:
        return ("id", task_id)
    return ("name", getattr(task, "name", None))


def _values_equal(actual: Any, desired: Any) -> bool:
    if is_task(desired) or is_task(actual):
        if actual is None or desired is None:
            return actual is desired
        a_kind, a_value = _reference_identity(actual)
        d_kind, d_value = _reference_identity(desired)
        if a_kind == d_kind == "id":
            return a_value == d_value
        return getattr(actual, "name", None) == getattr(desired, "name", None)

    if isinstance(desired, (list, tuple, set, frozenset)):
        if actual is None:
            return len(desired) == 0
        try:
            # Insertion order is irrelevant for tags, security groups, CIDRs.
            return set(actual) == set(desired)
        except TypeError:
            return list(actual) == list(desired)

    return actual == desired


def build_changes(actual: Any, desired: Any) -> Changes:
    """Compute the fields of ``desired`` that differ from ``actual``.

    Desired fields set to None are ignored. With no actual, every set field
    is a change.
    """
    changes: Changes = {}
    for f in dataclasses.fields(desired):
        if not f.compare:
            continue
        desired_value = getattr(desired, f.name)
        if desired_value is None:
            continue
        if actual is None:
            changes[f.name] = desired_value
            continue
        if not _values_equal(getattr(actual, f.name), desired_value):
            changes[f.name] = desired_value
    return changes


def check_immutable(
    actual: Any,
    desired: Any,
    changes: Changes,
    immutable: tuple[str, ...] = ("id", "name"),
) -> None:
    """Shared CheckChanges rules.

    Without an actual resource the desired name is required; with one, none
    of the ``immutable`` fields may appear in the change set.
    """
    if actual is None:
        if getattr(desired, "name", None) is None:
            raise RequiredFieldError("name")
        return

    for field_name in immutable:
        if field_name in changes:
            raise ImmutableFieldError(field_name)


def run_task(task: Task, ctx: Context) -> TaskOutcome:
    """Reconcile one task: find, diff, validate, decide and render.

    Render is skipped when the task decides no create-style render is
    needed, and always in dry run. Declining to render an existing resource
    reconciles it; its drift is still reported in ``changed_fields``.
    """
    actual = task.find(ctx)
    changes = build_changes(actual, task)

    if actual is not None and not changes:
        logger.debug("Task is up to date", extra={"task": task_key(task)})
        return TaskOutcome(state=TaskState.RECONCILED)

    task.check_changes(actual, task, changes)
    changed_fields = sorted(changes)

    if not task.should_create(actual, task, changes):
        logger.info(
            "Ignoring changes that do not require a render",
            extra={"task": task_key(task), "changed_fields": changed_fields},
        )
        state = TaskState.RECONCILED if actual is not None else TaskState.PLANNED
        return TaskOutcome(state=state, changed_fields=changed_fields)

    action = Action.CREATE if actual is None else Action.UPDATE

    if ctx.dry_run:
        logger.info(
            "Dry run: would render task",
            extra={
                "task": task_key(task),
                "action": action.value,
                "changed_fields": changed_fields,
            },
        )
        return TaskOutcome(state=TaskState.PLANNED, action=action, changed_fields=changed_fields)

    task.render(ctx, actual, task, changes)
    logger.info(
        "Rendered task",
        extra={"task": task_key(task), "action": action.value, "changed_fields": changed_fields},
    )
    return TaskOutcome(state=TaskState.RENDERED, action=action, changed_fields=changed_fields)
