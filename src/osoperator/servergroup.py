"""ServerGroup task: anti-affinity container for the instances of one group."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, ClassVar

from .errors import AmbiguousResourceError
from .task import Changes, Context, check_immutable

logger = logging.getLogger(__name__)

ANTI_AFFINITY = "anti-affinity"


@dataclass(eq=False)
class ServerGroup:
    """Desired state of a server group.

    ``members`` is the set of instance IDs known to belong to the group. It
    is the only state shared between tasks: instance renders running in
    parallel append to it through ``add_new_member``.
    """

    kind: ClassVar[str] = "ServerGroup"

    name: str | None = None
    id: str | None = None
    cluster_name: str | None = field(default=None, compare=False)
    ig_name: str | None = field(default=None, compare=False)
    policies: list[str] | None = None
    max_size: int | None = field(default=None, compare=False)
    members: set[str] = field(default_factory=set, compare=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, compare=False, repr=False)

    def add_new_member(self, instance_id: str) -> None:
        """Record an instance as a member. Safe under concurrent creation."""
        with self._lock:
            self.members = self.members | {instance_id}

    def member_ids(self) -> list[str]:
        with self._lock:
            return sorted(self.members)

    def find(self, ctx: Context) -> ServerGroup | None:
        if self.name is None:
            return None

        found = [g for g in ctx.cloud.list_server_groups() if g.name == self.name]
        if not found:
            return None
        if len(found) > 1:
            raise AmbiguousResourceError(
                f"Found multiple server groups with name {self.name}"
            )

        group = found[0]
        actual = ServerGroup(
            name=group.name,
            id=group.id,
            cluster_name=self.cluster_name,
            ig_name=self.ig_name,
            policies=_group_policies(group),
            max_size=self.max_size,
        )
        actual.members = set(group.member_ids or [])

        # Avoid flapping
        self.id = actual.id
        with self._lock:
            self.members = self.members | actual.members
        return actual

    def check_changes(
        self, actual: ServerGroup | None, desired: ServerGroup, changes: Changes
    ) -> None:
        check_immutable(actual, desired, changes, ("id", "name", "policies"))

    def should_create(
        self, actual: ServerGroup | None, desired: ServerGroup, changes: Changes
    ) -> bool:
        return actual is None

    def render(
        self,
        ctx: Context,
        actual: ServerGroup | None,
        desired: ServerGroup,
        changes: Changes,
    ) -> None:
        if actual is not None:
            return

        logger.info("Creating server group", extra={"resource_name": desired.name})
        group = ctx.cloud.create_server_group(
            {"name": desired.name, "policies": list(desired.policies or [ANTI_AFFINITY])}
        )
        desired.id = group.id
        logger.info(
            "Created server group",
            extra={"resource_name": desired.name, "server_group_id": group.id},
        )


def _group_policies(group: Any) -> list[str]:
    # Newer compute microversions expose a single policy instead of a list.
    policies = getattr(group, "policies", None)
    if policies:
        return list(policies)
    policy = getattr(group, "policy", None)
    return [policy] if policy else []
