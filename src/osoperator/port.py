"""Port task: a Neutron port an instance is booted on."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, ClassVar

from .errors import AmbiguousResourceError
from .task import Changes, Context, check_immutable

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Port:
    """Desired state of a port.

    Network, subnets and security groups are given by name; find resolves
    them so actual and desired compare on the same terms.
    """

    kind: ClassVar[str] = "Port"

    name: str | None = None
    id: str | None = None
    network: str | None = None
    subnets: list[str] | None = None
    security_groups: list[str] | None = None
    additional_security_groups: list[str] | None = None
    tags: list[str] | None = None

    def find(self, ctx: Context) -> Port | None:
        if self.name is None:
            return None

        found = [p for p in ctx.cloud.list_ports(name=self.name) if p.name == self.name]
        if not found:
            return None
        if len(found) > 1:
            raise AmbiguousResourceError(f"Multiple ports found with name {self.name}")

        actual = new_port_task_from_cloud(ctx, found[0], find=self)

        # Avoid flapping
        self.id = actual.id
        return actual

    def check_changes(self, actual: Port | None, desired: Port, changes: Changes) -> None:
        check_immutable(actual, desired, changes, ("id", "name", "network", "subnets"))

    def should_create(self, actual: Port | None, desired: Port, changes: Changes) -> bool:
        return True

    def render(self, ctx: Context, actual: Port | None, desired: Port, changes: Changes) -> None:
        cloud = ctx.cloud
        if actual is None:
            logger.info("Creating port", extra={"resource_name": desired.name})

            attrs: dict[str, Any] = {
                "name": desired.name,
                "network_id": cloud.get_network(desired.network).id if desired.network else None,
            }
            if desired.subnets:
                attrs["fixed_ips"] = [
                    {"subnet_id": cloud.get_subnet(s).id} for s in desired.subnets
                ]
            security_group_ids = _resolve_security_groups(ctx, desired)
            if security_group_ids is not None:
                attrs["security_group_ids"] = security_group_ids

            port = cloud.create_port(attrs)
            desired.id = port.id
            if desired.tags:
                cloud.replace_all_tags(port, list(desired.tags))

            logger.info(
                "Created port", extra={"resource_name": desired.name, "port_id": port.id}
            )
            return

        if "security_groups" in changes or "additional_security_groups" in changes:
            cloud.update_port(
                actual.id, security_group_ids=_resolve_security_groups(ctx, desired) or []
            )
        if "tags" in changes:
            cloud.replace_all_tags(cloud.get_port(actual.id), list(desired.tags or []))


def _resolve_security_groups(ctx: Context, port: Port) -> list[str] | None:
    names = [*(port.security_groups or []), *(port.additional_security_groups or [])]
    if port.security_groups is None and port.additional_security_groups is None:
        return None
    return [ctx.cloud.get_security_group(n).id for n in names]


def new_port_task_from_cloud(ctx: Context, port: Any, find: Port | None = None) -> Port:
    """Build an actual Port task from a cloud port.

    When ``find`` is the desired task, references that resolve to the same
    cloud IDs are reported by the desired names, so only real drift shows
    up as a change.
    """
    subnet_ids = [ip["subnet_id"] for ip in (port.fixed_ips or [])]
    security_group_ids = list(port.security_group_ids or [])

    actual = Port(
        name=port.name,
        id=port.id,
        network=port.network_id,
        subnets=subnet_ids,
        security_groups=security_group_ids,
        additional_security_groups=None,
        tags=list(port.tags or []),
    )
    if find is None:
        return actual

    cloud = ctx.cloud
    if find.network is not None and cloud.get_network(find.network).id == port.network_id:
        actual.network = find.network
    if find.subnets is not None:
        desired_subnets = {cloud.get_subnet(s).id for s in find.subnets}
        if desired_subnets == set(subnet_ids):
            actual.subnets = list(find.subnets)
    desired_groups = _resolve_security_groups(ctx, find)
    if desired_groups is not None and set(desired_groups) == set(security_group_ids):
        actual.security_groups = find.security_groups
        actual.additional_security_groups = find.additional_security_groups
    return actual
