"""FloatingIP task: a public address, attached to an instance or a load balancer.

Instance floating IPs are created unbound; the instance render associates
them with its port. A floating IP bound to a load balancer is created
directly on the load balancer's VIP port.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar

from .errors import AmbiguousResourceError, OperatorError
from .task import Changes, Context, check_immutable

if TYPE_CHECKING:
    from .loadbalancer import LB

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class FloatingIP:
    """Desired state of a floating IP.

    The task name is stored as the floating IP description, since floating
    IPs carry no name of their own.
    """

    kind: ClassVar[str] = "FloatingIP"

    name: str | None = None
    id: str | None = None
    lb: LB | None = None
    ip: str | None = field(default=None, compare=False)
    external_network: str | None = field(default=None, compare=False)
    for_api_server: bool = field(default=False, compare=False)

    def find_ip_address(self, ctx: Context) -> str | None:
        if self.ip:
            return self.ip
        if self.id is None:
            return None
        self.ip = ctx.cloud.get_floating_ip(self.id).floating_ip_address
        return self.ip

    def find(self, ctx: Context) -> FloatingIP | None:
        if self.name is None:
            return None

        cloud = ctx.cloud
        if self.lb is not None and self.lb.port_id:
            found = cloud.list_floating_ips(port_id=self.lb.port_id)
        else:
            found = [
                f for f in cloud.list_floating_ips(description=self.name)
                if f.description == self.name
            ]
        if not found:
            return None
        if len(found) > 1:
            raise AmbiguousResourceError(
                f"Multiple floating IPs found with name {self.name}"
            )

        fip = found[0]
        actual = FloatingIP(
            name=self.name,
            id=fip.id,
            lb=self.lb,
            ip=fip.floating_ip_address,
            external_network=self.external_network,
            for_api_server=self.for_api_server,
        )

        # Avoid flapping
        self.id = actual.id
        self.ip = actual.ip
        return actual

    def check_changes(
        self, actual: FloatingIP | None, desired: FloatingIP, changes: Changes
    ) -> None:
        check_immutable(actual, desired, changes, ("id", "name", "lb"))

    def should_create(
        self, actual: FloatingIP | None, desired: FloatingIP, changes: Changes
    ) -> bool:
        return actual is None

    def render(
        self,
        ctx: Context,
        actual: FloatingIP | None,
        desired: FloatingIP,
        changes: Changes,
    ) -> None:
        if actual is not None:
            return

        if not desired.external_network:
            raise OperatorError(
                f"Floating IP {desired.name} requires an external network"
            )

        cloud = ctx.cloud
        network = cloud.get_external_network(desired.external_network)
        attrs: dict[str, Any] = {
            "floating_network_id": network.id,
            "description": desired.name,
        }
        if desired.lb is not None:
            if not desired.lb.port_id:
                raise OperatorError(
                    f"Load balancer {desired.lb.name} has no VIP port yet"
                )
            attrs["port_id"] = desired.lb.port_id

        logger.info("Creating floating IP", extra={"resource_name": desired.name})
        fip = cloud.create_floating_ip(attrs)
        desired.id = fip.id
        desired.ip = fip.floating_ip_address
        logger.info(
            "Created floating IP",
            extra={
                "resource_name": desired.name,
                "floating_ip_id": fip.id,
                "address": fip.floating_ip_address,
            },
        )
