"""Load balancer chain fronting the API servers.

LB -> LBPool -> LBListener, plus one PoolAssociation per master server
group that registers the group's instances as pool members. Octavia
rejects mutations while a load balancer is not ACTIVE, so every mutation
waits for the load balancer to settle before returning.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar

from .errors import AmbiguousResourceError, OperatorError
from .task import Changes, Context, check_immutable

if TYPE_CHECKING:
    from .instance import Instance
    from .servergroup import ServerGroup

logger = logging.getLogger(__name__)

LB_PROTOCOL = "TCP"
LB_ALGORITHM = "ROUND_ROBIN"
API_PORT = 443
FIXED_ADDRESS_TYPE = "fixed"


def _single(items: list[Any], kind: str, name: str | None) -> Any | None:
    found = [i for i in items if i.name == name]
    if not found:
        return None
    if len(found) > 1:
        raise AmbiguousResourceError(f"Multiple {kind} found with name {name}")
    return found[0]


@dataclass(eq=False)
class LB:
    kind: ClassVar[str] = "LB"

    name: str | None = None
    id: str | None = None
    subnet: str | None = None
    port_id: str | None = field(default=None, compare=False)
    security_group: str | None = field(default=None, compare=False)

    def find_ip_address(self, ctx: Context) -> str | None:
        if self.id is None:
            return None
        return ctx.cloud.get_load_balancer(self.id).vip_address

    def find(self, ctx: Context) -> LB | None:
        if self.name is None:
            return None

        cloud = ctx.cloud
        lb = _single(cloud.list_load_balancers(name=self.name), "load balancers", self.name)
        if lb is None:
            return None

        actual = LB(
            name=lb.name,
            id=lb.id,
            subnet=lb.vip_subnet_id,
            port_id=lb.vip_port_id,
            security_group=self.security_group,
        )
        if self.subnet is not None and cloud.get_subnet(self.subnet).id == lb.vip_subnet_id:
            actual.subnet = self.subnet

        # Avoid flapping
        self.id = actual.id
        self.port_id = actual.port_id
        return actual

    def check_changes(self, actual: LB | None, desired: LB, changes: Changes) -> None:
        check_immutable(actual, desired, changes, ("id", "name", "subnet"))

    def should_create(self, actual: LB | None, desired: LB, changes: Changes) -> bool:
        return actual is None

    def render(self, ctx: Context, actual: LB | None, desired: LB, changes: Changes) -> None:
        if actual is not None:
            return

        cloud = ctx.cloud
        if not desired.subnet:
            raise OperatorError(f"Load balancer {desired.name} requires a subnet")
        subnet = cloud.get_subnet(desired.subnet)

        logger.info("Creating load balancer", extra={"resource_name": desired.name})
        lb = cloud.create_load_balancer({"name": desired.name, "vip_subnet_id": subnet.id})
        lb = cloud.wait_load_balancer_active(lb.id)
        desired.id = lb.id
        desired.port_id = lb.vip_port_id

        if desired.security_group:
            group = cloud.get_security_group(desired.security_group)
            cloud.update_port(lb.vip_port_id, security_group_ids=[group.id])

        logger.info(
            "Created load balancer",
            extra={"resource_name": desired.name, "load_balancer_id": lb.id},
        )


@dataclass(eq=False)
class LBPool:
    kind: ClassVar[str] = "LBPool"

    name: str | None = None
    id: str | None = None
    loadbalancer: LB | None = None

    def find(self, ctx: Context) -> LBPool | None:
        if self.name is None:
            return None

        pool = _single(ctx.cloud.list_pools(name=self.name), "pools", self.name)
        if pool is None:
            return None

        actual = LBPool(name=pool.name, id=pool.id, loadbalancer=self.loadbalancer)
        if self.loadbalancer is not None:
            lb_ids = {lb["id"] for lb in (pool.loadbalancers or [])}
            if self.loadbalancer.id not in lb_ids:
                actual.loadbalancer = None

        # Avoid flapping
        self.id = actual.id
        return actual

    def check_changes(self, actual: LBPool | None, desired: LBPool, changes: Changes) -> None:
        check_immutable(actual, desired, changes, ("id", "name", "loadbalancer"))

    def should_create(self, actual: LBPool | None, desired: LBPool, changes: Changes) -> bool:
        return actual is None

    def render(
        self, ctx: Context, actual: LBPool | None, desired: LBPool, changes: Changes
    ) -> None:
        if actual is not None:
            return
        if desired.loadbalancer is None or desired.loadbalancer.id is None:
            raise OperatorError(f"Pool {desired.name} requires a created load balancer")

        cloud = ctx.cloud
        logger.info("Creating pool", extra={"resource_name": desired.name})
        pool = cloud.create_pool(
            {
                "name": desired.name,
                "loadbalancer_id": desired.loadbalancer.id,
                "protocol": LB_PROTOCOL,
                "lb_algorithm": LB_ALGORITHM,
            }
        )
        desired.id = pool.id
        cloud.wait_load_balancer_active(desired.loadbalancer.id)


@dataclass(eq=False)
class LBListener:
    """Listener forwarding the API port to the pool.

    ``allowed_cidrs`` is only set when the VIP ACL restricts API access;
    it is the one field updated in place.
    """

    kind: ClassVar[str] = "LBListener"

    name: str | None = None
    id: str | None = None
    pool: LBPool | None = None
    allowed_cidrs: list[str] | None = None

    def find(self, ctx: Context) -> LBListener | None:
        if self.name is None:
            return None

        listener = _single(ctx.cloud.list_listeners(name=self.name), "listeners", self.name)
        if listener is None:
            return None

        actual = LBListener(
            name=listener.name,
            id=listener.id,
            pool=self.pool,
            allowed_cidrs=sorted(listener.allowed_cidrs or []),
        )
        if self.pool is not None and listener.default_pool_id != self.pool.id:
            actual.pool = None

        # Avoid flapping
        self.id = actual.id
        return actual

    def check_changes(
        self, actual: LBListener | None, desired: LBListener, changes: Changes
    ) -> None:
        check_immutable(actual, desired, changes, ("id", "name", "pool"))

    def should_create(
        self, actual: LBListener | None, desired: LBListener, changes: Changes
    ) -> bool:
        return True

    def render(
        self,
        ctx: Context,
        actual: LBListener | None,
        desired: LBListener,
        changes: Changes,
    ) -> None:
        pool = desired.pool
        if pool is None or pool.id is None or pool.loadbalancer is None:
            raise OperatorError(f"Listener {desired.name} requires a created pool")

        cloud = ctx.cloud
        if actual is None:
            attrs: dict[str, Any] = {
                "name": desired.name,
                "loadbalancer_id": pool.loadbalancer.id,
                "default_pool_id": pool.id,
                "protocol": LB_PROTOCOL,
                "protocol_port": API_PORT,
            }
            if desired.allowed_cidrs:
                attrs["allowed_cidrs"] = list(desired.allowed_cidrs)

            logger.info("Creating listener", extra={"resource_name": desired.name})
            listener = cloud.create_listener(attrs)
            desired.id = listener.id
        elif "allowed_cidrs" in changes:
            logger.info(
                "Updating listener allowed CIDRs",
                extra={"resource_name": desired.name, "allowed_cidrs": desired.allowed_cidrs},
            )
            cloud.update_listener(actual.id, allowed_cidrs=list(desired.allowed_cidrs or []))
        else:
            return

        cloud.wait_load_balancer_active(pool.loadbalancer.id)


@dataclass(eq=False)
class PoolAssociation:
    """Registers the fixed addresses of a server group's instances in a pool.

    ``instances`` only orders this task after the instances it registers;
    membership itself is read from the server group.
    """

    kind: ClassVar[str] = "PoolAssociation"

    name: str | None = None
    pool: LBPool | None = None
    server_group: ServerGroup | None = None
    interface_name: str | None = field(default=None, compare=False)
    protocol_port: int | None = field(default=API_PORT, compare=False)
    addresses: list[str] | None = None
    instances: list[Instance] = field(default_factory=list, compare=False)

    def desired_addresses(self, ctx: Context) -> list[str]:
        """Fixed addresses of every server group member on the cluster network."""
        if self.server_group is None:
            return []

        cloud = ctx.cloud
        addresses: set[str] = set()
        for member_id in self.server_group.member_ids():
            server = cloud.get_instance(member_id)
            for props in (server.addresses or {}).get(self.interface_name, []):
                if props.get("OS-EXT-IPS:type", FIXED_ADDRESS_TYPE) == FIXED_ADDRESS_TYPE:
                    addresses.add(props["addr"])
        return sorted(addresses)

    def find(self, ctx: Context) -> PoolAssociation | None:
        self.addresses = self.desired_addresses(ctx)
        if self.pool is None or self.pool.id is None:
            return None

        members = ctx.cloud.list_pool_members(self.pool.id)
        return PoolAssociation(
            name=self.name,
            pool=self.pool,
            server_group=self.server_group,
            interface_name=self.interface_name,
            protocol_port=self.protocol_port,
            addresses=sorted(
                m.address for m in members if m.protocol_port == self.protocol_port
            ),
        )

    def check_changes(
        self,
        actual: PoolAssociation | None,
        desired: PoolAssociation,
        changes: Changes,
    ) -> None:
        check_immutable(actual, desired, changes, ("name", "pool", "server_group"))

    def should_create(
        self,
        actual: PoolAssociation | None,
        desired: PoolAssociation,
        changes: Changes,
    ) -> bool:
        return True

    def render(
        self,
        ctx: Context,
        actual: PoolAssociation | None,
        desired: PoolAssociation,
        changes: Changes,
    ) -> None:
        pool = desired.pool
        if pool is None or pool.id is None or pool.loadbalancer is None:
            raise OperatorError(f"Pool association {desired.name} requires a created pool")

        cloud = ctx.cloud
        existing = set(actual.addresses or []) if actual is not None else set()
        for address in desired.addresses or []:
            if address in existing:
                continue
            logger.info(
                "Adding pool member",
                extra={"resource_name": desired.name, "pool": pool.name, "address": address},
            )
            cloud.create_pool_member(
                pool.id,
                {
                    "name": f"{desired.name}-{address}",
                    "address": address,
                    "protocol_port": desired.protocol_port,
                },
            )
            cloud.wait_load_balancer_active(pool.loadbalancer.id)
