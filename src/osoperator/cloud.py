"""OpenStack resource facade built on openstacksdk.

Every remote call goes through the backoff executor with a policy chosen by
operation class:

- Reads and lists use READ_BACKOFF.
- Creates, updates and deletes use WRITE_BACKOFF.
- Floating IP address discovery and provisioning waits use POLL_BACKOFF,
  since address propagation after attachment is observably delayed.

Raw SDK exceptions are translated into the taxonomy in ``errors`` with the
resource kind, name or ID, and the attempted operation attached. Deletes
treat "already absent" as success.

The facade returns SDK resource objects; tasks map them to domain tasks.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, TypeVar

import openstack
from keystoneauth1 import exceptions as ks_exceptions
from openstack import exceptions as sdk_exceptions

from .backoff import (
    POLL_BACKOFF,
    READ_BACKOFF,
    WRITE_BACKOFF,
    BackoffPolicy,
    call_with_backoff,
    retry_with_backoff,
)
from .errors import CloudAPIError, ConflictError, NotFoundError, TransportError

if TYPE_CHECKING:
    from openstack.connection import Connection

    from .config import Config

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Load balancer provisioning states
LB_ACTIVE = "ACTIVE"
LB_ERROR = "ERROR"

# Address type reported by Nova for floating addresses
FLOATING_ADDRESS_TYPE = "floating"


def connect(config: Config) -> OpenstackCloud:
    """Build a facade for the cloud named in the configuration.

    Authentication is delegated to openstacksdk (clouds.yaml / OS_* variables).
    """
    with translate_errors("cloud", config.cloud_name, "connect"):
        conn = openstack.connect(cloud=config.cloud_name)
    return OpenstackCloud(conn, floating_enabled=config.floating_ip_enabled)


def is_retryable_status(status_code: int | None) -> bool:
    """Return True for HTTP statuses worth retrying (5xx, 429, unknown)."""
    if status_code is None:
        return True
    return status_code >= 500 or status_code == 429


@contextmanager
def translate_errors(kind: str, name: str | None, operation: str) -> Iterator[None]:
    """Translate openstacksdk / keystoneauth exceptions into operator errors."""
    context = {"kind": kind, "name": name, "operation": operation}
    try:
        yield
    except sdk_exceptions.NotFoundException as e:
        raise NotFoundError(
            f"{kind} {name} not found during {operation}: {e}",
            status_code=404,
            **context,
        ) from e
    except sdk_exceptions.ConflictException as e:
        raise ConflictError(
            f"conflict during {operation} of {kind} {name}: {e}",
            status_code=409,
            **context,
        ) from e
    except sdk_exceptions.HttpException as e:
        status = e.status_code
        error_class = TransportError if is_retryable_status(status) else CloudAPIError
        raise error_class(
            f"error during {operation} of {kind} {name} (status {status}): {e}",
            status_code=status,
            **context,
        ) from e
    except ks_exceptions.ConnectionError as e:
        raise TransportError(
            f"connection error during {operation} of {kind} {name}: {e}", **context
        ) from e
    except sdk_exceptions.SDKException as e:
        raise CloudAPIError(f"error during {operation} of {kind} {name}: {e}", **context) from e


class OpenstackCloud:
    """Facade over the compute, network, image and load balancer APIs.

    Args:
        conn: openstacksdk Connection (or an object exposing the same proxies).
        floating_enabled: When True, address discovery only reports floating
            addresses; otherwise every address of the server is reported.
        sleep: Sleep function for backoff (injectable for tests).
        rng: Random source for jitter (injectable for tests).
    """

    def __init__(
        self,
        conn: Connection,
        *,
        floating_enabled: bool = True,
        sleep: Callable[[float], None] = time.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._conn = conn
        self._floating_enabled = floating_enabled
        self._sleep = sleep
        self._rng = rng

    @property
    def connection(self) -> Connection:
        return self._conn

    # ------------------------------------------------------------------
    # Executor plumbing
    # ------------------------------------------------------------------

    def _call(
        self,
        policy: BackoffPolicy,
        kind: str,
        name: str | None,
        operation: str,
        fn: Callable[[], T],
    ) -> T:
        def attempt() -> T:
            with translate_errors(kind, name, operation):
                return fn()

        return call_with_backoff(
            policy,
            attempt,
            sleep=self._sleep,
            rng=self._rng,
            description=f"{operation} {kind} {name}",
        )

    def _read(self, kind: str, name: str | None, operation: str, fn: Callable[[], T]) -> T:
        return self._call(READ_BACKOFF, kind, name, operation, fn)

    def _write(self, kind: str, name: str | None, operation: str, fn: Callable[[], T]) -> T:
        return self._call(WRITE_BACKOFF, kind, name, operation, fn)

    def _delete(self, kind: str, resource_id: str, fn: Callable[[], Any]) -> None:
        try:
            self._write(kind, resource_id, "delete", fn)
        except NotFoundError:
            logger.debug(
                "Resource already absent, delete is a no-op",
                extra={"kind": kind, "resource_id": resource_id},
            )

    def _poll(self, description: str, condition: Callable[[], bool]) -> None:
        retry_with_backoff(
            POLL_BACKOFF,
            condition,
            sleep=self._sleep,
            rng=self._rng,
            description=description,
        )

    # ------------------------------------------------------------------
    # Servers
    # ------------------------------------------------------------------

    def list_instances(self, **filters: Any) -> list[Any]:
        return self._read(
            "server", filters.get("name"), "list", lambda: list(self._conn.compute.servers(**filters))
        )

    def get_instance(self, instance_id: str) -> Any:
        return self._read(
            "server", instance_id, "get", lambda: self._conn.compute.get_server(instance_id)
        )

    def create_instance(self, attrs: dict[str, Any], port_id: str | None = None) -> Any:
        """Create a server, recovering once from a stale port binding.

        When the cloud rejects the create because the port is in use, and
        the port still points at a device with no owning service (left behind
        by a deleted instance), the dangling device ID is cleared and the
        create is retried exactly once.
        """
        name = attrs.get("name")

        def create() -> Any:
            return self._conn.compute.create_server(**attrs)

        try:
            return self._write("server", name, "create", create)
        except ConflictError:
            if not port_id or not self._clear_stale_port_binding(port_id):
                raise

        logger.info(
            "Retrying server create after clearing stale port binding",
            extra={"resource_name": name, "port_id": port_id},
        )
        return self._write("server", name, "create", create)

    def _clear_stale_port_binding(self, port_id: str) -> bool:
        port = self.get_port(port_id)
        if port.device_id and not port.device_owner:
            logger.warning(
                "Port is attached to a device that no longer exists, resetting device ID",
                extra={"port_id": port_id, "device_id": port.device_id},
            )
            self.update_port(port_id, device_id="")
            return True
        return False

    def delete_instance_with_id(self, instance_id: str) -> None:
        """Delete a server after deleting the ports bound to it."""
        for port in self.list_ports(device_id=instance_id):
            self.delete_port(port.id)
        self._delete(
            "server", instance_id, lambda: self._conn.compute.delete_server(instance_id)
        )

    def list_server_floating_ips(self, instance_id: str) -> list[str]:
        """Poll until the server reports at least one address.

        Raises:
            ConvergenceTimeout: If no address appeared within POLL_BACKOFF.
        """
        result: list[str] = []

        def condition() -> bool:
            with translate_errors("server", instance_id, "get"):
                server = self._conn.compute.get_server(instance_id)

            result.clear()
            for addresses in (server.addresses or {}).values():
                for props in addresses:
                    if (
                        not self._floating_enabled
                        or props.get("OS-EXT-IPS:type") == FLOATING_ADDRESS_TYPE
                    ):
                        result.append(props["addr"])
            return len(result) > 0

        self._poll(f"discover addresses of server {instance_id}", condition)
        return list(result)

    # ------------------------------------------------------------------
    # Ports
    # ------------------------------------------------------------------

    def list_ports(self, **filters: Any) -> list[Any]:
        return self._read(
            "port", filters.get("name"), "list", lambda: list(self._conn.network.ports(**filters))
        )

    def get_port(self, port_id: str) -> Any:
        return self._read("port", port_id, "get", lambda: self._conn.network.get_port(port_id))

    def create_port(self, attrs: dict[str, Any]) -> Any:
        return self._write(
            "port", attrs.get("name"), "create", lambda: self._conn.network.create_port(**attrs)
        )

    def update_port(self, port_id: str, **attrs: Any) -> Any:
        return self._write(
            "port", port_id, "update", lambda: self._conn.network.update_port(port_id, **attrs)
        )

    def delete_port(self, port_id: str) -> None:
        self._delete("port", port_id, lambda: self._conn.network.delete_port(port_id))

    # ------------------------------------------------------------------
    # Floating IPs
    # ------------------------------------------------------------------

    def list_floating_ips(self, **filters: Any) -> list[Any]:
        return self._read(
            "floating_ip",
            filters.get("description"),
            "list",
            lambda: list(self._conn.network.ips(**filters)),
        )

    def get_floating_ip(self, fip_id: str) -> Any:
        return self._read("floating_ip", fip_id, "get", lambda: self._conn.network.get_ip(fip_id))

    def create_floating_ip(self, attrs: dict[str, Any]) -> Any:
        return self._write(
            "floating_ip",
            attrs.get("description"),
            "create",
            lambda: self._conn.network.create_ip(**attrs),
        )

    def associate_floating_ip(self, fip_id: str, port_id: str) -> Any:
        """Point a floating IP at a port.

        Re-associating an IP already bound to the same port is a no-op.
        """
        fip = self.get_floating_ip(fip_id)
        if fip.port_id == port_id:
            logger.debug(
                "Floating IP already associated",
                extra={"floating_ip_id": fip_id, "port_id": port_id},
            )
            return fip
        return self._write(
            "floating_ip",
            fip_id,
            "associate",
            lambda: self._conn.network.update_ip(fip_id, port_id=port_id),
        )

    def delete_floating_ip(self, fip_id: str) -> None:
        self._delete("floating_ip", fip_id, lambda: self._conn.network.delete_ip(fip_id))

    # ------------------------------------------------------------------
    # Server groups
    # ------------------------------------------------------------------

    def list_server_groups(self, **filters: Any) -> list[Any]:
        return self._read(
            "server_group",
            filters.get("name"),
            "list",
            lambda: list(self._conn.compute.server_groups(**filters)),
        )

    def get_server_group(self, group_id: str) -> Any:
        return self._read(
            "server_group", group_id, "get", lambda: self._conn.compute.get_server_group(group_id)
        )

    def create_server_group(self, attrs: dict[str, Any]) -> Any:
        return self._write(
            "server_group",
            attrs.get("name"),
            "create",
            lambda: self._conn.compute.create_server_group(**attrs),
        )

    def delete_server_group(self, group_id: str) -> None:
        self._delete(
            "server_group", group_id, lambda: self._conn.compute.delete_server_group(group_id)
        )

    # ------------------------------------------------------------------
    # Images, flavors, networks, subnets, security groups
    # ------------------------------------------------------------------

    def get_image(self, name: str) -> Any:
        def find() -> Any:
            image = self._conn.image.find_image(name, ignore_missing=True)
            if image is None:
                raise NotFoundError(
                    f"could not find image with name {name}",
                    kind="image",
                    name=name,
                    operation="get",
                )
            return image

        return self._read("image", name, "get", find)

    def get_flavor(self, name: str) -> Any:
        def find() -> Any:
            for flavor in self._conn.compute.flavors():
                if flavor.name == name:
                    return flavor
            raise NotFoundError(
                f"could not find flavor with name {name}",
                kind="flavor",
                name=name,
                operation="get",
            )

        return self._read("flavor", name, "get", find)

    def get_network(self, name_or_id: str) -> Any:
        return self._read(
            "network",
            name_or_id,
            "get",
            lambda: self._conn.network.find_network(name_or_id, ignore_missing=False),
        )

    def get_external_network(self, name: str) -> Any:
        """Find the router-external network with the given name.

        Raises:
            ConvergenceTimeout: If the network never shows up as external.
        """
        found: list[Any] = []

        def condition() -> bool:
            with translate_errors("network", name, "list"):
                for network in self._conn.network.networks(is_router_external=True):
                    if network.name == name:
                        found.append(network)
                        return True
            return False

        retry_with_backoff(
            READ_BACKOFF,
            condition,
            sleep=self._sleep,
            rng=self._rng,
            description=f"find external network {name}",
        )
        return found[0]

    def get_subnet(self, name_or_id: str) -> Any:
        return self._read(
            "subnet",
            name_or_id,
            "get",
            lambda: self._conn.network.find_subnet(name_or_id, ignore_missing=False),
        )

    def get_security_group(self, name_or_id: str) -> Any:
        return self._read(
            "security_group",
            name_or_id,
            "get",
            lambda: self._conn.network.find_security_group(name_or_id, ignore_missing=False),
        )

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    def append_tag(self, resource: Any, tag: str) -> None:
        tags = list(resource.tags or [])
        if tag in tags:
            return
        self.replace_all_tags(resource, [*tags, tag])

    def delete_tag(self, resource: Any, tag: str) -> None:
        tags = list(resource.tags or [])
        if tag not in tags:
            return
        self.replace_all_tags(resource, [t for t in tags if t != tag])

    def replace_all_tags(self, resource: Any, tags: list[str]) -> None:
        self._read(
            "tags",
            resource.id,
            "replace",
            lambda: self._conn.network.set_tags(resource, list(tags)),
        )

    # ------------------------------------------------------------------
    # Load balancers
    # ------------------------------------------------------------------

    def list_load_balancers(self, **filters: Any) -> list[Any]:
        return self._read(
            "load_balancer",
            filters.get("name"),
            "list",
            lambda: list(self._conn.load_balancer.load_balancers(**filters)),
        )

    def get_load_balancer(self, lb_id: str) -> Any:
        return self._read(
            "load_balancer",
            lb_id,
            "get",
            lambda: self._conn.load_balancer.get_load_balancer(lb_id),
        )

    def create_load_balancer(self, attrs: dict[str, Any]) -> Any:
        return self._write(
            "load_balancer",
            attrs.get("name"),
            "create",
            lambda: self._conn.load_balancer.create_load_balancer(**attrs),
        )

    def delete_load_balancer(self, lb_id: str) -> None:
        self._delete(
            "load_balancer",
            lb_id,
            lambda: self._conn.load_balancer.delete_load_balancer(lb_id, cascade=True),
        )

    def wait_load_balancer_active(self, lb_id: str) -> Any:
        """Poll until the load balancer reports ACTIVE provisioning status.

        Raises:
            CloudAPIError: If the load balancer enters ERROR.
            ConvergenceTimeout: If it never becomes ACTIVE within POLL_BACKOFF.
        """
        found: list[Any] = []

        def condition() -> bool:
            with translate_errors("load_balancer", lb_id, "get"):
                lb = self._conn.load_balancer.get_load_balancer(lb_id)
            if lb.provisioning_status == LB_ERROR:
                raise CloudAPIError(
                    f"load balancer {lb_id} entered provisioning status {LB_ERROR}",
                    kind="load_balancer",
                    name=lb_id,
                    operation="wait",
                )
            if lb.provisioning_status == LB_ACTIVE:
                found.append(lb)
                return True
            return False

        self._poll(f"wait for load balancer {lb_id}", condition)
        return found[0]

    def list_pools(self, **filters: Any) -> list[Any]:
        return self._read(
            "pool",
            filters.get("name"),
            "list",
            lambda: list(self._conn.load_balancer.pools(**filters)),
        )

    def create_pool(self, attrs: dict[str, Any]) -> Any:
        return self._write(
            "pool",
            attrs.get("name"),
            "create",
            lambda: self._conn.load_balancer.create_pool(**attrs),
        )

    def list_listeners(self, **filters: Any) -> list[Any]:
        return self._read(
            "listener",
            filters.get("name"),
            "list",
            lambda: list(self._conn.load_balancer.listeners(**filters)),
        )

    def create_listener(self, attrs: dict[str, Any]) -> Any:
        return self._write(
            "listener",
            attrs.get("name"),
            "create",
            lambda: self._conn.load_balancer.create_listener(**attrs),
        )

    def update_listener(self, listener_id: str, **attrs: Any) -> Any:
        return self._write(
            "listener",
            listener_id,
            "update",
            lambda: self._conn.load_balancer.update_listener(listener_id, **attrs),
        )

    def list_pool_members(self, pool_id: str) -> list[Any]:
        return self._read(
            "pool_member",
            pool_id,
            "list",
            lambda: list(self._conn.load_balancer.members(pool_id)),
        )

    def create_pool_member(self, pool_id: str, attrs: dict[str, Any]) -> Any:
        return self._write(
            "pool_member",
            attrs.get("name"),
            "create",
            lambda: self._conn.load_balancer.create_member(pool_id, **attrs),
        )
