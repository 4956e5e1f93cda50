"""Instance task: a compute server booted on its own port.

Find locates the server by name (narrowed by its first tag), then reads the
port bound to it and, when one is declared, the floating IP on that port.
Fields the compute API cannot report back (image, flavor, user data, server
group) are merged from the desired task, so they never show up as drift.

Only a port or floating IP change triggers a render on an existing server;
anything else is reported and left alone.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field
from typing import Any, ClassVar

from .config import MAX_USER_DATA_BYTES
from .errors import AmbiguousResourceError, OperatorError
from .floatingip import FloatingIP
from .port import Port, new_port_task_from_cloud
from .resources import Resource
from .servergroup import ServerGroup
from .task import Changes, Context, check_immutable

logger = logging.getLogger(__name__)

# Metadata keys
BOOT_FROM_VOLUME = "osVolumeBoot"
BOOT_VOLUME_SIZE = "osVolumeSize"
INSTANCE_GROUP_GENERATION = "ig_generation"
CLUSTER_GENERATION = "cluster_generation"
ROLE_KEY = "KopsRole"

BOOT_FROM_VOLUME_ENABLED = ("true", "enabled")


class InstanceRenderError(OperatorError):
    """Raised when an instance create payload cannot be built."""

    pass


@dataclass(eq=False)
class Instance:
    kind: ClassVar[str] = "Instance"

    name: str | None = None
    id: str | None = None
    tags: list[str] | None = None
    port: Port | None = None
    region: str | None = None
    flavor: str | None = None
    image: str | None = None
    ssh_key: str | None = None
    server_group: ServerGroup | None = None
    role: str | None = None
    user_data: Resource | None = None
    metadata: dict[str, str] | None = None
    availability_zone: str | None = None
    security_groups: list[str] | None = None
    floating_ip: FloatingIP | None = None
    for_api_server: bool = field(default=False, compare=False)

    def find(self, ctx: Context) -> Instance | None:
        if self.name is None:
            return None

        cloud = ctx.cloud
        filters: dict[str, Any] = {"name": self.name}
        if self.tags:
            filters["tags"] = self.tags[0]
        # The name filter is a regex on the server side.
        servers = [s for s in cloud.list_instances(**filters) if s.name == self.name]
        if not servers:
            return None
        if len(servers) > 1:
            raise AmbiguousResourceError(f"Multiple servers found with name {self.name}")

        server = servers[0]
        metadata = dict(server.metadata or {})
        actual = Instance(
            id=server.id,
            ssh_key=server.key_name,
            metadata=metadata,
            role=metadata.get(ROLE_KEY),
            availability_zone=self.availability_zone,
            tags=list(server.tags or []),
            security_groups=self.security_groups,
        )

        ports = cloud.list_ports(device_id=server.id)
        if len(ports) == 1:
            actual.port = new_port_task_from_cloud(ctx, ports[0])
        elif len(ports) > 1:
            raise AmbiguousResourceError(f"Found more than one port for instance {server.id}")

        if self.floating_ip is not None and self.port is not None and self.port.id:
            fips = cloud.list_floating_ips(port_id=self.port.id)
            if len(fips) == 1:
                actual.floating_ip = FloatingIP(
                    id=fips[0].id,
                    name=fips[0].description,
                    ip=fips[0].floating_ip_address,
                )
            elif len(fips) > 1:
                raise AmbiguousResourceError(
                    f"Found more than one floating IP for instance {server.id}"
                )

        # Avoid flapping
        self.id = actual.id
        if self.server_group is not None:
            self.server_group.add_new_member(server.id)
        actual.for_api_server = self.for_api_server

        # Immutable fields
        actual.name = self.name
        actual.flavor = self.flavor
        actual.image = self.image
        actual.user_data = self.user_data
        actual.region = self.region
        actual.ssh_key = self.ssh_key
        actual.server_group = self.server_group
        return actual

    def check_changes(self, actual: Instance | None, desired: Instance, changes: Changes) -> None:
        check_immutable(actual, desired, changes)

    def should_create(self, actual: Instance | None, desired: Instance, changes: Changes) -> bool:
        if actual is None:
            return True
        return "port" in changes or "floating_ip" in changes

    def render(
        self, ctx: Context, actual: Instance | None, desired: Instance, changes: Changes
    ) -> None:
        cloud = ctx.cloud
        if actual is None:
            logger.info("Creating instance", extra={"resource_name": desired.name})

            attrs = build_create_attrs(ctx, desired)
            server = cloud.create_instance(attrs, desired.port.id)
            desired.id = server.id
            desired.server_group.add_new_member(server.id)
            if desired.floating_ip is not None:
                associate_floating_ip(ctx, desired)

            logger.info(
                "Created instance", extra={"resource_name": desired.name, "instance_id": server.id}
            )
            return

        if "port" in changes:
            logger.info(
                "Rebinding port to instance",
                extra={"resource_name": desired.name, "port_id": desired.port.id},
            )
            cloud.update_port(desired.port.id, device_id=desired.id)
        if "floating_ip" in changes:
            associate_floating_ip(ctx, desired)


def associate_floating_ip(ctx: Context, instance: Instance) -> None:
    fip = instance.floating_ip
    try:
        ctx.cloud.associate_floating_ip(fip.id, instance.port.id)
    except OperatorError as e:
        raise OperatorError(
            f"failed to associate floating IP to instance {instance.name}: {e}"
        ) from e


def boot_from_volume(metadata: dict[str, str] | None) -> bool:
    return (metadata or {}).get(BOOT_FROM_VOLUME) in BOOT_FROM_VOLUME_ENABLED


def build_create_attrs(ctx: Context, instance: Instance) -> dict[str, Any]:
    """Assemble the compute create payload for a new instance.

    Raises:
        InstanceRenderError: If a producer was not created yet, the user data
            is too large, or the boot volume size is not an integer.
    """
    if instance.port is None or instance.port.id is None:
        raise InstanceRenderError(f"Instance {instance.name} cannot be created without a port")
    if instance.server_group is None or instance.server_group.id is None:
        raise InstanceRenderError(f"Instance {instance.name} requires a created server group")

    cloud = ctx.cloud
    image = cloud.get_image(instance.image)
    flavor = cloud.get_flavor(instance.flavor)

    attrs: dict[str, Any] = {
        "name": instance.name,
        "image_id": image.id,
        "flavor_id": flavor.id,
        "networks": [{"port": instance.port.id}],
        "metadata": dict(instance.metadata or {}),
        "tags": list(instance.tags or []),
        "key_name": instance.ssh_key,
        "scheduler_hints": {"group": instance.server_group.id},
    }
    if instance.security_groups:
        attrs["security_groups"] = [{"name": sg} for sg in instance.security_groups]
    if instance.availability_zone:
        attrs["availability_zone"] = instance.availability_zone
    if instance.user_data is not None:
        encoded = base64.b64encode(instance.user_data.as_bytes(ctx.tasks))
        if len(encoded) > MAX_USER_DATA_BYTES:
            raise InstanceRenderError(
                f"User data of instance {instance.name} is {len(encoded)} bytes encoded, "
                f"limit is {MAX_USER_DATA_BYTES}"
            )
        attrs["user_data"] = encoded.decode("ascii")

    if boot_from_volume(instance.metadata):
        attrs["block_device_mapping"] = [boot_volume_mapping(image, instance.metadata)]
        # The image is supplied through the block device.
        attrs.pop("image_id")

    return attrs


def boot_volume_mapping(image: Any, metadata: dict[str, str]) -> dict[str, Any]:
    size = image.min_disk
    if BOOT_VOLUME_SIZE in metadata:
        value = metadata[BOOT_VOLUME_SIZE]
        try:
            size = int(value)
        except ValueError as e:
            raise InstanceRenderError(f"Invalid value for {BOOT_VOLUME_SIZE}: {value!r}") from e

    return {
        "boot_index": 0,
        "delete_on_termination": True,
        "destination_type": "volume",
        "source_type": "image",
        "uuid": image.id,
        "volume_size": size,
    }
