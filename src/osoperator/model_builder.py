"""Model builder: translates a cluster spec into the task graph.

This is a pure generator; it owns no cloud calls. For each instance group it
emits a ServerGroup, and for each replica a Port and an Instance, plus a
FloatingIP where the group's role and the cluster topology call for one.
A cluster fronted by a load balancer gets the LB / LBPool / LBListener chain
and one PoolAssociation per master group.
"""

from __future__ import annotations

import hashlib
import logging
import re
from typing import Protocol

from .errors import OperatorError
from .floatingip import FloatingIP
from .instance import (
    BOOT_FROM_VOLUME,
    BOOT_VOLUME_SIZE,
    CLUSTER_GENERATION,
    INSTANCE_GROUP_GENERATION,
    Instance,
)
from .loadbalancer import API_PORT, LB, LBListener, LBPool, PoolAssociation
from .models import ClusterSpec, InstanceGroupRole, InstanceGroupSpec, SubnetType, TopologyType
from .port import Port
from .resources import AddressRef, Resource, TemplateResource
from .servergroup import ANTI_AFFINITY, ServerGroup
from .task import Task, task_key

logger = logging.getLogger(__name__)

# Nova only accepts these characters in metadata keys, and lower-cases them.
INSTANCE_METADATA_NOT_ALLOWED_CHARACTERS = re.compile(r"[^a-zA-Z0-9_:. -]")

OS_ANNOTATION = "openstack.kops.io/"
TAG_CLUSTER_NAME = "KubernetesCluster"
TAG_KOPS_NETWORK = "KopsNetwork"
TAG_KOPS_NAME = "KopsName"
INSTANCE_NAME_HASH_LENGTH = 6


class ModelBuildError(OperatorError):
    """Raised when the cluster spec cannot be turned into tasks."""

    pass


def make_instance_name(
    index: int, name: str, ig_generation: int, cluster_generation: int
) -> str:
    """Deterministic instance name: ``<sanitized group name>-<6 hex chars>``.

    Bumping either generation yields a new name, which forces the instance
    to be replaced.
    """
    value = f"{index}-{name}-{ig_generation}-{cluster_generation}"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:INSTANCE_NAME_HASH_LENGTH]
    return f"{_dashed(name.lower())}-{digest}"


def sanitize_metadata_key(key: str) -> str:
    return INSTANCE_METADATA_NOT_ALLOWED_CHARACTERS.sub("_", key).lower()


def full_instance_name(ig_name: str, index: int, cluster_name: str) -> str:
    return _dashed(f"{ig_name}-{index}.{cluster_name}".lower())


def _dashed(value: str) -> str:
    return value.replace("_", "-").replace(".", "-")


class ModelBuilderContext:
    """Collects the tasks emitted by model builders, keyed by ``Kind/name``."""

    def __init__(self) -> None:
        self.tasks: dict[str, Task] = {}

    def add_task(self, task: Task) -> None:
        key = task_key(task)
        if key in self.tasks:
            raise ModelBuildError(f"Duplicate task: {key}")
        self.tasks[key] = task


class BootstrapScriptBuilder(Protocol):
    """Supplies the user data attached to every instance of a group."""

    def resource_node_up(
        self, ctx: ModelBuilderContext, ig: InstanceGroupSpec
    ) -> Resource | None: ...


class TemplateBootstrapScriptBuilder:
    """Renders a shell preamble identifying the instance to its bootstrap.

    When the API is fronted by a load balancer, non-bastion instances also
    receive the load balancer's floating IP, which makes them depend on it.
    """

    TEMPLATE = (
        "#!/bin/bash\n"
        "CLUSTER_NAME=${cluster}\n"
        "INSTANCE_GROUP=${instance_group}\n"
        "INSTANCE_ROLE=${role}\n"
    )
    API_TEMPLATE = "API_SERVER=${api}\n"

    def __init__(self, cluster: ClusterSpec) -> None:
        self._cluster = cluster

    def resource_node_up(
        self, ctx: ModelBuilderContext, ig: InstanceGroupSpec
    ) -> Resource | None:
        template = self.TEMPLATE
        values: dict[str, object] = {
            "cluster": self._cluster.name,
            "instance_group": ig.name,
            "role": ig.role.value,
        }
        lb = self._cluster.openstack.loadbalancer
        if lb is not None and ig.role != InstanceGroupRole.BASTION:
            template += self.API_TEMPLATE
            values["api"] = AddressRef(f"FloatingIP/fip-{self._cluster.master_public_name}")
        return TemplateResource(template, values)


class ServerGroupModelBuilder:
    """Builds server groups, ports, instances and floating IPs for a cluster."""

    def __init__(
        self,
        cluster: ClusterSpec,
        bootstrap_script_builder: BootstrapScriptBuilder | None = None,
    ) -> None:
        self.cluster = cluster
        self.bootstrap_script_builder = (
            bootstrap_script_builder or TemplateBootstrapScriptBuilder(cluster)
        )

    def build(self, ctx: ModelBuilderContext) -> None:
        cluster_name = self.cluster.name

        masters: list[tuple[ServerGroup, list[Instance]]] = []
        for ig in self.cluster.instance_groups:
            logger.debug(
                "Found instance group", extra={"instance_group": ig.name, "role": ig.role.value}
            )
            sg_task = ServerGroup(
                name=f"{cluster_name}-{ig.name}",
                cluster_name=cluster_name,
                ig_name=ig.name,
                policies=[ANTI_AFFINITY],
                max_size=ig.max_size,
            )
            ctx.add_task(sg_task)

            instances = self.build_instances(ctx, sg_task, ig)
            if ig.role == InstanceGroupRole.MASTER:
                masters.append((sg_task, instances))

        if self.cluster.openstack.loadbalancer is not None:
            self.build_loadbalancer(ctx, masters)

    def instance_metadata(self, ig: InstanceGroupSpec) -> dict[str, str]:
        cluster = self.cluster
        meta: dict[str, str] = {}
        for label, value in {**cluster.cloud_labels, **ig.cloud_labels}.items():
            meta[sanitize_metadata_key(label)] = value

        if ig.role != InstanceGroupRole.BASTION:
            # Bastion does not belong to the cluster.
            meta[TAG_CLUSTER_NAME] = cluster.name
        meta["k8s"] = cluster.name
        meta[TAG_KOPS_NETWORK] = cluster.network_name
        meta["KopsInstanceGroup"] = ig.name
        meta["KopsRole"] = ig.role.value
        meta[INSTANCE_GROUP_GENERATION] = str(ig.generation)
        meta[CLUSTER_GENERATION] = str(cluster.generation)

        for key in (BOOT_FROM_VOLUME, BOOT_VOLUME_SIZE):
            if OS_ANNOTATION + key in ig.annotations:
                meta[key] = ig.annotations[OS_ANNOTATION + key]
        return meta

    def security_groups(self, ig: InstanceGroupSpec) -> list[str]:
        groups = [self.cluster.security_group_name(ig.role)]
        if self.cluster.openstack.loadbalancer is None and ig.role == InstanceGroupRole.MASTER:
            if self.cluster.master_public_name:
                groups.append(self.cluster.master_public_name)
        return groups

    def wants_floating_ip(self, ig: InstanceGroupSpec) -> bool:
        # Only with an external network in the router and a public topology
        if self.cluster.openstack.router is None:
            return False
        if ig.associate_public_ip is not None and not ig.associate_public_ip:
            return False
        topology = self.cluster.topology
        match ig.role:
            case InstanceGroupRole.BASTION:
                return True
            case InstanceGroupRole.MASTER:
                return topology.masters != TopologyType.PRIVATE
            case _:
                return topology.nodes != TopologyType.PRIVATE

    def build_instances(
        self, ctx: ModelBuilderContext, sg: ServerGroup, ig: InstanceGroupSpec
    ) -> list[Instance]:
        cluster = self.cluster
        ssh_key = cluster.ssh_key_name.replace(":", "_") if cluster.ssh_key_name else None
        metadata = self.instance_metadata(ig)
        user_data = self.bootstrap_script_builder.resource_node_up(ctx, ig)
        security_groups = self.security_groups(ig)
        additional = list(ig.additional_security_groups) or None

        instances: list[Instance] = []
        for i in range(ig.min_size):
            full_name = full_instance_name(ig.name, i + 1, cluster.name)
            instance_name_tag = f"{TAG_KOPS_NAME}:{full_name}"
            instance_name = make_instance_name(i + 1, ig.name, ig.generation, cluster.generation)

            az: str | None = None
            subnets: list[str] | None = None
            if ig.subnets:
                subnet = ig.subnets[i % len(ig.subnets)]
                if ig.role == InstanceGroupRole.BASTION:
                    # Bastion subnet names may carry a "utility-" prefix
                    az = subnet.replace("utility-", "", 1)
                else:
                    az = subnet
                try:
                    subnets = [cluster.subnet_cloud_name(subnet)]
                except ValueError as e:
                    raise ModelBuildError(str(e)) from e
            if ig.zones:
                az = ig.zones[i % len(ig.zones)]

            port_task = Port(
                name=f"port-{instance_name}",
                network=cluster.network_name,
                tags=[instance_name_tag, cluster.name],
                security_groups=list(security_groups),
                additional_security_groups=additional,
                subnets=subnets,
            )
            ctx.add_task(port_task)

            instance_task = Instance(
                name=instance_name,
                region=cluster.region,
                flavor=ig.machine_type,
                image=ig.image,
                ssh_key=ssh_key,
                server_group=sg,
                role=ig.role.value,
                port=port_task,
                user_data=user_data,
                metadata=dict(metadata),
                security_groups=additional,
                availability_zone=az,
                tags=[instance_name_tag],
            )
            ctx.add_task(instance_task)
            instances.append(instance_task)

            if self.wants_floating_ip(ig):
                fip_task = FloatingIP(
                    name=f"fip-{full_name}",
                    external_network=cluster.openstack.router.external_network,
                )
                if ig.role == InstanceGroupRole.MASTER:
                    # Include the address in the API server certificate
                    fip_task.for_api_server = True
                ctx.add_task(fip_task)
                instance_task.floating_ip = fip_task

        return instances

    def build_loadbalancer(
        self,
        ctx: ModelBuilderContext,
        masters: list[tuple[ServerGroup, list[Instance]]],
    ) -> None:
        cluster = self.cluster
        lb_spec = cluster.openstack.loadbalancer

        lb_subnet = None
        for subnet in cluster.subnets:
            if subnet.type == SubnetType.PRIVATE:
                lb_subnet = cluster.subnet_cloud_name(subnet.name)
                break
        if lb_subnet is None:
            raise ModelBuildError("could not find subnet for master loadbalancer")

        lb_task = LB(name=cluster.master_public_name, subnet=lb_subnet)
        if not lb_spec.use_vip_acl:
            lb_task.security_group = cluster.master_public_name
        ctx.add_task(lb_task)

        external_network = lb_spec.floating_network
        if external_network is None and cluster.openstack.router is not None:
            external_network = cluster.openstack.router.external_network
        lb_fip_task = FloatingIP(
            name=f"fip-{lb_task.name}",
            lb=lb_task,
            external_network=external_network,
            for_api_server=cluster.is_gossip,
        )
        ctx.add_task(lb_fip_task)

        pool_task = LBPool(name=f"{lb_task.name}-https", loadbalancer=lb_task)
        ctx.add_task(pool_task)

        listener_task = LBListener(name=lb_task.name, pool=pool_task)
        if lb_spec.use_vip_acl:
            # Sorted for a stable comparison
            listener_task.allowed_cidrs = sorted(cluster.kubernetes_api_access)
        ctx.add_task(listener_task)

        for master_sg, instances in masters:
            ctx.add_task(
                PoolAssociation(
                    name=master_sg.name,
                    pool=pool_task,
                    server_group=master_sg,
                    interface_name=cluster.network_name,
                    protocol_port=API_PORT,
                    instances=list(instances),
                )
            )


def build_tasks(
    cluster: ClusterSpec, bootstrap_script_builder: BootstrapScriptBuilder | None = None
) -> dict[str, Task]:
    """Run the model builder for a cluster and return its tasks by key."""
    ctx = ModelBuilderContext()
    ServerGroupModelBuilder(cluster, bootstrap_script_builder).build(ctx)
    logger.info(
        "Built cluster model", extra={"cluster": cluster.name, "task_count": len(ctx.tasks)}
    )
    return ctx.tasks
