"""Pydantic models for the cluster and instance group specification.

These models are the read-only input of the model builder:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Naming helpers shared by every task the builder derives
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated

from pydantic import BaseModel, Field, field_validator, model_validator

GOSSIP_SUFFIX = ".k8s.local"


class InstanceGroupRole(str, Enum):
    """Role of an instance group within the cluster."""

    MASTER = "Master"
    NODE = "Node"
    BASTION = "Bastion"


class TopologyType(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


class SubnetType(str, Enum):
    PUBLIC = "Public"
    PRIVATE = "Private"
    UTILITY = "Utility"


# =============================================================================
# Cluster
# =============================================================================


class SubnetSpec(BaseModel):
    """Cluster subnet. ``providerId`` names an existing cloud subnet."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1)]
    type: SubnetType = SubnetType.PRIVATE
    region: str | None = None
    zone: str | None = None
    provider_id: str | None = Field(None, alias="providerId")


class TopologySpec(BaseModel):
    model_config = {"extra": "ignore"}

    masters: TopologyType = TopologyType.PUBLIC
    nodes: TopologyType = TopologyType.PUBLIC


class RouterSpec(BaseModel):
    model_config = {"extra": "ignore"}

    external_network: Annotated[str, Field(min_length=1, alias="externalNetwork")]


class LoadbalancerSpec(BaseModel):
    """API load balancer. With ``useVIPACL`` access is restricted on the listener."""

    model_config = {"extra": "ignore"}

    use_vip_acl: bool = Field(False, alias="useVIPACL")
    floating_network: str | None = Field(None, alias="floatingNetwork")


class OpenstackSpec(BaseModel):
    model_config = {"extra": "ignore"}

    network: str | None = None
    router: RouterSpec | None = None
    loadbalancer: LoadbalancerSpec | None = None


class InstanceGroupSpec(BaseModel):
    """A logical group of identical instances."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1, max_length=63)]
    role: InstanceGroupRole = InstanceGroupRole.NODE
    min_size: Annotated[int, Field(ge=0, alias="minSize")] = 1
    max_size: int | None = Field(None, alias="maxSize")
    machine_type: Annotated[str, Field(min_length=1, alias="machineType")]
    image: Annotated[str, Field(min_length=1)]
    subnets: list[str] = Field(default_factory=list)
    zones: list[str] = Field(default_factory=list)
    additional_security_groups: list[str] = Field(
        default_factory=list, alias="additionalSecurityGroups"
    )
    associate_public_ip: bool | None = Field(None, alias="associatePublicIp")
    generation: Annotated[int, Field(ge=0)] = 0
    annotations: dict[str, str] = Field(default_factory=dict)
    cloud_labels: dict[str, str] = Field(default_factory=dict, alias="cloudLabels")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if v.strip() != v or " " in v:
            raise ValueError("name must not contain whitespace")
        return v

    @model_validator(mode="after")
    def validate_sizes(self) -> InstanceGroupSpec:
        if self.max_size is not None and self.max_size < self.min_size:
            raise ValueError(f"maxSize ({self.max_size}) must be >= minSize ({self.min_size})")
        return self


class ClusterSpec(BaseModel):
    """Cluster specification with its instance groups."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1)]
    generation: Annotated[int, Field(ge=0)] = 0
    master_public_name: str | None = Field(None, alias="masterPublicName")
    ssh_key_name: str | None = Field(None, alias="sshKeyName")
    subnets: list[SubnetSpec] = Field(default_factory=list)
    topology: TopologySpec = Field(default_factory=TopologySpec)
    openstack: OpenstackSpec = Field(default_factory=OpenstackSpec)
    kubernetes_api_access: list[str] = Field(default_factory=list, alias="kubernetesApiAccess")
    cloud_labels: dict[str, str] = Field(default_factory=dict, alias="cloudLabels")
    instance_groups: list[InstanceGroupSpec] = Field(
        default_factory=list, alias="instanceGroups"
    )

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if v != v.lower():
            raise ValueError("cluster name must be lower case")
        return v

    @model_validator(mode="after")
    def validate_references(self) -> ClusterSpec:
        names = [ig.name for ig in self.instance_groups]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate instance group names: {duplicates}")

        if self.openstack.loadbalancer is not None and not self.master_public_name:
            raise ValueError("masterPublicName is required when a loadbalancer is configured")

        known = {s.name for s in self.subnets}
        for ig in self.instance_groups:
            unknown = [s for s in ig.subnets if s not in known]
            if unknown:
                raise ValueError(f"instance group {ig.name} references unknown subnets: {unknown}")
        return self

    @property
    def is_gossip(self) -> bool:
        return self.name.endswith(GOSSIP_SUFFIX)

    @property
    def network_name(self) -> str:
        return self.openstack.network or self.name

    @property
    def region(self) -> str | None:
        return self.subnets[0].region if self.subnets else None

    def security_group_name(self, role: InstanceGroupRole) -> str:
        prefix = {
            InstanceGroupRole.MASTER: "masters",
            InstanceGroupRole.NODE: "nodes",
            InstanceGroupRole.BASTION: "bastion",
        }[role]
        return f"{prefix}.{self.name}"

    def subnet_cloud_name(self, subnet_name: str) -> str:
        """Name of the cloud subnet backing a cluster subnet."""
        for subnet in self.subnets:
            if subnet.name == subnet_name:
                return subnet.provider_id or f"{subnet.name}.{self.name}"
        raise ValueError(f"could not find subnet {subnet_name} from cluster spec")
