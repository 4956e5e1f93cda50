"""Tests for the cluster spec models."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from osoperator.models import (
    ClusterSpec,
    InstanceGroupRole,
    InstanceGroupSpec,
    SubnetType,
    TopologyType,
)

CLUSTER_NAME = "test.k8s.local"


def group(**overrides: object) -> dict:
    data: dict[str, object] = {"name": "nodes", "machineType": "m1.medium", "image": "ubuntu-22.04"}
    data.update(overrides)
    return data


class TestInstanceGroupSpec:
    """Tests for InstanceGroupSpec."""

    def test_defaults(self) -> None:
        """Test default values of an instance group."""
        ig = InstanceGroupSpec.model_validate(group())

        assert ig.role == InstanceGroupRole.NODE
        assert ig.min_size == 1
        assert ig.max_size is None
        assert ig.generation == 0
        assert ig.associate_public_ip is None
        assert ig.subnets == []

    def test_aliases(self) -> None:
        """Test that camelCase keys populate the fields."""
        ig = InstanceGroupSpec.model_validate(
            group(
                role="Master",
                minSize=3,
                maxSize=5,
                additionalSecurityGroups=["extra"],
                associatePublicIp=False,
                cloudLabels={"team": "infra"},
            )
        )

        assert ig.role == InstanceGroupRole.MASTER
        assert ig.min_size == 3
        assert ig.max_size == 5
        assert ig.additional_security_groups == ["extra"]
        assert ig.associate_public_ip is False
        assert ig.cloud_labels == {"team": "infra"}

    def test_max_below_min_rejected(self) -> None:
        """Test that maxSize must not be below minSize."""
        with pytest.raises(ValidationError, match="maxSize"):
            InstanceGroupSpec.model_validate(group(minSize=3, maxSize=2))

    def test_negative_min_size_rejected(self) -> None:
        """Test that minSize cannot be negative."""
        with pytest.raises(ValidationError):
            InstanceGroupSpec.model_validate(group(minSize=-1))

    def test_whitespace_in_name_rejected(self) -> None:
        """Test that group names cannot contain whitespace."""
        with pytest.raises(ValidationError, match="whitespace"):
            InstanceGroupSpec.model_validate(group(name="my nodes"))

    def test_unknown_role_rejected(self) -> None:
        """Test that only known roles are accepted."""
        with pytest.raises(ValidationError):
            InstanceGroupSpec.model_validate(group(role="Worker"))

    def test_machine_type_required(self) -> None:
        """Test that the flavor is required."""
        with pytest.raises(ValidationError):
            InstanceGroupSpec.model_validate({"name": "nodes", "image": "ubuntu-22.04"})


class TestClusterSpec:
    """Tests for ClusterSpec."""

    def test_valid(self, cluster_data: dict) -> None:
        """Test parsing the full fixture."""
        cluster = ClusterSpec.model_validate(cluster_data)

        assert cluster.name == CLUSTER_NAME
        assert cluster.master_public_name == f"api.{CLUSTER_NAME}"
        assert cluster.subnets[1].type == SubnetType.UTILITY
        assert cluster.topology.nodes == TopologyType.PUBLIC
        assert cluster.openstack.router.external_network == "public"
        assert cluster.openstack.loadbalancer is None
        assert [ig.name for ig in cluster.instance_groups] == ["master", "nodes"]

    def test_helpers(self, cluster_data: dict) -> None:
        """Test derived names."""
        cluster = ClusterSpec.model_validate(cluster_data)

        assert cluster.is_gossip is True
        assert cluster.network_name == CLUSTER_NAME
        assert cluster.region == "RegionOne"
        assert cluster.security_group_name(InstanceGroupRole.MASTER) == f"masters.{CLUSTER_NAME}"
        assert cluster.security_group_name(InstanceGroupRole.NODE) == f"nodes.{CLUSTER_NAME}"
        assert cluster.security_group_name(InstanceGroupRole.BASTION) == f"bastion.{CLUSTER_NAME}"
        assert cluster.subnet_cloud_name("nova") == f"nova.{CLUSTER_NAME}"
        with pytest.raises(ValueError, match="could not find subnet"):
            cluster.subnet_cloud_name("missing")

    def test_network_override(self, cluster_data: dict) -> None:
        """Test that an explicit network name wins over the cluster name."""
        cluster_data["name"] = "prod.example.com"
        cluster_data["openstack"]["network"] = "shared-net"
        cluster = ClusterSpec.model_validate(cluster_data)

        assert cluster.network_name == "shared-net"
        assert cluster.is_gossip is False

    def test_upper_case_name_rejected(self, cluster_data: dict) -> None:
        """Test that cluster names must be lower case."""
        cluster_data["name"] = "Test.k8s.local"

        with pytest.raises(ValidationError, match="lower case"):
            ClusterSpec.model_validate(cluster_data)

    def test_duplicate_groups_rejected(self, cluster_data: dict) -> None:
        """Test that instance group names are unique."""
        cluster_data["instanceGroups"].append(cluster_data["instanceGroups"][1])

        with pytest.raises(ValidationError, match="duplicate"):
            ClusterSpec.model_validate(cluster_data)

    def test_loadbalancer_requires_public_name(self, cluster_data: dict) -> None:
        """Test that an API load balancer needs masterPublicName."""
        cluster_data["openstack"]["loadbalancer"] = {"useVIPACL": True}
        del cluster_data["masterPublicName"]

        with pytest.raises(ValidationError, match="masterPublicName"):
            ClusterSpec.model_validate(cluster_data)

    def test_unknown_subnet_rejected(self, cluster_data: dict) -> None:
        """Test that groups may only reference declared subnets."""
        cluster_data["instanceGroups"][1]["subnets"] = ["elsewhere"]

        with pytest.raises(ValidationError, match="unknown subnets"):
            ClusterSpec.model_validate(cluster_data)

    def test_extra_fields_ignored(self, cluster_data: dict) -> None:
        """Test that unrelated cluster settings are tolerated."""
        cluster_data["kubernetesVersion"] = "1.29.0"

        assert ClusterSpec.model_validate(cluster_data).name == CLUSTER_NAME
