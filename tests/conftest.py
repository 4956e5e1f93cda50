"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for openstack_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from openstack_mock import MockCloudState, MockConnection, seed_cloud  # noqa: E402

from osoperator.cloud import OpenstackCloud  # noqa: E402
from osoperator.task import Context  # noqa: E402

CLUSTER_NAME = "test.k8s.local"


@pytest.fixture
def state() -> MockCloudState:
    """Mock cloud seeded with the network, subnets and groups of CLUSTER_NAME."""
    return seed_cloud(MockCloudState(), CLUSTER_NAME)


@pytest.fixture
def cloud(state: MockCloudState) -> OpenstackCloud:
    """Facade over the mock cloud that never sleeps between retries."""
    return OpenstackCloud(MockConnection(state), sleep=lambda _: None, rng=lambda: 0.0)


@pytest.fixture
def ctx(cloud: OpenstackCloud) -> Context:
    return Context(cloud=cloud)


@pytest.fixture
def cluster_data() -> dict:
    """Cluster spec document with one master and three public nodes."""
    return {
        "name": CLUSTER_NAME,
        "masterPublicName": f"api.{CLUSTER_NAME}",
        "sshKeyName": "admin",
        "subnets": [
            {"name": "nova", "type": "Private", "region": "RegionOne", "zone": "nova"},
            {"name": "utility-nova", "type": "Utility", "region": "RegionOne", "zone": "nova"},
        ],
        "topology": {"masters": "public", "nodes": "public"},
        "openstack": {"router": {"externalNetwork": "public"}},
        "kubernetesApiAccess": ["0.0.0.0/0"],
        "instanceGroups": [
            {
                "name": "master",
                "role": "Master",
                "minSize": 1,
                "maxSize": 1,
                "machineType": "m1.medium",
                "image": "ubuntu-22.04",
                "subnets": ["nova"],
            },
            {
                "name": "nodes",
                "role": "Node",
                "minSize": 3,
                "maxSize": 3,
                "machineType": "m1.medium",
                "image": "ubuntu-22.04",
                "subnets": ["nova"],
            },
        ],
    }
