"""OpenStack API mock for integration testing.

Implements the subset of the openstacksdk proxies the operator calls,
backed by an in-memory state, so the full reconcile flow runs without a
cloud.

Key Features:
- In-memory state for servers, ports, floating IPs, server groups and
  load balancers
- Call log for asserting on exact API traffic
- Error injection with real openstacksdk exceptions
- Eventual consistency simulation (late addresses, pending load balancers)

Usage:
    from openstack_mock import MockCloudState, MockConnection, seed_cloud

    state = seed_cloud(MockCloudState())
    cloud = OpenstackCloud(MockConnection(state), sleep=lambda _: None, rng=lambda: 0.0)

    # Your test code here

    assert state.count("servers") == 3
"""

from .proxies import (
    MockComputeProxy,
    MockConnection,
    MockImageProxy,
    MockLoadBalancerProxy,
    MockNetworkProxy,
)
from .state import MockCloudState, MockResource, seed_cloud

__all__ = [
    "MockCloudState",
    "MockComputeProxy",
    "MockConnection",
    "MockImageProxy",
    "MockLoadBalancerProxy",
    "MockNetworkProxy",
    "MockResource",
    "seed_cloud",
]
