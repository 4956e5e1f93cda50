"""Tests for the OpenStack resource facade against the mock cloud."""

from __future__ import annotations

import pytest
from openstack import exceptions
from openstack_mock import MockCloudState, MockConnection

from osoperator.backoff import POLL_BACKOFF, READ_BACKOFF
from osoperator.cloud import OpenstackCloud, is_retryable_status
from osoperator.errors import (
    CloudAPIError,
    ConflictError,
    ConvergenceTimeout,
    NotFoundError,
    TransportError,
)

CLUSTER_NAME = "test.k8s.local"


def make_port(cloud: OpenstackCloud, state: MockCloudState, name: str = "port-a"):  # type: ignore[no-untyped-def]
    network = state.by_name("networks", CLUSTER_NAME)[0]
    subnet = state.by_name("subnets", f"nova.{CLUSTER_NAME}")[0]
    return cloud.create_port(
        {"name": name, "network_id": network.id, "fixed_ips": [{"subnet_id": subnet.id}]}
    )


class TestErrorTranslation:
    """Tests for translating SDK exceptions."""

    @pytest.mark.parametrize(
        ("status", "retryable"),
        [(None, True), (429, True), (500, True), (503, True), (400, False), (403, False)],
    )
    def test_is_retryable_status(self, status: int | None, retryable: bool) -> None:
        """Test which HTTP statuses are worth retrying."""
        assert is_retryable_status(status) is retryable

    def test_not_found_carries_context(self, cloud: OpenstackCloud) -> None:
        """Test that a missing resource raises NotFoundError with kind and operation."""
        with pytest.raises(NotFoundError) as exc_info:
            cloud.get_port("does-not-exist")

        assert exc_info.value.kind == "port"
        assert exc_info.value.name == "does-not-exist"
        assert exc_info.value.operation == "get"
        assert exc_info.value.status_code == 404

    def test_server_error_is_retried(
        self, cloud: OpenstackCloud, state: MockCloudState
    ) -> None:
        """Test that a 503 is absorbed by the read backoff."""
        port = make_port(cloud, state)
        state.inject_error(
            "network.get_port", exceptions.HttpException(message="busy", http_status=503)
        )

        assert cloud.get_port(port.id).id == port.id
        assert state.call_count("network.get_port") == 2

    def test_persistent_server_error_surfaces_transport_error(
        self, cloud: OpenstackCloud, state: MockCloudState
    ) -> None:
        """Test that exhausting retries on 5xx surfaces the transient error."""
        state.inject_error(
            "network.ports",
            exceptions.HttpException(message="busy", http_status=503),
            times=READ_BACKOFF.steps,
        )

        with pytest.raises(TransportError):
            cloud.list_ports(name="port-a")
        assert state.call_count("network.ports") == READ_BACKOFF.steps

    def test_client_error_is_not_retried(
        self, cloud: OpenstackCloud, state: MockCloudState
    ) -> None:
        """Test that a 400 fails immediately as CloudAPIError."""
        state.inject_error(
            "network.ports", exceptions.HttpException(message="bad filter", http_status=400)
        )

        with pytest.raises(CloudAPIError) as exc_info:
            cloud.list_ports(name="port-a")

        assert not isinstance(exc_info.value, TransportError)
        assert state.call_count("network.ports") == 1


class TestCreateInstance:
    """Tests for server creation and stale port recovery."""

    def test_create_binds_port(self, cloud: OpenstackCloud, state: MockCloudState) -> None:
        """Test that a created server owns its port."""
        port = make_port(cloud, state)

        server = cloud.create_instance({"name": "node-1", "networks": [{"port": port.id}]}, port.id)

        bound = state.get("ports", port.id)
        assert bound.device_id == server.id
        assert bound.device_owner == "compute:nova"

    def test_stale_port_binding_is_cleared_once(
        self, cloud: OpenstackCloud, state: MockCloudState
    ) -> None:
        """Test that a port left bound to a deleted server is reset and the create retried."""
        port = make_port(cloud, state)
        state.get("ports", port.id).device_id = "deleted-server"

        server = cloud.create_instance({"name": "node-1", "networks": [{"port": port.id}]}, port.id)

        assert state.call_count("compute.create_server") == 2
        assert state.calls_of("network.update_port") == [{"port_id": port.id, "device_id": ""}]
        assert state.get("ports", port.id).device_id == server.id

    def test_stale_port_recovery_is_not_repeated(
        self, cloud: OpenstackCloud, state: MockCloudState
    ) -> None:
        """Test that a second conflict after recovery propagates."""
        port = make_port(cloud, state)
        state.get("ports", port.id).device_id = "deleted-server"
        state.inject_error(
            "compute.create_server",
            exceptions.ConflictException(message="port in use"),
            times=2,
        )

        with pytest.raises(ConflictError):
            cloud.create_instance({"name": "node-1", "networks": [{"port": port.id}]}, port.id)

        assert state.call_count("compute.create_server") == 2
        assert state.call_count("network.update_port") == 1

    def test_port_owned_by_live_device_is_not_recovered(
        self, cloud: OpenstackCloud, state: MockCloudState
    ) -> None:
        """Test that a port with a device owner is never reset."""
        port = make_port(cloud, state)
        stored = state.get("ports", port.id)
        stored.device_id = "other-server"
        stored.device_owner = "compute:nova"

        with pytest.raises(ConflictError):
            cloud.create_instance({"name": "node-1", "networks": [{"port": port.id}]}, port.id)

        assert state.call_count("compute.create_server") == 1
        assert state.call_count("network.update_port") == 0
        assert stored.device_id == "other-server"

    def test_delete_instance_removes_ports(
        self, cloud: OpenstackCloud, state: MockCloudState
    ) -> None:
        """Test that deleting a server deletes the ports bound to it."""
        port = make_port(cloud, state)
        server = cloud.create_instance({"name": "node-1", "networks": [{"port": port.id}]}, port.id)

        cloud.delete_instance_with_id(server.id)

        assert state.get("servers", server.id) is None
        assert state.get("ports", port.id) is None


class TestAddressDiscovery:
    """Tests for polling server addresses."""

    def _server_with_fip(self, cloud: OpenstackCloud, state: MockCloudState):  # type: ignore[no-untyped-def]
        port = make_port(cloud, state)
        server = cloud.create_instance({"name": "node-1", "networks": [{"port": port.id}]}, port.id)
        public = state.by_name("networks", "public")[0]
        fip = cloud.create_floating_ip({"floating_network_id": public.id, "description": "fip-a"})
        cloud.associate_floating_ip(fip.id, port.id)
        return server, fip

    def test_waits_for_late_addresses(
        self, cloud: OpenstackCloud, state: MockCloudState
    ) -> None:
        """Test that addresses are polled until they propagate."""
        server, fip = self._server_with_fip(cloud, state)
        state.hide_addresses(server.id, 2)

        assert cloud.list_server_floating_ips(server.id) == [fip.floating_ip_address]
        assert state.call_count("compute.get_server") == 3

    def test_reports_all_addresses_without_floating(self, state: MockCloudState) -> None:
        """Test that fixed addresses are reported when floating IPs are disabled."""
        cloud = OpenstackCloud(
            MockConnection(state), floating_enabled=False, sleep=lambda _: None, rng=lambda: 0.0
        )
        server, fip = self._server_with_fip(cloud, state)

        addresses = cloud.list_server_floating_ips(server.id)

        assert fip.floating_ip_address in addresses
        assert len(addresses) == 2

    def test_times_out_when_no_address(
        self, cloud: OpenstackCloud, state: MockCloudState
    ) -> None:
        """Test that a server that never reports an address times out."""
        port = make_port(cloud, state)
        server = cloud.create_instance({"name": "node-1", "networks": [{"port": port.id}]}, port.id)

        with pytest.raises(ConvergenceTimeout):
            cloud.list_server_floating_ips(server.id)
        assert state.call_count("compute.get_server") == POLL_BACKOFF.steps


class TestFloatingIPs:
    """Tests for floating IP association."""

    def test_associate_is_idempotent(
        self, cloud: OpenstackCloud, state: MockCloudState
    ) -> None:
        """Test that re-associating with the same port issues no update."""
        port = make_port(cloud, state)
        public = state.by_name("networks", "public")[0]
        fip = cloud.create_floating_ip({"floating_network_id": public.id, "description": "fip-a"})

        cloud.associate_floating_ip(fip.id, port.id)
        cloud.associate_floating_ip(fip.id, port.id)

        assert state.call_count("network.update_ip") == 1
        assert state.get("ips", fip.id).port_id == port.id


class TestDeletes:
    """Tests for idempotent deletes."""

    def test_delete_missing_resources_is_noop(
        self, cloud: OpenstackCloud, state: MockCloudState
    ) -> None:
        """Test that deleting absent resources succeeds."""
        cloud.delete_port("missing")
        cloud.delete_floating_ip("missing")
        cloud.delete_server_group("missing")
        cloud.delete_load_balancer("missing")
        cloud.delete_instance_with_id("missing")

        assert state.call_count("network.delete_port") == 1
        assert state.call_count("compute.delete_server") == 1


class TestLookups:
    """Tests for image, flavor and network lookups."""

    def test_get_image(self, cloud: OpenstackCloud) -> None:
        """Test that images are found by name."""
        assert cloud.get_image("ubuntu-22.04").min_disk == 20

    def test_get_image_missing(self, cloud: OpenstackCloud) -> None:
        """Test that a missing image raises NotFoundError."""
        with pytest.raises(NotFoundError, match="could not find image"):
            cloud.get_image("missing")

    def test_get_flavor_missing(self, cloud: OpenstackCloud) -> None:
        """Test that a missing flavor raises NotFoundError."""
        assert cloud.get_flavor("m1.medium").name == "m1.medium"
        with pytest.raises(NotFoundError, match="could not find flavor"):
            cloud.get_flavor("m1.huge")

    def test_get_external_network(self, cloud: OpenstackCloud) -> None:
        """Test that only router-external networks are returned."""
        assert cloud.get_external_network("public").name == "public"
        with pytest.raises(ConvergenceTimeout):
            cloud.get_external_network(CLUSTER_NAME)

    def test_get_security_group_missing(self, cloud: OpenstackCloud) -> None:
        """Test that a missing security group raises NotFoundError."""
        assert cloud.get_security_group(f"nodes.{CLUSTER_NAME}").name == f"nodes.{CLUSTER_NAME}"
        with pytest.raises(NotFoundError):
            cloud.get_security_group("missing")


class TestTags:
    """Tests for tag helpers."""

    def test_append_and_delete_tag(self, cloud: OpenstackCloud, state: MockCloudState) -> None:
        """Test that tags are appended once and removed."""
        port = make_port(cloud, state)

        cloud.append_tag(port, "KopsName:node-1")
        port = cloud.get_port(port.id)
        cloud.append_tag(port, "KopsName:node-1")
        assert state.get("ports", port.id).tags == ["KopsName:node-1"]
        assert state.call_count("network.set_tags") == 1

        cloud.delete_tag(port, "KopsName:node-1")
        assert state.get("ports", port.id).tags == []


class TestLoadBalancer:
    """Tests for load balancer provisioning waits."""

    def test_wait_until_active(self, cloud: OpenstackCloud, state: MockCloudState) -> None:
        """Test that the wait polls until provisioning completes."""
        subnet = state.by_name("subnets", f"nova.{CLUSTER_NAME}")[0]
        lb = cloud.create_load_balancer({"name": "api", "vip_subnet_id": subnet.id})
        state.delay_lb_active(lb.id, 2)

        active = cloud.wait_load_balancer_active(lb.id)

        assert active.provisioning_status == "ACTIVE"
        assert state.call_count("load_balancer.get_load_balancer") == 3

    def test_wait_fails_on_error_status(
        self, cloud: OpenstackCloud, state: MockCloudState
    ) -> None:
        """Test that an ERROR load balancer fails the wait immediately."""
        subnet = state.by_name("subnets", f"nova.{CLUSTER_NAME}")[0]
        lb = cloud.create_load_balancer({"name": "api", "vip_subnet_id": subnet.id})
        state.get("load_balancers", lb.id).provisioning_status = "ERROR"

        with pytest.raises(CloudAPIError, match="ERROR"):
            cloud.wait_load_balancer_active(lb.id)
        assert state.call_count("load_balancer.get_load_balancer") == 1
