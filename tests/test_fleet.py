from __future__ import annotations

import threading
from collections.abc import Iterator

import pytest

from fleetward.allocator import PortAndTunnelAllocator
from fleetward.constants import BASE_MANAGEMENT_PORT, DeploymentStatus, FleetTag, InstanceState, NodeType
from fleetward.deployer import NodeDeployer
from fleetward.exceptions import ConfigurationError, DeploymentError, NotFoundError, TransportError
from fleetward.fleet import FleetManager
from fleetward.transport import CommandResult
from fleetward.types import CloudInstance, InstanceTemplate, NodeConfig

from tests.conftest import FakeGateway, FakeOpener, FakeShell, ShellPool

pytestmark = [pytest.mark.xdist_group("unit"), pytest.mark.timeout(60)]

BASE = BASE_MANAGEMENT_PORT


@pytest.fixture
def fleet(
    gateway: FakeGateway,
    deployer: NodeDeployer,
    allocator: PortAndTunnelAllocator,
    shells: ShellPool,
) -> Iterator[FleetManager]:
    manager = FleetManager(gateway, deployer, allocator=allocator, shell_factory=shells, max_workers=4)
    yield manager
    manager.shutdown()


def worker_on(instance_id: str = "i-1") -> NodeConfig:
    return NodeConfig(type=NodeType.WORKER, instance_id=instance_id)


def failing_shell(shells: ShellPool, address: str) -> FakeShell:
    shell = shells.shells.setdefault(address, FakeShell(address))
    shell.fail_on["nohup"] = CommandResult(1, "", "java: command not found")
    return shell


class GatedShell(FakeShell):
    """Holds ``connect`` until ``release`` is set."""

    def __init__(self, host: str) -> None:
        super().__init__(host)
        self.entered = threading.Event()
        self.release = threading.Event()

    def connect(self) -> None:
        self.entered.set()
        self.release.wait(timeout=5)
        super().connect()


class TestAddNode:
    def test_coordinator_on_new_instance(self, fleet: FleetManager, gateway: FakeGateway, template: InstanceTemplate):
        node = fleet.add_node(NodeConfig(type=NodeType.COORDINATOR, template=template)).result()

        assert node.status == DeploymentStatus.DEPLOYED
        assert node.management_port == BASE
        assert node.instance_id == "i-new1"
        assert node.uuid == "0123456789abcdef0123456789abcdef"
        assert not node.tunnel_open
        assert gateway.instances["i-new1"].get_tag(FleetTag.NODE_TYPE) == "coordinator"
        assert fleet.coordinator() == node

    def test_worker_opens_tunnel_and_links_coordinator(
        self, fleet: FleetManager, gateway: FakeGateway, opener: FakeOpener, template: InstanceTemplate,
    ):
        gateway.running("i-1")
        coordinator = fleet.add_node(NodeConfig(type=NodeType.COORDINATOR, template=template)).result()

        worker = fleet.add_node(worker_on("i-1")).result()

        assert worker.tunnel_open
        assert worker.coordinator_id == coordinator.id
        assert opener.calls == [("i-1", "localhost", 11111, 11111)]
        assert fleet.get_nodes() == (coordinator, worker)

    def test_concurrent_workers_share_instance(
        self, fleet: FleetManager, gateway: FakeGateway, opener: FakeOpener,
    ):
        gateway.running("i-1")

        futures = [fleet.add_node(worker_on("i-1")) for _ in range(2)]
        nodes = [f.result() for f in futures]

        assert sorted(n.management_port for n in nodes) == [BASE + 1, BASE + 2]
        assert len({n.remote_directory for n in nodes}) == 2
        assert len(opener.opened) == 1
        assert all(n.tunnel_open for n in nodes)
        assert len(fleet.workers()) == 2

    def test_suspended_instance_is_resumed(self, fleet: FleetManager, gateway: FakeGateway):
        gateway.running("i-1")
        gateway.suspend_instance("i-1")

        fleet.add_node(worker_on("i-1")).result()

        assert gateway.state_of("i-1") == InstanceState.RUNNING
        assert ("start", "i-1") in gateway.calls

    def test_tunnel_failure_still_deploys(self, fleet: FleetManager, gateway: FakeGateway, opener: FakeOpener):
        gateway.running("i-1")
        opener.error = TransportError("remote port forwarding disabled", "10.0.0.1")

        node = fleet.add_node(worker_on("i-1")).result()

        assert node.status == DeploymentStatus.DEPLOYED
        assert not node.tunnel_open
        assert fleet.get_node(node.id) == node

    def test_second_coordinator_is_rejected(
        self, fleet: FleetManager, gateway: FakeGateway, template: InstanceTemplate,
    ):
        config = NodeConfig(type=NodeType.COORDINATOR, template=template)
        fleet.add_node(config).result()

        with pytest.raises(ConfigurationError, match="already deployed"):
            fleet.add_node(config).result()
        assert [c for c in gateway.calls if c[0] == "create"] == [("create", "i-new1")]

    def test_concurrent_coordinators_deploy_once(self, fleet: FleetManager, gateway: FakeGateway, shells: ShellPool):
        gateway.running("i-1")
        shell = shells.shells["10.0.0.1"] = GatedShell("10.0.0.1")
        config = NodeConfig(type=NodeType.COORDINATOR, instance_id="i-1")

        first = fleet.add_node(config)
        assert shell.entered.wait(timeout=5)
        second = fleet.add_node(config)

        with pytest.raises(ConfigurationError, match="already deployed"):
            second.result(timeout=5)
        shell.release.set()
        node = first.result(timeout=5)

        assert fleet.coordinator() == node
        assert len([c for c in shell.commands if "nohup" in c]) == 1
        assert gateway.state_of("i-1") == InstanceState.RUNNING

    def test_unknown_instance_fails(self, fleet: FleetManager):
        with pytest.raises(NotFoundError):
            fleet.add_node(worker_on("i-missing")).result()
        assert fleet.get_nodes() == ()

    def test_missing_credentials(self, deployer: NodeDeployer, allocator: PortAndTunnelAllocator, shells: ShellPool):
        gateway = FakeGateway()
        gateway.running("i-1")
        with FleetManager(gateway, deployer, allocator=allocator, shell_factory=shells) as fleet:
            with pytest.raises(ConfigurationError, match="credentials"):
                fleet.add_node(worker_on("i-1")).result()
        assert gateway.state_of("i-1") == InstanceState.SUSPENDED


class TestRollback:
    def test_created_instance_is_terminated(
        self, fleet: FleetManager, gateway: FakeGateway, shells: ShellPool,
        allocator: PortAndTunnelAllocator, opener: FakeOpener, template: InstanceTemplate,
    ):
        failing_shell(shells, "10.1.0.1")

        with pytest.raises(DeploymentError, match="command not found"):
            fleet.add_node(NodeConfig(type=NodeType.WORKER, template=template)).result()

        assert gateway.state_of("i-new1") == InstanceState.TERMINATED
        assert not allocator.has_allocations("i-new1")
        assert opener.calls == []
        assert fleet.get_nodes() == ()

    def test_existing_instance_is_suspended(
        self, fleet: FleetManager, gateway: FakeGateway, shells: ShellPool, allocator: PortAndTunnelAllocator,
    ):
        gateway.running("i-1")
        failing_shell(shells, "10.0.0.1")

        with pytest.raises(DeploymentError):
            fleet.add_node(worker_on("i-1")).result()

        assert gateway.state_of("i-1") == InstanceState.SUSPENDED
        assert not allocator.has_allocations("i-1")

    def test_instance_hosting_other_nodes_keeps_running(
        self, fleet: FleetManager, gateway: FakeGateway, shells: ShellPool,
        allocator: PortAndTunnelAllocator, opener: FakeOpener,
    ):
        gateway.running("i-1")
        first = fleet.add_node(worker_on("i-1")).result()
        failing_shell(shells, "10.0.0.1")

        with pytest.raises(DeploymentError):
            fleet.add_node(worker_on("i-1")).result()

        assert gateway.state_of("i-1") == InstanceState.RUNNING
        assert fleet.get_nodes() == (first,)
        assert allocator.held_ports("i-1") == (first.management_port,)
        assert opener.opened[0].is_open

    def test_started_node_is_stopped(
        self, fleet: FleetManager, gateway: FakeGateway, shells: ShellPool,
        allocator: PortAndTunnelAllocator, monkeypatch: pytest.MonkeyPatch,
    ):
        gateway.running("i-1")

        def reject(node):
            raise ConfigurationError("node table refused the node")

        monkeypatch.setattr(fleet, "_add_managed_node", reject)

        with pytest.raises(ConfigurationError, match="refused"):
            fleet.add_node(worker_on("i-1")).result()

        shell = shells.for_instance("i-1", gateway)
        assert len([c for c in shell.commands if "nohup" in c]) == 1
        assert len([c for c in shell.commands if "stopNode.sh" in c]) == 1
        assert gateway.state_of("i-1") == InstanceState.SUSPENDED
        assert not allocator.has_allocations("i-1")

    def test_port_is_reused_after_failure(self, fleet: FleetManager, gateway: FakeGateway, shells: ShellPool):
        gateway.running("i-1")
        fleet.add_node(worker_on("i-1")).result()
        shell = failing_shell(shells, "10.0.0.1")
        with pytest.raises(DeploymentError):
            fleet.add_node(worker_on("i-1")).result()

        shell.fail_on.clear()
        node = fleet.add_node(worker_on("i-1")).result()

        assert node.management_port == BASE + 2


class TestRemoveNode:
    def test_suspend(
        self, fleet: FleetManager, gateway: FakeGateway, shells: ShellPool,
        allocator: PortAndTunnelAllocator, opener: FakeOpener,
    ):
        gateway.running("i-1")
        node = fleet.add_node(worker_on("i-1")).result()

        fleet.remove_node(node, InstanceState.SUSPENDED).result()

        shell = shells.for_instance("i-1", gateway)
        assert shell.executed("cd ")[-1] == f"cd {node.remote_directory}/node && sh ./stopNode.sh"
        assert gateway.state_of("i-1") == InstanceState.SUSPENDED
        assert not allocator.has_allocations("i-1")
        assert opener.opened[0].closed == 1
        with pytest.raises(NotFoundError):
            fleet.get_node(node.id)

    def test_terminate_by_id(self, fleet: FleetManager, gateway: FakeGateway, template: InstanceTemplate):
        node = fleet.add_node(NodeConfig(type=NodeType.COORDINATOR, template=template)).result()

        fleet.remove_node(node.id).result()

        assert gateway.state_of(node.instance_id) == InstanceState.TERMINATED
        assert fleet.coordinator() is None

    def test_shutdown_failure_is_best_effort(self, fleet: FleetManager, gateway: FakeGateway, shells: ShellPool):
        gateway.running("i-1")
        node = fleet.add_node(worker_on("i-1")).result()
        shells.for_instance("i-1", gateway).fail_on["stopNode"] = CommandResult(1, "", "no such process")

        fleet.remove_node(node).result()

        assert gateway.state_of("i-1") == InstanceState.TERMINATED
        assert fleet.get_nodes() == ()

    def test_keep_running_with_other_nodes_keeps_tunnel(
        self, fleet: FleetManager, gateway: FakeGateway, opener: FakeOpener,
    ):
        gateway.running("i-1")
        first = fleet.add_node(worker_on("i-1")).result()
        second = fleet.add_node(worker_on("i-1")).result()

        fleet.remove_node(first, InstanceState.RUNNING).result()

        assert opener.opened[0].is_open
        assert fleet.workers() == (second,)
        assert gateway.state_of("i-1") == InstanceState.RUNNING

    def test_stopping_instance_removes_every_hosted_node(
        self, fleet: FleetManager, gateway: FakeGateway, shells: ShellPool,
        allocator: PortAndTunnelAllocator, opener: FakeOpener,
    ):
        gateway.running("i-1")
        first = fleet.add_node(worker_on("i-1")).result()
        fleet.add_node(worker_on("i-1")).result()

        fleet.remove_node(first, InstanceState.TERMINATED).result()

        assert fleet.get_nodes() == ()
        assert not allocator.has_allocations("i-1")
        assert opener.opened[0].closed == 1
        assert len([c for c in shells.for_instance("i-1", gateway).commands if "stopNode.sh" in c]) == 2
        assert gateway.state_of("i-1") == InstanceState.TERMINATED

    def test_transition_failure_still_forgets_node(self, fleet: FleetManager, gateway: FakeGateway):
        gateway.running("i-1")
        node = fleet.add_node(worker_on("i-1")).result()
        gateway.add(CloudInstance(id="i-1", state=InstanceState.TERMINATED))

        with pytest.raises(NotFoundError):
            fleet.remove_node(node).result()
        assert fleet.get_nodes() == ()

    def test_unknown_node(self, fleet: FleetManager):
        with pytest.raises(NotFoundError, match="node"):
            fleet.remove_node("missing").result()


class TestLifecycle:
    def test_shutdown_closes_tunnels_and_rejects_work(
        self, gateway: FakeGateway, deployer: NodeDeployer,
        allocator: PortAndTunnelAllocator, shells: ShellPool, opener: FakeOpener,
    ):
        gateway.running("i-1")
        fleet = FleetManager(gateway, deployer, allocator=allocator, shell_factory=shells)
        fleet.add_node(worker_on("i-1")).result()

        fleet.shutdown()
        fleet.shutdown()

        assert opener.opened[0].closed == 1
        assert gateway.state_of("i-1") == InstanceState.RUNNING
        with pytest.raises(RuntimeError):
            fleet.add_node(worker_on("i-1"))
