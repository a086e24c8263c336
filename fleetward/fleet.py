"""FleetManager: logical coordinator/worker nodes on cloud instances.

Public operations return immediately with a ``concurrent.futures.Future``;
the work runs on a bounded thread pool. The node table, the port map and
the tunnel registry each have their own lock, held only for in-memory
bookkeeping, so a slow cloud call never blocks unrelated operations.

Example:
    >>> with FleetManager(EC2Gateway("eu-west-1", credentials=creds), deployer) as fleet:
    ...     coordinator = fleet.add_node(NodeConfig(NodeType.COORDINATOR, template=small)).result()
    ...     worker = fleet.add_node(NodeConfig(NodeType.WORKER, template=small)).result()
    ...     fleet.remove_node(worker, InstanceState.SUSPENDED).result()
"""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Self

from loguru import logger

from fleetward.allocator import PortAndTunnelAllocator
from fleetward.constants import BASE_MANAGEMENT_PORT, DeploymentStatus, FleetTag, InstanceState, NodeType
from fleetward.deployer import NodeDeployer, node_directory
from fleetward.exceptions import ConfigurationError, FleetwardError, NotFoundError, TunnelError
from fleetward.gateway import CloudInstanceGateway
from fleetward.logging import LogConfig, setup_logging, teardown_logging
from fleetward.transport import ShellFactory, ssh_shell_for
from fleetward.types import CloudInstance, Credentials, LogicalNode, NodeConfig, new_node_id

log = logger.bind(component="fleet")

DEFAULT_MAX_WORKERS = 8


class FleetManager:
    """Adds and removes logical nodes and tracks them against their instances.

    Args:
        gateway: Cloud instance lifecycle.
        deployer: Package deployment per node type.
        allocator: Port and tunnel registry; one is created when omitted.
        shell_factory: Builds a RemoteShell for an instance.
        max_workers: Size of the task pool.
        base_port: Management port of coordinators; workers get ports above it.
        logging: ``True`` or a LogConfig to install log sinks for the
            manager's lifetime.
    """

    def __init__(
        self,
        gateway: CloudInstanceGateway,
        deployer: NodeDeployer,
        *,
        allocator: PortAndTunnelAllocator | None = None,
        shell_factory: ShellFactory = ssh_shell_for,
        max_workers: int = DEFAULT_MAX_WORKERS,
        base_port: int = BASE_MANAGEMENT_PORT,
        logging: LogConfig | bool = False,
    ) -> None:
        self.gateway = gateway
        self.deployer = deployer
        self.allocator = allocator or PortAndTunnelAllocator(base_port)
        self._shell_factory = shell_factory
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="fleetward")
        self._nodes: dict[NodeType, dict[str, LogicalNode]] = {t: {} for t in NodeType}
        self._lock = threading.Lock()
        self._coordinator_reservation: str | None = None
        self._closed = False

        self._log_handler_ids: list[int] = []
        match logging:
            case False:
                pass
            case True:
                self._log_handler_ids = setup_logging(LogConfig())
            case LogConfig():
                self._log_handler_ids = setup_logging(logging)

    # =========================================================================
    # Public API
    # =========================================================================

    def add_node(self, config: NodeConfig) -> Future[LogicalNode]:
        """Deploy a node asynchronously.

        On failure the instance is suspended (if it existed before) or
        terminated (if it was created for this node) and the future fails
        with the causing error.
        """
        self._check_open()
        return self._executor.submit(self._add_node, config)

    def remove_node(
        self,
        node: LogicalNode | str,
        desired_state: InstanceState = InstanceState.TERMINATED,
    ) -> Future[None]:
        """Stop a node and move its instance to ``desired_state``.

        The remote shutdown is best-effort; its failure is logged and the
        instance transition still happens. Moving the instance out of
        RUNNING removes every other node it hosts as well.
        """
        self._check_open()
        node_id = node if isinstance(node, str) else node.id
        return self._executor.submit(self._remove_node, node_id, desired_state)

    def get_nodes(self) -> tuple[LogicalNode, ...]:
        with self._lock:
            return (
                *self._nodes[NodeType.COORDINATOR].values(),
                *self._nodes[NodeType.WORKER].values(),
            )

    def get_node(self, node_id: str) -> LogicalNode:
        with self._lock:
            for table in self._nodes.values():
                if node_id in table:
                    return table[node_id]
        raise NotFoundError("node", node_id)

    def coordinator(self) -> LogicalNode | None:
        with self._lock:
            return next(iter(self._nodes[NodeType.COORDINATOR].values()), None)

    def workers(self) -> tuple[LogicalNode, ...]:
        with self._lock:
            return tuple(self._nodes[NodeType.WORKER].values())

    def shutdown(self, wait: bool = True) -> None:
        """Close every tunnel and stop the task pool. Instances are left as they are."""
        if self._closed:
            return
        self._closed = True
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
        self.allocator.close_all()
        log.info("Fleet manager stopped with {n} registered nodes", n=len(self.get_nodes()))
        if self._log_handler_ids:
            teardown_logging(self._log_handler_ids)
            self._log_handler_ids = []

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *_: object) -> None:
        self.shutdown()

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("FleetManager has been shut down")

    # =========================================================================
    # Task bodies
    # =========================================================================

    def _add_node(self, config: NodeConfig) -> LogicalNode:
        node_id = new_node_id()
        is_coordinator = config.type == NodeType.COORDINATOR
        if is_coordinator:
            self._reserve_coordinator(node_id)
        try:
            return self._deploy_node(node_id, config)
        finally:
            if is_coordinator:
                self._release_coordinator(node_id)

    def _deploy_node(self, node_id: str, config: NodeConfig) -> LogicalNode:
        instance: CloudInstance | None = None
        created = False
        port: int | None = None
        started: LogicalNode | None = None
        try:
            instance, created = self._acquire_instance(config)
            credentials = self._credentials_for(config, instance)
            instance = instance.with_credentials(credentials)

            if config.is_worker:
                port = self.allocator.next_management_port(instance.id)
                coordinator = self.coordinator()
                coordinator_id = coordinator.id if coordinator else None
            else:
                port = self.allocator.base_port
                coordinator_id = None

            node = LogicalNode(
                id=node_id,
                type=config.type,
                instance_id=instance.id,
                management_port=port,
                coordinator_id=coordinator_id,
                remote_directory=node_directory(config.type, instance.id, port),
                instance=instance,
            )

            shell = self._shell_factory(instance, credentials)
            shell.connect()
            try:
                node = started = self.deployer.deploy(node, config, instance, shell)
            finally:
                shell.disconnect()

            tunnel_open = config.is_worker and self._open_tunnel(config, instance, credentials)
            node = node.evolve(status=DeploymentStatus.DEPLOYED, tunnel_open=tunnel_open)
            self._add_managed_node(node)
        except Exception as e:
            log.error("Adding {type} node {node} failed: {err}", type=config.type, node=node_id, err=e)
            self._roll_back(config, instance, created, port, started)
            raise

        log.info(
            "{type} node {node} deployed on {instance} (port {port})",
            type=node.type, node=node.id, instance=node.instance_id, port=node.management_port,
        )
        return node

    def _remove_node(self, node_id: str, desired_state: InstanceState) -> None:
        """Stop a node; stopping its instance also removes every node it hosts."""
        node = self.get_node(node_id)
        log.info(
            "Removing {type} node {node} from {instance}, instance -> {state}",
            type=node.type, node=node.id, instance=node.instance_id, state=desired_state,
        )
        others = self._nodes_on(node.instance_id, exclude=node.id)
        stopping = desired_state != InstanceState.RUNNING
        removed = [node, *others] if stopping else [node]
        if stopping and others:
            log.warning(
                "Instance {instance} goes {state}, also removing nodes {others}",
                instance=node.instance_id, state=desired_state, others=[n.id for n in others],
            )
        try:
            for n in removed:
                self._shutdown_software(n)
                if n.type == NodeType.WORKER:
                    self.allocator.release_port(n.instance_id, n.management_port)
            if stopping or not others:
                self.allocator.close_tunnel(node.instance_id)
            self.gateway.transition(node.instance_id, desired_state)
        finally:
            for n in removed:
                self._remove_managed_node(n)

    # =========================================================================
    # Steps
    # =========================================================================

    def _acquire_instance(self, config: NodeConfig) -> tuple[CloudInstance, bool]:
        """Resolve the node's instance; returns it and whether it was created."""
        if config.instance_id is None:
            assert config.template is not None
            metadata = {FleetTag.NODE_TYPE.value: str(config.type), **dict(config.user_metadata)}
            return self.gateway.create_instance(config.template, metadata), True

        instance = self.gateway.get_instance_metadata(config.instance_id)
        match instance.state:
            case InstanceState.SUSPENDED:
                instance = self.gateway.resume_instance(instance.id)
            case InstanceState.PENDING:
                instance = self.gateway.wait_until(instance.id, InstanceState.RUNNING)
        return instance, False

    def _credentials_for(self, config: NodeConfig, instance: CloudInstance) -> Credentials:
        credentials = config.credentials or instance.credentials
        if credentials is None:
            raise ConfigurationError(f"No login credentials for instance {instance.id}")
        return credentials

    def _open_tunnel(self, config: NodeConfig, instance: CloudInstance, credentials: Credentials) -> bool:
        try:
            self.allocator.open_reverse_tunnel(
                instance,
                credentials,
                local_port=config.coordinator_port,
                remote_port=config.coordinator_port,
                host=config.coordinator_host,
            )
        except TunnelError as e:
            log.warning("Worker on {instance} has no tunnel to the coordinator: {err}", instance=instance.id, err=e)
            return False
        return True

    def _shutdown_software(self, node: LogicalNode) -> None:
        instance = node.instance
        if instance is None or instance.credentials is None:
            log.warning("No connection details for node {node}, skipping remote shutdown", node=node.id)
            return
        try:
            shell = self._shell_factory(instance, instance.credentials)
            shell.connect()
            try:
                self.deployer.shutdown(node, shell)
            finally:
                shell.disconnect()
        except (FleetwardError, OSError) as e:
            log.warning("Remote shutdown of node {node} failed: {err}", node=node.id, err=e)

    def _roll_back(
        self,
        config: NodeConfig,
        instance: CloudInstance | None,
        created: bool,
        port: int | None,
        started: LogicalNode | None = None,
    ) -> None:
        if instance is None:
            return
        if started is not None:
            self._shutdown_software(started)
        if config.is_worker and port is not None:
            self.allocator.release_port(instance.id, port)
        busy = bool(self._nodes_on(instance.id)) or self.allocator.has_allocations(instance.id)
        if not busy:
            self.allocator.close_tunnel(instance.id)
        try:
            if created:
                self.gateway.terminate_instance(instance.id)
            elif not busy:
                self.gateway.suspend_instance(instance.id)
            else:
                log.warning(
                    "Leaving instance {instance} running, it hosts other nodes", instance=instance.id,
                )
        except FleetwardError as e:
            log.error("Rollback of instance {instance} failed: {err}", instance=instance.id, err=e)

    # =========================================================================
    # Node table
    # =========================================================================

    def _reserve_coordinator(self, node_id: str) -> None:
        """Claim the single coordinator slot before any instance is touched."""
        with self._lock:
            if self._nodes[NodeType.COORDINATOR] or self._coordinator_reservation is not None:
                raise ConfigurationError("A coordinator node is already deployed")
            self._coordinator_reservation = node_id

    def _release_coordinator(self, node_id: str) -> None:
        with self._lock:
            if self._coordinator_reservation == node_id:
                self._coordinator_reservation = None

    def _add_managed_node(self, node: LogicalNode) -> None:
        with self._lock:
            table = self._nodes[node.type]
            if node.type == NodeType.COORDINATOR and table:
                raise ConfigurationError("A coordinator node is already deployed")
            table[node.id] = node

    def _remove_managed_node(self, node: LogicalNode) -> None:
        with self._lock:
            self._nodes[node.type].pop(node.id, None)

    def _nodes_on(self, instance_id: str, exclude: str | None = None) -> list[LogicalNode]:
        with self._lock:
            return [
                n
                for table in self._nodes.values()
                for n in table.values()
                if n.instance_id == instance_id and n.id != exclude
            ]
