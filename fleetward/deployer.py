"""Deploys and starts the worker package for one logical node.

Every node lives in its own directory on the instance, named after its
type, instance and management port, so several nodes can share a
machine. Deployment steps::

    rm -rf <node_dir>
    sync + unzip the package into <node_dir>, preload artifacts into lib/
    upload the generated node properties
    chmod +x <start_script>
    cd <app_dir> && nohup ./<start_script> > init.log 2>&1
    grep UUID= <app_dir>/init.log
"""

from __future__ import annotations

import io
import posixpath
import shlex
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from fleetward.constants import INIT_LOG, UUID_LENGTH, UUID_PREFIX, NodeType
from fleetward.exceptions import DeploymentError, TransportError
from fleetward.resources import FileSource, ManagedResource, ResourceCatalog, ResourceSource
from fleetward.sync import RemoteResourceSynchronizer, require
from fleetward.transport import RemoteShell, run
from fleetward.types import CloudInstance, LogicalNode, NodeConfig

log = logger.bind(component="deployer")


@dataclass(frozen=True, slots=True)
class NodePackage:
    """A zipped node distribution.

    Attributes:
        source: The zip archive.
        folder: Directory inside the archive holding the start script
            (empty when the script is at the archive root).
        start_script: Script that starts the node and detaches.
        stop_script: Script that stops the node gracefully.
        properties_file: Path of the generated properties, relative to
            the application directory.
        start_arguments: Extra arguments for the start script.
    """

    source: ResourceSource
    folder: str = ""
    start_script: str = "startNode.sh"
    stop_script: str = "stopNode.sh"
    properties_file: str = "config/node.properties"
    start_arguments: str = ""

    @classmethod
    def from_path(cls, path: str | Path, **kwargs: str) -> NodePackage:
        return cls(source=FileSource(Path(path).expanduser()), **kwargs)


def node_directory(node_type: NodeType, instance_id: str, port: int) -> str:
    return f"{node_type}-{instance_id.replace('/', '_')}_{port}"


def render_properties(properties: Mapping[str, str], comment: str = "Running Config") -> bytes:
    lines = [f"# {comment}"]
    lines.extend(f"{key}={value}" for key, value in sorted(properties.items()))
    return ("\n".join(lines) + "\n").encode("utf-8")


def parse_uuid(output: str) -> str | None:
    """Extract the node UUID from start-up output (``UUID=`` then 32 chars)."""
    index = output.find(UUID_PREFIX)
    if index < 0:
        return None
    begin = index + len(UUID_PREFIX)
    uuid = output[begin:begin + UUID_LENGTH]
    return uuid if len(uuid) == UUID_LENGTH else None


@dataclass(slots=True)
class NodeDeployer:
    """Runs the deployment procedure for nodes of every configured type."""

    packages: Mapping[NodeType, NodePackage]
    synchronizer: RemoteResourceSynchronizer = field(default_factory=RemoteResourceSynchronizer)

    def package_for(self, node_type: NodeType) -> NodePackage:
        try:
            return self.packages[node_type]
        except KeyError:
            raise DeploymentError("-", "-", f"no package configured for {node_type} nodes") from None

    def app_directory(self, node: LogicalNode) -> str:
        folder = self.package_for(node.type).folder
        return posixpath.join(node.remote_directory, folder) if folder else node.remote_directory

    def build_catalog(self, node: LogicalNode, config: NodeConfig) -> ResourceCatalog:
        package = self.package_for(node.type)
        catalog = ResourceCatalog([ManagedResource(package.source, node.remote_directory, unzip_on_deploy=True)])
        lib = posixpath.join(self.app_directory(node), "lib")
        for artifact in config.preload_artifacts:
            catalog.add(ManagedResource(FileSource(artifact), lib))
        return catalog

    def node_properties(self, node: LogicalNode, config: NodeConfig, instance: CloudInstance) -> dict[str, str]:
        threads = config.processing_threads or instance.vcpus or 1
        properties = {
            "fleet.node.id": node.id,
            "fleet.node.type": str(node.type),
            "fleet.management.host": instance.private_address or instance.address,
            "fleet.management.port": str(node.management_port),
            "fleet.processing.threads": str(threads),
        }
        if node.type == NodeType.WORKER:
            # the reverse tunnel exposes the coordinator on the instance's loopback
            properties["fleet.coordinator.host"] = "localhost"
            properties["fleet.coordinator.port"] = str(config.coordinator_port)
        else:
            properties["fleet.server.port"] = str(config.coordinator_port)
        properties.update(dict(config.properties))
        return properties

    def deploy(
        self,
        node: LogicalNode,
        config: NodeConfig,
        instance: CloudInstance,
        shell: RemoteShell,
    ) -> LogicalNode:
        """Deploy and start a node; returns it with its UUID when reported.

        Raises:
            DeploymentError: If the package is not deployed or the start
                command fails.
        """
        package = self.package_for(node.type)
        app_dir = self.app_directory(node)
        log.info(
            "Deploying {type} node {node} to {instance}:{dir}",
            type=node.type, node=node.id, instance=instance.id, dir=node.remote_directory,
        )
        try:
            run(shell, f"rm -rf {shlex.quote(node.remote_directory)}")

            catalog = self.build_catalog(node, config)
            report = self.synchronizer.synchronize_and_deploy(catalog, shell)
            if report.failed:
                log.warning("Resources not deployed to {instance}: {names}", instance=instance.id, names=report.failed)
            require(catalog, [package.source.name], shell.host)

            properties_path = posixpath.join(app_dir, package.properties_file)
            run(shell, f"mkdir -p {shlex.quote(posixpath.dirname(properties_path) or '.')}")
            shell.upload(io.BytesIO(render_properties(self.node_properties(node, config, instance))), properties_path)

            script = posixpath.join(app_dir, package.start_script)
            run(shell, f"chmod +x {shlex.quote(script)}")

            log.debug("Starting {type} node on {instance}", type=node.type, instance=instance.id)
            run(shell, self.start_command(node))
        except TransportError as e:
            raise DeploymentError(node.id, instance.id, str(e)) from e

        uuid = self.fetch_uuid(node, shell)
        log.info("{type} node {node} started on {instance}", type=node.type, node=node.id, instance=instance.id)
        return node.evolve(uuid=uuid)

    def start_command(self, node: LogicalNode) -> str:
        package = self.package_for(node.type)
        command = f"cd {shlex.quote(self.app_directory(node))} && nohup ./{package.start_script}"
        if package.start_arguments:
            command += f" {package.start_arguments}"
        return f"{command} > {INIT_LOG} 2>&1"

    def fetch_uuid(self, node: LogicalNode, shell: RemoteShell) -> str | None:
        init_log = posixpath.join(self.app_directory(node), INIT_LOG)
        try:
            result = shell.exec(f"grep {UUID_PREFIX} {shlex.quote(init_log)}")
        except TransportError as e:
            log.warning("Could not read {path} on {host}: {err}", path=init_log, host=shell.host, err=e)
            return None
        uuid = parse_uuid(result.stdout)
        if uuid is None:
            log.warning("Node {node} did not report a UUID in {path}", node=node.id, path=init_log)
        else:
            log.debug("Node {node} has UUID {uuid}", node=node.id, uuid=uuid)
        return uuid

    def shutdown(self, node: LogicalNode, shell: RemoteShell) -> None:
        """Stop a node's software gracefully. Raises TransportError on failure."""
        package = self.package_for(node.type)
        app_dir = shlex.quote(self.app_directory(node))
        run(shell, f"cd {app_dir} && sh ./{package.stop_script}")
        log.info("Stopped node {node} on {host}", node=node.id, host=shell.host)
