"""Deployment of worker nodes as Torque/PBS batch jobs.

The node package is deployed once to the head node (through the same
checksum-cached synchronizer as cloud instances). Each node then gets its
own properties file and is submitted as a job whose script copies the
package into the job's working directory and starts it there.
"""

from __future__ import annotations

import base64
import io
import itertools
import posixpath
import re
import shlex
import threading
import time
from dataclasses import dataclass, field

from loguru import logger

from fleetward.constants import BASE_MANAGEMENT_PORT, COORDINATOR_SERVER_PORT
from fleetward.deployer import NodePackage, render_properties
from fleetward.exceptions import DeploymentError, NotFoundError, TransportError
from fleetward.resources import FileSource, ManagedResource, ResourceCatalog
from fleetward.sync import RemoteResourceSynchronizer, require
from fleetward.transport import RemoteShell, run

log = logger.bind(component="batch")

DEFAULT_NODE_DIR = "fleet-node"
DEFAULT_WORKING_ROOT = "/home/torque/tmp"
CONFIG_SUFFIX = ".properties"

_EMAIL = re.compile(r".*@.*\..*")


def is_valid_email(email: str | None) -> bool:
    return email is not None and _EMAIL.fullmatch(email) is not None


@dataclass(frozen=True, slots=True)
class BatchNodeConfig:
    """Per-job settings for a batch worker node."""

    cpus: int = 1
    coordinator_host: str | None = None
    properties: frozenset[tuple[str, str]] = field(default_factory=frozenset)


@dataclass(frozen=True, slots=True)
class BatchNode:
    job_id: str
    number: int
    name: str
    management_port: int
    server_port: int
    config_file: str


class BatchDeployer:
    """Submits worker nodes to a PBS scheduler through its head node.

    Args:
        shell: Shell on the scheduler's head node.
        package: Node distribution; its ``folder`` is the directory the
            archive unpacks into (``fleet-node`` when empty).
        email: Job notification address, used only if it looks valid.
        coordinator_host: Address nodes connect back to.
        preload_artifacts: Local files copied into the node's ``lib``.
    """

    def __init__(
        self,
        shell: RemoteShell,
        package: NodePackage,
        *,
        email: str | None = None,
        coordinator_host: str | None = None,
        preload_artifacts: tuple[FileSource, ...] = (),
        base_port: int = BASE_MANAGEMENT_PORT,
        working_root: str = DEFAULT_WORKING_ROOT,
        synchronizer: RemoteResourceSynchronizer | None = None,
        session_id: str | None = None,
    ) -> None:
        self.shell = shell
        self.package = package
        self.email = email
        self.coordinator_host = coordinator_host
        self.base_port = base_port
        self.working_root = working_root
        self.synchronizer = synchronizer or RemoteResourceSynchronizer()
        self.session_id = session_id or str(int(time.time() * 1000))
        self.node_dir = package.folder.rstrip("/") or DEFAULT_NODE_DIR

        self._catalog = ResourceCatalog([ManagedResource(package.source, ".", unzip_on_deploy=True)])
        for artifact in preload_artifacts:
            self._catalog.add(ManagedResource(artifact, posixpath.join(self.node_dir, "lib")))

        self._numbers = itertools.count()
        self._nodes: dict[str, BatchNode] = {}
        self._lock = threading.Lock()
        self._deploy_lock = threading.Lock()
        self._deployed = False

    @property
    def config_dir(self) -> str:
        return posixpath.join(self.node_dir, "config")

    # =========================================================================
    # Infrastructure
    # =========================================================================

    def deploy_infrastructure(self) -> None:
        """Connect to the head node and deploy the package once per session."""
        with self._deploy_lock:
            if self._deployed:
                return
            self.shell.connect()
            log.info("Deploying node infrastructure to {host}", host=self.shell.host)
            # per-node configs of earlier sessions
            run(self.shell, f"rm -rf {shlex.quote(self.config_dir)}/*{CONFIG_SUFFIX}")
            report = self.synchronizer.synchronize_and_deploy(self._catalog, self.shell)
            if report.failed:
                log.warning("Resources not deployed to {host}: {names}", host=self.shell.host, names=report.failed)
            require(self._catalog, [self.package.source.name], self.shell.host)
            self._deployed = True

    # =========================================================================
    # Jobs
    # =========================================================================

    def submit(self, config: BatchNodeConfig) -> BatchNode:
        """Upload a node configuration and submit the node as a job.

        Raises:
            DeploymentError: If the configuration upload or qsub fails.
        """
        self.deploy_infrastructure()
        with self._lock:
            number = next(self._numbers)
        name = f"FWNode{self.session_id}_{number}"
        config_file = f"{self.node_dir}-{number}{CONFIG_SUFFIX}"
        properties = self.node_properties(number, config)
        server_port = int(properties.get("fleet.server.port", COORDINATOR_SERVER_PORT))

        try:
            self.shell.upload(
                io.BytesIO(render_properties(properties)),
                posixpath.join(self.config_dir, config_file),
            )
            job_id = run(self.shell, self.submit_command(self.qsub_script(name, config_file, config.cpus))).strip()
        except TransportError as e:
            raise DeploymentError(name, self.shell.host, str(e)) from e
        if not job_id:
            raise DeploymentError(name, self.shell.host, "qsub did not return a job id")

        node = BatchNode(
            job_id=job_id,
            number=number,
            name=name,
            management_port=self.base_port + number,
            server_port=server_port,
            config_file=config_file,
        )
        with self._lock:
            self._nodes[job_id] = node
        log.info("Submitted {name} as job {job}", name=name, job=job_id)
        return node

    def remove(self, node: BatchNode | str) -> None:
        """Delete the node's job with ``qdel``."""
        job_id = node if isinstance(node, str) else node.job_id
        with self._lock:
            if job_id not in self._nodes:
                raise NotFoundError("batch job", job_id)
        run(self.shell, f"qdel {shlex.quote(job_id)}")
        with self._lock:
            self._nodes.pop(job_id, None)
        log.info("Removed job {job}", job=job_id)

    def nodes(self) -> tuple[BatchNode, ...]:
        with self._lock:
            return tuple(self._nodes.values())

    def close(self) -> None:
        self.shell.disconnect()

    # =========================================================================
    # Script generation
    # =========================================================================

    def node_properties(self, number: int, config: BatchNodeConfig) -> dict[str, str]:
        host = config.coordinator_host or self.coordinator_host
        if host is None:
            log.warning("No coordinator address configured, nodes will use localhost")
            host = "localhost"
        properties = {
            "fleet.coordinator.host": host,
            "fleet.management.port": str(self.base_port + number),
            "fleet.resource.cache.dir": f"/tmp/.fleet/node-{self.session_id}_{number}",
            "fleet.processing.threads": str(config.cpus),
        }
        properties.update(dict(config.properties))
        return properties

    def qsub_script(self, name: str, config_file: str, cpus: int) -> str:
        lines = [
            f"#PBS -N {name}",
            f"#PBS -l nodes=1:ppn={cpus}",
            "#PBS -p 0",
            "#PBS -j oe",
            "#PBS -m b",
            "#PBS -m e",
            "#PBS -m a",
            "#PBS -V",
            f"#PBS -o out/{name}.out",
            f"#PBS -e err/{name}.err",
        ]
        if is_valid_email(self.email):
            lines.append(f"#PBS -M {self.email}")
        lines += [
            "",
            f"workingDir={self.working_root}/${{USER}}.${{PBS_JOBID}}",
            f"cp -r ~/{self.node_dir} $workingDir/{self.node_dir}",
            f"cd $workingDir/{self.node_dir}",
            f"chmod +x {self.package.start_script}",
            f"./{self.package.start_script} {config_file}",
        ]
        return "\n".join(lines) + "\n"

    @staticmethod
    def submit_command(script: str) -> str:
        encoded = base64.b64encode(script.encode("utf-8")).decode("ascii")
        return f'echo "{encoded}" | base64 -d | qsub'
