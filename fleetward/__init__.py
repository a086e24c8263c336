"""fleetward - provision cloud instances and deploy worker nodes onto them.

Example:

    from fleetward import (
        EC2Gateway, InstanceState, NodeType, resolve_config,
    )

    config = resolve_config()
    gateway = EC2Gateway("eu-west-1", credentials=config.credentials)

    with config.fleet.fleet_manager(gateway) as fleet:
        worker = fleet.add_node(config.fleet.node_config(NodeType.WORKER, template=config.template("small"))).result()
        fleet.remove_node(worker, InstanceState.SUSPENDED).result()
"""

from fleetward.allocator import PortAndTunnelAllocator, TunnelHandle, TunnelOpener
from fleetward.batch import BatchDeployer, BatchNode, BatchNodeConfig
from fleetward.config import (
    BatchSettings,
    CredentialsManager,
    FleetSettings,
    FleetwardConfig,
    InstanceProfile,
    load_config,
    resolve_config,
)
from fleetward.constants import (
    BASE_MANAGEMENT_PORT,
    DeploymentStatus,
    InstanceState,
    NodeType,
)
from fleetward.deployer import NodeDeployer, NodePackage
from fleetward.exceptions import (
    ChecksumMismatchRetry,
    CommandFailedError,
    ConfigurationError,
    DeploymentError,
    FleetwardError,
    NotFoundError,
    ProvisioningError,
    TransportError,
    TunnelError,
)
from fleetward.fleet import FleetManager
from fleetward.gateway import CloudInstanceGateway, EC2Gateway
from fleetward.logging import LogConfig
from fleetward.resources import (
    BytesSource,
    EmbeddedSource,
    FileSource,
    ManagedResource,
    ResourceCatalog,
    ResourceSource,
)
from fleetward.sync import RemoteResourceSynchronizer, SyncReport, require
from fleetward.transport import CommandResult, RemoteShell, SSHConfig, SSHShell
from fleetward.types import (
    CloudInstance,
    Credentials,
    InstanceTemplate,
    KeyPairCredentials,
    LogicalNode,
    NodeConfig,
    PasswordCredentials,
)

__version__ = "0.1.0"

__all__ = [
    # Fleet
    "FleetManager",
    "NodeConfig",
    "LogicalNode",
    "NodeType",
    "DeploymentStatus",
    # Instances
    "CloudInstanceGateway",
    "EC2Gateway",
    "CloudInstance",
    "InstanceTemplate",
    "InstanceState",
    # Credentials
    "Credentials",
    "KeyPairCredentials",
    "PasswordCredentials",
    "CredentialsManager",
    # Deployment
    "NodeDeployer",
    "NodePackage",
    "RemoteResourceSynchronizer",
    "SyncReport",
    "require",
    "ResourceCatalog",
    "ManagedResource",
    "ResourceSource",
    "FileSource",
    "EmbeddedSource",
    "BytesSource",
    # Ports and tunnels
    "PortAndTunnelAllocator",
    "TunnelHandle",
    "TunnelOpener",
    "BASE_MANAGEMENT_PORT",
    # Transport
    "RemoteShell",
    "CommandResult",
    "SSHConfig",
    "SSHShell",
    # Batch
    "BatchDeployer",
    "BatchNode",
    "BatchNodeConfig",
    # Configuration
    "load_config",
    "resolve_config",
    "FleetwardConfig",
    "FleetSettings",
    "InstanceProfile",
    "BatchSettings",
    "LogConfig",
    # Errors
    "FleetwardError",
    "ConfigurationError",
    "ProvisioningError",
    "NotFoundError",
    "TransportError",
    "CommandFailedError",
    "ChecksumMismatchRetry",
    "TunnelError",
    "DeploymentError",
    # Version
    "__version__",
]
