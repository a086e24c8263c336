"""Core data types: credentials, instances, templates and logical nodes.

Every type here is an immutable snapshot. Gateways return fresh
CloudInstance objects on each call and the FleetManager replaces
LogicalNode entries instead of mutating them, so snapshots can be shared
freely between threads.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from fleetward.constants import (
    BASE_MANAGEMENT_PORT,
    COORDINATOR_SERVER_PORT,
    DEFAULT_GROUP,
    DeploymentStatus,
    InstanceState,
    NodeType,
)

__all__ = [
    "KeyPairCredentials",
    "PasswordCredentials",
    "Credentials",
    "CloudInstance",
    "InstanceTemplate",
    "NodeConfig",
    "LogicalNode",
]


# =============================================================================
# Credentials
# =============================================================================


@dataclass(frozen=True, slots=True)
class KeyPairCredentials:
    """Login with a private key file.

    Attributes:
        name: Key pair name as registered with the cloud provider.
        user: Login user on the instance.
        private_key: Path to the private key file.
        public_key: Optional path to the public key file.
        passphrase: Optional private key passphrase.
    """

    name: str
    user: str
    private_key: Path
    public_key: Path | None = None
    passphrase: str | None = field(default=None, repr=False)


@dataclass(frozen=True, slots=True)
class PasswordCredentials:
    name: str
    user: str
    password: str = field(repr=False)


type Credentials = KeyPairCredentials | PasswordCredentials


# =============================================================================
# Instances
# =============================================================================


@dataclass(frozen=True, slots=True)
class CloudInstance:
    """Snapshot of a cloud instance as reported by a gateway.

    Provider-specific values are kept as frozen key-value pairs in
    ``tags`` (for EC2: the instance tags).
    """

    id: str
    state: InstanceState
    public_addresses: tuple[str, ...] = ()
    private_addresses: tuple[str, ...] = ()
    credentials: Credentials | None = field(default=None, repr=False)
    region: str = ""
    zone: str | None = None
    instance_type: str = ""
    image_id: str = ""
    vcpus: int = 0
    tags: frozenset[tuple[str, str]] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        if self.state == InstanceState.RUNNING and not (self.public_addresses or self.private_addresses):
            raise ValueError(f"Running instance {self.id} has no addresses")

    @property
    def public_address(self) -> str | None:
        return self.public_addresses[0] if self.public_addresses else None

    @property
    def private_address(self) -> str | None:
        return self.private_addresses[0] if self.private_addresses else None

    @property
    def address(self) -> str:
        """Address used to reach the instance: public if any, otherwise private."""
        address = self.public_address or self.private_address
        if address is None:
            raise ValueError(f"Instance {self.id} has no addresses (state={self.state})")
        return address

    def get_tag(self, key: str, default: str | None = None) -> str | None:
        for k, v in self.tags:
            if k == key:
                return v
        return default

    def with_credentials(self, credentials: Credentials | None) -> CloudInstance:
        return replace(self, credentials=credentials)


@dataclass(frozen=True, slots=True)
class InstanceTemplate:
    """Named instance profile used to create new instances.

    Example:
        >>> InstanceTemplate(name="small", region="eu-west-1", instance_type="t3.micro",
        ...                  image_id="ami-0123", keypair="fleet-key")
    """

    name: str
    region: str
    instance_type: str
    image_id: str | None = None
    zone: str | None = None
    keypair: str | None = None
    shutdown_state: InstanceState = InstanceState.TERMINATED
    group: str = DEFAULT_GROUP
    security_group_ids: tuple[str, ...] = ()
    subnet_id: str | None = None


# =============================================================================
# Logical Nodes
# =============================================================================


@dataclass(frozen=True, slots=True)
class NodeConfig:
    """Request to deploy one logical node.

    Either ``template`` (create a new instance) or ``instance_id`` (reuse,
    resuming it if suspended) must be set. Workers reach their coordinator
    at ``coordinator_host:coordinator_port`` through a reverse tunnel.
    """

    type: NodeType
    template: InstanceTemplate | None = None
    instance_id: str | None = None
    credentials: Credentials | None = field(default=None, repr=False)
    coordinator_host: str = "localhost"
    coordinator_port: int = COORDINATOR_SERVER_PORT
    processing_threads: int | None = None
    preload_artifacts: tuple[Path, ...] = ()
    user_metadata: frozenset[tuple[str, str]] = field(default_factory=frozenset)
    properties: frozenset[tuple[str, str]] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        if self.template is None and self.instance_id is None:
            raise ValueError("NodeConfig requires either a template or an instance_id")

    @property
    def is_worker(self) -> bool:
        return self.type == NodeType.WORKER


def new_node_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True, slots=True)
class LogicalNode:
    """A deployed worker-package process on a cloud instance."""

    id: str
    type: NodeType
    instance_id: str
    management_port: int = BASE_MANAGEMENT_PORT
    status: DeploymentStatus = DeploymentStatus.PENDING
    coordinator_id: str | None = None
    uuid: str | None = None
    tunnel_open: bool = False
    remote_directory: str = ""
    instance: CloudInstance | None = field(default=None, repr=False, compare=False)

    def evolve(self, **changes: Any) -> LogicalNode:
        return replace(self, **changes)
