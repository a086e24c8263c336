"""Centralized constants and enums for fleetward.

All magic strings, remote paths, and port numbers are defined here
to ensure consistency across the gateway, deployer and batch backends.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Final

# =============================================================================
# Instance Lifecycle
# =============================================================================


class InstanceState(StrEnum):
    """Provider-neutral instance lifecycle states.

    PENDING -> RUNNING -> {SUSPENDED <-> RUNNING} -> TERMINATED.
    TERMINATED is absorbing.
    """

    PENDING = "pending"
    RUNNING = "running"
    SUSPENDED = "suspended"
    TERMINATED = "terminated"


# =============================================================================
# Logical Nodes
# =============================================================================


class NodeType(StrEnum):
    """Role of a deployed worker-package process."""

    COORDINATOR = "coordinator"
    WORKER = "worker"


class DeploymentStatus(StrEnum):
    PENDING = "pending"
    DEPLOYED = "deployed"
    FAILED = "failed"


# =============================================================================
# Resource Tags
# =============================================================================


class FleetTag(StrEnum):
    """Instance tag keys used by fleetward."""

    MANAGED = "fleetward:managed"
    GROUP = "fleetward:group"
    NODE_TYPE = "fleetward:node-type"


DEFAULT_GROUP: Final = "fleetward"


# =============================================================================
# Ports
# =============================================================================

BASE_MANAGEMENT_PORT: Final = 11198
COORDINATOR_SERVER_PORT: Final = 11111
SSH_PORT: Final = 22


# =============================================================================
# Remote Filesystem Layout
# =============================================================================

REMOTE_RESOURCES_DIR: Final = ".fleet-resources"
REMOTE_CRC_DIR: Final = ".crc"
CRC_FILE_EXTENSION: Final = ".crc"
REMOTE_SEPARATOR: Final = "/"

INIT_LOG: Final = "init.log"
UUID_PREFIX: Final = "UUID="
UUID_LENGTH: Final = 32


# =============================================================================
# Timeouts (in seconds)
# =============================================================================

INSTANCE_STATE_TIMEOUT: Final = 600
INSTANCE_STATE_MIN_WAIT: Final = 2
INSTANCE_STATE_MAX_WAIT: Final = 30
SSH_CONNECT_TIMEOUT: Final = 30
SSH_CONNECT_RETRY_WINDOW: Final = 180
COMMAND_TIMEOUT: Final = 120
