"""Custom exception hierarchy for fleetward.

All fleetward-specific exceptions inherit from FleetwardError, enabling
callers to catch every fleet failure with a single except clause.
"""

from __future__ import annotations


class FleetwardError(Exception):
    """Base exception for all fleetward errors."""


class ConfigurationError(FleetwardError):
    """Raised for invalid configuration or missing required settings."""


class ProvisioningError(FleetwardError):
    """Raised when the cloud provider rejects or fails a request."""

    def __init__(self, message: str, instance_id: str | None = None) -> None:
        self.instance_id = instance_id
        super().__init__(message)


class NotFoundError(FleetwardError):
    """Raised when an operation references an unknown instance or node."""

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"Unknown {kind}: {identifier}")


class TransportError(FleetwardError):
    """Raised when a remote shell connect, exec or upload fails."""

    def __init__(self, message: str, host: str | None = None) -> None:
        self.host = host
        super().__init__(f"[{host}] {message}" if host else message)


class CommandFailedError(TransportError):
    """Raised when a remote command exits with a non-zero status."""

    def __init__(self, command: str, exit_status: int, stderr: str, host: str | None = None) -> None:
        self.command = command
        self.exit_status = exit_status
        self.stderr = stderr
        preview = command[:80] + "..." if len(command) > 80 else command
        super().__init__(f"Command failed ({exit_status}): {preview}: {stderr.strip()}", host)


class ChecksumMismatchRetry(FleetwardError):
    """Remote checksum differs from the local one; the resource is re-uploaded.

    Never surfaced to callers.
    """

    def __init__(self, resource: str, local: int, remote: str | None) -> None:
        self.resource = resource
        self.local = local
        self.remote = remote
        super().__init__(f"Checksum mismatch for {resource}: local={local} remote={remote}")


class TunnelError(FleetwardError):
    """Raised when a reverse tunnel cannot be opened."""

    def __init__(self, instance_id: str, reason: str) -> None:
        self.instance_id = instance_id
        self.reason = reason
        super().__init__(f"Reverse tunnel to {instance_id} failed: {reason}")


class DeploymentError(FleetwardError):
    """Raised when deploying or starting the worker package fails."""

    def __init__(self, node_id: str, instance_id: str, reason: str) -> None:
        self.node_id = node_id
        self.instance_id = instance_id
        self.reason = reason
        super().__init__(f"Deployment of node {node_id} on {instance_id} failed: {reason}")
