"""Remote shell transport."""

from fleetward.transport.ssh import (
    CommandResult,
    RemoteShell,
    ReverseTunnel,
    ShellFactory,
    SSHConfig,
    SSHShell,
    file_exists_command,
    run,
    ssh_shell_for,
)

__all__ = [
    "CommandResult",
    "RemoteShell",
    "ReverseTunnel",
    "ShellFactory",
    "SSHConfig",
    "SSHShell",
    "file_exists_command",
    "run",
    "ssh_shell_for",
]
