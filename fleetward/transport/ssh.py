"""Paramiko-backed remote shell: command execution, SFTP upload, reverse tunnels.

The engine depends only on the RemoteShell protocol. SSHShell is the
production implementation; tests substitute an in-memory shell.
"""

from __future__ import annotations

import select
import shlex
import socket
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import BinaryIO, Protocol, Self

import paramiko
from loguru import logger
from tenacity import (
    RetryError,
    retry,
    retry_if_exception_type,
    stop_after_delay,
    wait_exponential,
)

from fleetward.constants import (
    COMMAND_TIMEOUT,
    SSH_CONNECT_RETRY_WINDOW,
    SSH_CONNECT_TIMEOUT,
    SSH_PORT,
)
from fleetward.exceptions import CommandFailedError, TransportError
from fleetward.types import CloudInstance, Credentials, KeyPairCredentials, PasswordCredentials

log = logger.bind(component="ssh")

FORWARD_BUFFER_SIZE = 32 * 1024


# =============================================================================
# Remote Shell Protocol
# =============================================================================


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Immutable result of a remote command."""

    exit_status: int
    stdout: str
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.exit_status == 0

    def raise_on_failure(self, command: str, host: str | None = None) -> CommandResult:
        if not self.success:
            raise CommandFailedError(command, self.exit_status, self.stderr, host)
        return self


class RemoteShell(Protocol):
    """Authenticated command execution and file transfer to one remote host."""

    @property
    def host(self) -> str: ...

    def connect(self) -> None: ...

    def exec(self, command: str, timeout: float | None = None) -> CommandResult: ...

    def upload(self, data: BinaryIO, remote_path: str) -> None: ...

    def disconnect(self) -> None: ...


type ShellFactory = Callable[[CloudInstance, Credentials], RemoteShell]


def file_exists_command(path: str) -> str:
    """POSIX file-existence test that prints ``true`` or ``false``."""
    return f"if [ -f {shlex.quote(path)} ]; then echo true; else echo false; fi"


def run(shell: RemoteShell, command: str, timeout: float | None = None) -> str:
    """Execute a command, raising CommandFailedError on non-zero exit, return stdout."""
    return shell.exec(command, timeout=timeout).raise_on_failure(command, shell.host).stdout


# =============================================================================
# SSH Configuration
# =============================================================================


@dataclass(frozen=True, slots=True)
class SSHConfig:
    """SSH connection configuration."""

    host: str
    username: str
    port: int = SSH_PORT
    key_path: str | None = None
    password: str | None = field(default=None, repr=False)
    passphrase: str | None = field(default=None, repr=False)
    connect_timeout: float = SSH_CONNECT_TIMEOUT
    retry_window: float = SSH_CONNECT_RETRY_WINDOW

    @classmethod
    def for_instance(cls, instance: CloudInstance, credentials: Credentials) -> SSHConfig:
        match credentials:
            case KeyPairCredentials(user=user, private_key=key, passphrase=passphrase):
                return cls(
                    host=instance.address,
                    username=user,
                    key_path=str(key.expanduser()),
                    passphrase=passphrase,
                )
            case PasswordCredentials(user=user, password=password):
                return cls(host=instance.address, username=user, password=password)
            case _:
                raise TypeError(f"Unsupported credentials: {type(credentials).__name__}")


_RETRYABLE_CONNECT_ERRORS = (
    paramiko.ssh_exception.NoValidConnectionsError,
    paramiko.ssh_exception.AuthenticationException,
    paramiko.ssh_exception.SSHException,
    OSError,
)


# =============================================================================
# SSH Shell
# =============================================================================


class SSHShell:
    """RemoteShell over a single paramiko connection.

    Connection attempts are retried with exponential backoff inside a
    bounded window: freshly booted instances refuse connections (or
    reject the key) until sshd and cloud-init are done.

    Example:
        >>> with SSHShell(SSHConfig(host="10.0.0.1", username="ec2-user", key_path="~/.ssh/fleet.pem")) as shell:
        ...     run(shell, "uname -a")
    """

    __slots__ = ("_config", "_client", "_lock")

    def __init__(self, config: SSHConfig) -> None:
        self._config = config
        self._client: paramiko.SSHClient | None = None
        self._lock = threading.Lock()

    @property
    def host(self) -> str:
        return self._config.host

    @property
    def config(self) -> SSHConfig:
        return self._config

    @property
    def is_connected(self) -> bool:
        if self._client is None:
            return False
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    def connect(self) -> None:
        with self._lock:
            if self.is_connected:
                return
            config = self._config

            @retry(
                stop=stop_after_delay(config.retry_window),
                wait=wait_exponential(multiplier=1, min=1, max=15),
                retry=retry_if_exception_type(_RETRYABLE_CONNECT_ERRORS),
            )
            def do_connect() -> paramiko.SSHClient:
                log.debug(
                    "Connecting to {host}:{port} as {user}",
                    host=config.host, port=config.port, user=config.username,
                )
                client = paramiko.SSHClient()
                client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
                try:
                    client.connect(
                        hostname=config.host,
                        port=config.port,
                        username=config.username,
                        key_filename=config.key_path,
                        password=config.password,
                        passphrase=config.passphrase,
                        timeout=config.connect_timeout,
                        allow_agent=False,
                        look_for_keys=config.key_path is None and config.password is None,
                    )
                except Exception:
                    client.close()
                    raise
                return client

            try:
                self._client = do_connect()
            except RetryError as e:
                cause = e.last_attempt.exception()
                raise TransportError(
                    f"Could not connect within {config.retry_window:.0f}s: {cause}", config.host,
                ) from cause
            log.debug("Connected to {host}", host=config.host)

    def _require_client(self) -> paramiko.SSHClient:
        if self._client is None:
            raise TransportError("Not connected. Call connect() first.", self.host)
        return self._client

    def exec(self, command: str, timeout: float | None = COMMAND_TIMEOUT) -> CommandResult:
        client = self._require_client()
        preview = command[:80] + "..." if len(command) > 80 else command
        log.trace("exec on {host}: {cmd}", host=self.host, cmd=preview)
        try:
            _, stdout, stderr = client.exec_command(command, timeout=timeout)
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            code = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as e:
            raise TransportError(f"exec failed for '{preview}': {e}", self.host) from e
        log.trace("exit_status={code}", code=code)
        return CommandResult(exit_status=code, stdout=out, stderr=err)

    def upload(self, data: BinaryIO, remote_path: str) -> None:
        client = self._require_client()
        log.debug("Uploading to {host}:{path}", host=self.host, path=remote_path)
        try:
            sftp = client.open_sftp()
            try:
                sftp.putfo(data, remote_path)
            finally:
                sftp.close()
        except (paramiko.SSHException, OSError) as e:
            raise TransportError(f"upload to {remote_path} failed: {e}", self.host) from e

    def open_reverse_tunnel(self, remote_port: int, host: str, local_port: int) -> ReverseTunnel:
        """Forward ``remote_port`` on the remote host to ``host:local_port`` here.

        Equivalent to ``ssh -R remote_port:host:local_port``.
        """
        transport = self._require_client().get_transport()
        if transport is None or not transport.is_active():
            raise TransportError("SSH transport not available", self.host)
        tunnel = ReverseTunnel(self, transport, remote_port, host, local_port)
        tunnel.open()
        return tunnel

    def disconnect(self) -> None:
        with self._lock:
            if self._client is not None:
                self._client.close()
                self._client = None
                log.debug("Disconnected from {host}", host=self.host)

    def __enter__(self) -> Self:
        self.connect()
        return self

    def __exit__(self, *_: object) -> None:
        self.disconnect()


def ssh_shell_for(instance: CloudInstance, credentials: Credentials) -> SSHShell:
    """Default ShellFactory."""
    return SSHShell(SSHConfig.for_instance(instance, credentials))


# =============================================================================
# Reverse Tunnel
# =============================================================================


class ReverseTunnel:
    """A remote port forward owned by its own SSH connection.

    Incoming channels on the remote port are pumped to ``host:local_port``
    by one daemon thread per connection.
    """

    def __init__(
        self,
        shell: SSHShell,
        transport: paramiko.Transport,
        remote_port: int,
        host: str,
        local_port: int,
    ) -> None:
        self.shell = shell
        self.remote_port = remote_port
        self.host = host
        self.local_port = local_port
        self._transport = transport
        self._closed = threading.Event()

    def open(self) -> None:
        try:
            self._transport.request_port_forward("", self.remote_port, handler=self._on_channel)
        except paramiko.SSHException as e:
            raise TransportError(
                f"remote port forward {self.remote_port} rejected: {e}", self.shell.host,
            ) from e
        log.info(
            "Reverse tunnel {remote_host}:{remote} -> {host}:{local} open",
            remote_host=self.shell.host, remote=self.remote_port, host=self.host, local=self.local_port,
        )

    @property
    def is_open(self) -> bool:
        return not self._closed.is_set() and self._transport.is_active()

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        try:
            if self._transport.is_active():
                self._transport.cancel_port_forward("", self.remote_port)
        except paramiko.SSHException as e:
            log.debug("cancel_port_forward failed on {host}: {err}", host=self.shell.host, err=e)
        finally:
            self.shell.disconnect()
        log.info("Reverse tunnel on {host}:{remote} closed", host=self.shell.host, remote=self.remote_port)

    def _on_channel(
        self,
        channel: paramiko.Channel,
        origin: tuple[str, int],
        server: tuple[str, int],
    ) -> None:
        threading.Thread(
            target=self._pump,
            args=(channel,),
            daemon=True,
            name=f"rtunnel-{self.remote_port}",
        ).start()

    def _pump(self, channel: paramiko.Channel) -> None:
        try:
            sock = socket.create_connection((self.host, self.local_port), timeout=10)
        except OSError as e:
            log.warning(
                "Forwarding to {host}:{port} failed: {err}", host=self.host, port=self.local_port, err=e,
            )
            channel.close()
            return

        with sock:
            while not self._closed.is_set():
                readable, _, _ = select.select([sock, channel], [], [], 1.0)
                if sock in readable:
                    data = sock.recv(FORWARD_BUFFER_SIZE)
                    if not data:
                        break
                    channel.sendall(data)
                if channel in readable:
                    data = channel.recv(FORWARD_BUFFER_SIZE)
                    if not data:
                        break
                    sock.sendall(data)
        channel.close()
