"""Per-instance management ports and reverse tunnels.

Several logical nodes can share one instance. Each needs its own
management port, and an instance needs at most one reverse tunnel back to
the coordinator. Both registries live on one PortAndTunnelAllocator owned
by the FleetManager and are guarded by separate locks that are never held
across network I/O.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from concurrent.futures import Future
from typing import Protocol

from loguru import logger

from fleetward.constants import BASE_MANAGEMENT_PORT
from fleetward.exceptions import FleetwardError, TunnelError
from fleetward.transport import SSHConfig, SSHShell
from fleetward.types import CloudInstance, Credentials

log = logger.bind(component="allocator")


class TunnelHandle(Protocol):
    """An open reverse tunnel."""

    @property
    def is_open(self) -> bool: ...

    def close(self) -> None: ...


type TunnelOpener = Callable[[CloudInstance, Credentials, str, int, int], TunnelHandle]
"""``(instance, credentials, host, local_port, remote_port) -> TunnelHandle``."""


def ssh_tunnel_opener(
    instance: CloudInstance,
    credentials: Credentials,
    host: str,
    local_port: int,
    remote_port: int,
) -> TunnelHandle:
    """Open ``ssh -R remote_port:host:local_port`` on a dedicated connection."""
    shell = SSHShell(SSHConfig.for_instance(instance, credentials))
    shell.connect()
    try:
        return shell.open_reverse_tunnel(remote_port, host, local_port)
    except FleetwardError:
        shell.disconnect()
        raise


class PortAndTunnelAllocator:
    """Management port assignment and reverse-tunnel registry.

    Ports: each instance keeps the set of ports held by live nodes. A new
    allocation returns one above the highest held port (``base + 1`` when
    none is held; ``base`` itself is reserved for a coordinator). The
    record is dropped as soon as the set is empty, so churn never leaks
    entries.

    Tunnels: one per instance. The first caller registers an in-flight
    future under the lock and opens the tunnel outside it; concurrent
    callers for the same instance wait on that future and receive the
    same handle.
    """

    def __init__(
        self,
        base_port: int = BASE_MANAGEMENT_PORT,
        opener: TunnelOpener = ssh_tunnel_opener,
    ) -> None:
        self.base_port = base_port
        self._opener = opener
        self._ports: dict[str, set[int]] = {}
        self._tunnels: dict[str, Future[TunnelHandle]] = {}
        self._port_lock = threading.Lock()
        self._tunnel_lock = threading.Lock()

    # =========================================================================
    # Ports
    # =========================================================================

    def next_management_port(self, instance_id: str) -> int:
        with self._port_lock:
            held = self._ports.setdefault(instance_id, set())
            port = max(held, default=self.base_port) + 1
            held.add(port)
        log.debug("Assigned management port {port} on {id}", port=port, id=instance_id)
        return port

    def release_port(self, instance_id: str, port: int | None = None) -> None:
        """Release ``port`` (the highest held port when omitted) on an instance.

        Releasing an unknown instance or port is a no-op.
        """
        with self._port_lock:
            held = self._ports.get(instance_id)
            if not held:
                return
            if port is None:
                port = max(held)
            held.discard(port)
            if not held:
                del self._ports[instance_id]
        log.debug("Released management port {port} on {id}", port=port, id=instance_id)

    def held_ports(self, instance_id: str) -> tuple[int, ...]:
        with self._port_lock:
            return tuple(sorted(self._ports.get(instance_id, ())))

    def has_allocations(self, instance_id: str) -> bool:
        with self._port_lock:
            return instance_id in self._ports

    # =========================================================================
    # Tunnels
    # =========================================================================

    def open_reverse_tunnel(
        self,
        instance: CloudInstance,
        credentials: Credentials,
        local_port: int,
        remote_port: int,
        host: str = "localhost",
    ) -> TunnelHandle:
        """Return the instance's tunnel, opening it if there is none.

        Raises:
            TunnelError: If the tunnel cannot be opened.
        """
        with self._tunnel_lock:
            pending = self._tunnels.get(instance.id)
            if pending is not None and pending.done() and not pending.result().is_open:
                log.debug("Tunnel to {id} dropped, reopening", id=instance.id)
                pending = None
            if pending is None:
                pending = Future()
                self._tunnels[instance.id] = pending
                owner = True
            else:
                owner = False

        if not owner:
            log.debug("Waiting for tunnel to {id} opened by another caller", id=instance.id)
            return pending.result()

        try:
            handle = self._opener(instance, credentials, host, local_port, remote_port)
        except Exception as e:
            with self._tunnel_lock:
                if self._tunnels.get(instance.id) is pending:
                    del self._tunnels[instance.id]
            error = e if isinstance(e, TunnelError) else TunnelError(instance.id, str(e))
            pending.set_exception(error)
            if error is e:
                raise
            raise error from e

        # Publishing under the lock means close_tunnel either sees a finished
        # future it can close, or has already dropped the registration.
        with self._tunnel_lock:
            registered = self._tunnels.get(instance.id) is pending
            if registered:
                pending.set_result(handle)
        if not registered:
            handle.close()
            error = TunnelError(instance.id, "tunnel was closed while it was being opened")
            pending.set_exception(error)
            raise error
        return handle

    def tunnel_for(self, instance_id: str) -> TunnelHandle | None:
        """The open tunnel for an instance, or None (also while one is being opened)."""
        with self._tunnel_lock:
            pending = self._tunnels.get(instance_id)
        if pending is None or not pending.done() or pending.exception() is not None:
            return None
        return pending.result()

    def close_tunnel(self, instance_id: str) -> None:
        """Close and forget the instance's tunnel. No-op when there is none."""
        with self._tunnel_lock:
            pending = self._tunnels.pop(instance_id, None)
        if pending is None or not pending.done() or pending.exception() is not None:
            return
        pending.result().close()
        log.debug("Closed tunnel to {id}", id=instance_id)

    def close_all(self) -> None:
        with self._tunnel_lock:
            instance_ids = list(self._tunnels)
        for instance_id in instance_ids:
            self.close_tunnel(instance_id)
