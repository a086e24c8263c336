from __future__ import annotations

import re
import threading
from collections.abc import Mapping
from pathlib import Path
from typing import BinaryIO

import pytest

from fleetward.allocator import PortAndTunnelAllocator
from fleetward.constants import InstanceState, NodeType
from fleetward.deployer import NodeDeployer, NodePackage
from fleetward.exceptions import NotFoundError, TransportError
from fleetward.gateway.base import CloudInstanceGateway
from fleetward.resources import BytesSource
from fleetward.transport import CommandResult
from fleetward.types import CloudInstance, Credentials, InstanceTemplate, KeyPairCredentials

FILE_EXISTS = re.compile(r"if \[ -f (\S+) \]; then echo true; else echo false; fi")
DEPLOY_PART = re.compile(r"(.+) && echo deployed:(\S+)")

CREDENTIALS = KeyPairCredentials(name="fleet-key", user="ec2-user", private_key=Path("/keys/fleet-key.pem"))


# =============================================================================
# Remote shell
# =============================================================================


class FakeShell:
    """In-memory RemoteShell: uploads land in ``files``, commands are recorded.

    ``fail_on`` maps a command substring to the result (or exception)
    returned for matching commands.
    """

    def __init__(self, host: str = "10.0.0.1") -> None:
        self.host = host
        self.files: dict[str, bytes] = {}
        self.commands: list[str] = []
        self.uploads: list[str] = []
        self.fail_on: dict[str, CommandResult | Exception] = {}
        self.fail_uploads: set[str] = set()
        self.fail_deploys: set[str] = set()
        self.init_log = "Node started\nUUID=0123456789abcdef0123456789abcdef\n"
        self.connects = 0
        self.connected = False
        self._lock = threading.Lock()

    def connect(self) -> None:
        with self._lock:
            self.connects += 1
            self.connected = True

    def disconnect(self) -> None:
        with self._lock:
            self.connected = False

    def upload(self, data: BinaryIO, remote_path: str) -> None:
        if any(marker in remote_path for marker in self.fail_uploads):
            raise TransportError(f"upload to {remote_path} refused", self.host)
        body = data.read()
        with self._lock:
            self.files[remote_path] = body
            self.uploads.append(remote_path)

    def exec(self, command: str, timeout: float | None = None) -> CommandResult:
        with self._lock:
            self.commands.append(command)
        for marker, outcome in self.fail_on.items():
            if marker in command:
                if isinstance(outcome, Exception):
                    raise outcome
                return outcome

        if match := FILE_EXISTS.fullmatch(command):
            return CommandResult(0, "true\n" if match.group(1) in self.files else "false\n")
        if command.startswith("cat "):
            path = command.removeprefix("cat ")
            if path not in self.files:
                return CommandResult(1, "", f"cat: {path}: No such file or directory")
            return CommandResult(0, self.files[path].decode())
        if command.startswith("grep UUID="):
            return CommandResult(0, "".join(l + "\n" for l in self.init_log.splitlines() if "UUID=" in l))
        if "&& echo deployed:" in command:
            return self._deploy_batch(command)
        return CommandResult(0, "")

    def _deploy_batch(self, command: str) -> CommandResult:
        out: list[str] = []
        for part in command.split(";"):
            if match := DEPLOY_PART.fullmatch(part):
                if match.group(2) not in self.fail_deploys:
                    out.append(f"deployed:{match.group(2)}")
        return CommandResult(0, "\n".join(out) + "\n")

    def executed(self, prefix: str) -> list[str]:
        return [c for c in self.commands if c.startswith(prefix)]

    def uploads_of(self, suffix: str) -> list[str]:
        return [p for p in self.uploads if p.endswith(suffix)]


class ShellPool:
    """ShellFactory handing out one FakeShell per instance address."""

    def __init__(self) -> None:
        self.shells: dict[str, FakeShell] = {}
        self._lock = threading.Lock()

    def __call__(self, instance: CloudInstance, credentials: Credentials) -> FakeShell:
        with self._lock:
            return self.shells.setdefault(instance.address, FakeShell(instance.address))

    def for_instance(self, instance_id: str, gateway: FakeGateway) -> FakeShell:
        return self.shells[gateway.instances[instance_id].address]


# =============================================================================
# Gateway
# =============================================================================


class FakeGateway(CloudInstanceGateway):
    """Instances that change state immediately."""

    def __init__(self, credentials: Mapping[str, Credentials] | None = None) -> None:
        super().__init__(credentials=credentials, state_timeout=1, min_wait=0.01, max_wait=0.01)
        self.instances: dict[str, CloudInstance] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail_create: Exception | None = None
        self._counter = 0
        self._lock = threading.Lock()

    def add(self, instance: CloudInstance) -> CloudInstance:
        self.instances[instance.id] = instance
        return instance

    def running(self, instance_id: str, address: str = "10.0.0.1", vcpus: int = 4) -> CloudInstance:
        return self.add(CloudInstance(
            id=instance_id,
            state=InstanceState.RUNNING,
            private_addresses=(address,),
            vcpus=vcpus,
            tags=frozenset({("KeyName", "fleet-key")}),
        ))

    def state_of(self, instance_id: str) -> InstanceState:
        return self.instances[instance_id].state

    def key_name(self, instance: CloudInstance) -> str | None:
        return instance.get_tag("KeyName")

    def _create(self, template: InstanceTemplate, user_metadata: Mapping[str, str]) -> CloudInstance:
        if self.fail_create is not None:
            raise self.fail_create
        with self._lock:
            self._counter += 1
            instance_id = f"i-new{self._counter}"
            address = f"10.1.0.{self._counter}"
        self.calls.append(("create", instance_id))
        tags = {("KeyName", template.keypair or "fleet-key"), *user_metadata.items()}
        return self.add(CloudInstance(
            id=instance_id,
            state=InstanceState.RUNNING,
            private_addresses=(address,),
            region=template.region,
            instance_type=template.instance_type,
            vcpus=2,
            tags=frozenset(tags),
        ))

    def _describe(self, instance_id: str) -> CloudInstance:
        if instance_id not in self.instances:
            raise NotFoundError("instance", instance_id)
        return self.instances[instance_id]

    def _describe_all(self) -> tuple[CloudInstance, ...]:
        return tuple(self.instances.values())

    def _set_state(self, instance_id: str, state: InstanceState) -> None:
        current = self.instances[instance_id]
        addresses = current.private_addresses or ("10.0.0.1",)
        self.instances[instance_id] = CloudInstance(
            id=current.id,
            state=state,
            private_addresses=addresses,
            vcpus=current.vcpus,
            tags=current.tags,
        )

    def _start(self, instance_id: str) -> None:
        self.calls.append(("start", instance_id))
        self._set_state(instance_id, InstanceState.RUNNING)

    def _stop(self, instance_id: str) -> None:
        self.calls.append(("stop", instance_id))
        self._set_state(instance_id, InstanceState.SUSPENDED)

    def _terminate(self, instance_id: str) -> None:
        self.calls.append(("terminate", instance_id))
        self._set_state(instance_id, InstanceState.TERMINATED)


# =============================================================================
# Tunnels
# =============================================================================


class FakeTunnel:
    def __init__(self, instance_id: str, remote_port: int) -> None:
        self.instance_id = instance_id
        self.remote_port = remote_port
        self.closed = 0

    @property
    def is_open(self) -> bool:
        return self.closed == 0

    def close(self) -> None:
        self.closed += 1


class FakeOpener:
    """TunnelOpener that records every tunnel it opens.

    ``gate`` can hold openers back to widen race windows.
    """

    def __init__(self, error: Exception | None = None) -> None:
        self.opened: list[FakeTunnel] = []
        self.calls: list[tuple[str, str, int, int]] = []
        self.error = error
        self.gate = threading.Event()
        self.gate.set()
        self._lock = threading.Lock()

    def __call__(
        self,
        instance: CloudInstance,
        credentials: Credentials,
        host: str,
        local_port: int,
        remote_port: int,
    ) -> FakeTunnel:
        with self._lock:
            self.calls.append((instance.id, host, local_port, remote_port))
        self.gate.wait(timeout=5)
        if self.error is not None:
            raise self.error
        tunnel = FakeTunnel(instance.id, remote_port)
        with self._lock:
            self.opened.append(tunnel)
        return tunnel


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def shell() -> FakeShell:
    return FakeShell()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway(credentials={"fleet-key": CREDENTIALS})


@pytest.fixture
def shells() -> ShellPool:
    return ShellPool()


@pytest.fixture
def opener() -> FakeOpener:
    return FakeOpener()


@pytest.fixture
def allocator(opener: FakeOpener) -> PortAndTunnelAllocator:
    return PortAndTunnelAllocator(opener=opener)


@pytest.fixture
def package() -> NodePackage:
    return NodePackage(source=BytesSource("node.zip", b"PK\x03\x04 node package"), folder="node")


@pytest.fixture
def deployer(package: NodePackage) -> NodeDeployer:
    return NodeDeployer({NodeType.WORKER: package, NodeType.COORDINATOR: package})


@pytest.fixture
def template() -> InstanceTemplate:
    return InstanceTemplate(name="small", region="eu-west-1", instance_type="t3.micro",
                            image_id="ami-0123", keypair="fleet-key")
