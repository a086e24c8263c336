"""TOML-based fleet, profile, key pair and batch configuration.

Loads ~/.fleetward/defaults.toml (global) and fleetward.toml (project),
merges them, and builds typed settings::

    [fleet]
    base_port = 11198
    max_workers = 8
    resource_dir = ".fleet-resources"
    package = "dist/node.zip"

    [keypairs.fleet-key]
    user = "ec2-user"
    private_key = "~/.ssh/fleet-key.pem"

    [profiles.small]
    region = "eu-west-1"
    type = "t3.micro"
    ami_id = "ami-0123456789"
    keypair = "fleet-key"
    shutdown_state = "suspended"

    [batch]
    host = "hpc.example.org"
    user = "alice"
    private_key = "~/.ssh/id_rsa"
    email = "alice@example.org"
"""

from __future__ import annotations

import tomllib
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from fleetward.constants import (
    BASE_MANAGEMENT_PORT,
    COORDINATOR_SERVER_PORT,
    DEFAULT_GROUP,
    REMOTE_RESOURCES_DIR,
    SSH_PORT,
    InstanceState,
    NodeType,
)
from fleetward.deployer import NodeDeployer, NodePackage
from fleetward.exceptions import ConfigurationError
from fleetward.fleet import FleetManager
from fleetward.gateway import CloudInstanceGateway
from fleetward.sync import RemoteResourceSynchronizer
from fleetward.types import Credentials, InstanceTemplate, KeyPairCredentials, NodeConfig

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".fleetward" / "defaults.toml"
PROJECT_CONFIG_NAME = "fleetward.toml"


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_path = (project_dir or Path.cwd()) / PROJECT_CONFIG_NAME
    project_cfg = _read_toml(project_path)

    merged = _deep_merge(global_cfg, project_cfg)
    merged.setdefault("fleet", {})
    merged.setdefault("keypairs", {})
    merged.setdefault("profiles", {})
    return merged


def _build[T](cls: type[T], section: str, raw: RawConfig) -> T:
    known = {f.name for f in fields(cls)}  # type: ignore[arg-type]
    unknown = set(raw) - known
    if unknown:
        raise ConfigurationError(f"Unknown keys in [{section}]: {', '.join(sorted(unknown))}")
    try:
        return cls(**raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid [{section}]: {e}") from e


def _path(value: str | Path | None) -> Path | None:
    return Path(value).expanduser() if value is not None else None


# =============================================================================
# Settings
# =============================================================================


@dataclass(frozen=True, slots=True)
class FleetSettings:
    base_port: int = BASE_MANAGEMENT_PORT
    max_workers: int = 8
    resource_dir: str = REMOTE_RESOURCES_DIR
    package: Path | None = None
    package_folder: str = ""
    coordinator_host: str = "localhost"
    coordinator_port: int = COORDINATOR_SERVER_PORT

    def __post_init__(self) -> None:
        if self.max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if not 0 < self.base_port < 65535:
            raise ValueError(f"base_port out of range: {self.base_port}")
        object.__setattr__(self, "package", _path(self.package))

    def node_package(self) -> NodePackage:
        if self.package is None:
            raise ConfigurationError("[fleet] package is not configured")
        return NodePackage.from_path(self.package, folder=self.package_folder)

    def node_deployer(self) -> NodeDeployer:
        """Deployer for the configured package, staging resources under ``resource_dir``."""
        package = self.node_package()
        return NodeDeployer(
            {NodeType.COORDINATOR: package, NodeType.WORKER: package},
            RemoteResourceSynchronizer(self.resource_dir),
        )

    def node_config(self, node_type: NodeType, **kwargs: Any) -> NodeConfig:
        """A NodeConfig whose coordinator address defaults to the configured one."""
        kwargs.setdefault("coordinator_host", self.coordinator_host)
        kwargs.setdefault("coordinator_port", self.coordinator_port)
        return NodeConfig(type=node_type, **kwargs)

    def fleet_manager(self, gateway: CloudInstanceGateway, **kwargs: Any) -> FleetManager:
        return FleetManager(
            gateway,
            self.node_deployer(),
            max_workers=self.max_workers,
            base_port=self.base_port,
            **kwargs,
        )


@dataclass(frozen=True, slots=True)
class InstanceProfile:
    """Named instance profile, turned into an InstanceTemplate for creation."""

    name: str
    region: str
    type: str
    ami_id: str | None = None
    zone: str | None = None
    keypair: str | None = None
    shutdown_state: InstanceState = InstanceState.TERMINATED
    group: str = DEFAULT_GROUP
    security_groups: tuple[str, ...] = ()
    subnet_id: str | None = None

    def __post_init__(self) -> None:
        state = InstanceState(self.shutdown_state)
        if state == InstanceState.PENDING:
            raise ValueError("shutdown_state cannot be pending")
        object.__setattr__(self, "shutdown_state", state)
        object.__setattr__(self, "security_groups", tuple(self.security_groups))

    def template(self) -> InstanceTemplate:
        return InstanceTemplate(
            name=self.name,
            region=self.region,
            instance_type=self.type,
            image_id=self.ami_id,
            zone=self.zone,
            keypair=self.keypair,
            shutdown_state=self.shutdown_state,
            group=self.group,
            security_group_ids=self.security_groups,
            subnet_id=self.subnet_id,
        )


@dataclass(frozen=True, slots=True)
class BatchSettings:
    """Connection to a Torque/PBS head node."""

    host: str
    user: str
    private_key: Path
    port: int = SSH_PORT
    email: str | None = None
    passphrase: str | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "private_key", _path(self.private_key))

    def credentials(self) -> KeyPairCredentials:
        return KeyPairCredentials(
            name=f"batch@{self.host}",
            user=self.user,
            private_key=self.private_key,
            passphrase=self.passphrase,
        )


class CredentialsManager(Mapping[str, Credentials]):
    """Named login credentials, keyed by key pair name."""

    __slots__ = ("_credentials",)

    def __init__(self, credentials: Mapping[str, Credentials] | None = None) -> None:
        self._credentials: dict[str, Credentials] = dict(credentials or {})

    @classmethod
    def from_raw(cls, raw: Mapping[str, RawConfig]) -> CredentialsManager:
        credentials: dict[str, Credentials] = {}
        for name, section in raw.items():
            section = dict(section)
            for required in ("user", "private_key"):
                if required not in section:
                    raise ConfigurationError(f"Key pair '{name}' missing '{required}' field")
            section["private_key"] = _path(section["private_key"])
            section["public_key"] = _path(section.get("public_key"))
            credentials[name] = _build(KeyPairCredentials, f"keypairs.{name}", {"name": name, **section})
        return cls(credentials)

    def add(self, credentials: Credentials) -> None:
        self._credentials[credentials.name] = credentials

    def require(self, name: str) -> Credentials:
        try:
            return self._credentials[name]
        except KeyError:
            available = ", ".join(self._credentials) or "none"
            raise ConfigurationError(f"Key pair '{name}' not found. Available: {available}") from None

    def __getitem__(self, name: str) -> Credentials:
        return self._credentials[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._credentials)

    def __len__(self) -> int:
        return len(self._credentials)


@dataclass(frozen=True, slots=True)
class FleetwardConfig:
    fleet: FleetSettings = field(default_factory=FleetSettings)
    profiles: Mapping[str, InstanceProfile] = field(default_factory=dict)
    credentials: CredentialsManager = field(default_factory=CredentialsManager)
    batch: BatchSettings | None = None

    def profile(self, name: str) -> InstanceProfile:
        if name not in self.profiles:
            available = ", ".join(self.profiles) or "none"
            raise ConfigurationError(f"Profile '{name}' not found. Available: {available}")
        return self.profiles[name]

    def template(self, name: str) -> InstanceTemplate:
        return self.profile(name).template()


def parse_config(raw: RawConfig) -> FleetwardConfig:
    credentials = CredentialsManager.from_raw(raw.get("keypairs", {}))

    profiles: dict[str, InstanceProfile] = {}
    for name, section in raw.get("profiles", {}).items():
        profile = _build(InstanceProfile, f"profiles.{name}", {"name": name, **section})
        if profile.keypair is not None and profile.keypair not in credentials:
            raise ConfigurationError(f"Profile '{name}' references unknown key pair '{profile.keypair}'")
        profiles[name] = profile

    raw_batch = raw.get("batch")
    return FleetwardConfig(
        fleet=_build(FleetSettings, "fleet", raw.get("fleet", {})),
        profiles=profiles,
        credentials=credentials,
        batch=_build(BatchSettings, "batch", raw_batch) if raw_batch else None,
    )


def resolve_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> FleetwardConfig:
    return parse_config(load_config(project_dir=project_dir, global_path=global_path))
