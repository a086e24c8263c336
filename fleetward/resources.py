"""Local artifacts that are uploaded to and deployed on remote instances.

A resource is a named payload (a file, packaged data, or an in-memory
blob) plus a deployment rule: where on the remote instance it goes and
whether it is copied or unzipped there. Each resource carries a CRC32
checksum used to skip uploads whose content is already present remotely.

Example:
    >>> catalog = ResourceCatalog()
    >>> catalog.add(ManagedResource(FileSource(Path("dist/pkg.zip")), "node-1", unzip_on_deploy=True))
"""

from __future__ import annotations

import io
import zlib
from collections.abc import Hashable, Iterable, Iterator
from dataclasses import dataclass, field
from importlib import resources as importlib_resources
from pathlib import Path
from typing import BinaryIO

CHUNK_SIZE = 64 * 1024


def crc32_of(stream: BinaryIO) -> int:
    """CRC32 of a binary stream, read in chunks, as an unsigned 32-bit int."""
    value = 0
    for chunk in iter(lambda: stream.read(CHUNK_SIZE), b""):
        value = zlib.crc32(chunk, value)
    return value & 0xFFFFFFFF


# =============================================================================
# Resource Sources (tagged variant)
# =============================================================================


@dataclass(frozen=True, slots=True)
class FileSource:
    """A resource backed by a local file."""

    path: Path

    @property
    def name(self) -> str:
        return self.path.name

    def open(self) -> BinaryIO:
        return self.path.open("rb")

    def fingerprint(self) -> Hashable:
        stat = self.path.stat()
        return (stat.st_mtime_ns, stat.st_size)


@dataclass(frozen=True, slots=True)
class EmbeddedSource:
    """A resource shipped as package data, loaded via importlib.resources."""

    package: str
    resource: str

    @property
    def name(self) -> str:
        return self.resource.rsplit("/", 1)[-1]

    def open(self) -> BinaryIO:
        return importlib_resources.files(self.package).joinpath(self.resource).open("rb")

    def fingerprint(self) -> Hashable:
        return None


@dataclass(frozen=True, slots=True)
class BytesSource:
    """An in-memory payload, e.g. a generated configuration file."""

    name: str
    data: bytes = field(repr=False)

    def open(self) -> BinaryIO:
        return io.BytesIO(self.data)

    def fingerprint(self) -> Hashable:
        return None


type ResourceSource = FileSource | EmbeddedSource | BytesSource


# =============================================================================
# Managed Resources
# =============================================================================


@dataclass(slots=True, eq=False)
class ManagedResource:
    """A resource plus its upload/deploy progress on one remote host.

    The upload and deployed flags are only changed by the synchronizer.
    ``deployed`` implies ``uploaded``.
    """

    source: ResourceSource
    remote_directory: str
    unzip_on_deploy: bool = False
    name: str = ""
    uploaded: bool = field(default=False, init=False)
    deployed: bool = field(default=False, init=False)
    uploaded_checksum: int | None = field(default=None, init=False)
    _checksum: int | None = field(default=None, init=False, repr=False)
    _fingerprint: Hashable = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        if not self.name:
            self.name = self.source.name
        if not self.name or "/" in self.name:
            raise ValueError(f"Invalid resource name: {self.name!r}")

    @property
    def checksum(self) -> int:
        """CRC32 of the resource data, recomputed only when the source changes."""
        fingerprint = self.source.fingerprint()
        if self._checksum is None or fingerprint != self._fingerprint:
            with self.source.open() as stream:
                self._checksum = crc32_of(stream)
            self._fingerprint = fingerprint
        return self._checksum

    @property
    def is_stale(self) -> bool:
        """True when the local content changed since it was uploaded."""
        return self.uploaded and self.checksum != self.uploaded_checksum

    def open(self) -> BinaryIO:
        return self.source.open()

    def mark_uploaded(self, checksum: int) -> None:
        self.uploaded = True
        self.uploaded_checksum = checksum

    def mark_deployed(self) -> None:
        if not self.uploaded:
            raise ValueError(f"Resource {self.name} cannot be deployed before it is uploaded")
        self.deployed = True

    def reset(self) -> None:
        self.uploaded = False
        self.deployed = False
        self.uploaded_checksum = None

    def __str__(self) -> str:
        return self.name


class ResourceCatalog:
    """Ordered set of managed resources, unique by name."""

    __slots__ = ("_resources",)

    def __init__(self, resources: Iterable[ManagedResource] = ()) -> None:
        self._resources: dict[str, ManagedResource] = {}
        for resource in resources:
            self.add(resource)

    def add(self, resource: ManagedResource) -> ManagedResource:
        if resource.name in self._resources:
            raise ValueError(f"Resource {resource.name} is already managed")
        self._resources[resource.name] = resource
        return resource

    def remove(self, name: str) -> None:
        """Stop managing a resource. Its remote copy is left untouched."""
        self._resources.pop(name, None)

    def get(self, name: str) -> ManagedResource:
        return self._resources[name]

    def __contains__(self, name: object) -> bool:
        return name in self._resources

    def __iter__(self) -> Iterator[ManagedResource]:
        return iter(list(self._resources.values()))

    def __len__(self) -> int:
        return len(self._resources)

    def pending_upload(self) -> list[ManagedResource]:
        """Resources to upload. A source that cannot be read counts as pending."""
        return [r for r in self if not r.uploaded or _stale_or_unreadable(r)]

    def pending_deploy(self) -> list[ManagedResource]:
        return [r for r in self if r.uploaded and not r.deployed]


def _stale_or_unreadable(resource: ManagedResource) -> bool:
    try:
        return resource.is_stale
    except OSError:
        return True
