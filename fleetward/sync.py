"""Incremental upload and deployment of a ResourceCatalog to one remote host.

Remote layout under the resource directory (relative to the login home)::

    <resource_dir>/<name>            resource body
    <resource_dir>/.crc/<name>.crc   decimal CRC32 of the body, no newline

A resource whose cached checksum matches the local one is not transferred
again, which also lets a new controller process reuse files left behind by
a previous run.
"""

from __future__ import annotations

import io
import shlex
from collections.abc import Iterable
from dataclasses import dataclass

from loguru import logger

from fleetward.constants import CRC_FILE_EXTENSION, REMOTE_CRC_DIR, REMOTE_RESOURCES_DIR, REMOTE_SEPARATOR
from fleetward.exceptions import ChecksumMismatchRetry, TransportError
from fleetward.resources import ManagedResource, ResourceCatalog
from fleetward.transport import RemoteShell, file_exists_command, run

log = logger.bind(component="sync")

DEPLOYED_MARKER = "deployed:"


@dataclass(frozen=True, slots=True)
class SyncReport:
    """Outcome of one synchronization or deployment pass, by resource name.

    ``skipped`` lists resources whose remote checksum cache already matched.
    """

    uploaded: tuple[str, ...] = ()
    skipped: tuple[str, ...] = ()
    deployed: tuple[str, ...] = ()
    failed: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.failed

    def combine(self, other: SyncReport) -> SyncReport:
        return SyncReport(
            uploaded=self.uploaded + other.uploaded,
            skipped=self.skipped + other.skipped,
            deployed=self.deployed + other.deployed,
            failed=self.failed + tuple(n for n in other.failed if n not in self.failed),
        )


class RemoteResourceSynchronizer:
    """Uploads and deploys catalog entries to a remote host idempotently.

    Each resource is handled in isolation: a failure is logged, the
    resource keeps its flags unset and the next pass retries it.
    """

    __slots__ = ("resource_dir",)

    def __init__(self, resource_dir: str = REMOTE_RESOURCES_DIR) -> None:
        self.resource_dir = resource_dir.rstrip(REMOTE_SEPARATOR) or REMOTE_SEPARATOR

    @property
    def checksum_dir(self) -> str:
        return f"{self.resource_dir}{REMOTE_SEPARATOR}{REMOTE_CRC_DIR}"

    def remote_path(self, resource: ManagedResource) -> str:
        return f"{self.resource_dir}{REMOTE_SEPARATOR}{resource.name}"

    def checksum_path(self, resource: ManagedResource) -> str:
        return f"{self.checksum_dir}{REMOTE_SEPARATOR}{resource.name}{CRC_FILE_EXTENSION}"

    def prepare_directories(self, shell: RemoteShell) -> None:
        """Create the resource and checksum cache directories."""
        run(shell, f"mkdir -p {shlex.quote(self.checksum_dir)}")

    # -------------------------------------------------------------------------
    # Upload
    # -------------------------------------------------------------------------

    def synchronize(self, catalog: ResourceCatalog, shell: RemoteShell) -> SyncReport:
        """Upload every resource that is not uploaded yet or changed locally."""
        uploaded: list[str] = []
        skipped: list[str] = []
        failed: list[str] = []

        for resource in catalog.pending_upload():
            try:
                if resource.is_stale:
                    log.debug("{name} changed locally, scheduling re-upload", name=resource.name)
                    resource.reset()
                checksum = resource.checksum
                try:
                    self._verify_remote_checksum(shell, resource, checksum)
                    skipped.append(resource.name)
                    log.debug("{name} already present on {host}", name=resource.name, host=shell.host)
                except ChecksumMismatchRetry as e:
                    log.debug("{reason}", reason=e)
                    self._upload(shell, resource, checksum)
                    uploaded.append(resource.name)
                resource.mark_uploaded(checksum)
            except (TransportError, OSError) as e:
                log.warning(
                    "Failed to upload {name} to {host}:{dir}: {err}",
                    name=resource.name, host=shell.host, dir=self.resource_dir, err=e,
                )
                resource.reset()
                failed.append(resource.name)

        return SyncReport(uploaded=tuple(uploaded), skipped=tuple(skipped), failed=tuple(failed))

    def _verify_remote_checksum(self, shell: RemoteShell, resource: ManagedResource, checksum: int) -> None:
        path = self.checksum_path(resource)
        exists = run(shell, file_exists_command(path)).strip() == "true"
        if not exists:
            raise ChecksumMismatchRetry(resource.name, checksum, None)
        remote = run(shell, f"cat {shlex.quote(path)}").strip()
        if remote != str(checksum):
            raise ChecksumMismatchRetry(resource.name, checksum, remote)

    def _upload(self, shell: RemoteShell, resource: ManagedResource, checksum: int) -> None:
        target = self.remote_path(resource)
        with resource.open() as stream:
            shell.upload(stream, target)
        shell.upload(io.BytesIO(str(checksum).encode("ascii")), self.checksum_path(resource))
        log.info("Uploaded {name} to {host}:{path}", name=resource.name, host=shell.host, path=target)

    # -------------------------------------------------------------------------
    # Deploy
    # -------------------------------------------------------------------------

    def deploy_command(self, resource: ManagedResource) -> str:
        source = shlex.quote(self.remote_path(resource))
        target = shlex.quote(resource.remote_directory)
        if resource.unzip_on_deploy:
            return f"unzip {source} -d {target}"
        return f"cp {source} {target}"

    def deploy(self, catalog: ResourceCatalog, shell: RemoteShell) -> SyncReport:
        """Copy or unpack every uploaded, undeployed resource in one remote invocation.

        Each resource command echoes a marker on success, so a failing
        unzip only fails its own resource.
        """
        pending = catalog.pending_deploy()
        if not pending:
            return SyncReport()

        targets = sorted({r.remote_directory for r in pending})
        parts = [f"mkdir -p {' '.join(shlex.quote(t) for t in targets)}"]
        parts.extend(
            f"{self.deploy_command(r)} && echo {DEPLOYED_MARKER}{shlex.quote(r.name)}" for r in pending
        )

        try:
            result = shell.exec(";".join(parts))
        except TransportError as e:
            log.warning(
                "Error deploying {names} to {host}: {err}",
                names=[r.name for r in pending], host=shell.host, err=e,
            )
            return SyncReport(failed=tuple(r.name for r in pending))

        confirmed = {
            line.strip()[len(DEPLOYED_MARKER):]
            for line in result.stdout.splitlines()
            if line.strip().startswith(DEPLOYED_MARKER)
        }
        deployed: list[str] = []
        failed: list[str] = []
        for resource in pending:
            if resource.name in confirmed:
                resource.mark_deployed()
                deployed.append(resource.name)
                log.info(
                    "Deployed {name} to {host}:{target}",
                    name=resource.name, host=shell.host, target=resource.remote_directory,
                )
            else:
                failed.append(resource.name)
                log.warning(
                    "Deploying {name} to {host}:{target} failed: {err}",
                    name=resource.name, host=shell.host, target=resource.remote_directory,
                    err=result.stderr.strip() or f"exit status {result.exit_status}",
                )
        return SyncReport(deployed=tuple(deployed), failed=tuple(failed))

    def synchronize_and_deploy(self, catalog: ResourceCatalog, shell: RemoteShell) -> SyncReport:
        self.prepare_directories(shell)
        return self.synchronize(catalog, shell).combine(self.deploy(catalog, shell))


def require(catalog: ResourceCatalog, names: Iterable[str], host: str | None = None) -> None:
    """Raise TransportError unless every named resource is deployed."""
    missing = [n for n in names if n not in catalog or not catalog.get(n).deployed]
    if missing:
        raise TransportError(f"Required resources not deployed: {', '.join(missing)}", host)
