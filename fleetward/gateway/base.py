"""Provider-neutral cloud instance lifecycle.

CloudInstanceGateway owns the state machine::

    PENDING -> RUNNING -> {SUSPENDED <-> RUNNING} -> TERMINATED

Provider subclasses implement only the primitives (create, describe,
start, stop, terminate); the public operations here make transitions
idempotent, wait for target states with bounded exponential backoff and
treat TERMINATED as absorbing.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping

from loguru import logger
from tenacity import RetryError, retry, retry_if_exception_type, stop_after_delay, wait_exponential

from fleetward.constants import (
    INSTANCE_STATE_MAX_WAIT,
    INSTANCE_STATE_MIN_WAIT,
    INSTANCE_STATE_TIMEOUT,
    InstanceState,
)
from fleetward.exceptions import FleetwardError, NotFoundError, ProvisioningError
from fleetward.types import CloudInstance, Credentials, InstanceTemplate

log = logger.bind(component="gateway")

type CredentialsLookup = Callable[[str], Credentials | None]


class _StateNotReached(Exception):
    pass


class CloudInstanceGateway(ABC):
    """Facade over a cloud compute API.

    Args:
        credentials: Resolves a key pair name to login credentials that are
            attached to every returned CloudInstance.
        state_timeout: Upper bound in seconds for any state wait.
        min_wait: First polling interval in seconds.
        max_wait: Longest polling interval in seconds.
    """

    def __init__(
        self,
        *,
        credentials: CredentialsLookup | Mapping[str, Credentials] | None = None,
        state_timeout: float = INSTANCE_STATE_TIMEOUT,
        min_wait: float = INSTANCE_STATE_MIN_WAIT,
        max_wait: float = INSTANCE_STATE_MAX_WAIT,
    ) -> None:
        match credentials:
            case None:
                self._credentials: CredentialsLookup = lambda _: None
            case Mapping():
                self._credentials = credentials.get
            case _:
                self._credentials = credentials
        self.state_timeout = state_timeout
        self.min_wait = min_wait
        self.max_wait = max_wait
        self._terminated: set[str] = set()
        self._terminated_lock = threading.Lock()

    # =========================================================================
    # Provider primitives
    # =========================================================================

    @abstractmethod
    def _create(self, template: InstanceTemplate, user_metadata: Mapping[str, str]) -> CloudInstance:
        """Request one new instance. Raises ProvisioningError on rejection."""

    @abstractmethod
    def _describe(self, instance_id: str) -> CloudInstance:
        """Current snapshot. Raises NotFoundError for unknown ids."""

    @abstractmethod
    def _describe_all(self) -> tuple[CloudInstance, ...]:
        """Snapshots of every instance managed by this gateway."""

    @abstractmethod
    def _start(self, instance_id: str) -> None: ...

    @abstractmethod
    def _stop(self, instance_id: str) -> None: ...

    @abstractmethod
    def _terminate(self, instance_id: str) -> None: ...

    def key_name(self, instance: CloudInstance) -> str | None:
        """Name of the key pair the instance was launched with, if known."""
        return None

    # =========================================================================
    # Public contract
    # =========================================================================

    def create_instance(
        self,
        template: InstanceTemplate,
        user_metadata: Mapping[str, str] | None = None,
    ) -> CloudInstance:
        """Create an instance from a template and wait until it is RUNNING.

        If the instance never reaches RUNNING it is terminated before the
        ProvisioningError propagates.
        """
        log.info(
            "Creating instance from template {name} ({type} in {region})",
            name=template.name, type=template.instance_type, region=template.region,
        )
        created = self._create(template, dict(user_metadata or {}))
        log.debug("Instance {id} requested, state={state}", id=created.id, state=created.state)
        try:
            running = self.wait_until(created.id, InstanceState.RUNNING)
        except FleetwardError:
            log.error("Instance {id} did not start, terminating it", id=created.id)
            self._terminate_quietly(created.id)
            raise
        log.info("Instance {id} is running at {address}", id=running.id, address=running.address)
        return running

    def get_instance_metadata(self, instance_id: str) -> CloudInstance:
        if self._is_known_terminated(instance_id):
            raise NotFoundError("instance", instance_id)
        instance = self._describe(instance_id)
        if instance.state == InstanceState.TERMINATED:
            self._mark_terminated(instance_id)
            raise NotFoundError("instance", instance_id)
        return self._attach_credentials(instance)

    def list_instances(self) -> tuple[CloudInstance, ...]:
        """Every live instance. Also forgets terminated ids the provider no longer reports."""
        described = self._describe_all()
        self._forget_terminated({i.id for i in described})
        return tuple(
            self._attach_credentials(i)
            for i in described
            if i.state != InstanceState.TERMINATED
        )

    def suspend_instance(self, instance_id: str) -> CloudInstance:
        instance = self.get_instance_metadata(instance_id)
        match instance.state:
            case InstanceState.SUSPENDED:
                log.debug("Instance {id} already suspended", id=instance_id)
                return instance
            case InstanceState.PENDING:
                self.wait_until(instance_id, InstanceState.RUNNING)
        log.info("Suspending instance {id}", id=instance_id)
        self._stop(instance_id)
        return self.wait_until(instance_id, InstanceState.SUSPENDED)

    def resume_instance(self, instance_id: str) -> CloudInstance:
        instance = self.get_instance_metadata(instance_id)
        match instance.state:
            case InstanceState.RUNNING:
                log.debug("Instance {id} already running", id=instance_id)
                return instance
            case InstanceState.SUSPENDED:
                log.info("Resuming instance {id}", id=instance_id)
                self._start(instance_id)
        return self.wait_until(instance_id, InstanceState.RUNNING)

    def terminate_instance(self, instance_id: str) -> None:
        self.get_instance_metadata(instance_id)
        log.info("Terminating instance {id}", id=instance_id)
        self._terminate(instance_id)
        self._mark_terminated(instance_id)

    def transition(self, instance_id: str, state: InstanceState) -> None:
        """Move an instance to ``state`` (RUNNING, SUSPENDED or TERMINATED)."""
        match state:
            case InstanceState.RUNNING:
                self.resume_instance(instance_id)
            case InstanceState.SUSPENDED:
                self.suspend_instance(instance_id)
            case InstanceState.TERMINATED:
                self.terminate_instance(instance_id)
            case _:
                raise ValueError(f"Cannot transition an instance to {state}")

    def wait_until(
        self,
        instance_id: str,
        state: InstanceState,
        timeout: float | None = None,
    ) -> CloudInstance:
        """Poll until the instance reports ``state``.

        Raises:
            ProvisioningError: On timeout, or if the instance terminates
                while waiting for another state.
        """
        timeout = self.state_timeout if timeout is None else timeout

        @retry(
            stop=stop_after_delay(timeout),
            wait=wait_exponential(multiplier=self.min_wait, min=self.min_wait, max=self.max_wait),
            retry=retry_if_exception_type(_StateNotReached),
        )
        def poll() -> CloudInstance:
            instance = self._describe(instance_id)
            if instance.state == state:
                return instance
            if instance.state == InstanceState.TERMINATED:
                raise ProvisioningError(
                    f"Instance {instance_id} terminated while waiting for {state}", instance_id,
                )
            log.debug(
                "Instance {id} is {current}, waiting for {target}",
                id=instance_id, current=instance.state, target=state,
            )
            raise _StateNotReached()

        try:
            return self._attach_credentials(poll())
        except RetryError as e:
            raise ProvisioningError(
                f"Instance {instance_id} did not reach {state} within {timeout:.0f}s", instance_id,
            ) from e

    # =========================================================================
    # Helpers
    # =========================================================================

    def _attach_credentials(self, instance: CloudInstance) -> CloudInstance:
        if instance.credentials is not None:
            return instance
        key = self.key_name(instance)
        return instance.with_credentials(self._credentials(key)) if key else instance

    def _terminate_quietly(self, instance_id: str) -> None:
        try:
            self._terminate(instance_id)
            self._mark_terminated(instance_id)
        except FleetwardError as e:
            log.warning("Could not terminate instance {id}: {err}", id=instance_id, err=e)

    def _is_known_terminated(self, instance_id: str) -> bool:
        with self._terminated_lock:
            return instance_id in self._terminated

    def _mark_terminated(self, instance_id: str) -> None:
        with self._terminated_lock:
            self._terminated.add(instance_id)

    def _forget_terminated(self, reported: set[str]) -> None:
        with self._terminated_lock:
            self._terminated &= reported
