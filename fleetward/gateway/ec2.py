"""AWS EC2 implementation of CloudInstanceGateway (boto3)."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from functools import cached_property
from typing import TYPE_CHECKING, Any, Final, override

from botocore.exceptions import ClientError, WaiterError
from loguru import logger

from fleetward.constants import DEFAULT_GROUP, FleetTag, InstanceState
from fleetward.exceptions import NotFoundError, ProvisioningError
from fleetward.gateway.base import CloudInstanceGateway
from fleetward.types import CloudInstance, InstanceTemplate

if TYPE_CHECKING:
    from mypy_boto3_ec2 import EC2Client

log = logger.bind(component="ec2")

EC2_STATES: Final[Mapping[str, InstanceState]] = {
    "pending": InstanceState.PENDING,
    "running": InstanceState.RUNNING,
    "stopping": InstanceState.SUSPENDED,
    "stopped": InstanceState.SUSPENDED,
    "shutting-down": InstanceState.TERMINATED,
    "terminated": InstanceState.TERMINATED,
}

NOT_FOUND_CODES: Final = frozenset({"InvalidInstanceID.NotFound", "InvalidInstanceID.Malformed"})

LIVE_STATE_NAMES: Final = ["pending", "running", "stopping", "stopped"]


@contextmanager
def translate_client_errors(instance_id: str | None = None) -> Iterator[None]:
    """Translate botocore ClientError into the fleetward error taxonomy."""
    try:
        yield
    except ClientError as e:
        error = e.response.get("Error", {})
        code = error.get("Code", "")
        if instance_id is not None and code in NOT_FOUND_CODES:
            raise NotFoundError("instance", instance_id) from e
        target = f" for {instance_id}" if instance_id else ""
        raise ProvisioningError(
            f"EC2 request failed{target} ({code}): {error.get('Message', e)}", instance_id,
        ) from e
    except WaiterError as e:
        raise ProvisioningError(f"EC2 wait failed: {e}", instance_id) from e


def _tags(data: dict[str, Any]) -> frozenset[tuple[str, str]]:
    return frozenset((t["Key"], t["Value"]) for t in data.get("Tags", []))


def _vcpus(data: dict[str, Any]) -> int:
    cpu = data.get("CpuOptions") or {}
    return int(cpu.get("CoreCount", 0)) * int(cpu.get("ThreadsPerCore", 1))


def parse_instance(data: dict[str, Any], region: str) -> CloudInstance:
    """Convert one ``describe_instances`` entry into a CloudInstance."""
    raw_state = data["State"]["Name"]
    public = tuple(a for a in (data.get("PublicIpAddress"),) if a)
    private = tuple(a for a in (data.get("PrivateIpAddress"),) if a)
    return CloudInstance(
        id=data["InstanceId"],
        state=EC2_STATES.get(raw_state, InstanceState.PENDING),
        public_addresses=public,
        private_addresses=private,
        region=region,
        zone=(data.get("Placement") or {}).get("AvailabilityZone"),
        instance_type=data.get("InstanceType", ""),
        image_id=data.get("ImageId", ""),
        vcpus=_vcpus(data),
        tags=_tags(data) | ({("KeyName", data["KeyName"])} if data.get("KeyName") else frozenset()),
    )


class EC2Gateway(CloudInstanceGateway):
    """Instances on EC2 in a single region.

    Instances are tagged ``fleetward:managed=true`` and with their group
    so ``list_instances`` only reports this fleet's machines.

    Example:
        >>> gateway = EC2Gateway("eu-west-1", credentials=credentials_manager)
        >>> instance = gateway.create_instance(profile.template())
    """

    def __init__(
        self,
        region: str,
        *,
        group: str = DEFAULT_GROUP,
        client: EC2Client | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.region = region
        self.group = group
        self._client = client

    @cached_property
    def _ec2(self) -> EC2Client:
        if self._client is not None:
            return self._client
        import boto3
        return boto3.client("ec2", region_name=self.region)

    @override
    def key_name(self, instance: CloudInstance) -> str | None:
        return instance.get_tag("KeyName")

    @override
    def _create(self, template: InstanceTemplate, user_metadata: Mapping[str, str]) -> CloudInstance:
        if not template.image_id:
            raise ProvisioningError(f"Template {template.name} has no image id")
        if template.region and template.region != self.region:
            raise ProvisioningError(
                f"Template {template.name} targets {template.region}, gateway is in {self.region}"
            )

        tags = [
            {"Key": "Name", "Value": f"{template.group}-{template.name}"},
            {"Key": FleetTag.MANAGED, "Value": "true"},
            {"Key": FleetTag.GROUP, "Value": template.group},
            *({"Key": k, "Value": v} for k, v in sorted(user_metadata.items())),
        ]
        params: dict[str, Any] = {
            "ImageId": template.image_id,
            "InstanceType": template.instance_type,
            "MinCount": 1,
            "MaxCount": 1,
            "TagSpecifications": [{"ResourceType": "instance", "Tags": tags}],
        }
        if template.keypair:
            params["KeyName"] = template.keypair
        if template.zone:
            params["Placement"] = {"AvailabilityZone": template.zone}
        if template.security_group_ids:
            params["SecurityGroupIds"] = list(template.security_group_ids)
        if template.subnet_id:
            params["SubnetId"] = template.subnet_id
        if template.shutdown_state == InstanceState.TERMINATED:
            params["InstanceInitiatedShutdownBehavior"] = "terminate"

        with translate_client_errors():
            response = self._ec2.run_instances(**params)
        instance = parse_instance(response["Instances"][0], self.region)
        log.debug("run_instances returned {id} ({state})", id=instance.id, state=instance.state)
        return instance

    @override
    def _describe(self, instance_id: str) -> CloudInstance:
        with translate_client_errors(instance_id):
            response = self._ec2.describe_instances(InstanceIds=[instance_id])
        for reservation in response.get("Reservations", []):
            for data in reservation.get("Instances", []):
                if data["InstanceId"] == instance_id:
                    return parse_instance(data, self.region)
        raise NotFoundError("instance", instance_id)

    @override
    def _describe_all(self) -> tuple[CloudInstance, ...]:
        paginator = self._ec2.get_paginator("describe_instances")
        instances: list[CloudInstance] = []
        with translate_client_errors():
            for page in paginator.paginate(
                Filters=[
                    {"Name": f"tag:{FleetTag.MANAGED}", "Values": ["true"]},
                    {"Name": f"tag:{FleetTag.GROUP}", "Values": [self.group]},
                    {"Name": "instance-state-name", "Values": LIVE_STATE_NAMES},
                ]
            ):
                for reservation in page.get("Reservations", []):
                    instances.extend(parse_instance(d, self.region) for d in reservation.get("Instances", []))
        return tuple(instances)

    @override
    def _start(self, instance_id: str) -> None:
        with translate_client_errors(instance_id):
            # start_instances rejects instances that are still stopping
            self._ec2.get_waiter("instance_stopped").wait(
                InstanceIds=[instance_id],
                WaiterConfig={"Delay": int(self.min_wait) or 1, "MaxAttempts": 40},
            )
            self._ec2.start_instances(InstanceIds=[instance_id])

    @override
    def _stop(self, instance_id: str) -> None:
        with translate_client_errors(instance_id):
            self._ec2.stop_instances(InstanceIds=[instance_id])

    @override
    def _terminate(self, instance_id: str) -> None:
        with translate_client_errors(instance_id):
            self._ec2.terminate_instances(InstanceIds=[instance_id])
