"""Cloud instance gateways."""

from fleetward.gateway.base import CloudInstanceGateway, CredentialsLookup
from fleetward.gateway.ec2 import EC2Gateway

__all__ = ["CloudInstanceGateway", "CredentialsLookup", "EC2Gateway"]
