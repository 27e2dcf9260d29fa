"""
Resolver for consuming the shared network from other configuration units.

Two modes:
- Export mode (default): values come from the CloudFormation exports of
  VpcSetupStack via Fn.import_value
- SSM mode: values come from the parameters written by SharedExportStack,
  activated by passing --context shared_vpc_prefix=/shared-vpc/prod

SSM Parameter Structure (created by SharedExportStack):
    {prefix}/network/vpc-id
    {prefix}/network/security-group-id
    {prefix}/network/public-subnet-ids
    {prefix}/network/private-subnet-ids
    {prefix}/network/isolated-subnet-ids
    {prefix}/network/availability-zones
"""

from dataclasses import dataclass

from aws_cdk import Fn
from aws_cdk import aws_ec2 as ec2
from aws_cdk import aws_ssm as ssm
from constructs import Construct

from .config import VpcSetupConfig
from .shared_export_stack import (
    AVAILABILITY_ZONES_PARAMETER,
    ISOLATED_SUBNET_IDS_PARAMETER,
    PRIVATE_SUBNET_IDS_PARAMETER,
    PUBLIC_SUBNET_IDS_PARAMETER,
    SECURITY_GROUP_ID_PARAMETER,
    VPC_ID_PARAMETER,
)


@dataclass
class SharedNetworkConfig:
    """Network attributes loaded from SSM parameters at synth time."""

    vpc_id: str
    availability_zones: list[str]
    public_subnet_ids: list[str]
    private_subnet_ids: list[str]
    isolated_subnet_ids: list[str]


class SharedNetworkResolver:
    """
    Resolves the shared VPC and security group for a consuming stack.

    Usage:
        resolver = SharedNetworkResolver(shared_prefix)

        security_group = resolver.lookup_security_group(self)
        service_sg = ec2.SecurityGroup(self, "ServiceSG", vpc=vpc)  # inbound rules go here

    The shared security group is always imported immutably: rules added to
    the imported group are dropped, so it keeps its empty inbound rule set.
    """

    def __init__(
        self,
        shared_prefix: str | None = None,
        *,
        vpc_export_name: str = VpcSetupConfig.vpc_export_name,
        security_group_export_name: str = VpcSetupConfig.security_group_export_name,
    ) -> None:
        """
        Initialize the resolver.

        Args:
            shared_prefix: SSM parameter prefix (e.g., "/shared-vpc/prod").
                           If None, operates in export mode.
            vpc_export_name: CloudFormation export holding the VPC id
            security_group_export_name: CloudFormation export holding the security group id
        """
        self.shared_prefix = shared_prefix.rstrip("/") if shared_prefix else None
        self.vpc_export_name = vpc_export_name
        self.security_group_export_name = security_group_export_name
        self._lookup_scope_counter = 0

    @property
    def is_ssm_mode(self) -> bool:
        """Check if values are resolved from SSM parameters."""
        return self.shared_prefix is not None

    def _get_unique_id(self, base: str) -> str:
        """Generate unique construct ID for lookups."""
        self._lookup_scope_counter += 1
        return f"{base}{self._lookup_scope_counter}"

    def _parameter_name(self, suffix: str) -> str:
        if not self.shared_prefix:
            raise RuntimeError("Cannot look up SSM parameters in export mode")
        return f"{self.shared_prefix}/{suffix}"

    def vpc_id(self, scope: Construct) -> str:
        """VPC id as a deploy-time token."""
        if self.is_ssm_mode:
            return ssm.StringParameter.value_for_string_parameter(
                scope, self._parameter_name(VPC_ID_PARAMETER)
            )
        return Fn.import_value(self.vpc_export_name)

    def security_group_id(self, scope: Construct) -> str:
        """Shared security group id as a deploy-time token."""
        if self.is_ssm_mode:
            return ssm.StringParameter.value_for_string_parameter(
                scope, self._parameter_name(SECURITY_GROUP_ID_PARAMETER)
            )
        return Fn.import_value(self.security_group_export_name)

    def lookup_security_group(self, scope: Construct) -> ec2.ISecurityGroup:
        """Import the shared security group without permission to add rules to it."""
        return ec2.SecurityGroup.from_security_group_id(
            scope,
            self._get_unique_id("SharedSecurityGroup"),
            self.security_group_id(scope),
            mutable=False,
        )

    def get_shared_config(self, scope: Construct) -> SharedNetworkConfig | None:
        """
        Load the network attributes from SSM parameters.

        Returns None in export mode. Uses value_from_lookup, so the
        parameters must exist at synth time and the consuming stack needs
        an explicit account and region.
        """
        if not self.is_ssm_mode:
            return None

        def lookup(suffix: str) -> str:
            return ssm.StringParameter.value_from_lookup(scope, self._parameter_name(suffix))

        def lookup_list(suffix: str) -> list[str]:
            return [item for item in lookup(suffix).split(",") if item]

        return SharedNetworkConfig(
            vpc_id=lookup(VPC_ID_PARAMETER),
            availability_zones=lookup_list(AVAILABILITY_ZONES_PARAMETER),
            public_subnet_ids=lookup_list(PUBLIC_SUBNET_IDS_PARAMETER),
            private_subnet_ids=lookup_list(PRIVATE_SUBNET_IDS_PARAMETER),
            isolated_subnet_ids=lookup_list(ISOLATED_SUBNET_IDS_PARAMETER),
        )

    def lookup_vpc(self, scope: Construct) -> ec2.IVpc | None:
        """
        Look up the shared VPC with its subnets.

        Returns None in export mode, where only the VPC id is exported.
        """
        config = self.get_shared_config(scope)
        if not config:
            return None

        return ec2.Vpc.from_vpc_attributes(
            scope,
            self._get_unique_id("SharedVpc"),
            vpc_id=config.vpc_id,
            availability_zones=config.availability_zones,
            public_subnet_ids=config.public_subnet_ids or None,
            private_subnet_ids=config.private_subnet_ids or None,
            isolated_subnet_ids=config.isolated_subnet_ids or None,
        )
