"""
Stack to export the shared network as SSM parameters.

CloudFormation exports lock the producing stack: an exported value cannot
change while another stack imports it. SSM parameters have no such coupling,
so consumers deployed from other repositories can read these instead and
resolve them with SharedNetworkResolver in SSM mode.

Activated by passing --context export_ssm_prefix=/shared-vpc/prod
"""

from aws_cdk import Fn, Stack
from aws_cdk import aws_ec2 as ec2
from aws_cdk import aws_ssm as ssm
from constructs import Construct

from .logging import get_logger

logger = get_logger(__name__)

# Parameter suffixes, relative to the export prefix
VPC_ID_PARAMETER = "network/vpc-id"
SECURITY_GROUP_ID_PARAMETER = "network/security-group-id"
PUBLIC_SUBNET_IDS_PARAMETER = "network/public-subnet-ids"
PRIVATE_SUBNET_IDS_PARAMETER = "network/private-subnet-ids"
ISOLATED_SUBNET_IDS_PARAMETER = "network/isolated-subnet-ids"
AVAILABILITY_ZONES_PARAMETER = "network/availability-zones"


class SharedExportStack(Stack):
    """Exports the shared VPC and security group as SSM parameters."""

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        *,
        prefix: str,
        vpc: ec2.IVpc,
        security_group: ec2.ISecurityGroup,
        **kwargs,
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)

        prefix = prefix.rstrip("/")
        self.parameters: dict[str, ssm.StringParameter] = {}

        self._add_parameter("VpcId", f"{prefix}/{VPC_ID_PARAMETER}", vpc.vpc_id)

        self._add_parameter(
            "SecurityGroupId",
            f"{prefix}/{SECURITY_GROUP_ID_PARAMETER}",
            security_group.security_group_id,
        )

        # Empty subnet groups (e.g. no isolated tier) are skipped, SSM rejects empty values
        subnet_groups = (
            ("PublicSubnetIds", PUBLIC_SUBNET_IDS_PARAMETER, vpc.public_subnets),
            ("PrivateSubnetIds", PRIVATE_SUBNET_IDS_PARAMETER, vpc.private_subnets),
            ("IsolatedSubnetIds", ISOLATED_SUBNET_IDS_PARAMETER, vpc.isolated_subnets),
        )
        for construct_name, suffix, subnets in subnet_groups:
            if subnets:
                self._add_parameter(
                    construct_name,
                    f"{prefix}/{suffix}",
                    Fn.join(",", [s.subnet_id for s in subnets]),
                )

        self._add_parameter(
            "AvailabilityZones",
            f"{prefix}/{AVAILABILITY_ZONES_PARAMETER}",
            Fn.join(",", vpc.availability_zones),
        )

        logger.info("ssm_export_declared", prefix=prefix, parameters=sorted(self.parameters))

    def _add_parameter(self, construct_id: str, name: str, value: str) -> None:
        self.parameters[construct_id] = ssm.StringParameter(
            self,
            construct_id,
            parameter_name=name,
            string_value=value,
        )
