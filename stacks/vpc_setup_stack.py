"""
Shared VPC stack - network, flow-log storage, flow logs, gateway endpoints
and a shared security group.

Resources, in dependency order:
- VPC with public, private and isolated subnets in every availability zone
- S3 log bucket (no public access, TLS only, versioned, encrypted, archive tiers)
- IAM role for the flow-log service, scoped to the flow-log prefix
- VPC flow log capturing ALL traffic into the bucket prefix
- Gateway endpoints so DynamoDB and S3 traffic stays off the internet and NAT
- Security group with no inbound rules, exported for other stacks

Only load balancers belong in the public subnets. Workloads go in the private
subnets, and anything that must not reach the internet (bulk data processing)
goes in the isolated subnets, where the gateway endpoints are the only way out.
"""

from aws_cdk import (
    Annotations,
    CfnOutput,
    Duration,
    RemovalPolicy,
    Stack,
    Tags,
)
from aws_cdk import aws_ec2 as ec2
from aws_cdk import aws_iam as iam
from aws_cdk import aws_s3 as s3
from constructs import Construct

from .config import GATEWAY_ENDPOINT_SERVICES, VpcSetupConfig
from .logging import get_logger
from .validation import FLOW_LOG_SERVICE_PRINCIPAL

logger = get_logger(__name__)

# Construct IDs for the gateway endpoints (kept stable to avoid replacement)
GATEWAY_ENDPOINT_IDS = {
    "dynamodb": "dynamoDBEndpoint",
    "s3": "s3Endpoint",
}


class VpcSetupStack(Stack):
    """
    Declares the shared network for an environment.

    Attributes:
        config: Settings the stack was built from
        vpc: The shared VPC
        log_bucket: Bucket receiving VPC flow logs
        flow_log_role: Role trusted by the flow-log service, put-only on the prefix
        flow_log: Flow log attached to the VPC
        gateway_endpoints: Gateway endpoints keyed by service name
        shared_security_group: Default-deny-inbound security group
    """

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        *,
        config: VpcSetupConfig | None = None,
        **kwargs,
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)

        self.config = config or VpcSetupConfig.from_context(self.node)
        self._log = logger.bind(stack_name=self.stack_name)

        self.vpc = self._create_vpc()
        self.log_bucket = self._create_log_bucket()
        self.flow_log_role, self.flow_log = self._create_flow_log()
        self.gateway_endpoints = self._add_gateway_endpoints()
        self.shared_security_group = self._create_shared_security_group()

        for key, value in self.config.tags.items():
            Tags.of(self).add(key, value)

        # Outputs
        CfnOutput(
            self,
            "sharedVpcId",
            value=self.vpc.vpc_id,
            description="ID of the shared VPC",
            export_name=self.config.vpc_export_name,
        )

        CfnOutput(
            self,
            "sharedSecurityGroupId",
            value=self.shared_security_group.security_group_id,
            description="ID of the shared default-deny-inbound security group",
            export_name=self.config.security_group_export_name,
        )

    # =================================================================
    # Network
    # =================================================================

    def _create_vpc(self) -> ec2.Vpc:
        config = self.config

        # Cost-saving variant: no running cost for the network, but private
        # tiers lose their outbound route and are declared isolated
        private_tiers = config.private_tiers_without_egress
        if private_tiers:
            self._log.warning(
                "nat_gateways_disabled",
                private_tiers=private_tiers,
            )

        vpc = ec2.Vpc(
            self,
            "VPC",
            ip_addresses=ec2.IpAddresses.cidr(config.cidr),
            max_azs=config.max_azs,
            nat_gateways=config.nat_gateways,
            subnet_configuration=[
                tier.to_subnet_configuration(config.nat_gateways) for tier in config.subnet_tiers
            ],
            restrict_default_security_group=config.restrict_default_security_group,
        )

        if private_tiers:
            Annotations.of(vpc).add_warning(
                "nat_gateways=0: private subnet tiers have no outbound internet access "
                "and are declared as isolated subnets"
            )

        self._log.info(
            "vpc_declared",
            cidr=config.cidr,
            max_azs=config.max_azs,
            nat_gateways=config.nat_gateways,
            tiers=[tier.name for tier in config.subnet_tiers],
        )
        return vpc

    # =================================================================
    # Flow-log storage
    # =================================================================

    def _create_log_bucket(self) -> s3.Bucket:
        """
        Create the bucket that receives flow logs.

        Public access is blocked, non-TLS requests are denied by the bucket
        policy, every object version is kept and objects move into
        Intelligent-Tiering so the archive tiers apply without any access
        pattern tracking on our side.
        """
        config = self.config

        bucket = s3.Bucket(
            self,
            config.log_bucket_id,
            block_public_access=s3.BlockPublicAccess.BLOCK_ALL,
            enforce_ssl=True,
            versioned=True,
            access_control=s3.BucketAccessControl.LOG_DELIVERY_WRITE,
            # ACLs are ignored under the default bucket-owner-enforced ownership
            object_ownership=s3.ObjectOwnership.OBJECT_WRITER,
            encryption=s3.BucketEncryption.S3_MANAGED,
            removal_policy=RemovalPolicy.RETAIN,
            intelligent_tiering_configurations=[
                s3.IntelligentTieringConfiguration(
                    name="archive",
                    archive_access_tier_time=Duration.days(config.archive_after_days),
                    deep_archive_access_tier_time=Duration.days(config.deep_archive_after_days),
                )
            ],
            lifecycle_rules=[
                s3.LifecycleRule(
                    id="intelligent-tiering",
                    transitions=[
                        s3.Transition(
                            storage_class=s3.StorageClass.INTELLIGENT_TIERING,
                            transition_after=Duration.days(0),
                        )
                    ],
                )
            ],
        )

        self._log.info(
            "log_bucket_declared",
            construct_id=config.log_bucket_id,
            archive_after_days=config.archive_after_days,
            deep_archive_after_days=config.deep_archive_after_days,
        )
        return bucket

    def _create_flow_log(self) -> tuple[iam.Role, ec2.FlowLog]:
        """
        Create the flow-log role and the flow log itself.

        Both use the same configured prefix: the role may only put objects
        under it and the flow log only delivers to it.
        """
        config = self.config

        role = iam.Role(
            self,
            "vpcFlowLogRole",
            assumed_by=iam.ServicePrincipal(FLOW_LOG_SERVICE_PRINCIPAL),
            description="Writes VPC flow logs to the log bucket",
        )
        self.log_bucket.grant_put(role, config.flow_log_grant_pattern)

        # ALL rather than ACCEPT or REJECT: anomaly detection (GuardDuty) needs
        # rejected traffic, attack reconstruction needs accepted traffic
        flow_log = ec2.FlowLog(
            self,
            "sharedVpcFlowLog",
            destination=ec2.FlowLogDestination.to_s3(self.log_bucket, config.flow_log_prefix),
            traffic_type=ec2.FlowLogTrafficType.ALL,
            flow_log_name=config.flow_log_name,
            resource_type=ec2.FlowLogResourceType.from_vpc(self.vpc),
        )
        flow_log.node.add_dependency(role)

        self._log.info(
            "flow_log_declared",
            prefix=config.flow_log_prefix,
            grant_pattern=config.flow_log_grant_pattern,
        )
        return role, flow_log

    # =================================================================
    # Gateway endpoints
    # =================================================================

    def _add_gateway_endpoints(self) -> dict[str, ec2.GatewayVpcEndpoint]:
        """Route DynamoDB and S3 traffic through gateway endpoints on every route table."""
        endpoints = {}
        for name in self.config.gateway_endpoints:
            endpoints[name] = self.vpc.add_gateway_endpoint(
                GATEWAY_ENDPOINT_IDS.get(name, f"{name}Endpoint"),
                service=GATEWAY_ENDPOINT_SERVICES[name],
            )

        self._log.info("gateway_endpoints_declared", services=list(endpoints))
        return endpoints

    # =================================================================
    # Shared security group
    # =================================================================

    def _create_shared_security_group(self) -> ec2.SecurityGroup:
        """
        Create the shared security group.

        It never gets inbound rules. Consumers that need inbound access attach
        an additional, narrower security group instead.
        """
        security_group = ec2.SecurityGroup(
            self,
            "SharedSecurityGroup",
            vpc=self.vpc,
            description="Shared security group: no inbound, all outbound",
            allow_all_outbound=True,
        )

        self._log.info("shared_security_group_declared")
        return security_group
