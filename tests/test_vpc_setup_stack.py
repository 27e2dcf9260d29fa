"""
Tests for the shared VPC stack.
"""

import ipaddress
import json
from itertools import combinations

from aws_cdk.assertions import Annotations, Match, Template

from stacks.config import SubnetTier, VpcSetupConfig
from stacks.validation import validate_template
from tests.helpers import logical_id, resources_of_type


def _subnets_by_tier(template_json: dict) -> dict[str, list[dict]]:
    tiers: dict[str, list[dict]] = {}
    for subnet in resources_of_type(template_json, "AWS::EC2::Subnet").values():
        tags = {tag["Key"]: tag["Value"] for tag in subnet["Properties"]["Tags"]}
        tiers.setdefault(tags["aws-cdk:subnet-name"], []).append(subnet)
    return tiers


class TestNetwork:
    """Tests for the VPC and its subnet tiers."""

    def test_two_zones_three_tiers_declares_six_subnets(self, template, template_json):
        """Test that 2 zones x 3 tiers gives 6 subnets, 2 per tier."""
        template.resource_count_is("AWS::EC2::Subnet", 6)

        tiers = _subnets_by_tier(template_json)
        assert sorted(tiers) == ["isolated-subnet", "private-subnet", "public-subnet"]
        assert all(len(subnets) == 2 for subnets in tiers.values())

    def test_subnet_count_follows_zone_count(self, make_stack):
        """Test that a single zone gets one subnet per tier."""
        stack = make_stack(VpcSetupConfig(max_azs=1))

        Template.from_stack(stack).resource_count_is("AWS::EC2::Subnet", 3)

    def test_subnet_ranges_do_not_overlap(self, template_json):
        """Test that every subnet has its own address range inside the VPC."""
        vpc_range = ipaddress.ip_network("10.0.0.0/16")
        ranges = [
            ipaddress.ip_network(subnet["Properties"]["CidrBlock"])
            for subnet in resources_of_type(template_json, "AWS::EC2::Subnet").values()
        ]

        assert len(ranges) == 6
        assert all(r.subnet_of(vpc_range) for r in ranges)
        assert not any(a.overlaps(b) for a, b in combinations(ranges, 2))

    def test_vpc_uses_configured_cidr(self, make_stack):
        """Test that the VPC CIDR comes from configuration."""
        stack = make_stack(VpcSetupConfig(cidr="172.16.0.0/20"))

        Template.from_stack(stack).has_resource_properties(
            "AWS::EC2::VPC", {"CidrBlock": "172.16.0.0/20"}
        )

    def test_subnet_tier_types(self, template_json):
        """Test that each tier is declared with its routing type."""
        types = {}
        for subnet in resources_of_type(template_json, "AWS::EC2::Subnet").values():
            tags = {tag["Key"]: tag["Value"] for tag in subnet["Properties"]["Tags"]}
            types[tags["aws-cdk:subnet-name"]] = tags["aws-cdk:subnet-type"]

        assert types == {
            "public-subnet": "Public",
            "private-subnet": "Private",
            "isolated-subnet": "Isolated",
        }

    def test_nat_gateway_per_zone_by_default(self, template):
        """Test that private tiers get a NAT gateway in each zone."""
        template.resource_count_is("AWS::EC2::InternetGateway", 1)
        template.resource_count_is("AWS::EC2::NatGateway", 2)

    def test_only_public_and_private_tiers_have_default_routes(self, template, template_json):
        """Test that isolated subnets have no route to the internet."""
        # 2 public routes via the IGW + 2 private routes via NAT
        template.resource_count_is("AWS::EC2::Route", 4)

        routes = resources_of_type(template_json, "AWS::EC2::Route").values()
        via_igw = [r for r in routes if "GatewayId" in r["Properties"]]
        via_nat = [r for r in routes if "NatGatewayId" in r["Properties"]]
        assert len(via_igw) == 2
        assert len(via_nat) == 2

    def test_zero_nat_gateways_declares_private_tier_isolated(self, make_stack):
        """Test the cost-saving variant: no NAT, private tier loses egress."""
        stack = make_stack(VpcSetupConfig(nat_gateways=0))
        template = Template.from_stack(stack)
        template_json = template.to_json()

        template.resource_count_is("AWS::EC2::NatGateway", 0)
        template.resource_count_is("AWS::EC2::Subnet", 6)
        template.resource_count_is("AWS::EC2::Route", 2)

        for subnet in _subnets_by_tier(template_json)["private-subnet"]:
            tags = {tag["Key"]: tag["Value"] for tag in subnet["Properties"]["Tags"]}
            assert tags["aws-cdk:subnet-type"] == "Isolated"

    def test_zero_nat_gateways_adds_warning(self, make_stack):
        """Test that the zero-NAT trade-off is surfaced as a synth warning."""
        stack = make_stack(VpcSetupConfig(nat_gateways=0))

        Annotations.from_stack(stack).has_warning(
            "*", Match.string_like_regexp("private subnet tiers have no outbound internet access")
        )

    def test_zero_nat_gateways_without_private_tier_has_no_warning(self, make_stack):
        """Test that the warning is skipped when no tier loses its outbound route."""
        config = VpcSetupConfig(
            subnet_tiers=(
                SubnetTier(name="ingress", subnet_type="public"),
                SubnetTier(name="data", subnet_type="isolated"),
            ),
            nat_gateways=0,
        )

        Annotations.from_stack(make_stack(config)).has_no_warning(
            "*", Match.string_like_regexp("private subnet tiers have no outbound internet access")
        )

    def test_custom_tiers(self, make_stack):
        """Test that the tier list drives the subnet layout."""
        config = VpcSetupConfig(
            subnet_tiers=(
                SubnetTier(name="ingress", subnet_type="public", cidr_mask=26),
                SubnetTier(name="data", subnet_type="isolated", cidr_mask=25),
            ),
            nat_gateways=0,
        )
        template_json = Template.from_stack(make_stack(config)).to_json()

        tiers = _subnets_by_tier(template_json)
        assert sorted(tiers) == ["data", "ingress"]
        masks = {
            name: {subnet["Properties"]["CidrBlock"].split("/")[1] for subnet in subnets}
            for name, subnets in tiers.items()
        }
        assert masks == {"ingress": {"26"}, "data": {"25"}}

    def test_config_loaded_from_context(self, make_stack):
        """Test that the stack reads its settings from CDK context when none are passed."""
        stack = make_stack(context={"max_azs": "1", "nat_gateways": "0"})
        template = Template.from_stack(stack)

        assert stack.config.max_azs == 1
        template.resource_count_is("AWS::EC2::Subnet", 3)
        template.resource_count_is("AWS::EC2::NatGateway", 0)


class TestLogBucket:
    """Tests for the flow-log bucket."""

    def test_bucket_protections(self, template):
        """Test that public access block, versioning and encryption all hold."""
        template.has_resource_properties(
            "AWS::S3::Bucket",
            {
                "PublicAccessBlockConfiguration": {
                    "BlockPublicAcls": True,
                    "BlockPublicPolicy": True,
                    "IgnorePublicAcls": True,
                    "RestrictPublicBuckets": True,
                },
                "VersioningConfiguration": {"Status": "Enabled"},
                "BucketEncryption": {
                    "ServerSideEncryptionConfiguration": [
                        {"ServerSideEncryptionByDefault": {"SSEAlgorithm": "AES256"}}
                    ]
                },
                "AccessControl": "LogDeliveryWrite",
            },
        )

    def test_bucket_denies_insecure_transport(self, template):
        """Test that the bucket policy rejects requests without TLS."""
        template.has_resource_properties(
            "AWS::S3::BucketPolicy",
            {
                "PolicyDocument": {
                    "Statement": Match.array_with(
                        [
                            Match.object_like(
                                {
                                    "Effect": "Deny",
                                    "Action": "s3:*",
                                    "Condition": {"Bool": {"aws:SecureTransport": "false"}},
                                }
                            )
                        ]
                    )
                }
            },
        )

    def test_bucket_archive_tiers(self, template_json):
        """Test the 90-day archive and 180-day deep archive tiers."""
        (bucket,) = resources_of_type(template_json, "AWS::S3::Bucket").values()
        (tiering,) = bucket["Properties"]["IntelligentTieringConfigurations"]

        assert tiering["Id"] == "archive"
        assert tiering["Status"] == "Enabled"
        assert {t["AccessTier"]: t["Days"] for t in tiering["Tierings"]} == {
            "ARCHIVE_ACCESS": 90,
            "DEEP_ARCHIVE_ACCESS": 180,
        }

    def test_objects_move_to_intelligent_tiering(self, template):
        """Test that a lifecycle rule moves objects into Intelligent-Tiering."""
        template.has_resource_properties(
            "AWS::S3::Bucket",
            {
                "LifecycleConfiguration": {
                    "Rules": [
                        Match.object_like(
                            {
                                "Status": "Enabled",
                                "Transitions": [
                                    {"StorageClass": "INTELLIGENT_TIERING", "TransitionInDays": 0}
                                ],
                            }
                        )
                    ]
                }
            },
        )

    def test_bucket_is_retained(self, template):
        """Test that deleting the stack keeps the logs."""
        template.has_resource(
            "AWS::S3::Bucket",
            {"DeletionPolicy": "Retain", "UpdateReplacePolicy": "Retain"},
        )

    def test_bucket_construct_id(self, stack):
        """Test that the bucket keeps its configured construct ID."""
        assert logical_id(stack, stack.log_bucket).startswith("s3LogBucket")


class TestFlowLog:
    """Tests for the flow log and its role."""

    def test_flow_log_captures_all_traffic_into_prefix(self, stack, template):
        """Test that the flow log is bound to the VPC and writes ALL traffic to the prefix."""
        template.has_resource_properties(
            "AWS::EC2::FlowLog",
            {
                "ResourceId": {"Ref": logical_id(stack, stack.vpc)},
                "ResourceType": "VPC",
                "TrafficType": "ALL",
                "LogDestinationType": "s3",
                "LogDestination": {
                    "Fn::Join": [
                        "",
                        [
                            {"Fn::GetAtt": [logical_id(stack, stack.log_bucket), "Arn"]},
                            "/sharedVpcFlowLogs/",
                        ],
                    ]
                },
            },
        )

    def test_flow_log_name_tag(self, template):
        """Test that the flow log carries its name."""
        template.has_resource_properties(
            "AWS::EC2::FlowLog",
            {"Tags": Match.array_with([{"Key": "Name", "Value": "sharedVpcFlowLogs"}])},
        )

    def test_role_trusted_only_by_flow_log_service(self, stack, template):
        """Test that only the flow-log service principal may assume the role."""
        template.has_resource_properties(
            "AWS::IAM::Role",
            {
                "AssumeRolePolicyDocument": {
                    "Statement": [
                        {
                            "Action": "sts:AssumeRole",
                            "Effect": "Allow",
                            "Principal": {"Service": "vpc-flow-logs.amazonaws.com"},
                        }
                    ]
                }
            },
        )

    def test_role_grant_is_put_only_on_prefix(self, stack, template_json):
        """Test that the role can only put objects under sharedVpcFlowLogs/*."""
        role_id = logical_id(stack, stack.flow_log_role)
        bucket_id = logical_id(stack, stack.log_bucket)
        policies = [
            policy
            for policy in resources_of_type(template_json, "AWS::IAM::Policy").values()
            if {"Ref": role_id} in policy["Properties"]["Roles"]
        ]
        assert len(policies) == 1

        statements = policies[0]["Properties"]["PolicyDocument"]["Statement"]
        assert len(statements) == 1
        statement = statements[0]

        actions = statement["Action"] if isinstance(statement["Action"], list) else [statement["Action"]]
        assert actions
        assert all(a.startswith(("s3:PutObject", "s3:Abort")) for a in actions)
        assert statement["Resource"] == {
            "Fn::Join": ["", [{"Fn::GetAtt": [bucket_id, "Arn"]}, "/sharedVpcFlowLogs/*"]]
        }

    def test_grant_scope_matches_destination_prefix(self, make_stack):
        """Test that bucket s3LogBucket with prefix sharedVpcFlowLogs/ grants sharedVpcFlowLogs/*."""
        config = VpcSetupConfig(log_bucket_id="s3LogBucket", flow_log_prefix="sharedVpcFlowLogs/")
        stack = make_stack(config)
        template_json = Template.from_stack(stack).to_json()

        assert config.flow_log_grant_pattern == "sharedVpcFlowLogs/*"
        (policy,) = resources_of_type(template_json, "AWS::IAM::Policy").values()
        resource = policy["Properties"]["PolicyDocument"]["Statement"][0]["Resource"]
        assert resource["Fn::Join"][1][1] == "/sharedVpcFlowLogs/*"

    def test_custom_prefix_moves_destination_and_grant_together(self, make_stack):
        """Test that changing the prefix changes both the destination and the grant."""
        stack = make_stack(VpcSetupConfig(flow_log_prefix="network/flow-logs/"))
        template_json = Template.from_stack(stack).to_json()

        (flow_log,) = resources_of_type(template_json, "AWS::EC2::FlowLog").values()
        (policy,) = resources_of_type(template_json, "AWS::IAM::Policy").values()
        destination = flow_log["Properties"]["LogDestination"]["Fn::Join"][1][1]
        grant = policy["Properties"]["PolicyDocument"]["Statement"][0]["Resource"]["Fn::Join"][1][1]

        assert destination == "/network/flow-logs/"
        assert grant == "/network/flow-logs/*"


class TestGatewayEndpoints:
    """Tests for the DynamoDB and S3 gateway endpoints."""

    def test_gateway_endpoints_for_dynamodb_and_s3(self, template, template_json):
        """Test that one gateway endpoint is declared per service."""
        template.resource_count_is("AWS::EC2::VPCEndpoint", 2)

        endpoints = resources_of_type(template_json, "AWS::EC2::VPCEndpoint").values()
        service_names = [json.dumps(e["Properties"]["ServiceName"]) for e in endpoints]
        assert all(e["Properties"]["VpcEndpointType"] == "Gateway" for e in endpoints)
        assert any(".dynamodb" in name for name in service_names)
        assert any(".s3" in name for name in service_names)

    def test_endpoints_attach_to_every_route_table(self, template_json):
        """Test that every subnet, isolated ones included, routes to the endpoints."""
        route_tables = resources_of_type(template_json, "AWS::EC2::RouteTable")

        for endpoint in resources_of_type(template_json, "AWS::EC2::VPCEndpoint").values():
            assert len(endpoint["Properties"]["RouteTableIds"]) == len(route_tables)

    def test_endpoint_list_is_configurable(self, make_stack):
        """Test that only the configured services get endpoints."""
        stack = make_stack(VpcSetupConfig(gateway_endpoints=("s3",)))

        Template.from_stack(stack).resource_count_is("AWS::EC2::VPCEndpoint", 1)
        assert list(stack.gateway_endpoints) == ["s3"]


class TestSharedSecurityGroup:
    """Tests for the shared security group."""

    def test_no_inbound_all_outbound(self, stack, template, template_json):
        """Test that the group has no inbound rules and allows all outbound traffic."""
        template.resource_count_is("AWS::EC2::SecurityGroup", 1)
        template.resource_count_is("AWS::EC2::SecurityGroupIngress", 0)
        template.has_resource_properties(
            "AWS::EC2::SecurityGroup",
            {
                "VpcId": {"Ref": logical_id(stack, stack.vpc)},
                "SecurityGroupEgress": [
                    Match.object_like({"CidrIp": "0.0.0.0/0", "IpProtocol": "-1"})
                ],
            },
        )

        (group,) = resources_of_type(template_json, "AWS::EC2::SecurityGroup").values()
        assert "SecurityGroupIngress" not in group["Properties"]


class TestOutputs:
    """Tests for the cross-stack exports."""

    def test_vpc_id_exported(self, stack, template):
        """Test that the VPC id is exported as shared-vpc-id."""
        template.has_output(
            "sharedVpcId",
            {
                "Value": {"Ref": logical_id(stack, stack.vpc)},
                "Export": {"Name": "shared-vpc-id"},
            },
        )

    def test_security_group_id_exported(self, stack, template):
        """Test that the security group id is exported under a stable name."""
        template.has_output(
            "sharedSecurityGroupId",
            {
                "Value": {
                    "Fn::GetAtt": [logical_id(stack, stack.shared_security_group), "GroupId"]
                },
                "Export": {"Name": "shared-security-group-id"},
            },
        )

    def test_export_names_are_configurable(self, make_stack):
        """Test that export names come from configuration."""
        stack = make_stack(
            VpcSetupConfig(vpc_export_name="prod-vpc-id", security_group_export_name="prod-sg-id")
        )
        template = Template.from_stack(stack)

        template.has_output("sharedVpcId", {"Export": {"Name": "prod-vpc-id"}})
        template.has_output("sharedSecurityGroupId", {"Export": {"Name": "prod-sg-id"}})


class TestTagsAndPolicy:
    """Tests for stack-wide tags and the static policy checks on the real template."""

    def test_tags_applied_to_resources(self, make_stack):
        """Test that configured tags reach taggable resources."""
        stack = make_stack(VpcSetupConfig(tags={"Environment": "test"}))

        Template.from_stack(stack).has_resource_properties(
            "AWS::S3::Bucket",
            {"Tags": Match.array_with([{"Key": "Environment", "Value": "test"}])},
        )

    def test_default_template_passes_policy_checks(self, template_json, config):
        """Test that the default stack satisfies every network policy invariant."""
        violations = validate_template(
            template_json,
            flow_log_prefix=config.flow_log_prefix,
            expected_subnets=config.expected_subnet_count(),
        )

        assert violations == []

    def test_zero_nat_template_passes_policy_checks(self, make_stack):
        """Test that the zero-NAT variant is still compliant."""
        config = VpcSetupConfig(nat_gateways=0)
        template_json = Template.from_stack(make_stack(config)).to_json()

        assert validate_template(template_json, flow_log_prefix=config.flow_log_prefix) == []
