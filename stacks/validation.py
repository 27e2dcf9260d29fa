"""
Static policy checks over a synthesized CloudFormation template.

These checks run after `cdk synth` and before anything is deployed. They
assert the network invariants on the template itself, so a regression in a
construct default or a bad context value is caught without touching an
account.

Usage:
    from stacks.validation import assert_template_compliant

    assert_template_compliant(
        template,
        flow_log_prefix="sharedVpcFlowLogs/",
        expected_subnets=6,
    )

Checks:
- Log bucket: public access fully blocked, TLS enforced, versioned, encrypted
- Flow log: ALL traffic, delivered to the configured bucket prefix
- Flow-log role: trusted only by the flow-log service, put-only on the prefix
- Security groups: no inbound rules, outbound open to all destinations
- Subnets: tiers x zones of them, no overlapping address ranges
"""

import ipaddress
from dataclasses import dataclass
from itertools import combinations
from typing import Any

from .exceptions import PolicyViolationError
from .logging import get_logger

logger = get_logger(__name__)

FLOW_LOG_SERVICE_PRINCIPAL = "vpc-flow-logs.amazonaws.com"
PUBLIC_ACCESS_BLOCK_FLAGS = (
    "BlockPublicAcls",
    "BlockPublicPolicy",
    "IgnorePublicAcls",
    "RestrictPublicBuckets",
)
WRITE_ACTION_PREFIXES = ("s3:PutObject", "s3:Abort")
ALL_DESTINATIONS = "0.0.0.0/0"


@dataclass(frozen=True)
class PolicyViolation:
    """A single broken invariant, tied to the resource that breaks it."""

    resource: str
    rule: str
    message: str

    def __str__(self) -> str:
        return f"{self.resource}: [{self.rule}] {self.message}"


def _resources(template: dict[str, Any], resource_type: str) -> dict[str, dict[str, Any]]:
    return {
        logical_id: resource
        for logical_id, resource in template.get("Resources", {}).items()
        if resource.get("Type") == resource_type
    }


def _properties(resource: dict[str, Any]) -> dict[str, Any]:
    return resource.get("Properties", {})


def _as_list(value: Any) -> list:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def _object_arn(value: Any) -> tuple[str | None, str | None]:
    """
    Split an object ARN built by CDK into (bucket logical id, key suffix).

    CDK renders `bucket.arn_for_objects(pattern)` as
    {"Fn::Join": ["", [{"Fn::GetAtt": [<bucket>, "Arn"]}, "/<pattern>"]]}.
    """
    if not isinstance(value, dict) or "Fn::Join" not in value:
        return None, None

    _, parts = value["Fn::Join"]
    if len(parts) != 2 or not isinstance(parts[1], str):
        return None, None

    get_att = parts[0].get("Fn::GetAtt") if isinstance(parts[0], dict) else None
    if not get_att or get_att[1] != "Arn":
        return None, parts[1]
    return get_att[0], parts[1]


# =================================================================
# Log bucket
# =================================================================


def _enforces_ssl(template: dict[str, Any], bucket_id: str) -> bool:
    for policy in _resources(template, "AWS::S3::BucketPolicy").values():
        props = _properties(policy)
        if props.get("Bucket") != {"Ref": bucket_id}:
            continue
        for statement in props.get("PolicyDocument", {}).get("Statement", []):
            condition = statement.get("Condition", {}).get("Bool", {})
            if statement.get("Effect") == "Deny" and condition.get("aws:SecureTransport") == "false":
                return True
    return False


def check_log_buckets(template: dict[str, Any]) -> list[PolicyViolation]:
    """All four bucket protections must hold at once."""
    violations = []

    for bucket_id, bucket in _resources(template, "AWS::S3::Bucket").items():
        props = _properties(bucket)

        access_block = props.get("PublicAccessBlockConfiguration", {})
        missing = [flag for flag in PUBLIC_ACCESS_BLOCK_FLAGS if access_block.get(flag) is not True]
        if missing:
            violations.append(
                PolicyViolation(
                    bucket_id,
                    "bucket-public-access",
                    f"Public access block is not fully enabled (missing {', '.join(missing)})",
                )
            )

        if not _enforces_ssl(template, bucket_id):
            violations.append(
                PolicyViolation(
                    bucket_id,
                    "bucket-enforce-ssl",
                    "Bucket policy does not deny requests without aws:SecureTransport",
                )
            )

        if props.get("VersioningConfiguration", {}).get("Status") != "Enabled":
            violations.append(PolicyViolation(bucket_id, "bucket-versioning", "Versioning is not enabled"))

        rules = props.get("BucketEncryption", {}).get("ServerSideEncryptionConfiguration", [])
        if not any(rule.get("ServerSideEncryptionByDefault", {}).get("SSEAlgorithm") for rule in rules):
            violations.append(
                PolicyViolation(bucket_id, "bucket-encryption", "At-rest encryption is not enabled")
            )

    return violations


# =================================================================
# Flow log and its role
# =================================================================


def check_flow_logs(template: dict[str, Any], flow_log_prefix: str) -> list[PolicyViolation]:
    """Every flow log captures ALL traffic into the configured bucket prefix."""
    flow_logs = _resources(template, "AWS::EC2::FlowLog")
    if not flow_logs:
        return [PolicyViolation("template", "flow-log-present", "No VPC flow log is declared")]

    buckets = _resources(template, "AWS::S3::Bucket")
    violations = []

    for flow_log_id, flow_log in flow_logs.items():
        props = _properties(flow_log)

        if props.get("TrafficType") != "ALL":
            violations.append(
                PolicyViolation(
                    flow_log_id,
                    "flow-log-traffic-type",
                    f"Traffic type is {props.get('TrafficType')!r}, expected 'ALL'",
                )
            )

        bucket_id, suffix = _object_arn(props.get("LogDestination"))
        if props.get("LogDestinationType") != "s3" or bucket_id not in buckets:
            violations.append(
                PolicyViolation(
                    flow_log_id,
                    "flow-log-destination",
                    "Flow log is not delivered to a bucket declared in this template",
                )
            )
        elif suffix != f"/{flow_log_prefix}":
            violations.append(
                PolicyViolation(
                    flow_log_id,
                    "flow-log-destination",
                    f"Destination prefix {suffix!r} does not match '/{flow_log_prefix}'",
                )
            )

    return violations


def _trusts_flow_log_service(role: dict[str, Any]) -> bool:
    statements = _properties(role).get("AssumeRolePolicyDocument", {}).get("Statement", [])
    return any(
        FLOW_LOG_SERVICE_PRINCIPAL in _as_list(s.get("Principal", {}).get("Service"))
        for s in statements
        if isinstance(s.get("Principal"), dict)
    )


def check_flow_log_roles(template: dict[str, Any], flow_log_prefix: str) -> list[PolicyViolation]:
    """The flow-log role trusts only the flow-log service and may only put under the prefix."""
    roles = {
        role_id: role
        for role_id, role in _resources(template, "AWS::IAM::Role").items()
        if _trusts_flow_log_service(role)
    }
    if not roles:
        return [PolicyViolation("template", "flow-log-role-present", "No flow-log role is declared")]

    policies = _resources(template, "AWS::IAM::Policy")
    expected_suffix = f"/{flow_log_prefix}*"
    violations = []

    for role_id, role in roles.items():
        props = _properties(role)

        for statement in props.get("AssumeRolePolicyDocument", {}).get("Statement", []):
            principal = statement.get("Principal")
            services = _as_list(principal.get("Service")) if isinstance(principal, dict) else []
            if services != [FLOW_LOG_SERVICE_PRINCIPAL] or set(principal) != {"Service"}:
                violations.append(
                    PolicyViolation(
                        role_id,
                        "flow-log-role-trust",
                        f"Trust policy admits principal {principal!r}",
                    )
                )

        if props.get("ManagedPolicyArns") or props.get("Policies"):
            violations.append(
                PolicyViolation(
                    role_id,
                    "flow-log-role-scope",
                    "Role carries managed or inline policies beyond the prefix grant",
                )
            )

        statements = [
            statement
            for policy in policies.values()
            if {"Ref": role_id} in _properties(policy).get("Roles", [])
            for statement in _properties(policy).get("PolicyDocument", {}).get("Statement", [])
        ]
        if not statements:
            violations.append(
                PolicyViolation(role_id, "flow-log-role-scope", "Role has no write grant on the log bucket")
            )

        for statement in statements:
            actions = _as_list(statement.get("Action"))
            if statement.get("Effect") != "Allow":
                continue

            not_write = [a for a in actions if not a.startswith(WRITE_ACTION_PREFIXES)]
            if not_write:
                violations.append(
                    PolicyViolation(
                        role_id,
                        "flow-log-role-write-only",
                        f"Role is granted non-write actions: {', '.join(not_write)}",
                    )
                )

            for resource in _as_list(statement.get("Resource")):
                _, suffix = _object_arn(resource)
                if suffix != expected_suffix:
                    violations.append(
                        PolicyViolation(
                            role_id,
                            "flow-log-role-scope",
                            f"Grant is not scoped to '{expected_suffix}' (got {suffix!r})",
                        )
                    )

    return violations


# =================================================================
# Security groups
# =================================================================


def check_security_groups(template: dict[str, Any]) -> list[PolicyViolation]:
    """Security groups carry no inbound rules and allow all outbound traffic."""
    violations = []
    standalone_ingress = _resources(template, "AWS::EC2::SecurityGroupIngress")

    for group_id, group in _resources(template, "AWS::EC2::SecurityGroup").items():
        props = _properties(group)

        attached = [
            rule_id
            for rule_id, rule in standalone_ingress.items()
            if _properties(rule).get("GroupId") == {"Fn::GetAtt": [group_id, "GroupId"]}
        ]
        if props.get("SecurityGroupIngress") or attached:
            violations.append(
                PolicyViolation(group_id, "security-group-ingress", "Security group has inbound rules")
            )

        egress = props.get("SecurityGroupEgress", [])
        if not any(
            rule.get("CidrIp") == ALL_DESTINATIONS and str(rule.get("IpProtocol")) == "-1"
            for rule in egress
        ):
            violations.append(
                PolicyViolation(
                    group_id,
                    "security-group-egress",
                    "Security group does not allow outbound traffic to all destinations",
                )
            )

    return violations


# =================================================================
# Subnets
# =================================================================


def check_subnets(template: dict[str, Any], expected_subnets: int | None = None) -> list[PolicyViolation]:
    """Subnet count matches tiers x zones and no two address ranges overlap."""
    subnets = _resources(template, "AWS::EC2::Subnet")
    violations = []

    if expected_subnets is not None and len(subnets) != expected_subnets:
        violations.append(
            PolicyViolation(
                "template",
                "subnet-count",
                f"Found {len(subnets)} subnets, expected {expected_subnets}",
            )
        )

    ranges = {}
    for subnet_id, subnet in subnets.items():
        cidr = _properties(subnet).get("CidrBlock")
        # Ranges computed at deploy time (Fn::Cidr) cannot be checked statically
        if isinstance(cidr, str):
            ranges[subnet_id] = ipaddress.ip_network(cidr)

    for (first_id, first), (second_id, second) in combinations(sorted(ranges.items()), 2):
        if first.overlaps(second):
            violations.append(
                PolicyViolation(
                    first_id,
                    "subnet-overlap",
                    f"{first} overlaps {second} of {second_id}",
                )
            )

    return violations


def validate_template(
    template: dict[str, Any],
    *,
    flow_log_prefix: str,
    expected_subnets: int | None = None,
) -> list[PolicyViolation]:
    """
    Run every network policy check over a synthesized template.

    Args:
        template: CloudFormation template as a dict
        flow_log_prefix: Key prefix the flow log and its role must agree on
        expected_subnets: Tiers x zones, or None to skip the count check

    Returns:
        All violations found, empty when the template is compliant
    """
    return [
        *check_log_buckets(template),
        *check_flow_logs(template, flow_log_prefix),
        *check_flow_log_roles(template, flow_log_prefix),
        *check_security_groups(template),
        *check_subnets(template, expected_subnets),
    ]


def assert_template_compliant(
    template: dict[str, Any],
    *,
    flow_log_prefix: str,
    expected_subnets: int | None = None,
) -> None:
    """Raise PolicyViolationError if any network policy check fails."""
    violations = validate_template(
        template,
        flow_log_prefix=flow_log_prefix,
        expected_subnets=expected_subnets,
    )
    for violation in violations:
        logger.error(
            "policy_violation",
            resource=violation.resource,
            rule=violation.rule,
            detail=violation.message,
        )

    if violations:
        raise PolicyViolationError(
            f"{len(violations)} network policy violation(s) in synthesized template",
            violations=violations,
        )
