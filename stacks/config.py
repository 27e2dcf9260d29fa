"""
Network configuration loaded from CDK context.

Every value can be set in cdk.json or overridden on the command line:

    cdk synth --context max_azs=3 --context nat_gateways=0

Values passed with --context arrive as strings, so each field is coerced
before validation. Validation runs before any construct is declared, which
turns a malformed CIDR or an impossible tier layout into an evaluation-time
failure instead of a CloudFormation error halfway through a deployment.
"""

import ipaddress
import json
from dataclasses import dataclass, field, replace
from typing import Any

from aws_cdk import aws_ec2 as ec2
from constructs import Node

from .exceptions import ConfigurationError

SUBNET_TYPES = {
    "public": ec2.SubnetType.PUBLIC,
    "private": ec2.SubnetType.PRIVATE_WITH_EGRESS,
    "isolated": ec2.SubnetType.PRIVATE_ISOLATED,
}

GATEWAY_ENDPOINT_SERVICES = {
    "dynamodb": ec2.GatewayVpcEndpointAwsService.DYNAMODB,
    "s3": ec2.GatewayVpcEndpointAwsService.S3,
}

MIN_CIDR_MASK = 16
MAX_CIDR_MASK = 28

# S3 Intelligent-Tiering minimums for the opt-in archive tiers
MIN_ARCHIVE_ACCESS_DAYS = 90
MIN_DEEP_ARCHIVE_ACCESS_DAYS = 180


@dataclass(frozen=True)
class SubnetTier:
    """One subnet tier, declared once per availability zone."""

    name: str
    subnet_type: str
    cidr_mask: int = 24

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SubnetTier":
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Subnet tier must be a mapping, got {data!r}", field="subnet_tiers"
            )
        try:
            return cls(
                name=str(data["name"]),
                subnet_type=str(data["subnet_type"]).lower(),
                cidr_mask=int(data.get("cidr_mask", 24)),
            )
        except KeyError as exc:
            raise ConfigurationError(
                f"Subnet tier is missing required key {exc.args[0]!r}", field="subnet_tiers"
            ) from exc
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(
                f"Subnet tier {data!r} has an invalid cidr_mask", field="subnet_tiers"
            ) from exc

    def to_subnet_configuration(self, nat_gateways: int | None) -> ec2.SubnetConfiguration:
        """
        Build the CDK subnet configuration for this tier.

        Without NAT gateways a private tier has no egress route, so it is
        declared isolated instead.
        """
        subnet_type = SUBNET_TYPES[self.subnet_type]
        if nat_gateways == 0 and subnet_type == ec2.SubnetType.PRIVATE_WITH_EGRESS:
            subnet_type = ec2.SubnetType.PRIVATE_ISOLATED

        return ec2.SubnetConfiguration(
            name=self.name,
            subnet_type=subnet_type,
            cidr_mask=self.cidr_mask,
        )


DEFAULT_SUBNET_TIERS = (
    SubnetTier(name="public-subnet", subnet_type="public", cidr_mask=24),
    SubnetTier(name="private-subnet", subnet_type="private", cidr_mask=24),
    SubnetTier(name="isolated-subnet", subnet_type="isolated", cidr_mask=24),
)


def _as_int(key: str, value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{key} must be an integer, got {value!r}", field=key) from exc


def as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _as_json(key: str, value: Any) -> Any:
    # --context subnet_tiers='[...]' arrives as a JSON string
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except ValueError as exc:
        raise ConfigurationError(f"{key} must be valid JSON, got {value!r}", field=key) from exc


def _as_list(value: Any) -> list:
    # --context gateway_endpoints=s3,dynamodb arrives as a single string
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return list(value)


@dataclass(frozen=True)
class VpcSetupConfig:
    """
    Settings for the shared VPC configuration unit.

    Defaults reproduce the shared network: three /24 tiers in two zones
    inside 10.0.0.0/16, a NAT gateway per zone, flow logs under
    sharedVpcFlowLogs/ and gateway endpoints for DynamoDB and S3.
    """

    cidr: str = "10.0.0.0/16"
    max_azs: int = 2
    nat_gateways: int | None = None
    subnet_tiers: tuple[SubnetTier, ...] = DEFAULT_SUBNET_TIERS

    # Flow-log storage
    log_bucket_id: str = "s3LogBucket"
    flow_log_prefix: str = "sharedVpcFlowLogs/"
    flow_log_name: str = "sharedVpcFlowLogs"
    archive_after_days: int = MIN_ARCHIVE_ACCESS_DAYS
    deep_archive_after_days: int = MIN_DEEP_ARCHIVE_ACCESS_DAYS

    gateway_endpoints: tuple[str, ...] = ("dynamodb", "s3")

    # Cross-stack exports
    vpc_export_name: str = "shared-vpc-id"
    security_group_export_name: str = "shared-security-group-id"
    export_ssm_prefix: str | None = None

    restrict_default_security_group: bool = False

    tags: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_context(cls, node: Node) -> "VpcSetupConfig":
        """
        Load settings from CDK context, falling back to the defaults.

        Raises ConfigurationError when a value cannot be coerced or the
        resulting network is invalid.
        """
        defaults = cls()
        kwargs: dict[str, Any] = {}

        def get(key: str) -> Any:
            return node.try_get_context(key)

        if (cidr := get("vpc_cidr")) is not None:
            kwargs["cidr"] = str(cidr)
        if (max_azs := get("max_azs")) is not None:
            kwargs["max_azs"] = _as_int("max_azs", max_azs)
        if (nat_gateways := get("nat_gateways")) is not None:
            kwargs["nat_gateways"] = _as_int("nat_gateways", nat_gateways)
        if (tiers := get("subnet_tiers")) is not None:
            tiers = _as_json("subnet_tiers", tiers)
            if not isinstance(tiers, list):
                raise ConfigurationError(
                    f"subnet_tiers must be a list of tiers, got {tiers!r}", field="subnet_tiers"
                )
            kwargs["subnet_tiers"] = tuple(SubnetTier.from_dict(tier) for tier in tiers)

        for key in (
            "log_bucket_id",
            "flow_log_prefix",
            "flow_log_name",
            "vpc_export_name",
            "security_group_export_name",
            "export_ssm_prefix",
        ):
            if (value := get(key)) is not None:
                kwargs[key] = str(value)

        for key in ("archive_after_days", "deep_archive_after_days"):
            if (value := get(key)) is not None:
                kwargs[key] = _as_int(key, value)

        if (endpoints := get("gateway_endpoints")) is not None:
            kwargs["gateway_endpoints"] = tuple(str(e).lower() for e in _as_list(endpoints))
        if (restrict := get("restrict_default_security_group")) is not None:
            kwargs["restrict_default_security_group"] = as_bool(restrict)
        if (tags := get("tags")) is not None:
            tags = _as_json("tags", tags)
            try:
                kwargs["tags"] = {str(k): str(v) for k, v in dict(tags).items()}
            except (TypeError, ValueError) as exc:
                raise ConfigurationError(
                    f"tags must be a mapping of tag names to values, got {tags!r}", field="tags"
                ) from exc

        config = replace(defaults, **kwargs)
        config.validate()
        return config

    @property
    def network(self) -> ipaddress.IPv4Network:
        return ipaddress.IPv4Network(self.cidr, strict=True)

    @property
    def flow_log_grant_pattern(self) -> str:
        """Object key pattern the flow-log role may write to."""
        return f"{self.flow_log_prefix}*"

    @property
    def private_tiers_without_egress(self) -> list[str]:
        """Private tiers declared isolated because there are no NAT gateways."""
        if self.nat_gateways != 0:
            return []
        return [t.name for t in self.subnet_tiers if t.subnet_type == "private"]

    def expected_subnet_count(self, zones: int | None = None) -> int:
        return len(self.subnet_tiers) * (zones if zones is not None else self.max_azs)

    def validate(self) -> None:
        """Check the configuration, raising ConfigurationError on the first problem."""
        self._validate_network()
        self._validate_tiers()
        self._validate_flow_logs()

        unknown = [e for e in self.gateway_endpoints if e not in GATEWAY_ENDPOINT_SERVICES]
        if unknown:
            raise ConfigurationError(
                f"Unknown gateway endpoint service(s): {', '.join(unknown)}. "
                f"Supported: {', '.join(sorted(GATEWAY_ENDPOINT_SERVICES))}",
                field="gateway_endpoints",
            )

    def _validate_network(self) -> None:
        try:
            network = self.network
        except ValueError as exc:
            raise ConfigurationError(f"Invalid VPC CIDR {self.cidr!r}: {exc}", field="vpc_cidr") from exc

        if not MIN_CIDR_MASK <= network.prefixlen <= MAX_CIDR_MASK:
            raise ConfigurationError(
                f"VPC CIDR prefix must be between /{MIN_CIDR_MASK} and /{MAX_CIDR_MASK}",
                field="vpc_cidr",
            )

        if self.max_azs < 1:
            raise ConfigurationError("max_azs must be at least 1", field="max_azs")

        if self.nat_gateways is not None:
            if self.nat_gateways < 0:
                raise ConfigurationError("nat_gateways cannot be negative", field="nat_gateways")
            if self.nat_gateways > self.max_azs:
                raise ConfigurationError(
                    f"nat_gateways ({self.nat_gateways}) exceeds the number of "
                    f"availability zones ({self.max_azs})",
                    field="nat_gateways",
                )

    def _validate_tiers(self) -> None:
        if not self.subnet_tiers:
            raise ConfigurationError("At least one subnet tier is required", field="subnet_tiers")

        names = [tier.name for tier in self.subnet_tiers]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ConfigurationError(
                f"Duplicate subnet tier name(s): {', '.join(duplicates)}", field="subnet_tiers"
            )

        prefixlen = self.network.prefixlen
        for tier in self.subnet_tiers:
            if not tier.name:
                raise ConfigurationError("Subnet tier names cannot be empty", field="subnet_tiers")
            if tier.subnet_type not in SUBNET_TYPES:
                raise ConfigurationError(
                    f"Subnet tier {tier.name!r} has unknown type {tier.subnet_type!r}",
                    field="subnet_tiers",
                )
            if not MIN_CIDR_MASK <= tier.cidr_mask <= MAX_CIDR_MASK:
                raise ConfigurationError(
                    f"Subnet tier {tier.name!r} mask /{tier.cidr_mask} is outside "
                    f"/{MIN_CIDR_MASK}../{MAX_CIDR_MASK}",
                    field="subnet_tiers",
                )
            if tier.cidr_mask <= prefixlen:
                raise ConfigurationError(
                    f"Subnet tier {tier.name!r} mask /{tier.cidr_mask} must be longer "
                    f"than the VPC prefix /{prefixlen}",
                    field="subnet_tiers",
                )

        # Mirror the CDK allocator: tier by tier, one subnet per zone, each
        # aligned up to its own mask boundary
        network = self.network
        next_address = int(network.network_address)
        end_address = int(network.broadcast_address) + 1
        for tier in self.subnet_tiers:
            size = 2 ** (32 - tier.cidr_mask)
            for _ in range(self.max_azs):
                start = -(-next_address // size) * size
                if start + size > end_address:
                    raise ConfigurationError(
                        f"{self.expected_subnet_count()} subnets do not fit in {self.cidr}: "
                        f"no room left for a /{tier.cidr_mask} of tier {tier.name!r}",
                        field="subnet_tiers",
                    )
                next_address = start + size

        if self.nat_gateways != 0 and any(t.subnet_type == "private" for t in self.subnet_tiers):
            if not any(t.subnet_type == "public" for t in self.subnet_tiers):
                raise ConfigurationError(
                    "Private subnet tiers route through NAT gateways, which need a public tier",
                    field="subnet_tiers",
                )

    def _validate_flow_logs(self) -> None:
        prefix = self.flow_log_prefix
        if not prefix or prefix.startswith("/") or not prefix.endswith("/"):
            raise ConfigurationError(
                f"flow_log_prefix must be a relative key prefix ending in '/', got {prefix!r}",
                field="flow_log_prefix",
            )
        if "*" in prefix:
            raise ConfigurationError("flow_log_prefix cannot contain wildcards", field="flow_log_prefix")

        if self.archive_after_days < MIN_ARCHIVE_ACCESS_DAYS:
            raise ConfigurationError(
                f"archive_after_days must be at least {MIN_ARCHIVE_ACCESS_DAYS}",
                field="archive_after_days",
            )
        if self.deep_archive_after_days < MIN_DEEP_ARCHIVE_ACCESS_DAYS:
            raise ConfigurationError(
                f"deep_archive_after_days must be at least {MIN_DEEP_ARCHIVE_ACCESS_DAYS}",
                field="deep_archive_after_days",
            )
        if self.deep_archive_after_days <= self.archive_after_days:
            raise ConfigurationError(
                "deep_archive_after_days must be greater than archive_after_days",
                field="deep_archive_after_days",
            )
