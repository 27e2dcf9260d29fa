#!/usr/bin/env python3
"""
AWS CDK app entry point for the shared VPC.

Declares VpcSetupStack (and SharedExportStack when export_ssm_prefix is set),
synthesizes the cloud assembly, then checks the synthesized template against
the network policy invariants. Any configuration or policy failure exits
with status 1 before the CDK CLI gets to deploy anything.
"""

import sys

import aws_cdk as cdk

from stacks.config import VpcSetupConfig, as_bool
from stacks.exceptions import VpcSetupError
from stacks.logging import bind_contextvars, configure_logging, get_logger
from stacks.shared_export_stack import SharedExportStack
from stacks.validation import assert_template_compliant
from stacks.vpc_setup_stack import VpcSetupStack


def main(app: cdk.App | None = None) -> int:
    app = app or cdk.App()

    configure_logging(
        json_format=as_bool(app.node.try_get_context("log_json")),
        log_level=app.node.try_get_context("log_level") or "INFO",
    )
    logger = get_logger("app")

    # Environment configuration
    env = cdk.Environment(
        account=app.node.try_get_context("account"),
        region=app.node.try_get_context("region") or "us-east-1",
    )
    stack_name = app.node.try_get_context("stack_name") or "VpcSetupStack"
    bind_contextvars(region=env.region, stack_name=stack_name)

    try:
        config = VpcSetupConfig.from_context(app.node)

        network = VpcSetupStack(app, stack_name, config=config, env=env)

        if config.export_ssm_prefix:
            SharedExportStack(
                app,
                f"{stack_name}SharedExport",
                prefix=config.export_ssm_prefix,
                vpc=network.vpc,
                security_group=network.shared_security_group,
                env=env,
            )

        assembly = app.synth()

        assert_template_compliant(
            assembly.get_stack_by_name(network.stack_name).template,
            flow_log_prefix=config.flow_log_prefix,
            expected_subnets=config.expected_subnet_count(len(network.vpc.availability_zones)),
        )
    except VpcSetupError as exc:
        logger.error("synth_failed", error=str(exc), error_type=type(exc).__name__)
        return 1

    logger.info("synth_completed", stacks=[s.stack_name for s in assembly.stacks])
    return 0


if __name__ == "__main__":
    sys.exit(main())
