"""
Shared pytest fixtures for stack tests.

Stacks are synthesized in-process and asserted with aws_cdk.assertions,
nothing is deployed. Synthesis needs the jsii runtime (Node.js) on PATH.

Example usage:

    def test_something(template):
        template.resource_count_is("AWS::EC2::Subnet", 6)

    def test_variant(make_stack):
        stack = make_stack(VpcSetupConfig(max_azs=1))
"""

from collections.abc import Callable
from typing import Any

import aws_cdk as cdk
import pytest
from aws_cdk.assertions import Template

from stacks.config import VpcSetupConfig
from stacks.logging import clear_contextvars
from stacks.vpc_setup_stack import VpcSetupStack


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Keep structlog context from leaking between tests."""
    clear_contextvars()
    yield
    clear_contextvars()


@pytest.fixture
def config() -> VpcSetupConfig:
    """Default configuration: three tiers in two zones."""
    return VpcSetupConfig()


@pytest.fixture
def make_stack() -> Callable[..., VpcSetupStack]:
    """Factory building a VpcSetupStack in a fresh app."""

    def _make(config: VpcSetupConfig | None = None, context: dict[str, Any] | None = None):
        app = cdk.App(context=context)
        return VpcSetupStack(app, "TestVpcSetup", config=config)

    return _make


@pytest.fixture
def stack(make_stack, config) -> VpcSetupStack:
    return make_stack(config)


@pytest.fixture
def template(stack) -> Template:
    return Template.from_stack(stack)


@pytest.fixture
def template_json(template) -> dict[str, Any]:
    return template.to_json()
