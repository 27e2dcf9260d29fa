"""Template helpers shared by the stack tests."""

from typing import Any

import aws_cdk as cdk


def logical_id(stack: cdk.Stack, construct) -> str:
    """Logical ID of an L2 construct's CloudFormation resource."""
    return stack.get_logical_id(construct.node.default_child)


def resources_of_type(template_json: dict[str, Any], resource_type: str) -> dict[str, dict]:
    return {
        key: resource
        for key, resource in template_json["Resources"].items()
        if resource["Type"] == resource_type
    }
