"""CDK stacks for the shared VPC."""

from .infra_resolver import SharedNetworkResolver
from .shared_export_stack import SharedExportStack
from .vpc_setup_stack import VpcSetupStack

__all__ = [
    "SharedExportStack",
    "SharedNetworkResolver",
    "VpcSetupStack",
]
