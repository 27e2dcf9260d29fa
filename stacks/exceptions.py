"""VPC setup exceptions."""


class VpcSetupError(Exception):
    """Base exception for VPC setup errors."""

    pass


class ConfigurationError(VpcSetupError):
    """Raised when the CDK context describes an invalid network."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class PolicyViolationError(VpcSetupError):
    """Raised when a synthesized template breaks a network policy invariant."""

    def __init__(self, message: str, violations: list | None = None):
        super().__init__(message)
        self.violations = violations or []
