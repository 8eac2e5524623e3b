"""Error taxonomy for vpcctl."""

from typing import List, Optional


class VpcctlError(Exception):
    """Base exception class for vpcctl."""
    pass


class InvalidInput(VpcctlError):
    """Raised when input validation fails, before any mutation."""
    pass


class InvalidCidr(InvalidInput):
    """Raised when a CIDR is malformed or out of range."""
    pass


class NotFound(VpcctlError):
    """Raised when a referenced resource doesn't exist."""
    pass


class VpcNotFound(NotFound):
    def __init__(self, name: str):
        super().__init__(f"VPC '{name}' does not exist")
        self.name = name


class SubnetNotFound(NotFound):
    def __init__(self, vpc_name: str, subnet_type: str, available: Optional[List[str]] = None):
        message = f"Subnet '{subnet_type}' does not exist in VPC '{vpc_name}'"
        if available is not None:
            message += f" (available: {', '.join(available) or 'none'})"
        super().__init__(message)
        self.vpc_name = vpc_name
        self.subnet_type = subnet_type
        self.available = available or []


class AlreadyExists(VpcctlError):
    """Raised when creating something that already exists. Callers treat it as a no-op."""
    pass


class VpcAlreadyExists(AlreadyExists):
    def __init__(self, name: str):
        super().__init__(f"VPC '{name}' already exists")
        self.name = name


class AlreadyPeered(AlreadyExists):
    def __init__(self, vpc1: str, vpc2: str):
        super().__init__(f"VPCs '{vpc1}' and '{vpc2}' are already peered")
        self.vpcs = (vpc1, vpc2)


class ResourceProviderError(VpcctlError):
    """Raised when a kernel-level create/delete call fails."""

    def __init__(self, message: str, command: Optional[List[str]] = None,
                 returncode: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.command = command or []
        self.returncode = returncode
        self.stderr = stderr


class StepFailed(ResourceProviderError):
    """A provider failure annotated with the orchestration step it interrupted."""

    def __init__(self, step: str, cause: ResourceProviderError):
        super().__init__(
            f"Step '{step}' failed: {cause}",
            command=cause.command,
            returncode=cause.returncode,
            stderr=cause.stderr,
        )
        self.step = step
        self.cause = cause


class StateInconsistency(VpcctlError):
    """Recorded state and live kernel state disagree."""

    def __init__(self, message: str, expected=None, found=None):
        super().__init__(message)
        self.expected = expected
        self.found = found

    def details(self) -> dict:
        return {"expected": self.expected, "found": self.found}
