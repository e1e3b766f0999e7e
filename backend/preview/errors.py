"""
Provisioning Errors

Exception taxonomy raised inside a provisioning run. The orchestrator converts
every one of these into a terminal Failed state at its outer boundary.
"""

from __future__ import annotations
from typing import Optional

from .models import FailureKind


def describe_duration(ms: int) -> str:
    """Human readable bound, e.g. 120000 -> '2 minutes'"""
    if ms >= 60000 and ms % 60000 == 0:
        minutes = ms // 60000
        return f"{minutes} minute" if minutes == 1 else f"{minutes} minutes"
    seconds = ms / 1000
    if seconds == int(seconds):
        seconds = int(seconds)
    return f"{seconds} second" if seconds == 1 else f"{seconds} seconds"


class ProvisioningError(Exception):
    """Base class for classified provisioning failures"""
    kind: FailureKind = FailureKind.UNKNOWN_FAILURE

    def __init__(self, message: str, kind: Optional[FailureKind] = None):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind


class EnvironmentUnsupported(ProvisioningError):
    """The sandbox needs a secure context (https or localhost) and there is none"""
    kind = FailureKind.ENVIRONMENT_UNSUPPORTED


class CapabilityError(ProvisioningError):
    """The sandbox capability rejected a request"""
    kind = FailureKind.CAPABILITY_ERROR


class BootError(CapabilityError):
    pass


class MountError(CapabilityError):
    pass


class SpawnError(CapabilityError):
    pass


class InstallTimeout(ProvisioningError):
    kind = FailureKind.INSTALL_TIMEOUT

    def __init__(self, bound_ms: int):
        super().__init__(f"Installation timed out after {describe_duration(bound_ms)}")
        self.bound_ms = bound_ms


class InstallFailed(ProvisioningError):
    kind = FailureKind.INSTALL_FAILED

    def __init__(self, exit_code: int, output: str):
        super().__init__(f"Installation failed with code {exit_code}")
        self.exit_code = exit_code
        self.output = output


class ReadinessTimeout(ProvisioningError):
    kind = FailureKind.READINESS_TIMEOUT

    def __init__(self, bound_ms: int):
        super().__init__(
            f"Development server did not become ready in time ({describe_duration(bound_ms)})"
        )
        self.bound_ms = bound_ms


class UnknownFailure(ProvisioningError):
    kind = FailureKind.UNKNOWN_FAILURE
