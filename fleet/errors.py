"""
Fleet error taxonomy.
Library exceptions (asyncssh, OSError, timeouts) are translated into these
at the executor boundary; everything above it only sees FleetError.
"""

from __future__ import annotations
from typing import Optional


class FleetError(Exception):
    """Base class for all fleet failures."""


class HostConnectionError(FleetError):
    """Cannot reach or authenticate to the fleet host. Retryable."""


class SessionResetError(HostConnectionError):
    """Remote session dropped while a command was in flight."""


class CommandError(FleetError):
    """Remote command reported failure."""

    def __init__(self, label: str, stderr: str = "", stdout: str = ""):
        self.label = label
        self.stderr = stderr
        self.stdout = stdout
        detail = (stderr or stdout).strip()
        super().__init__(f"{label} failed: {detail}" if detail else f"{label} failed")


class CapacityExceeded(FleetError):
    """No free slot left in the pool."""

    def __init__(self, occupancy: int, max_instances: int):
        self.occupancy = occupancy
        self.max_instances = max_instances
        super().__init__(f"Pool full: {occupancy}/{max_instances} slots active")


class AllocationError(FleetError):
    """Staging or starting a workload failed."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(f"{message}: {cause}" if cause else message)


class ValidationError(FleetError):
    """Request is missing required fields or carries unsafe values."""
