"""
Error kinds raised by the map-side join.

Only an unmatched key is a normal outcome; every other failure surfaces as one
of these exceptions and fails the enclosing job.
"""


class MapsideError(Exception):
    """Base class for all map-side join errors."""


class UnsupportedExecutionEnvironment(MapsideError):
    """The execution environment cannot distribute a broadcast side input."""

    def __init__(self, operation: str, environment: str, capability: str):
        self.operation = operation
        self.environment = environment
        self.capability = capability
        super().__init__(
            f"{operation} requires the '{capability}' capability, "
            f"which the '{environment}' execution environment does not provide"
        )


class ResourceExhausted(MapsideError):
    """The broadcast side does not fit in worker memory. Never retried."""


class UpstreamReadFailure(MapsideError):
    """Reading a partition of an input dataset failed."""

    def __init__(self, message: str, partition_index: int | None = None):
        self.partition_index = partition_index
        super().__init__(message)


class JoinCancelled(MapsideError):
    """The enclosing job was aborted while a worker task was running."""
