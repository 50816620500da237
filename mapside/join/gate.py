"""
Execution capability check for the map-side join.

Runs once, synchronously, when a join is constructed, so a pipeline that
targets an environment without broadcast distribution fails before any data
is read instead of partway through the join.
"""

from typing import TYPE_CHECKING

from loguru import logger

from mapside.errors import UnsupportedExecutionEnvironment

if TYPE_CHECKING:
    from mapside.execution.environment import ExecutionEnvironment

BROADCAST_CAPABILITY = "broadcast"


class ExecutionCapabilityGate:
    """Rejects execution environments that cannot broadcast a side input."""

    capability = BROADCAST_CAPABILITY

    @classmethod
    def check(
        cls,
        environment: "ExecutionEnvironment",
        operation: str = "MapsideJoin.join",
    ) -> None:
        """
        Verify that environment can push a read-only side input to every worker.

        Args:
            environment: Handle to the active execution environment
            operation: Name of the operation being constructed, for the error

        Raises:
            UnsupportedExecutionEnvironment: If the environment has no
                broadcast primitive
        """
        if getattr(environment, "supports_broadcast", False):
            return

        name = getattr(environment, "name", type(environment).__name__)
        logger.error(f"{operation} rejected: '{name}' has no {cls.capability} support")
        raise UnsupportedExecutionEnvironment(
            operation=operation, environment=name, capability=cls.capability
        )
