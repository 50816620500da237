"""
Execution environments.

ModalEnvironment lives in mapside.execution.modal_env and is not imported
here, so that modal is only needed when it is used.
"""

from mapside.execution.environment import (
    BroadcastHandle,
    ExecutionEnvironment,
    InMemoryEnvironment,
    ThreadPoolEnvironment,
)

__all__ = [
    "BroadcastHandle",
    "ExecutionEnvironment",
    "InMemoryEnvironment",
    "ThreadPoolEnvironment",
]
