try:
    from importlib.metadata import version

    __version__ = version("mapside")
except ImportError:
    __version__ = "unknown"

from mapside.dataset import KeyedDataset, KeySchema
from mapside.errors import (
    JoinCancelled,
    MapsideError,
    ResourceExhausted,
    UnsupportedExecutionEnvironment,
    UpstreamReadFailure,
)
from mapside.execution import InMemoryEnvironment, ThreadPoolEnvironment
from mapside.join import MapsideJoin, mapside_join


def get_modal_environment():
    """Get ModalEnvironment (lazy import)"""
    from mapside.execution.modal_env import ModalEnvironment

    return ModalEnvironment


__all__ = [
    "KeyedDataset",
    "KeySchema",
    "MapsideJoin",
    "mapside_join",
    "InMemoryEnvironment",
    "ThreadPoolEnvironment",
    "get_modal_environment",
    "MapsideError",
    "UnsupportedExecutionEnvironment",
    "ResourceExhausted",
    "UpstreamReadFailure",
    "JoinCancelled",
]
