"""
Map-side (broadcast) join.

The broadcast side is indexed in memory on every worker and the streamed side
probes it record by record.
"""

from mapside.join.coordinator import Coordinator, PartitionAssignment
from mapside.join.gate import ExecutionCapabilityGate
from mapside.join.index import BroadcastIndex
from mapside.join.mapside_join import JoinedDataSource, MapsideJoin, mapside_join
from mapside.join.probe import JoinedRow, JoinProbeOperator
from mapside.join.worker import join_worker

__all__ = [
    "BroadcastIndex",
    "JoinProbeOperator",
    "JoinedRow",
    "ExecutionCapabilityGate",
    "Coordinator",
    "PartitionAssignment",
    "join_worker",
    "JoinedDataSource",
    "MapsideJoin",
    "mapside_join",
]
