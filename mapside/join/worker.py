"""
Worker task for the map-side join.

One call handles every left partition assigned to one worker: it builds the
broadcast index once, then streams those partitions through the probe.
"""

from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import polars as pl
from loguru import logger

from mapside.dataset.keyed import KeyedDataset
from mapside.errors import JoinCancelled
from mapside.join.index import BroadcastIndex
from mapside.join.probe import JoinProbeOperator

if TYPE_CHECKING:
    from mapside.execution.environment import BroadcastHandle, ExecutionEnvironment


def join_worker(
    worker_id: str,
    partition_indices: list[int],
    left: KeyedDataset | dict[str, Any],
    handle: "BroadcastHandle",
    environment: "ExecutionEnvironment",
    right_key_column: str,
    right_value_column: str,
    should_stop: Callable[[], bool] | None = None,
) -> dict[str, Any]:
    """
    Join the assigned left partitions against the broadcast side.

    Args:
        worker_id: Unique identifier for this worker
        partition_indices: Left partitions assigned to this worker
        left: Streamed dataset, or its config when running remotely
        handle: Broadcast handle of the right-hand dataset
        environment: Environment that registered handle
        right_key_column: Key column of the broadcast payload
        right_value_column: Value column of the broadcast payload
        should_stop: Optional callable; when it returns True the task aborts

    Returns:
        Dictionary with joined frames per partition and worker metrics

    Raises:
        JoinCancelled: If should_stop() returned True
        UpstreamReadFailure: If a left partition could not be read
        ResourceExhausted: If the broadcast side does not fit in memory
    """

    def check_cancelled() -> None:
        if should_stop is not None and should_stop():
            raise JoinCancelled(f"[{worker_id}] cancelled")

    if isinstance(left, dict):
        left = KeyedDataset.from_config(left)

    check_cancelled()

    # Index construction is a barrier: no probe starts before it completes
    index = BroadcastIndex.from_payload(
        environment.fetch(handle),
        right_key_column,
        right_value_column,
        should_stop=should_stop,
    )
    logger.debug(f"[{worker_id}] Built {index} from {handle.handle_id}")

    operator = JoinProbeOperator(index, right_dtype=index.value_dtype)

    partitions: dict[int, pl.DataFrame] = {}
    for partition_idx in partition_indices:
        joined_batches = []
        for batch in left.iter_partition(partition_idx):
            check_cancelled()
            joined = operator.apply(batch, left.schema)
            if len(joined) > 0:
                joined_batches.append(joined)

        if joined_batches:
            partitions[partition_idx] = pl.concat(joined_batches, how="vertical")
        logger.debug(
            f"[{worker_id}] Partition {partition_idx}: "
            f"{sum(len(batch) for batch in joined_batches)} rows"
        )

    return {
        "worker_id": worker_id,
        "partitions": partitions,
        "records_probed": operator.records_probed,
        "rows_emitted": operator.rows_emitted,
        "status": "completed",
    }
