"""
Map-side (broadcast) inner equi-join.

The second argument of join() is the broadcast side: it is materialized in
full, shipped to every worker and indexed there. The first argument is
streamed partition by partition and never needs to fit in memory.
"""

import threading
from collections.abc import Iterator
from typing import Any

import polars as pl
from loguru import logger

from mapside.dataset.data_source import DataSource
from mapside.dataset.keyed import KeyedDataset
from mapside.errors import JoinCancelled, MapsideError, ResourceExhausted
from mapside.execution.environment import ExecutionEnvironment
from mapside.join.coordinator import Coordinator
from mapside.join.gate import ExecutionCapabilityGate
from mapside.join.index import check_memory_limit, serialize_frame
from mapside.join.probe import joined_schema
from mapside.join.worker import join_worker


class JoinedDataSource(DataSource):
    """
    Lazy output of a map-side join.

    Has one partition per left partition. The join job runs the first time
    any partition is read and its result is reused afterwards. Failures of
    the job propagate as raised, not as read failures of this source.

    A joined dataset lives on the driver that ran its job, so chained joins
    (a joined dataset as the streamed side of another join) run on local
    environments only.
    """

    reads_upstream = False

    def __init__(self, mapside_join: "MapsideJoin", left: KeyedDataset, right: KeyedDataset):
        self.mapside_join = mapside_join
        self.left = left
        self.right = right
        output = joined_schema(left.schema)
        self.key_column = output.key_column
        self.value_column = output.value_column
        self._partitions: dict[int, pl.DataFrame] | None = None
        self._lock = threading.Lock()

    def get_partition_count(self) -> int:
        return self.left.partition_count

    def collect(self) -> dict[int, pl.DataFrame]:
        """Run the join (once) and return joined frames by left partition."""
        with self._lock:
            if self._partitions is None:
                self._partitions = self.mapside_join.execute(self.left, self.right)
        return self._partitions

    def create_reader(
        self, partition_index: int, batch_size: int
    ) -> Iterator[pl.DataFrame]:
        self._check_partition_index(partition_index)
        frame = self.collect().get(partition_index)
        if frame is not None:
            yield from frame.iter_slices(n_rows=batch_size)

    def to_config(self) -> dict[str, Any]:
        raise MapsideError(
            f"join({self.left.name}, {self.right.name}) cannot be rebuilt on a "
            "remote worker; stream it on a local environment or write it out "
            "and join the written copy"
        )


class MapsideJoin:
    """
    Broadcast join operator, constructed once per pipeline stage.

    Example:
        >>> env = ThreadPoolEnvironment(n_workers=4)
        >>> joined = MapsideJoin(env).join(customers, orders)
        >>> for key, (customer, order) in joined:
        ...     print(key, customer, order)
    """

    def __init__(
        self,
        environment: ExecutionEnvironment,
        n_workers: int | None = None,
        batch_size: int = 65536,
        broadcast_memory_limit: int | None = None,
        seed: int = 42,
    ):
        """
        Initialize the join operator.

        Args:
            environment: Execution environment the join runs on
            n_workers: Number of worker tasks (defaults to the environment's
                n_workers, or 1)
            batch_size: Rows per batch when reading the joined output
            broadcast_memory_limit: Byte budget for the materialized broadcast
                side; None leaves the memory-fit precondition to the caller
            seed: Seed for assigning left partitions to workers
        """
        self.environment = environment
        self.n_workers = n_workers or getattr(environment, "n_workers", 1)
        self.batch_size = batch_size
        self.broadcast_memory_limit = broadcast_memory_limit
        self.seed = seed

    def join(self, left: KeyedDataset, right: KeyedDataset) -> KeyedDataset:
        """
        Inner-join left against right on key equality.

        Args:
            left: Streamed side
            right: Broadcast side; must fit in a single worker's memory

        Returns:
            Lazy KeyedDataset of (key, (left_value, right_value))

        Raises:
            UnsupportedExecutionEnvironment: Immediately, before either side is
                read, if the environment cannot broadcast
        """
        ExecutionCapabilityGate.check(self.environment, operation="MapsideJoin.join")

        return KeyedDataset(
            JoinedDataSource(self, left, right),
            schema=joined_schema(left.schema),
            batch_size=self.batch_size,
            name=f"join({left.name}, {right.name})",
        )

    def materialize_broadcast_side(self, right: KeyedDataset) -> pl.DataFrame:
        """Read the whole broadcast side into one frame, in read order."""
        try:
            frame = right.to_frame()
        except MemoryError as e:
            raise ResourceExhausted(
                f"Broadcast side {right.name} does not fit in memory"
            ) from e
        return frame.select([right.schema.key_column, right.schema.value_column])

    def execute(
        self, left: KeyedDataset, right: KeyedDataset
    ) -> dict[int, pl.DataFrame]:
        """
        Run the join job on the environment.

        Returns:
            Joined frames by left partition index; partitions without output
            rows are absent
        """
        try:
            return self._execute(left, right)
        finally:
            self.environment.reset()

    def _check_cancelled(self) -> None:
        if self.environment.cancelled:
            logger.warning(f"Join on {self.environment.name} was cancelled")
            raise JoinCancelled("Job was cancelled")

    def _execute(
        self, left: KeyedDataset, right: KeyedDataset
    ) -> dict[int, pl.DataFrame]:
        left_arg: KeyedDataset | dict[str, Any] = (
            left.to_config() if self.environment.remote else left
        )

        right_frame = self.materialize_broadcast_side(right)
        check_memory_limit(right_frame, self.broadcast_memory_limit)
        self._check_cancelled()

        handle = self.environment.broadcast(serialize_frame(right_frame))
        logger.info(
            f"Broadcast {right.name}: {len(right_frame)} rows, "
            f"{handle.size_bytes} bytes on {self.environment.name}"
        )
        right_key_column = right.schema.key_column
        right_value_column = right.schema.value_column
        del right_frame

        try:
            assignments = Coordinator(left, self.n_workers).assign_partitions(
                seed=self.seed
            )
            tasks = [
                {
                    "worker_id": assignment.worker_id,
                    "partition_indices": assignment.partition_indices,
                    "left": left_arg,
                    "handle": handle,
                    "environment": self.environment,
                    "right_key_column": right_key_column,
                    "right_value_column": right_value_column,
                }
                for assignment in assignments.values()
                if assignment.partition_indices
            ]
            logger.info(
                f"Streaming {left.partition_count} partitions of {left.name} "
                f"across {len(tasks)} workers"
            )
            self._check_cancelled()
            results = self.environment.run_tasks(join_worker, tasks)
        finally:
            self.environment.release(handle)

        partitions: dict[int, pl.DataFrame] = {}
        for result in results:
            partitions.update(result["partitions"])

        logger.info(
            f"Join complete: {sum(r['records_probed'] for r in results)} records "
            f"probed, {sum(r['rows_emitted'] for r in results)} rows emitted"
        )
        return partitions


def mapside_join(
    left: KeyedDataset,
    right: KeyedDataset,
    environment: ExecutionEnvironment,
    **kwargs: Any,
) -> KeyedDataset:
    """Convenience wrapper: MapsideJoin(environment, **kwargs).join(left, right)."""
    return MapsideJoin(environment, **kwargs).join(left, right)
