"""
Partition assignment for the streamed side of a join.

Assigns left-hand partitions to workers; each worker builds its own copy of
the broadcast index and probes it with the partitions it was given.
"""

import random
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from mapside.dataset.keyed import KeyedDataset


class PartitionAssignment:
    """Assignment of partitions to a worker."""

    def __init__(self, worker_id: str, partition_indices: list[int]):
        self.worker_id = worker_id
        self.partition_indices = partition_indices

    def __repr__(self) -> str:
        return (
            f"PartitionAssignment(worker_id={self.worker_id!r}, "
            f"partition_indices={self.partition_indices})"
        )


class Coordinator:
    """
    Partition assignment coordinator.

    Shuffles partitions before dealing them out so that large neighbouring
    partitions do not all land on the same worker.
    """

    def __init__(self, dataset: "KeyedDataset", n_workers: int):
        """
        Initialize coordinator.

        Args:
            dataset: Streamed dataset to get partition count from
            n_workers: Number of workers to assign partitions to
        """
        if n_workers < 1:
            raise ValueError(f"n_workers must be positive, got {n_workers}")
        self.dataset = dataset
        self.n_workers = n_workers
        self.total_partitions = dataset.partition_count

    def assign_partitions(self, seed: int = 42) -> dict[str, PartitionAssignment]:
        """
        Randomly assign partitions to workers.

        Args:
            seed: Random seed for partition shuffling

        Returns:
            Dictionary mapping worker_id -> PartitionAssignment. Workers left
            without partitions are still listed, with an empty assignment.
        """
        partition_indices = list(range(self.total_partitions))
        random.Random(seed).shuffle(partition_indices)

        partitions_per_worker, remainder = divmod(self.total_partitions, self.n_workers)

        assignments = {}
        start_idx = 0

        for worker_idx in range(self.n_workers):
            worker_id = f"worker_{worker_idx}"

            # Distribute remainder partitions across first workers
            worker_partition_count = partitions_per_worker
            if worker_idx < remainder:
                worker_partition_count += 1

            end_idx = start_idx + worker_partition_count
            assignments[worker_id] = PartitionAssignment(
                worker_id=worker_id,
                partition_indices=partition_indices[start_idx:end_idx],
            )
            start_idx = end_idx

        return assignments
