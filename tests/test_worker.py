"""
Unit tests for the join worker task.

Tests focus on index construction, partition streaming and metrics.
"""

from unittest.mock import patch

import pytest
from conftest import CUSTOMERS, EXPECTED_JOIN, RecordingDataSource

from mapside.dataset.keyed import KeyedDataset
from mapside.errors import JoinCancelled, ResourceExhausted
from mapside.execution.environment import ThreadPoolEnvironment
from mapside.join.index import serialize_frame
from mapside.join.worker import join_worker


@pytest.fixture
def environment():
    return ThreadPoolEnvironment(n_workers=2)


@pytest.fixture
def orders_handle(environment, orders):
    return environment.broadcast(serialize_frame(orders.to_frame()))


def run_worker(environment, handle, left, partition_indices, **kwargs):
    return join_worker(
        worker_id="worker_0",
        partition_indices=partition_indices,
        left=left,
        handle=handle,
        environment=environment,
        right_key_column="key",
        right_value_column="value",
        **kwargs,
    )


class TestJoinWorker:
    """Test cases for join_worker()."""

    def test_joins_assigned_partitions(self, environment, orders_handle, customers):
        result = run_worker(environment, orders_handle, customers, [0])

        assert result["worker_id"] == "worker_0"
        assert result["status"] == "completed"
        assert result["partitions"][0].rows() == EXPECTED_JOIN
        assert result["records_probed"] == 3
        assert result["rows_emitted"] == 4

    def test_only_reads_assigned_partitions(self, environment, orders_handle):
        source = RecordingDataSource([[(111, "a")], [(222, "b")], [(333, "c")]])

        result = run_worker(environment, orders_handle, KeyedDataset(source), [2, 0])

        assert source.reads == [2, 0]
        assert set(result["partitions"]) == {0, 2}

    def test_partition_without_matches_is_absent(self, environment, orders_handle):
        left = KeyedDataset.from_pairs([(999, "Nobody")])

        result = run_worker(environment, orders_handle, left, [0])

        assert result["partitions"] == {}
        assert result["records_probed"] == 1
        assert result["rows_emitted"] == 0

    def test_left_from_config(self, environment, orders_handle, customers):
        """Test remote workers rebuild the streamed dataset from its config."""
        result = run_worker(environment, orders_handle, customers.to_config(), [0])

        assert result["partitions"][0].rows() == EXPECTED_JOIN

    def test_cancelled_before_index_build(self, environment, orders_handle, customers):
        """Test a cancelled job never builds an index or reads the left side."""
        source = RecordingDataSource([CUSTOMERS])

        with pytest.raises(JoinCancelled):
            run_worker(
                environment,
                orders_handle,
                KeyedDataset(source),
                [0],
                should_stop=lambda: True,
            )
        assert source.reads == []

    def test_broadcast_side_too_large(self, environment, orders_handle, customers):
        """Test running out of memory decoding the payload is ResourceExhausted."""
        source = RecordingDataSource([CUSTOMERS])

        with patch("mapside.join.index.deserialize_frame", side_effect=MemoryError):
            with pytest.raises(ResourceExhausted):
                run_worker(environment, orders_handle, KeyedDataset(source), [0])
        assert source.reads == []

    def test_empty_broadcast_side(self, environment, customers):
        handle = environment.broadcast(
            serialize_frame(KeyedDataset.from_pairs([]).to_frame())
        )

        result = run_worker(environment, handle, customers, [0])

        assert result["partitions"] == {}
        assert result["rows_emitted"] == 0

    def test_index_built_once_per_worker(self, environment, orders_handle, monkeypatch):
        """Test the broadcast payload is fetched once for many partitions."""
        left = KeyedDataset.from_pairs(CUSTOMERS * 4, n_partitions=4)
        fetches = []
        original_fetch = environment.fetch

        def counting_fetch(handle):
            fetches.append(handle.handle_id)
            return original_fetch(handle)

        monkeypatch.setattr(environment, "fetch", counting_fetch)

        result = run_worker(environment, orders_handle, left, [0, 1, 2, 3])

        assert len(fetches) == 1
        assert result["rows_emitted"] == 4 * 4
