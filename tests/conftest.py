from collections.abc import Iterator
from pathlib import Path

import polars as pl
import pytest

from mapside.dataset.data_source import DataSource
from mapside.dataset.keyed import KeyedDataset

CUSTOMERS = [
    (111, "John Doe"),
    (222, "Jane Doe"),
    (333, "Someone Else"),
]

ORDERS = [
    (111, "Corn flakes"),
    (222, "Toilet paper"),
    (222, "Toilet plunger"),
    (333, "Toilet brush"),
]

EXPECTED_JOIN = [
    (111, "John Doe", "Corn flakes"),
    (222, "Jane Doe", "Toilet paper"),
    (222, "Jane Doe", "Toilet plunger"),
    (333, "Someone Else", "Toilet brush"),
]


class RecordingDataSource(DataSource):
    """Data source that records every read, for checking laziness."""

    def __init__(self, partitions: list[list[tuple]]):
        self.partitions = partitions
        self.reads: list[int] = []

    def get_partition_count(self) -> int:
        return len(self.partitions)

    def create_reader(
        self, partition_index: int, batch_size: int
    ) -> Iterator[pl.DataFrame]:
        self.reads.append(partition_index)
        rows = self.partitions[partition_index]
        if rows:
            yield pl.DataFrame(rows, schema=["key", "value"], orient="row")


class FailingDataSource(DataSource):
    """Data source whose reader fails after its first batch."""

    def __init__(self, rows: list[tuple]):
        self.rows = rows

    def get_partition_count(self) -> int:
        return 1

    def create_reader(
        self, partition_index: int, batch_size: int
    ) -> Iterator[pl.DataFrame]:
        yield pl.DataFrame(self.rows, schema=["key", "value"], orient="row")
        raise OSError("disk went away")


def write_table(path: Path, rows: list[tuple]) -> Path:
    """Write rows in the key|value text format."""
    path.write_text("".join(f"{key}|{value}\n" for key, value in rows))
    return path


@pytest.fixture
def customers() -> KeyedDataset:
    return KeyedDataset.from_pairs(CUSTOMERS, name="customers")


@pytest.fixture
def orders() -> KeyedDataset:
    return KeyedDataset.from_pairs(ORDERS, name="orders")


@pytest.fixture
def customers_file(tmp_path) -> Path:
    return write_table(tmp_path / "customers.txt", CUSTOMERS)


@pytest.fixture
def orders_file(tmp_path) -> Path:
    return write_table(tmp_path / "orders.txt", ORDERS)
