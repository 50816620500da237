"""
Keyed dataset: a lazy view of a data source as (key, value) pairs.

The join only needs "an iterable of (key, value) pairs"; KeyedDataset adapts
any DataSource to that shape and reports read failures uniformly.
"""

from collections.abc import Iterable, Iterator
from typing import Any

import polars as pl
from loguru import logger

from mapside.dataset.data_source import (
    DEFAULT_KEY_COLUMN,
    DEFAULT_VALUE_COLUMN,
    DataSource,
    FilteredDataSource,
    InMemoryDataSource,
    Predicate,
    create_data_source,
)
from mapside.errors import MapsideError, UpstreamReadFailure


class KeySchema:
    """
    Names the key and value columns of a keyed dataset.

    Joined datasets use the same class with value_column set to the left value
    column and right_column naming the broadcast-side value.
    """

    def __init__(
        self,
        key_column: str = DEFAULT_KEY_COLUMN,
        value_column: str = DEFAULT_VALUE_COLUMN,
        right_column: str | None = None,
    ):
        self.key_column = key_column
        self.value_column = value_column
        self.right_column = right_column

    @classmethod
    def of(cls, source: DataSource) -> "KeySchema":
        return cls(key_column=source.key_column, value_column=source.value_column)

    @property
    def columns(self) -> list[str]:
        columns = [self.key_column, self.value_column]
        if self.right_column is not None:
            columns.append(self.right_column)
        return columns

    def to_dict(self) -> dict[str, Any]:
        return {
            "key_column": self.key_column,
            "value_column": self.value_column,
            "right_column": self.right_column,
        }


class KeyedDataset:
    """
    A logical table of (key, value) pairs backed by a DataSource.

    Keys need not be unique and no ordering is promised beyond the source's
    own partition and row order.
    """

    def __init__(
        self,
        source: DataSource,
        schema: KeySchema | None = None,
        batch_size: int = 65536,
        name: str | None = None,
    ):
        self.source = source
        self.schema = schema or KeySchema.of(source)
        self.batch_size = batch_size
        self.name = name or type(source).__name__

    @classmethod
    def from_pairs(
        cls,
        pairs: Iterable[tuple[Any, Any]],
        n_partitions: int = 1,
        name: str | None = None,
    ) -> "KeyedDataset":
        """Build a dataset from (key, value) pairs held in memory."""
        return cls(InMemoryDataSource(pairs, n_partitions=n_partitions), name=name)

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "KeyedDataset":
        return cls(
            create_data_source(config["source"]),
            schema=KeySchema(**config["schema"]),
            batch_size=config.get("batch_size", 65536),
            name=config.get("name"),
        )

    def to_config(self) -> dict[str, Any]:
        return {
            "source": self.source.to_config(),
            "schema": self.schema.to_dict(),
            "batch_size": self.batch_size,
            "name": self.name,
        }

    @property
    def partition_count(self) -> int:
        return self.source.get_partition_count()

    def iter_partition(self, partition_index: int) -> Iterator[pl.DataFrame]:
        """
        Stream one partition as DataFrames.

        Raises:
            UpstreamReadFailure: If the underlying reader fails. MemoryError
                and failures of sources computed by a job propagate unchanged.
        """
        try:
            yield from self.source.create_reader(partition_index, self.batch_size)
        except (MapsideError, MemoryError):
            raise
        except Exception as e:
            if not self.source.reads_upstream:
                raise
            logger.error(
                f"Failed reading partition {partition_index} of {self.name}: {e}"
            )
            raise UpstreamReadFailure(
                f"Failed reading partition {partition_index} of {self.name}: {e}",
                partition_index=partition_index,
            ) from e

    def iter_batches(self) -> Iterator[pl.DataFrame]:
        """Stream every partition in partition order."""
        for partition_index in range(self.partition_count):
            yield from self.iter_partition(partition_index)

    def iter_pairs(self) -> Iterator[tuple[Any, Any]]:
        """Lazy, finite sequence of (key, value) pairs."""
        key_column = self.schema.key_column
        if self.schema.right_column is None:
            for batch in self.iter_batches():
                yield from zip(
                    batch[key_column].to_list(),
                    batch[self.schema.value_column].to_list(),
                    strict=True,
                )
        else:
            # Joined datasets carry (left, right) as the value
            for batch in self.iter_batches():
                yield from (
                    (key, (left, right))
                    for key, left, right in zip(
                        batch[key_column].to_list(),
                        batch[self.schema.value_column].to_list(),
                        batch[self.schema.right_column].to_list(),
                        strict=True,
                    )
                )

    def __iter__(self) -> Iterator[tuple[Any, Any]]:
        return self.iter_pairs()

    def to_frame(self) -> pl.DataFrame:
        """Materialize every partition into one DataFrame."""
        batches = [batch.select(self.schema.columns) for batch in self.iter_batches()]
        if not batches:
            return pl.DataFrame(schema=self.schema.columns)
        return pl.concat(batches, how="vertical_relaxed")

    def materialize(self) -> list[tuple[Any, Any]]:
        return list(self.iter_pairs())

    def filter(self, predicate: Predicate) -> "KeyedDataset":
        """Return a dataset keeping only rows that satisfy predicate."""
        return KeyedDataset(
            FilteredDataSource(self.source, predicate),
            schema=self.schema,
            batch_size=self.batch_size,
            name=f"{self.name}.filter",
        )

    def __repr__(self) -> str:
        return f"KeyedDataset(name={self.name!r}, partitions={self.partition_count})"
