"""
Generic data source interface for keyed datasets.

Each partition is a unit that can be read independently by one worker. A
source yields Polars DataFrames holding a key column and a value column; the
join never looks at anything else.

The term "partition" is format-agnostic:
- Text files: one file per partition
- Lance: fragments
- In-memory pairs: contiguous row ranges
"""

from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Iterator
from pathlib import Path
from typing import Any

import lance
import polars as pl

DEFAULT_KEY_COLUMN = "key"
DEFAULT_VALUE_COLUMN = "value"

# A predicate is either a Polars boolean expression or a Python callable
# taking (key, value) and returning a bool.
Predicate = pl.Expr | Callable[[Any, Any], bool]


class DataSource(ABC):
    """
    Abstract interface for loading raw keyed partitions.

    Readers are lazy: nothing is read until the generator returned by
    create_reader() is advanced.
    """

    key_column: str = DEFAULT_KEY_COLUMN
    value_column: str = DEFAULT_VALUE_COLUMN
    # False for sources computed by a job; their failures are not input reads
    reads_upstream: bool = True

    @abstractmethod
    def get_partition_count(self) -> int:
        """Return total number of data partitions."""
        pass

    @abstractmethod
    def create_reader(
        self, partition_index: int, batch_size: int
    ) -> Iterator[pl.DataFrame]:
        """
        Create a reader/generator for a specific partition.

        Args:
            partition_index: Index of the partition to read (0 to get_partition_count()-1)
            batch_size: Maximum number of rows per yielded DataFrame

        Returns:
            Iterator of Polars DataFrames with key_column and value_column
        """
        pass

    def to_config(self) -> dict[str, Any]:
        """Describe this source so a remote worker can rebuild it."""
        raise NotImplementedError(
            f"{type(self).__name__} cannot be described as a config"
        )

    def _check_partition_index(self, partition_index: int) -> None:
        count = self.get_partition_count()
        if not 0 <= partition_index < count:
            raise IndexError(
                f"Partition index {partition_index} out of range "
                f"(0 to {count - 1})"
            )


class InMemoryDataSource(DataSource):
    """
    Data source over rows already held in memory.

    Rows are split into n_partitions contiguous ranges, so reading the
    partitions in order reproduces the original row order.
    """

    def __init__(
        self,
        rows: Iterable[tuple[Any, Any]] | pl.DataFrame,
        n_partitions: int = 1,
        key_column: str = DEFAULT_KEY_COLUMN,
        value_column: str = DEFAULT_VALUE_COLUMN,
    ):
        """
        Initialize in-memory data source.

        Args:
            rows: (key, value) pairs or a DataFrame with key_column and value_column
            n_partitions: Number of partitions to split the rows into
            key_column: Name of the key column
            value_column: Name of the value column
        """
        if n_partitions < 1:
            raise ValueError(f"n_partitions must be positive, got {n_partitions}")

        self.key_column = key_column
        self.value_column = value_column
        self.n_partitions = n_partitions

        if isinstance(rows, pl.DataFrame):
            self.frame = rows.select([key_column, value_column])
        else:
            self.frame = pl.DataFrame(
                list(rows), schema=[key_column, value_column], orient="row"
            )

    def get_partition_count(self) -> int:
        return self.n_partitions

    def _partition_bounds(self, partition_index: int) -> tuple[int, int]:
        n_rows = len(self.frame)
        per_partition, remainder = divmod(n_rows, self.n_partitions)
        # First `remainder` partitions take one extra row
        start = partition_index * per_partition + min(partition_index, remainder)
        length = per_partition + (1 if partition_index < remainder else 0)
        return start, length

    def create_reader(
        self, partition_index: int, batch_size: int
    ) -> Iterator[pl.DataFrame]:
        self._check_partition_index(partition_index)
        start, length = self._partition_bounds(partition_index)
        yield from self.frame.slice(start, length).iter_slices(n_rows=batch_size)

    def to_config(self) -> dict[str, Any]:
        return {
            "type": "memory",
            "rows": self.frame.rows(),
            "n_partitions": self.n_partitions,
            "key_column": self.key_column,
            "value_column": self.value_column,
        }


class TextDataSource(DataSource):
    """
    Data source for delimited text tables, one file per partition.

    Each line holds a key and a value separated by `delimiter`, e.g.
    ``111|John Doe``. Fields after the value are ignored, so ``111|John|Doe``
    has the value ``John``. Files are read incrementally, one batch at a time.
    """

    def __init__(
        self,
        paths: str | Path | list[str | Path],
        delimiter: str = "|",
        key_dtype: type[pl.DataType] | pl.DataType = pl.Int64,
        key_column: str = DEFAULT_KEY_COLUMN,
        value_column: str = DEFAULT_VALUE_COLUMN,
    ):
        if isinstance(paths, str | Path):
            paths = [paths]
        self.paths = [str(path) for path in paths]
        self.delimiter = delimiter
        self.key_dtype = key_dtype
        self.key_column = key_column
        self.value_column = value_column

    def get_partition_count(self) -> int:
        return len(self.paths)

    def create_reader(
        self, partition_index: int, batch_size: int
    ) -> Iterator[pl.DataFrame]:
        self._check_partition_index(partition_index)
        path = self.paths[partition_index]

        # Polars refuses to parse a file with no rows at all
        if Path(path).stat().st_size == 0:
            return

        # Every field is read as text; only the first two fields of a line
        # are used and any further fields are ignored
        reader = pl.read_csv_batched(
            path,
            separator=self.delimiter,
            has_header=False,
            columns=[0, 1],
            quote_char=None,
            infer_schema_length=0,
            truncate_ragged_lines=True,
            batch_size=batch_size,
        )
        while (batches := reader.next_batches(1)) is not None:
            for batch in batches:
                batch = batch.select(
                    pl.nth(0).cast(self.key_dtype).alias(self.key_column),
                    pl.nth(1).alias(self.value_column),
                )
                yield from batch.iter_slices(n_rows=batch_size)

    def to_config(self) -> dict[str, Any]:
        return {
            "type": "text",
            "paths": self.paths,
            "delimiter": self.delimiter,
            "key_dtype": self.key_dtype,
            "key_column": self.key_column,
            "value_column": self.value_column,
        }


class LanceDataSource(DataSource):
    """
    Data source for Lance datasets.

    Uses fragments as partitions and reads only the key and value columns.
    """

    def __init__(
        self,
        lance_path: str,
        key_column: str = DEFAULT_KEY_COLUMN,
        value_column: str = DEFAULT_VALUE_COLUMN,
    ):
        """
        Initialize Lance data source.

        Args:
            lance_path: Path to Lance dataset
            key_column: Column holding the join key
            value_column: Column holding the payload
        """
        self.lance_path = lance_path
        self.key_column = key_column
        self.value_column = value_column
        self._dataset: lance.LanceDataset | None = None
        self._fragment_count: int | None = None

    @property
    def dataset(self):
        """Lazy-load Lance dataset."""
        if self._dataset is None:
            self._dataset = lance.dataset(self.lance_path)
        return self._dataset

    def get_partition_count(self) -> int:
        """Return number of fragments in the Lance dataset."""
        if self._fragment_count is None:
            self._fragment_count = len(list(self.dataset.get_fragments()))
        assert self._fragment_count is not None
        return self._fragment_count

    def create_reader(
        self, partition_index: int, batch_size: int
    ) -> Iterator[pl.DataFrame]:
        """
        Create a reader for a specific fragment.

        Args:
            partition_index: Fragment index (0 to get_partition_count()-1)
            batch_size: Size of batches to yield

        Returns:
            Iterator of Polars DataFrames from the fragment
        """
        fragments = list(self.dataset.get_fragments())
        if partition_index >= len(fragments):
            raise IndexError(
                f"Partition index {partition_index} out of range "
                f"(0 to {len(fragments) - 1})"
            )

        fragment = fragments[partition_index]
        for batch in fragment.to_batches(
            batch_size=batch_size, columns=[self.key_column, self.value_column]
        ):
            yield pl.from_arrow(batch)

    def __getstate__(self):
        # Dataset handles are reopened on the worker side
        state = self.__dict__.copy()
        state["_dataset"] = None
        return state

    def to_config(self) -> dict[str, Any]:
        return {
            "type": "lance",
            "path": self.lance_path,
            "key_column": self.key_column,
            "value_column": self.value_column,
        }


class FilteredDataSource(DataSource):
    """Keeps only the rows of another source that satisfy a predicate."""

    def __init__(self, source: DataSource, predicate: Predicate):
        self.source = source
        self.predicate = predicate
        self.reads_upstream = source.reads_upstream
        self.key_column = source.key_column
        self.value_column = source.value_column

    def get_partition_count(self) -> int:
        return self.source.get_partition_count()

    def _apply(self, df: pl.DataFrame) -> pl.DataFrame:
        if isinstance(self.predicate, pl.Expr):
            return df.filter(self.predicate)
        mask = [
            bool(self.predicate(key, value))
            for key, value in zip(
                df[self.key_column].to_list(),
                df[self.value_column].to_list(),
                strict=True,
            )
        ]
        return df.filter(pl.Series(mask, dtype=pl.Boolean))

    def create_reader(
        self, partition_index: int, batch_size: int
    ) -> Iterator[pl.DataFrame]:
        for batch in self.source.create_reader(partition_index, batch_size):
            filtered = self._apply(batch)
            if len(filtered) > 0:
                yield filtered

    def to_config(self) -> dict[str, Any]:
        return {
            "type": "filtered",
            "source": self.source.to_config(),
            "predicate": self.predicate,
        }


def create_data_source(config: dict[str, Any]) -> DataSource:
    """
    Rebuild a data source from its config.

    Args:
        config: Dictionary with a "type" entry ("memory", "text", "lance" or
            "filtered") and the constructor arguments of that source

    Returns:
        DataSource instance
    """
    config = dict(config)
    source_type = config.pop("type", None)

    if source_type == "memory":
        return InMemoryDataSource(**config)
    if source_type == "text":
        return TextDataSource(**config)
    if source_type == "lance":
        return LanceDataSource(config.pop("path"), **config)
    if source_type == "filtered":
        return FilteredDataSource(
            create_data_source(config["source"]), config["predicate"]
        )
    raise ValueError(f"Unknown data source type: {source_type}")
