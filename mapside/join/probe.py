"""
Probe side of the map-side join.

Each record of the streamed (left) dataset is looked up in the broadcast
index and joined with every value stored under its key. Inner join only: a
key with no match produces nothing.
"""

from collections.abc import Iterable, Iterator
from typing import Any, NamedTuple

import polars as pl

from mapside.dataset.keyed import KeySchema
from mapside.join.index import BroadcastIndex

LEFT_COLUMN = "left"
RIGHT_COLUMN = "right"


class JoinedRow(NamedTuple):
    """One output row: a left record paired with one matching right value."""

    key: Any
    left: Any
    right: Any


def joined_schema(left_schema: KeySchema) -> KeySchema:
    """
    Output schema of a join whose streamed side has left_schema.

    The key keeps its name; values go in "left" and "right", or in
    "left_value" and "right_value" when the key is itself named "left" or
    "right".
    """
    key_column = left_schema.key_column
    left_column, right_column = LEFT_COLUMN, RIGHT_COLUMN
    if key_column in (LEFT_COLUMN, RIGHT_COLUMN):
        left_column = f"{LEFT_COLUMN}_value"
        right_column = f"{RIGHT_COLUMN}_value"
    return KeySchema(
        key_column=key_column,
        value_column=left_column,
        right_column=right_column,
    )


class JoinProbeOperator:
    """
    Joins streamed records against a BroadcastIndex.

    The index is shared read-only across every call. Rows for one left record
    come out in the index's stored order; records are handled in the order
    they arrive.
    """

    def __init__(self, index: BroadcastIndex, right_dtype: pl.DataType | None = None):
        """
        Initialize probe operator.

        Args:
            index: Broadcast index built from the right-hand dataset
            right_dtype: Polars dtype of right-hand values, used for the output
                column so that empty and non-empty batches share a schema
        """
        self.index = index
        self.right_dtype = right_dtype
        self.records_probed = 0
        self.rows_emitted = 0

    def probe(self, key: Any, value: Any) -> Iterator[JoinedRow]:
        """Emit one JoinedRow per value stored under key."""
        self.records_probed += 1
        for right in self.index.get(key):
            self.rows_emitted += 1
            yield JoinedRow(key, value, right)

    def probe_pairs(self, pairs: Iterable[tuple[Any, Any]]) -> Iterator[JoinedRow]:
        for key, value in pairs:
            yield from self.probe(key, value)

    def apply(self, batch: pl.DataFrame, schema: KeySchema) -> pl.DataFrame:
        """
        Join a batch of left records.

        Args:
            batch: DataFrame with schema.key_column and schema.value_column
            schema: Column names of the left-hand dataset

        Returns:
            DataFrame with the columns of joined_schema(schema)
        """
        keys: list[Any] = []
        lefts: list[Any] = []
        rights: list[Any] = []

        for key, left in zip(
            batch[schema.key_column].to_list(),
            batch[schema.value_column].to_list(),
            strict=True,
        ):
            self.records_probed += 1
            matches = self.index.get(key)
            if not matches:
                continue
            n_matches = len(matches)
            keys.extend([key] * n_matches)
            lefts.extend([left] * n_matches)
            rights.extend(matches)

        self.rows_emitted += len(rights)

        output = joined_schema(schema)
        return pl.DataFrame(
            [
                pl.Series(
                    output.key_column, keys, dtype=batch[schema.key_column].dtype
                ),
                pl.Series(
                    output.value_column, lefts, dtype=batch[schema.value_column].dtype
                ),
                pl.Series(output.right_column, rights, dtype=self.right_dtype),
            ]
        )
