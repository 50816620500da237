"""
In-memory broadcast index for the map-side join.

The broadcast side of a join is materialized once on the driver, shipped to
every worker as an Arrow IPC payload, and rebuilt there into a BroadcastIndex.
The whole broadcast side must fit in a single worker's memory; that is a
precondition on the caller, optionally enforced with a byte limit.
"""

import io
from collections.abc import Callable, Iterable
from types import MappingProxyType
from typing import Any

import polars as pl
from loguru import logger

from mapside.errors import JoinCancelled, ResourceExhausted

# How many pairs to index between cancellation checks
_CANCEL_CHECK_INTERVAL = 65536


def serialize_frame(df: pl.DataFrame) -> bytes:
    """Serialize a materialized broadcast side for distribution."""
    buffer = io.BytesIO()
    df.write_ipc(buffer)
    return buffer.getvalue()


def deserialize_frame(payload: bytes) -> pl.DataFrame:
    """Inverse of serialize_frame()."""
    return pl.read_ipc(io.BytesIO(payload))


def check_memory_limit(df: pl.DataFrame, max_bytes: int | None) -> None:
    """
    Reject a broadcast side that exceeds the configured byte budget.

    Args:
        df: Materialized broadcast side
        max_bytes: Byte budget, or None to skip the check

    Raises:
        ResourceExhausted: If the estimated size exceeds max_bytes
    """
    if max_bytes is None:
        return
    size = df.estimated_size()
    if size > max_bytes:
        logger.error(
            f"Broadcast side is {size} bytes, over the {max_bytes} byte limit"
        )
        raise ResourceExhausted(
            f"Broadcast side needs an estimated {size} bytes but the limit is "
            f"{max_bytes} bytes; use the smaller dataset as the broadcast side"
        )


class BroadcastIndex:
    """
    Read-only multimap from key to the ordered values stored under it.

    Duplicate keys accumulate every value in the order the pairs were read.
    Instances are never mutated after construction, so concurrent probes
    need no locking.
    """

    def __init__(
        self,
        entries: dict[Any, tuple[Any, ...]],
        value_dtype: pl.DataType | None = None,
    ):
        self._entries = MappingProxyType(entries)
        # Polars dtype of the values when built from a frame
        self.value_dtype = value_dtype
        self._value_count = sum(len(values) for values in entries.values())

    @classmethod
    def build(
        cls,
        pairs: Iterable[tuple[Any, Any]],
        should_stop: Callable[[], bool] | None = None,
        value_dtype: pl.DataType | None = None,
    ) -> "BroadcastIndex":
        """
        Build an index by reading every (key, value) pair exactly once.

        Args:
            pairs: The complete broadcast side
            should_stop: Optional callable polled during construction; when it
                returns True the build is abandoned
            value_dtype: Polars dtype of the values, if known

        Raises:
            ResourceExhausted: If the pairs do not fit in memory
            JoinCancelled: If should_stop() returned True
        """
        grouped: dict[Any, list[Any]] = {}
        try:
            for n_read, (key, value) in enumerate(pairs, start=1):
                values = grouped.get(key)
                if values is None:
                    grouped[key] = [value]
                else:
                    values.append(value)

                if (
                    should_stop is not None
                    and n_read % _CANCEL_CHECK_INTERVAL == 0
                    and should_stop()
                ):
                    raise JoinCancelled("Broadcast index construction was cancelled")

            entries = {key: tuple(values) for key, values in grouped.items()}
        except MemoryError as e:
            # The data will not shrink on retry
            grouped.clear()
            raise ResourceExhausted(
                "Broadcast side does not fit in worker memory"
            ) from e

        return cls(entries, value_dtype=value_dtype)

    @classmethod
    def from_frame(
        cls,
        df: pl.DataFrame,
        key_column: str,
        value_column: str,
        should_stop: Callable[[], bool] | None = None,
    ) -> "BroadcastIndex":
        """Build an index from a materialized frame, in row order."""
        try:
            keys = df[key_column].to_list()
            values = df[value_column].to_list()
        except MemoryError as e:
            raise ResourceExhausted(
                "Broadcast side does not fit in worker memory"
            ) from e
        return cls.build(
            zip(keys, values, strict=True),
            should_stop=should_stop,
            value_dtype=df[value_column].dtype,
        )

    @classmethod
    def from_payload(
        cls,
        payload: bytes,
        key_column: str,
        value_column: str,
        should_stop: Callable[[], bool] | None = None,
    ) -> "BroadcastIndex":
        """Build an index from a serialized broadcast payload."""
        try:
            df = deserialize_frame(payload)
        except MemoryError as e:
            raise ResourceExhausted(
                "Broadcast side does not fit in worker memory"
            ) from e
        return cls.from_frame(df, key_column, value_column, should_stop=should_stop)

    def get(self, key: Any) -> tuple[Any, ...]:
        """Values stored under key, in read order; empty when absent."""
        return self._entries.get(key, ())

    def keys(self):
        return self._entries.keys()

    @property
    def value_count(self) -> int:
        """Total number of values across all keys."""
        return self._value_count

    def __contains__(self, key: Any) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"BroadcastIndex(keys={len(self)}, values={self.value_count})"
