"""
Keyed dataset components.

Data sources produce partitioned Polars batches; KeyedDataset exposes them to
the join as lazy (key, value) pairs.
"""

from mapside.dataset.data_source import (
    DataSource,
    FilteredDataSource,
    InMemoryDataSource,
    LanceDataSource,
    TextDataSource,
    create_data_source,
)
from mapside.dataset.keyed import KeyedDataset, KeySchema

__all__ = [
    "DataSource",
    "InMemoryDataSource",
    "TextDataSource",
    "LanceDataSource",
    "FilteredDataSource",
    "create_data_source",
    "KeyedDataset",
    "KeySchema",
]
