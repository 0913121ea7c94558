"""
Retrieval Pipeline Components

Components:
- backend: QueryBackend strategies (DuckDB pushdown, PyArrow full-stream),
  selection and the BackendContext lifecycle
- stream: FeatureStream and QuerySession for GERS and bbox retrieval
"""

from .backend import (
    ArrowBackend,
    BackendContext,
    DuckDBBackend,
    QueryBackend,
    close_backend,
    get_default_context,
    select_backend,
)
from .stream import FeatureStream, QuerySession

__all__ = [
    "ArrowBackend", "BackendContext", "DuckDBBackend", "QueryBackend",
    "close_backend", "get_default_context", "select_backend",
    "FeatureStream", "QuerySession",
]
