"""
ovfeatures - Overture Maps feature retrieval

Look up features by GERS ID or stream them by bounding box straight from the
public Overture GeoParquet release.

The module-level functions share one STAC client, one spatial index reader and
one backend context per process. Build a FeatureStream directly for isolated instances.
"""

from typing import Optional

from .catalog import (
    StacClient,
    clear_cache,
    get_available_releases,
    get_catalog,
    get_collections_url,
    get_default_client,
    get_latest_release,
    get_release_base_url,
)
from .config import Config, ConfigurationError
from .domain import BoundingBox, Feature, OutputFormat, OvertureType, RegistryResult
from .errors import (
    BackendInitError,
    DecodeError,
    InvalidArgumentError,
    OvertureError,
    SchemaError,
    UpstreamUnavailableError,
)
from .gers import is_valid_gers_id, locate_shard
from .pipeline import BackendContext, FeatureStream, QuerySession, close_backend, get_default_context
from .spatial_index import get_default_index, rectangles_overlap

__version__ = "0.1.0"


def _default_stream() -> FeatureStream:
    context = get_default_context()
    return FeatureStream(catalog=get_default_client(), context=context, settings=context.settings,
                         spatial_index=get_default_index())


def get_feature_by_id(gers_id: str) -> Optional[Feature]:
    """Fetch one feature by GERS ID; None if absent from the current release."""
    return _default_stream().get_by_id(gers_id)


def query_metadata_by_id(gers_id: str) -> Optional[RegistryResult]:
    """Registry metadata for a GERS ID; None if unknown or retired."""
    return _default_stream().query_metadata_by_id(gers_id)


def stream_by_bbox(overture_type, bbox, limit: Optional[int] = None) -> QuerySession:
    """Lazily stream features of ``overture_type`` inside ``bbox``."""
    return _default_stream().stream_by_bbox(overture_type, bbox, limit=limit)


def read_by_bbox_all(overture_type, bbox, limit: Optional[int] = None) -> list[Feature]:
    return _default_stream().read_by_bbox_all(overture_type, bbox, limit=limit)


def get_files_in_bbox(overture_type, bbox, release: Optional[str] = None) -> list[str]:
    return _default_stream().get_files_in_bbox(overture_type, bbox, release=release)


__all__ = [
    "get_feature_by_id", "query_metadata_by_id", "stream_by_bbox", "read_by_bbox_all",
    "get_files_in_bbox", "close_backend",
    "get_catalog", "get_latest_release", "get_available_releases", "get_release_base_url",
    "get_collections_url", "clear_cache",
    "FeatureStream", "QuerySession", "BackendContext", "StacClient", "Config", "ConfigurationError",
    "BoundingBox", "Feature", "RegistryResult", "OvertureType", "OutputFormat",
    "OvertureError", "InvalidArgumentError", "UpstreamUnavailableError", "SchemaError",
    "DecodeError", "BackendInitError",
    "is_valid_gers_id", "locate_shard", "rectangles_overlap",
]
