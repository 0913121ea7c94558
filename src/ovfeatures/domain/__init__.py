"""
Domain Models and Types

Models:
- BoundingBox: query and data rectangles with overlap and validation rules
- StacCatalog / StacRegistry: root catalog and GERS registry manifest
- SpatialIndexEntry: one row of a release's collections index
- RegistryResult: registry metadata for a GERS ID
- Feature: decoded feature returned to callers

Enums:
- OvertureType: feature types addressable by bbox queries
- OutputFormat: serialization formats (geojson, geojsonseq, geoparquet)
- BackendKind: pushdown vs full-stream query strategy
- StreamState: lifecycle of a bbox query session
"""

from .enums import BackendKind, OutputFormat, OvertureType, StreamState
from .models import (
    BoundingBox,
    Feature,
    ManifestEntry,
    RegistryResult,
    SpatialIndexEntry,
    StacCatalog,
    StacLink,
    StacRegistry,
)

__all__ = [
    "BoundingBox", "Feature", "ManifestEntry", "RegistryResult", "SpatialIndexEntry",
    "StacCatalog", "StacLink", "StacRegistry",
    "BackendKind", "OutputFormat", "OvertureType", "StreamState",
]
