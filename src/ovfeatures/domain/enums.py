"""
Domain Enumerations

Core enums for type safety and clear interface definitions across the package.
"""

from enum import Enum


class OvertureType(str, Enum):
    """Overture feature types, as named by STAC collections."""
    ADDRESS = "address"
    BATHYMETRY = "bathymetry"
    BUILDING = "building"
    BUILDING_PART = "building_part"
    CONNECTOR = "connector"
    DIVISION = "division"
    DIVISION_AREA = "division_area"
    DIVISION_BOUNDARY = "division_boundary"
    INFRASTRUCTURE = "infrastructure"
    LAND = "land"
    LAND_COVER = "land_cover"
    LAND_USE = "land_use"
    PLACE = "place"
    SEGMENT = "segment"
    WATER = "water"


class OutputFormat(str, Enum):
    """Serialization formats for streamed features."""
    GEOJSON = "geojson"         # Single FeatureCollection document
    GEOJSONSEQ = "geojsonseq"   # One Feature per line
    GEOPARQUET = "geoparquet"   # Columnar file via GeoPandas


class BackendKind(str, Enum):
    """Query strategies available to the backend engine."""
    PUSHDOWN = "pushdown"       # DuckDB: filters and limits run before rows cross the wire
    FULL_STREAM = "full_stream" # PyArrow: every row is read, filtering happens client-side


class StreamState(str, Enum):
    """Lifecycle of a bounding-box query session."""
    INIT = "init"
    VALIDATING_INPUT = "validating_input"
    RESOLVING_RELEASE = "resolving_release"
    INDEXING_FILES = "indexing_files"
    STREAMING = "streaming"
    DONE = "done"
    FAILED = "failed"
