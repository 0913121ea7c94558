"""
Domain Models

Pydantic models for the catalog, the GERS registry, the spatial index and the
features handed back to callers.
"""

import math
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from ..errors import InvalidArgumentError


class BoundingBox(BaseModel):
    """Axis-aligned rectangle in EPSG:4326 degrees."""
    xmin: float = Field(..., description="Western longitude")
    ymin: float = Field(..., description="Southern latitude")
    xmax: float = Field(..., description="Eastern longitude")
    ymax: float = Field(..., description="Northern latitude")

    class Config:
        """Pydantic configuration."""
        frozen = True

    @classmethod
    def from_tuple(cls, values) -> "BoundingBox":
        """Build from a (xmin, ymin, xmax, ymax) sequence."""
        try:
            xmin, ymin, xmax, ymax = (float(v) for v in values)
        except (TypeError, ValueError) as e:
            raise InvalidArgumentError(
                f"Bounding box must be four numbers (xmin, ymin, xmax, ymax): {values!r}"
            ) from e
        return cls(xmin=xmin, ymin=ymin, xmax=xmax, ymax=ymax)

    @classmethod
    def from_struct(cls, value: Optional[dict]) -> Optional["BoundingBox"]:
        """Build from a parquet bbox struct; ``None`` unless all four parts are set."""
        if not value:
            return None
        parts = [value.get(k) for k in ("xmin", "ymin", "xmax", "ymax")]
        if any(p is None for p in parts):
            return None
        return cls(xmin=parts[0], ymin=parts[1], xmax=parts[2], ymax=parts[3])

    def as_tuple(self) -> tuple[float, float, float, float]:
        return (self.xmin, self.ymin, self.xmax, self.ymax)

    def intersects(self, other: "BoundingBox") -> bool:
        """Strict overlap; rectangles that only share an edge do not intersect."""
        return (
            self.xmin < other.xmax
            and self.xmax > other.xmin
            and self.ymin < other.ymax
            and self.ymax > other.ymin
        )

    def validate_query(self) -> "BoundingBox":
        """
        Check that this box is usable as a query.

        Raises:
            InvalidArgumentError: non-finite values, inverted axes or
                coordinates outside [-180, 180] x [-90, 90]
        """
        if not all(math.isfinite(v) for v in self.as_tuple()):
            raise InvalidArgumentError("Bounding box coordinates must be finite numbers")

        if self.xmin >= self.xmax or self.ymin >= self.ymax:
            raise InvalidArgumentError(
                "Invalid bounding box: xmin must be less than xmax, ymin must be less than ymax"
            )

        if self.xmin < -180 or self.xmax > 180 or self.ymin < -90 or self.ymax > 90:
            raise InvalidArgumentError(
                "Bounding box coordinates out of valid geographic range "
                "(longitude: -180 to 180, latitude: -90 to 90)"
            )
        return self


class ManifestEntry(BaseModel):
    """One registry shard and the largest GERS ID it holds."""
    shard_file: str
    max_key: str

    class Config:
        frozen = True


class StacLink(BaseModel):
    rel: str
    href: str
    type: Optional[str] = None
    title: Optional[str] = None


class StacRegistry(BaseModel):
    """GERS registry description embedded in the root catalog."""
    path: Optional[str] = None
    manifest: list[tuple[str, str]] = Field(default_factory=list,
                                            description="(filename, max_id) pairs sorted by max_id")

    def entries(self) -> list[ManifestEntry]:
        return [ManifestEntry(shard_file=f, max_key=k) for f, k in self.manifest]


class StacCatalog(BaseModel):
    """Root STAC catalog of the Overture release bucket."""
    type: Optional[str] = None
    id: Optional[str] = None
    description: Optional[str] = None
    title: Optional[str] = None
    latest: str = Field(..., min_length=1, description="Latest release, e.g. 2025-07-23.0")
    links: list[StacLink]
    registry: Optional[StacRegistry] = None

    class Config:
        extra = "allow"


class SpatialIndexEntry(BaseModel):
    """A row of a release's collections.parquet index."""
    collection: Optional[str] = None
    type: Optional[str] = None
    bbox: Optional[BoundingBox] = None
    assets: dict[str, Optional[str]] = Field(default_factory=dict, description="protocol -> href")


class RegistryResult(BaseModel):
    """Registry metadata for one GERS ID in the current release."""
    filepath: str = Field(..., description="Bucket-qualified path of the feature's data file")
    bbox: Optional[BoundingBox] = None
    version: Optional[int] = None
    first_seen: Optional[str] = None
    last_seen: Optional[str] = None
    last_changed: Optional[str] = None


class Feature(BaseModel):
    """GeoJSON-shaped feature decoded from one parquet row."""
    type: Literal["Feature"] = "Feature"
    id: Optional[str] = None
    geometry: dict[str, Any]
    properties: dict[str, Any] = Field(default_factory=dict)
    bbox: Optional[tuple[float, float, float, float]] = None

    class Config:
        arbitrary_types_allowed = True

    def to_geojson(self) -> dict[str, Any]:
        """Return the feature as a plain GeoJSON mapping."""
        feature: dict[str, Any] = {"type": "Feature"}
        if self.id is not None:
            feature["id"] = self.id
        feature["geometry"] = self.geometry
        feature["properties"] = self.properties
        if self.bbox is not None:
            feature["bbox"] = list(self.bbox)
        return feature
