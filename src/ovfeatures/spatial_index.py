"""
Spatial index over a release's data files.

Every release publishes a small ``collections.parquet`` next to its STAC
catalog, one row per data file with the file's covering bbox and asset
links. Filtering it by type and bbox overlap prunes a bbox query down to the
files worth opening.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Optional, Union
from urllib.parse import urlparse

import pyarrow as pa
import pyarrow.parquet as pq
import requests

from .catalog import get_default_client
from .config.settings import Config
from .domain.enums import OvertureType
from .domain.models import BoundingBox, SpatialIndexEntry
from .errors import InvalidArgumentError, SchemaError, UpstreamUnavailableError
from .utils import timer

logger = logging.getLogger(__name__)

INDEX_COLUMNS = ["collection", "type", "bbox", "assets"]

# Asset protocols in order of preference
HTTPS_ASSET = "aws-https"
S3_ASSET = "aws-s3"


def rectangles_overlap(a: BoundingBox, b: BoundingBox) -> bool:
    """Strict, symmetric overlap test; touching edges do not count."""
    return a.intersects(b)


def coerce_type(overture_type: Union[OvertureType, str]) -> str:
    """Validate a feature type name and return its string value."""
    try:
        return OvertureType(overture_type).value
    except ValueError:
        valid = ", ".join(t.value for t in OvertureType)
        raise InvalidArgumentError(f"Unknown Overture type {overture_type!r}. Valid types: {valid}")


def _asset_map(value: Any) -> dict:
    """Assets are stored either as a struct (dict) or as a parquet map (key, value pairs)."""
    if not value:
        return {}
    if isinstance(value, dict):
        return value
    return dict(value)


def _href(asset: Any) -> Optional[str]:
    if isinstance(asset, dict):
        return asset.get("href")
    if isinstance(asset, str):
        return asset
    return None


class SpatialIndex:
    """Reads a release's collections index and selects candidate files."""

    def __init__(self, settings: Optional[Config] = None, session: Optional[requests.Session] = None):
        self.settings = settings or Config()
        self.session = session or requests.Session()

    def index_url(self, release: str) -> str:
        return f"{self.settings.overture.stac_base_url}/{release}/collections.parquet"

    def s3_to_https(self, href: str) -> str:
        """Translate ``s3://bucket/key`` to the bucket's virtual-hosted HTTPS URL."""
        parsed = urlparse(href)
        if parsed.scheme != "s3":
            return href
        region = self.settings.overture.s3_region
        return f"https://{parsed.netloc}.s3.{region}.amazonaws.com{parsed.path}"

    @timer
    def fetch_entries(self, release: str) -> list[SpatialIndexEntry]:
        """
        Download and parse the index file of a release.

        Raises:
            UpstreamUnavailableError: index file unreachable
            SchemaError: index lacks the expected columns
        """
        url = self.index_url(release)
        timeout = self.settings.http.timeout_s
        logger.debug(f"Fetching spatial index: {url}")

        try:
            response = self.session.get(url, timeout=timeout)
        except requests.RequestException as e:
            raise UpstreamUnavailableError(f"Failed to fetch STAC collections index ({e})", url=url) from e

        if not response.ok:
            raise UpstreamUnavailableError("Failed to fetch STAC collections index",
                                           url=url, status=response.status_code)

        try:
            parquet_file = pq.ParquetFile(pa.BufferReader(response.content))
            missing = set(INDEX_COLUMNS) - set(parquet_file.schema_arrow.names)
            if missing:
                raise SchemaError(f"Spatial index {url} is missing columns: {sorted(missing)}")
            rows = parquet_file.read(columns=INDEX_COLUMNS).to_pylist()
        except pa.ArrowException as e:
            raise SchemaError(f"Spatial index {url} is not a readable parquet file: {e}") from e

        entries = []
        for row in rows:
            assets = _asset_map(row.get("assets"))
            entries.append(SpatialIndexEntry(
                collection=row.get("collection"),
                type=row.get("type"),
                bbox=BoundingBox.from_struct(row.get("bbox")),
                assets={name: _href(asset) for name, asset in assets.items()},
            ))
        logger.debug(f"Spatial index for {release}: {len(entries)} entries")
        return entries

    def resolve_asset(self, entry: SpatialIndexEntry) -> Optional[str]:
        """Preferred HTTPS location of an entry's data file."""
        href = entry.assets.get(HTTPS_ASSET)
        if href:
            return href
        href = entry.assets.get(S3_ASSET)
        if href:
            return self.s3_to_https(href)
        return None

    def files_for_bbox(self, overture_type: Union[OvertureType, str], bbox: BoundingBox,
                       release: str) -> list[str]:
        """
        URLs of data files of ``overture_type`` whose extent overlaps ``bbox``.

        Order follows the index file. An empty list means nothing overlaps.
        """
        type_name = coerce_type(overture_type)
        files = []

        for entry in self.fetch_entries(release):
            if entry.collection != type_name or entry.type != "Feature":
                continue
            if entry.bbox is None or not rectangles_overlap(bbox, entry.bbox):
                continue

            url = self.resolve_asset(entry)
            if url:
                files.append(url)
            else:
                logger.warning(f"Index entry for {type_name} at {entry.bbox.as_tuple()} has no usable asset")

        logger.info(f"Spatial index matched {len(files)} {type_name} file(s) for bbox {bbox.as_tuple()}")
        return files


_default_index: Optional[SpatialIndex] = None
_default_lock = threading.Lock()


def get_default_index() -> SpatialIndex:
    """Process-wide index reader sharing the default STAC client's HTTP session."""
    global _default_index
    with _default_lock:
        if _default_index is None:
            client = get_default_client()
            _default_index = SpatialIndex(client.settings, session=client.session)
        return _default_index
